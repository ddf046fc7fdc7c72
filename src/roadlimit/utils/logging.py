import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_ROOT_LOGGER = "roadlimit"


def setup_logging(level: int | str = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(level)
    handler = next((h for h in logger.handlers if getattr(h, "_roadlimit_handler", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._roadlimit_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    else:
        # sys.stderr may have been swapped since the first call
        handler.setStream(sys.stderr)  # type: ignore[attr-defined]
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    if name == "__main__":
        name = f"{_ROOT_LOGGER}.main"
    return logging.getLogger(name)
