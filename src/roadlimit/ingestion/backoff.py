import enum
import time
from dataclasses import dataclass
from typing import Callable

from roadlimit.utils.logging import get_logger

logger = get_logger(__name__)


class FailureSignal(str, enum.Enum):
    THROTTLED = "throttled"
    TRANSPORT = "transport"


@dataclass
class BackoffConfig:
    floor_seconds: float = 30.0
    multiplier: float = 2.0
    ceiling_seconds: float = 300.0
    implicit_throttle_after: int = 3


@dataclass(frozen=True)
class ThrottleEvent:
    signal: FailureSignal
    status_code: int | None
    cooldown_seconds: float
    implicit: bool = False


class BackoffController:
    """Cooldown window after upstream throttling.

    An explicit throttle response, or ``implicit_throttle_after`` transport errors in a
    row, opens a cooldown of ``current_delay`` seconds and multiplies the delay for the
    next one, up to the ceiling. The delay falls back to the floor only on a success
    after the cooldown has run out.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        time_func: Callable[[], float] = time.monotonic,
        on_throttle: Callable[[ThrottleEvent], None] | None = None,
    ) -> None:
        self.config = config or BackoffConfig()
        self._time = time_func
        self._on_throttle = on_throttle
        self.throttled = False
        self.cooldown_ends_at = 0.0
        self.current_delay = self.config.floor_seconds
        self.consecutive_failures = 0
        self.throttle_count = 0

    def on_failure(
        self,
        signal: FailureSignal,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        implicit = False
        if signal is FailureSignal.TRANSPORT:
            self.consecutive_failures += 1
            if self.consecutive_failures < self.config.implicit_throttle_after:
                logger.info(
                    "Upstream error %d/%d (status=%s)",
                    self.consecutive_failures,
                    self.config.implicit_throttle_after,
                    status_code,
                )
                return
            implicit = True
            self.consecutive_failures = 0
        self._throttle(signal, status_code, retry_after, implicit)

    def _throttle(
        self,
        signal: FailureSignal,
        status_code: int | None,
        retry_after: float | None,
        implicit: bool,
    ) -> None:
        cooldown = self.current_delay
        if retry_after is not None:
            cooldown = min(max(cooldown, retry_after), self.config.ceiling_seconds)
        now = self._time()
        self.throttled = True
        self.cooldown_ends_at = now + cooldown
        self.current_delay = min(self.current_delay * self.config.multiplier, self.config.ceiling_seconds)
        self.throttle_count += 1
        logger.warning(
            "Upstream throttled (%s, status=%s, implicit=%s); serving cache for %.0fs",
            signal.value,
            status_code,
            implicit,
            cooldown,
        )
        if self._on_throttle is not None:
            self._on_throttle(
                ThrottleEvent(signal=signal, status_code=status_code, cooldown_seconds=cooldown, implicit=implicit)
            )

    def on_success(self) -> None:
        self.consecutive_failures = 0
        if self._time() >= self.cooldown_ends_at:
            self.throttled = False
            self.current_delay = self.config.floor_seconds

    def is_throttled(self) -> bool:
        if self.throttled and self._time() >= self.cooldown_ends_at:
            self.throttled = False
        return self.throttled

    def remaining_cooldown(self) -> float:
        return max(self.cooldown_ends_at - self._time(), 0.0) if self.is_throttled() else 0.0

    def reset(self) -> None:
        self.throttled = False
        self.cooldown_ends_at = 0.0
        self.current_delay = self.config.floor_seconds
        self.consecutive_failures = 0
