import re
from typing import Iterable


def clean(text: str | None) -> str | None:
    if text is None:
        return None
    cleaned = " ".join(text.split()).strip()
    return cleaned or None


def split_values(text: str | None, separator: str = ";") -> list[str]:
    if not text:
        return []
    parts = (clean(part) for part in text.split(separator))
    return [part for part in parts if part]


def first_present(items: Iterable[str | None]) -> str | None:
    for item in items:
        if item:
            return item
    return None


def parse_int(text: str | None) -> int | None:
    if not text:
        return None
    digits = re.search(r"[0-9]+", text.replace(" ", ""))
    if not digits:
        return None
    try:
        return int(digits.group(0))
    except ValueError:
        return None
