from typing import Callable

from roadlimit.utils.text import clean, parse_int

# Limits are normalised to integer miles per hour.
KMH_TO_MPH = 0.621371
MPH_TO_KMH = 1.60934

MPH_REGIONS = frozenset(
    {
        "GB", "US", "LR", "MM", "WS", "BS", "BZ", "VG", "KY", "DM", "GD",
        "GY", "JM", "KN", "LC", "VC", "AG", "AI", "MS", "TC", "VI",
    }
)

# In the region's own unit.
NATIONAL_LIMITS = {
    "GB": 60,
    "US": 55,
    "AU": 100,
    "DE": 100,
    "FR": 80,
    "ES": 90,
    "IT": 90,
    "NL": 80,
    "BE": 70,
    "AT": 100,
    "CH": 80,
    "IE": 80,
    "NZ": 100,
    "CA": 80,
    "JP": 60,
    "KR": 80,
    "CN": 100,
    "IN": 80,
    "BR": 80,
    "MX": 80,
    "ZA": 100,
}

# Zone values such as "GB:nsl_dual" or "DE:urban", in the region's own unit.
# None marks a zone with no general limit.
ZONE_LIMITS: dict[str, dict[str, int | None]] = {
    "GB": {"nsl_single": 60, "nsl_dual": 70, "nsl_restricted": 30, "motorway": 70},
    "DE": {"urban": 50, "rural": 100, "motorway": None},
    "AT": {"urban": 50, "rural": 100, "motorway": 130},
    "CH": {"urban": 50, "rural": 80, "motorway": 120},
    "FR": {"urban": 50, "rural": 80, "motorway": 130},
    "ES": {"urban": 50, "rural": 90, "motorway": 120},
    "IT": {"urban": 50, "rural": 90, "motorway": 130},
    "NL": {"urban": 50, "rural": 80, "motorway": 100},
    "BE": {"urban": 50, "rural": 70, "motorway": 120},
    "IE": {"urban": 50, "rural": 80, "motorway": 120},
}

WALKING_PACE_LIMIT = 20
NO_LIMIT_VALUES = {"none", "unlimited", "signals", "variable", "implicit"}

LimitInterpreter = Callable[[str, str], int | None]


def uses_mph(region_code: str) -> bool:
    return region_code.upper() in MPH_REGIONS


def national_limit(region_code: str) -> int | None:
    return NATIONAL_LIMITS.get(region_code.upper())


def zone_limit(region_code: str, zone: str) -> int | None:
    zones = ZONE_LIMITS.get(region_code.upper(), {})
    if zone in zones:
        return zones[zone]
    if zone in {"walk", "living_street"}:
        return WALKING_PACE_LIMIT
    if zone in {"national", "rural"}:
        return national_limit(region_code)
    return None


def kmh_to_mph(kmh: int) -> int:
    return int(kmh * KMH_TO_MPH)


def mph_to_kmh(mph: int) -> int:
    return int(mph * MPH_TO_KMH)


def unit_label(region_code: str) -> str:
    return "mph" if uses_mph(region_code) else "km/h"


def _from_local(value: int, region_code: str) -> int:
    return value if uses_mph(region_code) else kmh_to_mph(value)


def interpret_limit(raw_tag: str, region_code: str) -> int | None:
    """Normalise a raw OSM maxspeed value to mph.

    Explicit units win; bare numbers take the region's unit. Zone values such as
    ``GB:nsl_dual`` or ``DE:urban`` are read from the zone table of the prefix region,
    falling back to its national limit for ``national`` and ``rural``.
    """
    text = clean(raw_tag)
    if not text:
        return None
    lowered = text.lower()

    if ":" in lowered and not lowered[0].isdigit():
        prefix, _, zone = lowered.partition(":")
        limit = zone_limit(prefix, zone)
        return _from_local(limit, prefix) if limit is not None else None

    if lowered == "national":
        limit = national_limit(region_code)
        return _from_local(limit, region_code) if limit is not None else None
    if lowered in {"walk", "living_street"}:
        return _from_local(WALKING_PACE_LIMIT, region_code)
    if lowered in NO_LIMIT_VALUES:
        return None

    value = parse_int(lowered)
    if value is None or value <= 0:
        return None
    if "mph" in lowered:
        return value
    if "km" in lowered or "kph" in lowered:
        return kmh_to_mph(value)
    if "knots" in lowered:
        return None
    return _from_local(value, region_code)
