import time
from typing import Callable

from roadlimit.schemas.segment import UserOverride
from roadlimit.utils.geo import haversine_m
from roadlimit.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_PROXIMITY_M = 50.0


class OverrideCache:
    """Short-lived user corrections keyed by road id, searchable by location.

    Expiry is checked on every read, so an override is never served once
    ``submitted_at + ttl`` has passed, whether or not a purge ran.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        proximity_m: float = DEFAULT_PROXIMITY_M,
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.proximity_m = proximity_m
        self._time = time_func
        self._overrides: dict[int, UserOverride] = {}

    def __len__(self) -> int:
        return len(self._overrides)

    def clear(self) -> None:
        self._overrides.clear()

    def record(self, road_id: int, limit: int, lat: float, lon: float) -> UserOverride:
        now = self._time()
        override = UserOverride(road_id=road_id, limit=limit, lat=lat, lon=lon, submitted_at=now)
        self._overrides[road_id] = override
        self.purge_expired()
        logger.info("Recorded override for road %s: %s", road_id, limit)
        return override

    def purge_expired(self) -> int:
        now = self._time()
        expired = [rid for rid, o in self._overrides.items() if o.is_expired(now, self.ttl_seconds)]
        for road_id in expired:
            del self._overrides[road_id]
        return len(expired)

    def get(self, road_id: int) -> int | None:
        override = self._overrides.get(road_id)
        if override is None:
            return None
        if override.is_expired(self._time(), self.ttl_seconds):
            del self._overrides[road_id]
            return None
        return override.limit

    def nearby(self, lat: float, lon: float) -> UserOverride | None:
        now = self._time()
        best: UserOverride | None = None
        best_distance = self.proximity_m
        for road_id, override in list(self._overrides.items()):
            if override.is_expired(now, self.ttl_seconds):
                del self._overrides[road_id]
                continue
            distance = haversine_m(lat, lon, override.lat, override.lon)
            if distance <= best_distance:
                best = override
                best_distance = distance
        return best

    def get_nearby(self, lat: float, lon: float) -> int | None:
        override = self.nearby(lat, lon)
        return override.limit if override is not None else None
