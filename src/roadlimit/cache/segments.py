import math
import time
from typing import Callable, Iterable

from roadlimit.schemas.segment import LatLon, RoadMatch, RoadSegment
from roadlimit.utils.geo import polyline_distance_m
from roadlimit.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CAPACITY = 100
DEFAULT_MAX_AGE_SECONDS = 600.0
DEFAULT_MATCH_TOLERANCE_M = 30.0
EVICTION_TARGET_RATIO = 0.7


class SegmentStore:
    """Bounded in-memory collection of road segments keyed by road id.

    Insertion skips ids already held. Past ``capacity`` the oldest segments by
    ``fetched_at`` go first until the store is back at ``EVICTION_TARGET_RATIO`` of
    capacity, dropping the roads farthest from ``near`` first among segments fetched
    together; a separate age sweep drops anything older than ``max_age_seconds``.
    Lookups are a linear scan over every polyline.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        match_tolerance_m: float = DEFAULT_MATCH_TOLERANCE_M,
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.max_age_seconds = max_age_seconds
        self.match_tolerance_m = match_tolerance_m
        self._time = time_func
        self._segments: dict[int, RoadSegment] = {}

    def __len__(self) -> int:
        return len(self._segments)

    def __contains__(self, road_id: object) -> bool:
        return road_id in self._segments

    def get(self, road_id: int) -> RoadSegment | None:
        return self._segments.get(road_id)

    def segments(self) -> list[RoadSegment]:
        return list(self._segments.values())

    def clear(self) -> None:
        self._segments.clear()

    def add_segments(self, segments: Iterable[RoadSegment], near: LatLon | None = None) -> int:
        added = 0
        for segment in segments:
            if segment.id in self._segments:
                continue
            self._segments[segment.id] = segment
            added += 1
        if len(self._segments) > self.capacity:
            self._evict_oldest(near)
        return added

    def _evict_oldest(self, near: LatLon | None = None) -> None:
        target = max(int(self.capacity * EVICTION_TARGET_RATIO), 1)

        def eviction_order(segment: RoadSegment) -> tuple[float, float]:
            # same fetch: farthest from `near` goes first
            if near is None:
                return (segment.fetched_at, 0.0)
            return (segment.fetched_at, -polyline_distance_m(near[0], near[1], segment.geometry))

        oldest_first = sorted(self._segments.values(), key=eviction_order)
        excess = len(oldest_first) - target
        for segment in oldest_first[:excess]:
            del self._segments[segment.id]
        logger.debug("Evicted %d segments over capacity %d", max(excess, 0), self.capacity)

    def evict_expired(self) -> int:
        cutoff = self._time() - self.max_age_seconds
        expired = [road_id for road_id, s in self._segments.items() if s.fetched_at < cutoff]
        for road_id in expired:
            del self._segments[road_id]
        if expired:
            logger.debug("Expired %d segments older than %.0fs", len(expired), self.max_age_seconds)
        return len(expired)

    def find_match(self, lat: float, lon: float) -> RoadMatch | None:
        self.evict_expired()
        best: RoadSegment | None = None
        best_distance = math.inf
        for segment in self._segments.values():
            distance = polyline_distance_m(lat, lon, segment.geometry)
            if distance < best_distance:
                best = segment
                best_distance = distance
        if best is None or best_distance > self.match_tolerance_m:
            return None
        return RoadMatch(segment=best, distance_m=best_distance)
