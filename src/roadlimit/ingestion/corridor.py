import time
from dataclasses import dataclass
from typing import Callable

from roadlimit.schemas.segment import QueryRegion
from roadlimit.utils.geo import (
    bearing_difference,
    bounding_box,
    destination_point,
    haversine_m,
    normalize_bearing,
)


@dataclass
class CorridorConfig:
    look_ahead_m: float = 1000.0
    half_width_m: float = 150.0
    behind_m: float = 50.0
    point_radius_m: float = 200.0
    min_refetch_distance_m: float = 100.0
    coverage_threshold: float = 0.7
    turn_threshold_deg: float = 40.0


def corridor_region(
    lat: float,
    lon: float,
    bearing: float,
    look_ahead_m: float,
    half_width_m: float,
    behind_m: float,
    now: float,
) -> QueryRegion:
    back = destination_point(lat, lon, bearing + 180.0, behind_m)
    ahead = destination_point(lat, lon, bearing, look_ahead_m)
    corners = []
    for base_lat, base_lon in (back, ahead):
        corners.append(destination_point(base_lat, base_lon, bearing - 90.0, half_width_m))
        corners.append(destination_point(base_lat, base_lon, bearing + 90.0, half_width_m))
    south, west, north, east = bounding_box(corners)
    return QueryRegion(south=south, west=west, north=north, east=east, fetched_at=now)


def point_region(lat: float, lon: float, radius_m: float, now: float) -> QueryRegion:
    edges = [destination_point(lat, lon, b, radius_m) for b in (0.0, 90.0, 180.0, 270.0)]
    south, west, north, east = bounding_box(edges)
    return QueryRegion(south=south, west=west, north=north, east=east, fetched_at=now)


class CorridorPlanner:
    def __init__(
        self,
        config: CorridorConfig | None = None,
        max_region_age_seconds: float = 600.0,
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CorridorConfig()
        self.max_region_age_seconds = max_region_age_seconds
        self._time = time_func
        self.fetched_at: float | None = None
        self.last_lat: float | None = None
        self.last_lon: float | None = None
        self.last_bearing: float | None = None
        self.region: QueryRegion | None = None

    def mark_fetched(self, lat: float, lon: float, bearing: float | None, region: QueryRegion) -> None:
        self.last_lat = lat
        self.last_lon = lon
        self.last_bearing = normalize_bearing(bearing)
        self.region = region
        self.fetched_at = self._time()

    def distance_since_fetch(self, lat: float, lon: float) -> float | None:
        if self.last_lat is None or self.last_lon is None:
            return None
        return haversine_m(self.last_lat, self.last_lon, lat, lon)

    def recently_queried(self, lat: float, lon: float) -> bool:
        """True when the point lies in a still-fresh last region, close to where it was fetched."""
        traveled = self.distance_since_fetch(lat, lon)
        if traveled is None or self.region is None or self.fetched_at is None:
            return False
        if self._time() - self.fetched_at >= self.max_region_age_seconds:
            return False
        return traveled < self.config.min_refetch_distance_m and self.region.contains(lat, lon)

    def should_fetch_ahead(self, lat: float, lon: float, bearing: float | None) -> bool:
        traveled = self.distance_since_fetch(lat, lon)
        if self.region is None or traveled is None:
            return True
        if traveled < self.config.min_refetch_distance_m:
            return False
        if traveled / self.config.look_ahead_m > self.config.coverage_threshold:
            return True
        current = normalize_bearing(bearing)
        if current is not None and self.last_bearing is not None:
            if bearing_difference(current, self.last_bearing) > self.config.turn_threshold_deg:
                return True
        return False

    def reset(self) -> None:
        self.last_lat = None
        self.last_lon = None
        self.last_bearing = None
        self.region = None
        self.fetched_at = None
