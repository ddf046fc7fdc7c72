import math
from typing import Iterable, Sequence

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(a, 1.0)))


def destination_point(lat: float, lon: float, bearing_deg: float, distance_m: float) -> tuple[float, float]:
    """Point reached from (lat, lon) after distance_m along the great circle at bearing_deg."""
    delta = distance_m / EARTH_RADIUS_M
    theta = math.radians(bearing_deg)
    phi1 = math.radians(lat)
    lam1 = math.radians(lon)
    sin_phi2 = math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    phi2 = math.asin(max(-1.0, min(1.0, sin_phi2)))
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * sin_phi2,
    )
    lon2 = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return math.degrees(phi2), lon2


def normalize_bearing(bearing: float | None) -> float | None:
    if bearing is None or bearing < 0 or math.isnan(bearing):
        return None
    return bearing % 360.0


def bearing_difference(a: float, b: float) -> float:
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def m_per_deg_lon(lat_deg: float) -> float:
    return 111_320.0 * math.cos(math.radians(lat_deg))


def m_per_deg_lat() -> float:
    return 111_320.0


def latlon_to_xy_m(lat: float, lon: float, lat0: float, lon0: float) -> tuple[float, float]:
    x = (lon - lon0) * m_per_deg_lon(lat0)
    y = (lat - lat0) * m_per_deg_lat()
    return x, y


def point_segment_distance_m(px: float, py: float, ax: float, ay: float, bx: float, by: float) -> float:
    abx = bx - ax
    aby = by - ay
    apx = px - ax
    apy = py - ay
    ab_len2 = abx * abx + aby * aby
    if ab_len2 <= 0:
        return math.hypot(px - ax, py - ay)
    t = (apx * abx + apy * aby) / ab_len2
    if t <= 0:
        cx, cy = ax, ay
    elif t >= 1:
        cx, cy = bx, by
    else:
        cx, cy = ax + t * abx, ay + t * aby
    return math.hypot(px - cx, py - cy)


def polyline_distance_m(lat: float, lon: float, geometry: Sequence[tuple[float, float]]) -> float:
    """Minimum distance in metres from a point to a polyline, projected around the point."""
    if not geometry:
        return math.inf
    pts = [latlon_to_xy_m(p_lat, p_lon, lat, lon) for p_lat, p_lon in geometry]
    if len(pts) == 1:
        return math.hypot(*pts[0])
    best = math.inf
    for (ax, ay), (bx, by) in zip(pts, pts[1:]):
        d = point_segment_distance_m(0.0, 0.0, ax, ay, bx, by)
        if d < best:
            best = d
    return best


def bounding_box(points: Iterable[tuple[float, float]]) -> tuple[float, float, float, float]:
    lats: list[float] = []
    lons: list[float] = []
    for p_lat, p_lon in points:
        lats.append(p_lat)
        lons.append(p_lon)
    if not lats:
        raise ValueError("bounding_box needs at least one point")
    return min(lats), min(lons), max(lats), max(lons)
