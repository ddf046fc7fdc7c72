import math

import pytest

from roadlimit.utils.geo import (
    bearing_difference,
    destination_point,
    haversine_m,
    normalize_bearing,
    point_segment_distance_m,
    polyline_distance_m,
)


def test_haversine_one_degree_latitude() -> None:
    assert haversine_m(51.0, 0.0, 52.0, 0.0) == pytest.approx(111_195, rel=1e-3)


def test_destination_point_round_trips_distance() -> None:
    lat, lon = destination_point(51.5, -0.13, 90.0, 1000.0)
    assert lat == pytest.approx(51.5, abs=1e-4)
    assert lon > -0.13
    assert haversine_m(51.5, -0.13, lat, lon) == pytest.approx(1000.0, rel=1e-6)


def test_destination_point_wraps_antimeridian() -> None:
    _, lon = destination_point(0.0, 179.999, 90.0, 1000.0)
    assert -180.0 <= lon < -179.99


@pytest.mark.parametrize(
    "a, b, expected",
    [(10.0, 350.0, 20.0), (0.0, 180.0, 180.0), (90.0, 45.0, 45.0), (359.0, 1.0, 2.0)],
)
def test_bearing_difference_wraps(a: float, b: float, expected: float) -> None:
    assert bearing_difference(a, b) == pytest.approx(expected)


def test_normalize_bearing_treats_negative_as_unknown() -> None:
    assert normalize_bearing(None) is None
    assert normalize_bearing(-1.0) is None
    assert normalize_bearing(float("nan")) is None
    assert normalize_bearing(370.0) == pytest.approx(10.0)


def test_point_segment_distance_clamps_to_endpoints() -> None:
    assert point_segment_distance_m(0, 5, -10, 0, 10, 0) == pytest.approx(5.0)
    assert point_segment_distance_m(13, 4, -10, 0, 10, 0) == pytest.approx(5.0)
    assert point_segment_distance_m(3, 4, 0, 0, 0, 0) == pytest.approx(5.0)


def test_polyline_distance_uses_closest_pair() -> None:
    geometry = [(51.5, -0.14), (51.5, -0.13), (51.51, -0.13)]
    d = polyline_distance_m(51.505, -0.1303, geometry)
    assert d == pytest.approx(0.0003 * 111_320 * math.cos(math.radians(51.505)), rel=1e-2)


def test_polyline_distance_single_point_and_empty() -> None:
    assert polyline_distance_m(51.5, -0.13, [(51.5, -0.13)]) == pytest.approx(0.0)
    assert polyline_distance_m(51.5, -0.13, []) == math.inf
