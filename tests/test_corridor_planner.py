import pytest

from roadlimit.ingestion.corridor import CorridorConfig, CorridorPlanner, corridor_region, point_region
from roadlimit.utils.geo import destination_point, haversine_m

START = (51.5, -0.13)


def _planner_after_fetch(bearing: float | None = 90.0) -> CorridorPlanner:
    planner = CorridorPlanner(CorridorConfig(look_ahead_m=1000, min_refetch_distance_m=100, turn_threshold_deg=40))
    region = point_region(*START, radius_m=200, now=0.0)
    planner.mark_fetched(*START, bearing, region)
    return planner


def test_fetches_when_nothing_fetched_yet() -> None:
    assert CorridorPlanner().should_fetch_ahead(*START, 90.0) is True


def test_no_fetch_below_min_distance_even_after_turn() -> None:
    planner = _planner_after_fetch(bearing=90.0)
    lat, lon = destination_point(*START, 90.0, 50.0)
    assert planner.should_fetch_ahead(lat, lon, 270.0) is False


def test_fetches_when_most_of_corridor_covered() -> None:
    planner = _planner_after_fetch(bearing=90.0)
    lat, lon = destination_point(*START, 90.0, 750.0)
    assert planner.should_fetch_ahead(lat, lon, 90.0) is True


def test_no_fetch_mid_corridor_on_same_heading() -> None:
    planner = _planner_after_fetch(bearing=90.0)
    lat, lon = destination_point(*START, 90.0, 300.0)
    assert planner.should_fetch_ahead(lat, lon, 100.0) is False


def test_sharp_turn_fetches_regardless_of_coverage() -> None:
    planner = _planner_after_fetch(bearing=90.0)
    lat, lon = destination_point(*START, 90.0, 150.0)
    assert planner.should_fetch_ahead(lat, lon, 180.0) is True


def test_turn_detection_wraps_around_north() -> None:
    planner = _planner_after_fetch(bearing=350.0)
    lat, lon = destination_point(*START, 350.0, 150.0)
    assert planner.should_fetch_ahead(lat, lon, 20.0) is False
    assert planner.should_fetch_ahead(lat, lon, 40.0) is True


def test_unknown_bearing_skips_turn_rule() -> None:
    planner = _planner_after_fetch(bearing=None)
    lat, lon = destination_point(*START, 0.0, 150.0)
    assert planner.should_fetch_ahead(lat, lon, 180.0) is False
    assert planner.should_fetch_ahead(lat, lon, -1.0) is False


def test_recently_queried_requires_region_and_distance() -> None:
    planner = _planner_after_fetch()
    assert planner.recently_queried(*START) is True
    lat, lon = destination_point(*START, 0.0, 150.0)
    assert planner.recently_queried(lat, lon) is False
    planner.reset()
    assert planner.recently_queried(*START) is False


def test_corridor_region_extends_ahead_of_bearing() -> None:
    region = corridor_region(*START, 90.0, look_ahead_m=1000, half_width_m=150, behind_m=50, now=5.0)

    assert region.contains(*START)
    assert region.contains(*destination_point(*START, 90.0, 900.0))
    assert not region.contains(*destination_point(*START, 270.0, 200.0))
    assert haversine_m(region.north, -0.13, region.south, -0.13) == pytest.approx(300.0, rel=0.01)
    assert region.fetched_at == 5.0


def test_point_region_bounds_radius() -> None:
    region = point_region(*START, radius_m=200, now=0.0)
    assert haversine_m(region.south, -0.13, region.north, -0.13) == pytest.approx(400.0, rel=0.01)
    assert region.contains(*START)


def test_recently_queried_expires_with_region_age(clock) -> None:
    planner = CorridorPlanner(max_region_age_seconds=600, time_func=clock.time)
    planner.mark_fetched(*START, 90.0, point_region(*START, radius_m=200, now=clock.time()))
    clock.advance(599)
    assert planner.recently_queried(*START) is True
    clock.advance(1)
    assert planner.recently_queried(*START) is False
