import pytest

from roadlimit.schemas.segment import RoadSegment


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.slept: list[float] = []

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_segment():
    def _make(
        road_id: int,
        limit: int = 30,
        geometry=((51.5, -0.135), (51.5, -0.125)),
        fetched_at: float = 1000.0,
        name: str | None = None,
    ) -> RoadSegment:
        return RoadSegment(id=road_id, limit=limit, geometry=geometry, fetched_at=fetched_at, name=name)

    return _make
