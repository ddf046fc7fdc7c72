import json
import time
from pathlib import Path
from unittest import mock

from typer.testing import CliRunner

from roadlimit.cli import app
from roadlimit.ingestion.corridor import point_region
from roadlimit.ingestion.overpass import FetchOutcome
from roadlimit.resolver import Resolver
from roadlimit.schemas.segment import RoadSegment

runner = CliRunner()


class StaticFetcher:
    def __init__(self) -> None:
        self.calls = 0

    def _outcome(self, lat: float, lon: float) -> FetchOutcome:
        self.calls += 1
        now = time.monotonic()
        segment = RoadSegment(
            id=7,
            limit=30,
            geometry=((51.5, -0.135), (51.5, -0.125)),
            fetched_at=now,
            name="High Street",
            highway="primary",
        )
        return FetchOutcome(segments=[segment], region=point_region(lat, lon, 200.0, now))

    async def fetch_corridor(self, lat: float, lon: float, bearing: float) -> FetchOutcome:
        return self._outcome(lat, lon)

    async def fetch_point(self, lat: float, lon: float) -> FetchOutcome:
        return self._outcome(lat, lon)


async def fake_builder(_client, _overpass_config, resolver_config, _metrics, _region_code, throttle_events):
    return Resolver(StaticFetcher(), config=resolver_config, on_throttle=throttle_events.append)


def test_resolve_prints_limit_and_road() -> None:
    with mock.patch("roadlimit.replay._build_resolver", new=fake_builder):
        result = runner.invoke(app, ["resolve", "--lat", "51.5", "--lon", "-0.13", "--bearing", "90"])

    assert result.exit_code == 0, result.output
    assert "30 mph (display unit: mph)" in result.output
    assert "road: 7 High Street" in result.output


def test_replay_writes_resolved_rows_and_metrics(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    trace_path = tmp_path / "trace.jsonl"
    rows = [
        {"lat": 51.5, "lon": -0.13, "bearing": 90, "timestamp": "2026-10-19T08:00:00Z"},
        {"latitude": 51.5, "lng": -0.1301, "bearing": 450, "timestamp": "2026-10-19T08:00:01Z"},
        {"lat": 200, "lon": -0.13},
    ]
    trace_path.write_text("\n".join(json.dumps(row) for row in rows) + "\n", encoding="utf-8")

    with mock.patch("roadlimit.replay._build_resolver", new=fake_builder):
        result = runner.invoke(app, ["replay", "--input", str(trace_path), "--run-id", "run123"])

    assert result.exit_code == 0, result.output
    assert "samples=3 resolved=2 unknown=0 fetches=1 hit_rate=0.50" in result.output

    run_dir = tmp_path / "data" / "processed" / "replay" / "run123"
    resolved = [json.loads(line) for line in (run_dir / "resolved.jsonl").read_text(encoding="utf-8").splitlines()]
    assert [row["limit"] for row in resolved] == [30, 30]
    assert resolved[1]["bearing"] == 90.0
    assert resolved[0]["road_name"] == "High Street"
    assert resolved[0]["unit"] == "mph"

    metrics = json.loads((run_dir / "metrics.json").read_text(encoding="utf-8"))
    assert metrics["rejected"] == 1
    assert metrics["cache"]["matches"] == 1
    assert metrics["total_requests"] == 0
    assert (run_dir / "rejects.jsonl.gz").exists()
    assert (run_dir / "manifest.json").exists()
