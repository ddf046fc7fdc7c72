import asyncio
import json
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from roadlimit.ingestion.backoff import FailureSignal
from roadlimit.ingestion.overpass import (
    OverpassConfig,
    OverpassFetcher,
    UpstreamError,
    build_overpass_fetcher,
    parse_segments,
)
from roadlimit.units import interpret_limit
from roadlimit.utils.http import HttpMetrics

FIXTURE = Path(__file__).parent / "fixtures" / "overpass_ways.json"
URL = "https://overpass.test/api/interpreter"


def _config(**kwargs) -> OverpassConfig:
    return OverpassConfig(url=URL, min_interval_seconds=0, **kwargs)


def _run(handler, call, **fetcher_kwargs):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = build_overpass_fetcher(client, _config(), HttpMetrics(), **fetcher_kwargs)
            return await call(fetcher)

    return asyncio.run(run())


def _fixture_handler(requests: list[httpx.Request]):
    body = FIXTURE.read_text(encoding="utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=body, headers={"Content-Type": "application/json"})

    return handler


def _query(request: httpx.Request) -> str:
    return parse_qs(request.content.decode("utf-8"))["data"][0]


def test_parse_segments_votes_and_skips_bad_roads() -> None:
    payload = json.loads(FIXTURE.read_text(encoding="utf-8"))
    segments = {s.id: s for s in parse_segments(payload, "GB", interpret_limit, fetched_at=5.0)}

    assert set(segments) == {42, 43}
    assert segments[42].limit == 30
    assert segments[42].name == "Long Acre"
    assert segments[42].highway == "residential"
    assert len(segments[42].geometry) == 3
    assert segments[43].limit == 20
    assert segments[43].name == "A40"
    assert segments[43].fetched_at == 5.0


def test_parse_segments_empty_result() -> None:
    assert parse_segments({"elements": []}, "GB", interpret_limit, fetched_at=0.0) == []


def test_corridor_fetch_posts_bbox_query() -> None:
    requests: list[httpx.Request] = []
    outcome = _run(_fixture_handler(requests), lambda f: f.fetch_corridor(51.5, -0.13, 90.0))

    assert len(requests) == 1
    assert requests[0].method == "POST"
    query = _query(requests[0])
    assert query.startswith("[out:json][timeout:10];")
    assert 'way["highway"]["maxspeed"](' in query
    assert query.endswith("out tags geom;")
    assert outcome.region.contains(51.5, -0.13)
    assert {s.id for s in outcome.segments} == {42, 43}


def test_point_fetch_uses_radius_query() -> None:
    requests: list[httpx.Request] = []
    outcome = _run(_fixture_handler(requests), lambda f: f.fetch_point(51.5, -0.13))

    query = _query(requests[0])
    assert "way(around:200,51.5000000,-0.1300000)" in query
    assert outcome.region.contains(51.5, -0.13)


def test_region_code_is_passed_to_interpreter() -> None:
    calls: list[tuple[str, str]] = []

    def interpret(raw: str, region: str) -> int | None:
        calls.append((raw, region))
        return interpret_limit(raw, region)

    _run(
        _fixture_handler([]),
        lambda f: f.fetch_point(51.5, -0.13),
        region_code="DE",
        interpret=interpret,
    )

    assert calls
    assert {region for _, region in calls} == {"DE"}


@pytest.mark.parametrize("status", [429, 503, 504])
def test_throttle_statuses_raise_throttled(status: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text="rate limited", headers={"Retry-After": "45"})

    with pytest.raises(UpstreamError) as excinfo:
        _run(handler, lambda f: f.fetch_point(51.5, -0.13))

    assert excinfo.value.signal is FailureSignal.THROTTLED
    assert excinfo.value.status_code == status
    assert excinfo.value.retry_after == 45.0


def test_other_errors_raise_transport() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>busy</html>")

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def runtime_remark(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"elements": [], "remark": "runtime error: Query timed out"})

    for handler in (server_error, not_json, refused, runtime_remark):
        with pytest.raises(UpstreamError) as excinfo:
            _run(handler, lambda f: f.fetch_point(51.5, -0.13))
        assert excinfo.value.signal is FailureSignal.TRANSPORT


def test_request_timeout_is_a_transport_error() -> None:
    class HangingHttp:
        async def post_form(self, url: str, form: dict[str, str]):
            await asyncio.sleep(10)

    fetcher = OverpassFetcher(HangingHttp(), config=_config(timeout_seconds=0.01))  # type: ignore[arg-type]

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(fetcher.fetch_point(51.5, -0.13))

    assert excinfo.value.signal is FailureSignal.TRANSPORT
    assert "timed out" in str(excinfo.value)
