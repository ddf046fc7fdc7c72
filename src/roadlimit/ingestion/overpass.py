import asyncio
import json
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from pydantic import ValidationError

from roadlimit.ingestion.backoff import FailureSignal
from roadlimit.ingestion.corridor import CorridorConfig, corridor_region, point_region
from roadlimit.schemas.segment import OverpassElement, OverpassResponse, QueryRegion, RoadSegment
from roadlimit.units import LimitInterpreter, interpret_limit
from roadlimit.utils.http import HttpMetrics, PoliteHttpClient, RateLimiter, RetryConfig
from roadlimit.utils.logging import get_logger
from roadlimit.utils.text import clean, first_present, split_values

logger = get_logger(__name__)

DEFAULT_OVERPASS_URL = "https://overpass-api.de/api/interpreter"
LIMIT_TAGS = ("maxspeed", "maxspeed:forward", "maxspeed:backward")


def _default_overpass_url() -> str:
    return os.environ.get("OVERPASS_URL", DEFAULT_OVERPASS_URL)


@dataclass
class OverpassConfig:
    url: str = field(default_factory=_default_overpass_url)
    timeout_seconds: float = 10.0
    min_interval_seconds: float = 1.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    user_agent: str = "roadlimit/0.1 (speed limit lookup)"
    corridor: CorridorConfig = field(default_factory=CorridorConfig)


class UpstreamError(Exception):
    def __init__(
        self,
        signal: FailureSignal,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.signal = signal
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass
class FetchOutcome:
    segments: list[RoadSegment]
    region: QueryRegion


def build_corridor_query(region: QueryRegion, timeout_seconds: float) -> str:
    return (
        f"[out:json][timeout:{int(timeout_seconds)}];"
        f'way["highway"]["maxspeed"]({region.to_overpass_bbox()});'
        f"out tags geom;"
    )


def build_point_query(lat: float, lon: float, radius_m: float, timeout_seconds: float) -> str:
    return (
        f"[out:json][timeout:{int(timeout_seconds)}];"
        f'way(around:{int(radius_m)},{lat:.7f},{lon:.7f})["highway"]["maxspeed"];'
        f"out tags geom;"
    )


def _raw_limits(tags: dict[str, str]) -> list[str]:
    values: list[str] = []
    for key in LIMIT_TAGS:
        values.extend(split_values(tags.get(key)))
    return values


def parse_segments(
    payload: dict[str, Any],
    region_code: str,
    interpret: LimitInterpreter,
    fetched_at: float,
) -> list[RoadSegment]:
    response = OverpassResponse.model_validate(payload)
    votes: dict[int, list[int]] = {}
    elements: dict[int, OverpassElement] = {}
    for raw in response.elements:
        try:
            element = OverpassElement.model_validate(raw)
        except ValidationError:
            logger.debug("Skipping malformed Overpass element: %r", raw)
            continue
        if element.type != "way":
            continue
        for value in _raw_limits(element.tags):
            limit = interpret(value, region_code)
            if limit is not None:
                votes.setdefault(element.id, []).append(limit)
        known = elements.get(element.id)
        if known is None or (not known.points() and element.points()):
            elements[element.id] = element

    segments: list[RoadSegment] = []
    for way_id, element in elements.items():
        limits = votes.get(way_id)
        points = element.points()
        if not limits or not points:
            continue
        limit, _ = Counter(limits).most_common(1)[0]
        segments.append(
            RoadSegment(
                id=way_id,
                limit=limit,
                geometry=tuple(points),
                fetched_at=fetched_at,
                name=clean(first_present([element.tags.get("name"), element.tags.get("ref")])),
                highway=element.tags.get("highway"),
            )
        )
    return segments


class OverpassFetcher:
    """Queries the Overpass API for speed-limited ways around a position.

    Never touches the segment store; callers apply ``FetchOutcome.segments``.
    Failures surface as ``UpstreamError`` carrying the backoff signal.
    """

    def __init__(
        self,
        http: PoliteHttpClient,
        config: OverpassConfig | None = None,
        interpret: LimitInterpreter = interpret_limit,
        region_code: str = "GB",
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http
        self.config = config or OverpassConfig()
        self._interpret = interpret
        self.region_code = region_code
        self._time = time_func

    async def fetch_corridor(self, lat: float, lon: float, bearing: float) -> FetchOutcome:
        corridor = self.config.corridor
        region = corridor_region(
            lat,
            lon,
            bearing,
            look_ahead_m=corridor.look_ahead_m,
            half_width_m=corridor.half_width_m,
            behind_m=corridor.behind_m,
            now=self._time(),
        )
        query = build_corridor_query(region, self.config.timeout_seconds)
        payload = await self._query(query)
        return FetchOutcome(segments=self._parse(payload), region=region)

    async def fetch_point(self, lat: float, lon: float) -> FetchOutcome:
        radius = self.config.corridor.point_radius_m
        region = point_region(lat, lon, radius, now=self._time())
        query = build_point_query(lat, lon, radius, self.config.timeout_seconds)
        payload = await self._query(query)
        return FetchOutcome(segments=self._parse(payload), region=region)

    def _parse(self, payload: dict[str, Any]) -> list[RoadSegment]:
        remark = payload.get("remark")
        if isinstance(remark, str) and "runtime error" in remark.lower() and not payload.get("elements"):
            raise UpstreamError(FailureSignal.TRANSPORT, f"overpass remark: {remark}")
        try:
            segments = parse_segments(payload, self.region_code, self._interpret, fetched_at=self._time())
        except ValidationError as exc:
            raise UpstreamError(FailureSignal.TRANSPORT, f"unexpected response shape: {exc}") from exc
        logger.debug("Parsed %d segments (region=%s)", len(segments), self.region_code)
        return segments

    async def _query(self, query: str) -> dict[str, Any]:
        try:
            result = await asyncio.wait_for(
                self._http.post_form(self.config.url, {"data": query}),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamError(FailureSignal.TRANSPORT, "request timed out") from exc

        if result.error:
            raise UpstreamError(FailureSignal.TRANSPORT, result.error)
        if result.throttled:
            raise UpstreamError(
                FailureSignal.THROTTLED,
                f"http_status:{result.status_code}",
                status_code=result.status_code,
                retry_after=result.retry_after,
            )
        if not result.ok:
            raise UpstreamError(
                FailureSignal.TRANSPORT, f"http_status:{result.status_code}", status_code=result.status_code
            )
        try:
            payload = json.loads(result.text or "")
        except json.JSONDecodeError as exc:
            preview = (result.text or "")[:120].replace("\n", "\\n")
            raise UpstreamError(
                FailureSignal.TRANSPORT,
                f"non-JSON response: {preview!r}",
                status_code=result.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(FailureSignal.TRANSPORT, "unexpected response shape", status_code=result.status_code)
        return payload


def build_overpass_fetcher(
    client: httpx.AsyncClient,
    config: OverpassConfig,
    metrics: HttpMetrics,
    region_code: str = "GB",
    interpret: LimitInterpreter = interpret_limit,
) -> OverpassFetcher:
    min_interval = max(config.min_interval_seconds, 0.0)
    rate_limiter = RateLimiter(min_interval=min_interval) if min_interval > 0 else None
    http = PoliteHttpClient(
        client=client,
        user_agent=config.user_agent,
        retry=config.retry,
        metrics=metrics,
        rate_limiter=rate_limiter,
    )
    return OverpassFetcher(http, config=config, interpret=interpret, region_code=region_code)
