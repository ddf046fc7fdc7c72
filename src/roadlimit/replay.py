import time
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError
from tqdm import tqdm

from roadlimit.ingestion.backoff import ThrottleEvent
from roadlimit.ingestion.overpass import OverpassConfig, build_overpass_fetcher
from roadlimit.io.jsonl import iter_trace_rows, open_jsonl_writer, write_jsonl_line
from roadlimit.io.paths import RunPaths, utc_now, write_json
from roadlimit.resolver import Resolver, ResolverConfig
from roadlimit.schemas.trace import TraceSample
from roadlimit.utils.http import HttpMetrics
from roadlimit.utils.logging import get_logger

logger = get_logger(__name__)


async def _build_resolver(
    client: httpx.AsyncClient,
    overpass_config: OverpassConfig,
    resolver_config: ResolverConfig,
    metrics: HttpMetrics,
    region_code: str,
    throttle_events: list[ThrottleEvent],
) -> Resolver:
    fetcher = build_overpass_fetcher(client, overpass_config, metrics, region_code=region_code)
    return Resolver(fetcher, config=resolver_config, on_throttle=throttle_events.append)


def _road_fields(resolver: Resolver) -> dict[str, Any]:
    match = resolver.current_road()
    return {
        "road_id": resolver.current_road_id(),
        "road_name": match.segment.name if match else None,
        "highway": match.segment.highway if match else None,
        "road_distance_m": round(match.distance_m, 1) if match else None,
    }


async def resolve_once(
    lat: float,
    lon: float,
    bearing: float | None,
    overpass_config: OverpassConfig,
    resolver_config: ResolverConfig,
    region_code: str,
) -> dict[str, Any]:
    metrics = HttpMetrics()
    throttle_events: list[ThrottleEvent] = []
    async with httpx.AsyncClient(timeout=overpass_config.timeout_seconds) as client:
        resolver = await _build_resolver(
            client, overpass_config, resolver_config, metrics, region_code, throttle_events
        )
        async with resolver:
            limit = await resolver.resolve(lat, lon, bearing)
            row = {"lat": lat, "lon": lon, "bearing": bearing, "limit": limit, "unit": "mph"}
            row.update(_road_fields(resolver))
            row["throttled"] = resolver.is_throttled()
    return row


async def replay_trace(
    run_paths: RunPaths,
    input_path: Path,
    output_path: Path,
    rejects_path: Path,
    overpass_config: OverpassConfig,
    resolver_config: ResolverConfig,
    region_code: str,
    limit: int | None,
) -> dict[str, Any]:
    start = time.monotonic()
    total = 0
    resolved = 0
    unknown = 0
    rejected = 0
    wrote_rejects = False
    http_metrics = HttpMetrics()
    throttle_events: list[ThrottleEvent] = []

    async with httpx.AsyncClient(timeout=overpass_config.timeout_seconds) as client:
        resolver = await _build_resolver(
            client, overpass_config, resolver_config, http_metrics, region_code, throttle_events
        )
        async with resolver:
            with open_jsonl_writer(output_path) as output_handle, open_jsonl_writer(rejects_path) as rejects_handle:
                logger.info("Replaying %s (region=%s)", input_path, region_code)
                for row in tqdm(iter_trace_rows(input_path), desc=f"Replay {input_path.name}"):
                    if limit is not None and total >= limit:
                        break
                    total += 1
                    try:
                        sample = TraceSample.model_validate(row)
                    except ValidationError as exc:
                        rejected += 1
                        wrote_rejects = True
                        write_jsonl_line(
                            rejects_handle, {"row": total, "reason": f"invalid_sample:{exc.error_count()}"}
                        )
                        continue

                    speed_limit = await resolver.resolve(sample.lat, sample.lon, sample.bearing)
                    if speed_limit is None:
                        unknown += 1
                    else:
                        resolved += 1
                    out = {
                        "lat": sample.lat,
                        "lon": sample.lon,
                        "bearing": sample.bearing,
                        "timestamp": sample.timestamp,
                        "limit": speed_limit,
                        "unit": "mph",
                    }
                    out.update(_road_fields(resolver))
                    write_jsonl_line(output_handle, out)
            cache_stats = resolver.cache_stats()

    if not wrote_rejects and rejects_path.exists():
        rejects_path.unlink()

    runtime = time.monotonic() - start
    metrics: dict[str, Any] = {
        "source": run_paths.source,
        "run_id": run_paths.run_id,
        "input": str(input_path),
        "output": str(output_path),
        "region_code": region_code,
        "total": total,
        "resolved": resolved,
        "unknown": unknown,
        "rejected": rejected,
        "throttle_events": len(throttle_events),
        "runtime_seconds": round(runtime, 3),
        "generated_at": utc_now(),
    }
    metrics["cache"] = cache_stats.to_dict()
    metrics.update(http_metrics.to_dict())
    write_json(run_paths.metrics_path, metrics)

    manifest = {
        "source": run_paths.source,
        "run_id": run_paths.run_id,
        "input": str(input_path),
        "output": str(output_path),
        "rejects": str(rejects_path) if wrote_rejects else None,
        "metrics": str(run_paths.metrics_path),
        "generated_at": utc_now(),
    }
    write_json(run_paths.manifest_path, manifest)

    return metrics
