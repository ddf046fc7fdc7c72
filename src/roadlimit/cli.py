import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from roadlimit.ingestion.corridor import CorridorConfig
from roadlimit.ingestion.overpass import OverpassConfig
from roadlimit.io.paths import build_run_paths
from roadlimit.replay import replay_trace, resolve_once
from roadlimit.resolver import ResolverConfig
from roadlimit.units import unit_label
from roadlimit.utils.http import RetryConfig
from roadlimit.utils.logging import setup_logging

app = typer.Typer(add_completion=False, help="Speed limit resolution over OpenStreetMap data")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    setup_logging(logging.DEBUG if verbose else logging.INFO)


def _configs(
    overpass_url: Optional[str],
    timeout_seconds: float,
    min_interval_seconds: float,
    retries: int,
    look_ahead_m: float,
) -> tuple[OverpassConfig, ResolverConfig]:
    corridor = CorridorConfig(look_ahead_m=look_ahead_m)
    overpass_config = OverpassConfig(
        timeout_seconds=timeout_seconds,
        min_interval_seconds=min_interval_seconds,
        retry=RetryConfig(retries=retries),
        corridor=corridor,
    )
    if overpass_url:
        overpass_config.url = overpass_url
    return overpass_config, ResolverConfig(corridor=corridor)


@app.command("resolve")
def resolve_point(
    lat: float = typer.Option(..., "--lat", min=-90.0, max=90.0),
    lon: float = typer.Option(..., "--lon", min=-180.0, max=180.0),
    bearing: Optional[float] = typer.Option(None, "--bearing"),
    region: str = typer.Option("GB", "--region"),
    overpass_url: Optional[str] = typer.Option(None, "--overpass-url"),
    timeout_seconds: float = typer.Option(10.0, "--timeout-seconds"),
    retries: int = typer.Option(0, "--retries"),
    look_ahead_m: float = typer.Option(1000.0, "--look-ahead-m"),
) -> None:
    overpass_config, resolver_config = _configs(overpass_url, timeout_seconds, 0.0, retries, look_ahead_m)
    row = asyncio.run(resolve_once(lat, lon, bearing, overpass_config, resolver_config, region.upper()))

    limit = row["limit"]
    if limit is None:
        typer.echo("unknown")
    else:
        typer.echo(f"{limit} mph (display unit: {unit_label(region)})")
    if row["road_id"] is not None:
        typer.echo(f"road: {row['road_id']} {row['road_name'] or ''}".rstrip())
    if row["throttled"]:
        typer.echo("upstream throttled; served from cache", err=True)


@app.command("replay")
def replay(
    input_path: Path = typer.Option(..., "--input", exists=True, readable=True),
    output_path: Optional[Path] = typer.Option(None, "--output"),
    region: str = typer.Option("GB", "--region"),
    overpass_url: Optional[str] = typer.Option(None, "--overpass-url"),
    timeout_seconds: float = typer.Option(10.0, "--timeout-seconds"),
    min_interval_seconds: float = typer.Option(1.0, "--min-interval-seconds"),
    retries: int = typer.Option(0, "--retries"),
    look_ahead_m: float = typer.Option(1000.0, "--look-ahead-m"),
    limit: Optional[int] = typer.Option(None, "--limit"),
    run_id: Optional[str] = typer.Option(None, "--run-id"),
) -> None:
    run_paths = build_run_paths(Path.cwd(), "replay", run_id)
    resolved_output = output_path or run_paths.resolved_path
    overpass_config, resolver_config = _configs(
        overpass_url, timeout_seconds, min_interval_seconds, retries, look_ahead_m
    )

    metrics = asyncio.run(
        replay_trace(
            run_paths=run_paths,
            input_path=input_path,
            output_path=resolved_output,
            rejects_path=run_paths.rejects_path,
            overpass_config=overpass_config,
            resolver_config=resolver_config,
            region_code=region.upper(),
            limit=limit,
        )
    )
    cache = metrics["cache"]
    typer.echo(
        f"samples={metrics['total']} resolved={metrics['resolved']} unknown={metrics['unknown']} "
        f"fetches={cache['fetches']} hit_rate={cache['hit_rate']:.2f}"
    )
