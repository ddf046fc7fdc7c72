import asyncio
import contextlib
import dataclasses
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from roadlimit.cache.overrides import DEFAULT_PROXIMITY_M, DEFAULT_TTL_SECONDS, OverrideCache
from roadlimit.cache.segments import (
    DEFAULT_CAPACITY,
    DEFAULT_MATCH_TOLERANCE_M,
    DEFAULT_MAX_AGE_SECONDS,
    SegmentStore,
)
from roadlimit.ingestion.backoff import BackoffConfig, BackoffController, FailureSignal, ThrottleEvent
from roadlimit.ingestion.corridor import CorridorConfig, CorridorPlanner
from roadlimit.ingestion.overpass import FetchOutcome, UpstreamError
from roadlimit.schemas.segment import RoadMatch, UserOverride
from roadlimit.utils.geo import normalize_bearing
from roadlimit.utils.logging import get_logger

logger = get_logger(__name__)


class UpstreamFetcher(Protocol):
    async def fetch_corridor(self, lat: float, lon: float, bearing: float) -> FetchOutcome: ...

    async def fetch_point(self, lat: float, lon: float) -> FetchOutcome: ...


@dataclass
class ResolverConfig:
    capacity: int = DEFAULT_CAPACITY
    max_segment_age_seconds: float = DEFAULT_MAX_AGE_SECONDS
    match_tolerance_m: float = DEFAULT_MATCH_TOLERANCE_M
    override_ttl_seconds: float = DEFAULT_TTL_SECONDS
    override_proximity_m: float = DEFAULT_PROXIMITY_M
    corridor: CorridorConfig = field(default_factory=CorridorConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass
class CacheStats:
    lookups: int = 0
    matches: int = 0
    fetches: int = 0
    prefetches: int = 0
    failures: int = 0
    override_hits: int = 0
    throttle_count: int = 0
    segments: int = 0
    overrides: int = 0
    throttled: bool = False

    @property
    def hit_rate(self) -> float:
        if not self.lookups:
            return 0.0
        return self.matches / self.lookups

    def to_dict(self) -> dict[str, float | int | bool]:
        return {
            "lookups": self.lookups,
            "matches": self.matches,
            "fetches": self.fetches,
            "prefetches": self.prefetches,
            "failures": self.failures,
            "override_hits": self.override_hits,
            "throttle_count": self.throttle_count,
            "hit_rate": round(self.hit_rate, 4),
            "segments": self.segments,
            "overrides": self.overrides,
            "throttled": self.throttled,
        }


@dataclass
class ResolverContext:
    store: SegmentStore
    overrides: OverrideCache
    backoff: BackoffController
    planner: CorridorPlanner
    stats: CacheStats = field(default_factory=CacheStats)

    @classmethod
    def create(
        cls,
        config: ResolverConfig,
        time_func: Callable[[], float] = time.monotonic,
        on_throttle: Callable[[ThrottleEvent], None] | None = None,
    ) -> "ResolverContext":
        return cls(
            store=SegmentStore(
                capacity=config.capacity,
                max_age_seconds=config.max_segment_age_seconds,
                match_tolerance_m=config.match_tolerance_m,
                time_func=time_func,
            ),
            overrides=OverrideCache(
                ttl_seconds=config.override_ttl_seconds,
                proximity_m=config.override_proximity_m,
                time_func=time_func,
            ),
            backoff=BackoffController(config.backoff, time_func=time_func, on_throttle=on_throttle),
            planner=CorridorPlanner(
                config.corridor,
                max_region_age_seconds=config.max_segment_age_seconds,
                time_func=time_func,
            ),
        )


class Resolver:
    """Answers "what is the speed limit here, heading this way".

    Priority is a nearby user override, then the cached segment under the position,
    then a fresh upstream fetch. While the backoff controller is cooling down only the
    cache is consulted. No exception from a fetch ever leaves ``resolve``.
    """

    def __init__(
        self,
        fetcher: UpstreamFetcher,
        config: ResolverConfig | None = None,
        context: ResolverContext | None = None,
        time_func: Callable[[], float] = time.monotonic,
        on_throttle: Callable[[ThrottleEvent], None] | None = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self.fetcher = fetcher
        self.context = context or ResolverContext.create(self.config, time_func, on_throttle)
        self._current: RoadMatch | None = None
        self._current_road_id: int | None = None
        self._last_limit: int | None = None
        self._prefetch: asyncio.Task[bool] | None = None
        self._last_fetch_ids: frozenset[int] = frozenset()

    async def __aenter__(self) -> "Resolver":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def resolve(self, lat: float, lon: float, bearing: float | None = None) -> int | None:
        bearing = normalize_bearing(bearing)
        ctx = self.context

        override = ctx.overrides.nearby(lat, lon)
        if override is not None:
            ctx.stats.override_hits += 1
            self._current = None
            self._current_road_id = override.road_id
            self._last_limit = override.limit
            return override.limit

        ctx.stats.lookups += 1
        match = ctx.store.find_match(lat, lon)

        if ctx.backoff.is_throttled():
            if match is None:
                self._clear_current()
                return None
            ctx.stats.matches += 1
            return self._accept(match)

        if match is not None:
            ctx.stats.matches += 1
            if ctx.planner.should_fetch_ahead(lat, lon, bearing):
                self._schedule_prefetch(lat, lon, bearing)
            return self._accept(match)

        if ctx.planner.recently_queried(lat, lon) and self._last_fetch_cached():
            self._clear_current()
            return None

        if not await self._fetch_guarded(lat, lon, bearing):
            return self._last_limit

        match = ctx.store.find_match(lat, lon)
        if match is None:
            self._clear_current()
            return None
        return self._accept(match)

    def _accept(self, match: RoadMatch) -> int:
        self._current = match
        self._current_road_id = match.road_id
        override = self.context.overrides.get(match.road_id)
        limit = override if override is not None else match.limit
        self._last_limit = limit
        return limit

    def _last_fetch_cached(self) -> bool:
        if not self._last_fetch_ids:
            return True
        return any(road_id in self.context.store for road_id in self._last_fetch_ids)

    def _clear_current(self) -> None:
        self._current = None
        self._current_road_id = None
        self._last_limit = None

    async def _fetch(self, lat: float, lon: float, bearing: float | None) -> int:
        ctx = self.context
        ctx.stats.fetches += 1
        if bearing is not None:
            outcome = await self.fetcher.fetch_corridor(lat, lon, bearing)
        else:
            outcome = await self.fetcher.fetch_point(lat, lon)
        added = ctx.store.add_segments(outcome.segments, near=(lat, lon))
        self._last_fetch_ids = frozenset(segment.id for segment in outcome.segments)
        ctx.planner.mark_fetched(lat, lon, bearing, outcome.region)
        ctx.backoff.on_success()
        logger.debug("Fetched %d segments (%d new) near %.5f,%.5f", len(outcome.segments), added, lat, lon)
        return added

    async def _fetch_guarded(self, lat: float, lon: float, bearing: float | None) -> bool:
        try:
            await self._fetch(lat, lon, bearing)
        except asyncio.CancelledError:
            raise
        except UpstreamError as exc:
            self.context.stats.failures += 1
            logger.warning("Upstream fetch failed: %s", exc)
            self.context.backoff.on_failure(exc.signal, status_code=exc.status_code, retry_after=exc.retry_after)
            return False
        except Exception:
            self.context.stats.failures += 1
            logger.exception("Unexpected error while fetching segments")
            self.context.backoff.on_failure(FailureSignal.TRANSPORT)
            return False
        return True

    def _schedule_prefetch(self, lat: float, lon: float, bearing: float | None) -> None:
        if self._prefetch is not None and not self._prefetch.done():
            return
        self.context.stats.prefetches += 1
        self._prefetch = asyncio.get_running_loop().create_task(self._fetch_guarded(lat, lon, bearing))

    async def wait_for_prefetch(self) -> None:
        task = self._prefetch
        if task is not None and not task.done():
            await task

    def current_road_id(self) -> int | None:
        return self._current_road_id

    def current_road(self) -> RoadMatch | None:
        return self._current

    def record_override(self, road_id: int, limit: int, lat: float, lon: float) -> UserOverride:
        return self.context.overrides.record(road_id, limit, lat, lon)

    def is_throttled(self) -> bool:
        return self.context.backoff.is_throttled()

    def cache_stats(self) -> CacheStats:
        ctx = self.context
        return dataclasses.replace(
            ctx.stats,
            segments=len(ctx.store),
            overrides=len(ctx.overrides),
            throttled=ctx.backoff.is_throttled(),
            throttle_count=ctx.backoff.throttle_count,
        )

    async def aclose(self) -> None:
        task = self._prefetch
        self._prefetch = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.context.store.clear()
        self.context.overrides.clear()
        self.context.planner.reset()
        self._last_fetch_ids = frozenset()
        self._clear_current()
