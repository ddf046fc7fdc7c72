import asyncio
import random
import time
from collections import defaultdict
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable
from urllib.parse import urlsplit

import httpx


THROTTLE_STATUSES = {429, 503, 504}


@dataclass
class RetryConfig:
    retries: int = 0
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_jitter: float = 0.25
    max_backoff: float = 5.0


@dataclass
class HttpMetrics:
    total_requests: int = 0
    status_code_counts: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    transport_errors: int = 0
    retries_attempted: int = 0
    backoff_sleep_seconds_total: float = 0.0
    throttle_responses: int = 0

    def to_dict(self) -> dict[str, float | int | dict[int, int]]:
        return {
            "total_requests": self.total_requests,
            "status_code_counts": dict(self.status_code_counts),
            "transport_errors": self.transport_errors,
            "retries_attempted": self.retries_attempted,
            "backoff_sleep_seconds_total": round(self.backoff_sleep_seconds_total, 3),
            "throttle_responses": self.throttle_responses,
        }


@dataclass
class FetchResult:
    url: str
    status_code: int | None
    text: str | None
    error: str | None = None
    retries: int = 0
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300

    @property
    def throttled(self) -> bool:
        return self.status_code in THROTTLE_STATUSES


@dataclass
class RateLimiter:
    min_interval: float
    time_func: Callable[[], float] = time.monotonic
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep
    _last_request: dict[str, float] = field(default_factory=dict)

    async def acquire(self, host: str) -> None:
        if self.min_interval <= 0:
            return
        now = self.time_func()
        last = self._last_request.get(host)
        if last is not None:
            wait = self.min_interval - (now - last)
            if wait > 0:
                await self.sleep_func(wait)
                now = self.time_func()
        self._last_request[host] = now


class PoliteHttpClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agent: str,
        retry: RetryConfig,
        metrics: HttpMetrics,
        rate_limiter: RateLimiter | None = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._user_agent = user_agent
        self._retry = retry
        self._metrics = metrics
        self._rate_limiter = rate_limiter
        self._sleep = sleep_func

    @property
    def metrics(self) -> HttpMetrics:
        return self._metrics

    async def post_form(self, url: str, form: dict[str, str]) -> FetchResult:
        host = urlsplit(url).hostname or ""
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(host)

        headers = {"User-Agent": self._user_agent}
        last_error: str | None = None
        for attempt in range(self._retry.retries + 1):
            try:
                resp = await self._client.post(url, data=form, headers=headers)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                self._metrics.transport_errors += 1
                if attempt < self._retry.retries:
                    delay = self._backoff_delay(attempt)
                    self._metrics.retries_attempted += 1
                    self._metrics.backoff_sleep_seconds_total += delay
                    await self._sleep(delay)
                    continue
                return FetchResult(url=url, status_code=None, text=None, error=last_error, retries=attempt)

            self._metrics.total_requests += 1
            self._metrics.status_code_counts[resp.status_code] += 1
            retry_after = None
            if resp.status_code in THROTTLE_STATUSES:
                self._metrics.throttle_responses += 1
                retry_after = _parse_retry_after(resp.headers.get("Retry-After"))

            return FetchResult(
                url=url,
                status_code=resp.status_code,
                text=resp.text,
                retries=attempt,
                retry_after=retry_after,
            )

        return FetchResult(url=url, status_code=None, text=None, error=last_error or "failed")

    def _backoff_delay(self, attempt: int) -> float:
        base = self._retry.backoff_base * (self._retry.backoff_factor**attempt)
        jitter = random.uniform(0, self._retry.backoff_jitter)
        return min(base + jitter, self._retry.max_backoff)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
        if seconds >= 0:
            return seconds
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    now = parsed.__class__.now(parsed.tzinfo)
    delta = (parsed - now).total_seconds()
    if delta < 0:
        return None
    return delta
