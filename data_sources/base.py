"""
Base Feed Source.

============================================================
SHARED HTTP PLUMBING FOR EPOCH INPUT FEEDS
============================================================

Every feed (chain RPC, stake view, base score feed) talks
JSON over one aiohttp session and routes each remote call
through _call(), which owns:

- Retries with exponential backoff on 5xx, timeouts and
  dropped connections
- Waiting out 429 responses (Retry-After when present)
- No retry on other 4xx
- Health state and a bounded incident log

Feeds fail fast: an epoch is never scored on partial data,
so exhausted retries surface as DataSourceUnavailableError
rather than an empty result.

============================================================
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import aiohttp

from data_sources.exceptions import (
    DataSourceError,
    DataSourceUnavailableError,
    FetchError,
    RateLimitError,
)
from data_sources.models import (
    SourceHealth,
    SourceIncident,
    SourceMetadata,
    SourceStatus,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BaseFeedSource(ABC):
    """
    Abstract JSON feed.

    Subclasses provide name, health_check() and metadata(), and
    wrap every remote call in _call().
    """

    DEFAULT_TIMEOUT = 30.0
    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 2.0
    RATE_LIMIT_BASE_WAIT = 10.0
    DEGRADED_AFTER = 3
    UNAVAILABLE_AFTER = 5
    MAX_INCIDENTS = 100
    USER_AGENT = "StakeScoringEngine/1.0"

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._timeout = timeout
        self._max_retries = max_retries
        self._session = session
        self._owns_session = session is None

        self._health = SourceHealth(status=SourceStatus.UNKNOWN, last_check=_now())
        self._last_success: Optional[datetime] = None
        self._calls = 0
        self._successes = 0
        self._incidents: list[SourceIncident] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Short feed identifier used in logs and errors."""
        pass

    @abstractmethod
    async def health_check(self) -> SourceHealth:
        pass

    @abstractmethod
    def metadata(self) -> SourceMetadata:
        pass

    # =========================================================
    # REMOTE CALLS
    # =========================================================

    async def _call(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
    ) -> T:
        """
        Run one remote operation with retries and health tracking.

        Args:
            operation: Zero-argument coroutine factory, invoked once
                per attempt
            description: Label for logs and incidents

        Returns:
            The operation's result

        Raises:
            DataSourceError: Every failure, typed. Exhausted
                retries raise DataSourceUnavailableError.
        """
        try:
            result = await self._with_retries(operation, description)
        except DataSourceError as e:
            self._record_failure(e, description)
            raise
        except Exception as e:
            error = DataSourceError(
                message=f"Unexpected error during {description}: {e}",
                source_name=self.name,
                original_error=e,
            )
            self._record_failure(error, description)
            raise error from e

        self._record_success()
        return result

    def _retry_delay(self, error: Exception, attempt: int) -> Optional[float]:
        """Seconds to wait before the next attempt, None if not retryable."""
        if isinstance(error, RateLimitError):
            return error.retry_after_seconds or self.RATE_LIMIT_BASE_WAIT * self.RETRY_BACKOFF_BASE ** attempt
        if isinstance(error, FetchError):
            connection_dropped = error.status_code is None and error.original_error is not None
            if not (error.is_server_error() or connection_dropped):
                return None
            return self.RETRY_BACKOFF_BASE ** attempt
        if isinstance(error, asyncio.TimeoutError):
            return self.RETRY_BACKOFF_BASE ** attempt
        return None

    async def _with_retries(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
    ) -> T:
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                return await operation()
            except (DataSourceError, asyncio.TimeoutError) as e:
                delay = self._retry_delay(e, attempt)
                if delay is None:
                    raise
                last_error = e
                logger.warning(
                    f"[{self.name}] {description} failed ({e.__class__.__name__}: {e}), "
                    f"attempt {attempt + 1}/{self._max_retries}, waiting {delay}s"
                )
                await asyncio.sleep(delay)

        raise DataSourceUnavailableError(
            message=f"{description} failed after {self._max_retries} attempts",
            source_name=self.name,
            consecutive_failures=self._health.consecutive_failures + 1,
            last_successful=self._last_success,
            original_error=last_error,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json", "User-Agent": self.USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """
        One HTTP round trip returning decoded JSON.

        Maps 429 to RateLimitError, other 4xx/5xx to FetchError with
        the status code, and aiohttp transport errors to FetchError
        carrying the original error.
        """
        session = await self._get_session()
        started = time.monotonic()

        try:
            async with session.request(method, url, params=params, json=json_body) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitError(
                        message="Rate limit exceeded",
                        source_name=self.name,
                        retry_after_seconds=int(retry_after) if retry_after and retry_after.isdigit() else None,
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise FetchError(
                        message=f"HTTP {response.status}",
                        source_name=self.name,
                        status_code=response.status,
                        response_body=body[:1000],
                        request_url=url,
                    )

                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise FetchError(
                message=f"Connection error: {e}",
                source_name=self.name,
                request_url=url,
                original_error=e,
            ) from e

        self._health.latency_ms = (time.monotonic() - started) * 1000
        logger.debug(f"[{self.name}] {method} {url} in {self._health.latency_ms:.1f}ms")
        return data

    # =========================================================
    # HEALTH
    # =========================================================

    def _record_success(self) -> None:
        self._calls += 1
        self._successes += 1
        self._last_success = _now()
        self._health.consecutive_failures = 0
        self._health.last_check = self._last_success

        if self._health.status != SourceStatus.HEALTHY:
            logger.info(f"[{self.name}] Healthy again")
            self._health.status = SourceStatus.HEALTHY

    def _record_failure(self, error: DataSourceError, description: str) -> None:
        self._calls += 1
        health = self._health
        health.error_count += 1
        health.consecutive_failures += 1
        health.last_error = str(error)
        health.last_error_time = _now()
        health.last_check = health.last_error_time

        previous = health.status
        if (
            isinstance(error, DataSourceUnavailableError)
            or health.consecutive_failures >= self.UNAVAILABLE_AFTER
        ):
            health.status = SourceStatus.UNAVAILABLE
        elif health.consecutive_failures >= self.DEGRADED_AFTER:
            health.status = SourceStatus.DEGRADED

        if health.status != previous:
            logger.error(f"[{self.name}] Now {health.status.value} after {health.consecutive_failures} failures")

        self._incidents.append(SourceIncident(
            source_name=self.name,
            incident_type=error.__class__.__name__,
            timestamp=health.last_error_time,
            error_message=str(error),
            request_params={"operation": description},
        ))
        del self._incidents[:-self.MAX_INCIDENTS]
        logger.warning(f"[{self.name}] {description} failed: {error}")

    def get_health(self) -> SourceHealth:
        if self._calls:
            self._health.uptime_percentage = self._successes / self._calls * 100
        return self._health

    def get_incidents(self, limit: int = 10) -> list[SourceIncident]:
        return self._incidents[-limit:]

    def is_healthy(self) -> bool:
        return self._health.status == SourceStatus.HEALTHY

    def is_usable(self) -> bool:
        """Healthy or degraded."""
        return self._health.status in (SourceStatus.HEALTHY, SourceStatus.DEGRADED)

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def close(self) -> None:
        """Close the HTTP session if this feed opened it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BaseFeedSource":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name}, status={self._health.status.value})>"
