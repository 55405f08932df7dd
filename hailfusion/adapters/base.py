"""
Shared plumbing for the tier adapters: HTTP session handling, status
classification, per-attempt timeouts, retry with exponential backoff and the
circuit breaker that marks an adapter degraded.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import RetryConfig
from ..errors import (
    CircuitOpenError, FetchError, FetchErrorType, PermanentFetchError, TransientFetchError
)
from ..models import Report, ReportTier, ensure_utc, utcnow

logger = logging.getLogger(__name__)

PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 422})
TRANSIENT_STATUS_CODES = frozenset({408, 429})


@dataclass
class FetchWindow:
    """Half-open time window [start, end) requested from a source."""
    start: datetime
    end: datetime

    def __post_init__(self):
        self.start = ensure_utc(self.start)
        self.end = ensure_utc(self.end)
        if self.end < self.start:
            raise ValueError("FetchWindow end precedes start")

    @classmethod
    def for_day(cls, day: date) -> "FetchWindow":
        start = datetime.combine(day, dt_time.min, tzinfo=timezone.utc)
        return cls(start, start + timedelta(days=1))

    @classmethod
    def trailing(cls, now: datetime, duration: timedelta) -> "FetchWindow":
        return cls(now - duration, now)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class FetchResponse:
    """Adapter result wrapper."""
    success: bool
    reports: List[Report] = field(default_factory=list)
    error: Optional[FetchError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    request_duration: float = 0.0
    discarded: int = 0


def classify_http_error(status_code: int, response_text: str,
                        retry_after: Optional[str] = None) -> FetchError:
    """Turn a non-2xx response into a transient or permanent fetch error."""
    try:
        error_data = json.loads(response_text)
        message = error_data.get('message', error_data.get('error', 'Unknown error'))
        details = error_data
    except (json.JSONDecodeError, AttributeError):
        message = response_text or 'Unknown error'
        details = {'raw_response': response_text}

    if status_code in (401, 403):
        return PermanentFetchError(message, FetchErrorType.AUTHENTICATION_ERROR, status_code, details)
    if status_code == 429:
        if retry_after:
            details['retry_after'] = retry_after
        return TransientFetchError(message, FetchErrorType.RATE_LIMIT_ERROR, status_code, details)
    if status_code == 408:
        return TransientFetchError(message, FetchErrorType.TIMEOUT_ERROR, status_code, details)
    if status_code >= 500:
        return TransientFetchError(message, FetchErrorType.SERVER_ERROR, status_code, details)
    return PermanentFetchError(message, FetchErrorType.VALIDATION_ERROR, status_code, details)


class JSONHttpClient:
    """Thin aiohttp wrapper that raises classified fetch errors."""

    user_agent = 'HailFusion/1.0'

    def __init__(self, api_token: Optional[str] = None, timeout: Optional[float] = None):
        self.api_token = api_token
        self.timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close_session()

    async def start_session(self):
        """Start HTTP session."""
        if self.session is None:
            headers = {
                'User-Agent': self.user_agent,
                'Accept': 'application/json'
            }
            if self.api_token:
                headers['Authorization'] = f"Bearer {self.api_token}"

            session_kwargs: Dict[str, Any] = {'headers': headers}
            if self.timeout is not None:
                session_kwargs['timeout'] = self.timeout
            self.session = aiohttp.ClientSession(**session_kwargs)
            logger.debug("HTTP session started")

    async def close_session(self):
        """Close HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.debug("HTTP session closed")

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        await self.start_session()
        try:
            async with self.session.request(method, url, **kwargs) as response:
                response_text = await response.text()
                if response.status >= 400:
                    raise classify_http_error(
                        response.status, response_text, response.headers.get('Retry-After')
                    )
                try:
                    return json.loads(response_text) if response_text else None
                except json.JSONDecodeError as e:
                    raise PermanentFetchError(
                        f"Failed to parse JSON response: {e}",
                        FetchErrorType.VALIDATION_ERROR,
                        status_code=response.status
                    ) from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(f"Network error: {e}", FetchErrorType.NETWORK_ERROR) from e


class CircuitBreaker:
    """Circuit breaker for adapter calls."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 900.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = asyncio.Lock()

    def _cooled_down(self) -> bool:
        return (self.last_failure_time is not None and
                self.clock() - self.last_failure_time >= self.recovery_timeout)

    @property
    def is_open(self) -> bool:
        """Open and still inside the cool-down."""
        return self.state == "open" and not self._cooled_down()

    def remaining_cooldown(self) -> float:
        if self.state != "open" or self.last_failure_time is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self.clock() - self.last_failure_time))

    def trip(self):
        """Open immediately regardless of the failure count."""
        self.state = "open"
        self.last_failure_time = self.clock()

    def reset(self):
        self.state = "closed"
        self.failure_count = 0
        self.last_failure_time = None

    async def call(self, func, *args, **kwargs):
        """Call function with circuit breaker protection."""
        async with self._lock:
            if self.state == "open":
                if self._cooled_down():
                    self.state = "half_open"
                else:
                    raise CircuitOpenError(
                        f"Circuit breaker is open, {self.remaining_cooldown():.0f}s of cool-down left"
                    )

        try:
            result = await func(*args, **kwargs)
        except PermanentFetchError:
            async with self._lock:
                self.failure_count += 1
                self.trip()
            raise
        except FetchError:
            async with self._lock:
                self.failure_count += 1
                self.last_failure_time = self.clock()
                if self.state == "half_open" or self.failure_count >= self.failure_threshold:
                    self.state = "open"
            raise

        async with self._lock:
            self.state = "closed"
            self.failure_count = 0
        return result


class SourceAdapter(ABC):
    """Fetches one tier's observations and normalizes them into Reports."""

    tier: ReportTier

    def __init__(self, timeout: float, retry_config: Optional[RetryConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.retry_config.failure_threshold,
            recovery_timeout=self.retry_config.cooldown_seconds,
            clock=clock,
        )
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[FetchError] = None

        self.metrics = {
            'total_calls': 0,
            'successful_calls': 0,
            'failed_calls': 0,
            'retry_count': 0,
            'reports_returned': 0,
            'records_discarded': 0,
        }

    @property
    def name(self) -> str:
        return self.tier.label

    @property
    def degraded(self) -> bool:
        """True while the breaker refuses calls."""
        return self.circuit_breaker.is_open

    def reset(self):
        """Operator reset: clear degraded state and failure history."""
        self.circuit_breaker.reset()
        self.last_error = None
        logger.info(f"[{self.name}] adapter reset")

    @abstractmethod
    async def _fetch_once(self, window: FetchWindow) -> List[Report]:
        """One attempt against the source. Raises FetchError subclasses."""

    async def close(self):
        """Release network resources."""

    async def _attempt(self, window: FetchWindow) -> List[Report]:
        try:
            return await asyncio.wait_for(self._fetch_once(window), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                f"Request timeout after {self.timeout} seconds",
                FetchErrorType.TIMEOUT_ERROR
            ) from e

    def _log_retry(self, retry_state):
        self.metrics['retry_count'] += 1
        error = retry_state.outcome.exception()
        logger.warning(
            f"[{self.name}] attempt {retry_state.attempt_number} failed ({error}), "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )

    async def _fetch_with_retry(self, window: FetchWindow) -> List[Report]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.retry_config.backoff_base_seconds,
                min=self.retry_config.backoff_base_seconds,
                max=self.retry_config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                reports = await self._attempt(window)
        return reports

    async def fetch(self, window: FetchWindow) -> FetchResponse:
        """Fetch reports for the window; never raises FetchError."""
        start_time = time.time()
        self.metrics['total_calls'] += 1
        was_open = self.circuit_breaker.state == "open"

        try:
            reports = await self.circuit_breaker.call(self._fetch_with_retry, window)
        except CircuitOpenError as e:
            logger.info(f"[{self.name}] skipped, adapter degraded: {e}")
            return FetchResponse(success=False, error=e)
        except FetchError as e:
            self.metrics['failed_calls'] += 1
            self.last_error = e
            if self.circuit_breaker.state == "open" and not was_open:
                logger.warning(f"[{self.name}] adapter degraded after {e}")
            else:
                logger.error(f"[{self.name}] fetch failed: {e}")
            return FetchResponse(success=False, error=e, request_duration=time.time() - start_time)

        self.metrics['successful_calls'] += 1
        self.metrics['reports_returned'] += len(reports)
        self.last_success_at = utcnow()
        self.last_error = None
        logger.info(f"[{self.name}] fetched {len(reports)} reports for {window.start} to {window.end}")
        return FetchResponse(
            success=True,
            reports=reports,
            request_duration=time.time() - start_time,
            metadata={'window_start': window.start.isoformat(), 'window_end': window.end.isoformat()},
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            'tier': self.name,
            'degraded': self.degraded,
            'circuit_breaker': {
                'state': self.circuit_breaker.state,
                'failure_count': self.circuit_breaker.failure_count,
                'remaining_cooldown': self.circuit_breaker.remaining_cooldown(),
            },
            'last_success_at': self.last_success_at.isoformat() if self.last_success_at else None,
            'last_error': str(self.last_error) if self.last_error else None,
            'metrics': dict(self.metrics),
        }
