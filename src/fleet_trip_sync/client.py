# fleet_trip_sync/client.py
"""
Rate-limited HTTP client for the vendor's action-based API.

This client is the only place that issues vendor calls. Every call:

1. Draws one slot from the shared, database-backed call budget
   (`SharedRateLimiter.acquire`), which also honors any backoff another
   worker published.
2. POSTs `{base_url}/openapi?action=<action>&token=...&serverid=...` with the
   call parameters as a JSON body.
3. Maps the outcome onto the error taxonomy in `fleet_trip_sync.errors`.

Retry Behavior:
---------------
- Transient failures (timeouts, connection errors, HTTP 5xx): fixed short
  backoff, up to `max_transient_retries` retries.
- Vendor throttling (a status in `rate_limit_codes`, or HTTP 429):
  exponential backoff `base * 2 ** (n - 1)` capped at the configured
  maximum, up to `max_rate_limit_retries` retries. `n` is the larger of this
  call's throttle count and the shared streak plus one, so throttles seen by
  other workers escalate the delay. Before sleeping, the backoff instant is
  published to the shared limiter so other workers hold off too.
- Vendor rejections (any other non-zero status, HTTP 4xx, malformed body)
  fail immediately.

SSL/TLS Handling:
-----------------
Supports standard verification, disabled verification, a custom CA bundle
path, or the OS trust store through `truststore` (see
`common.truststore_context`).
"""

import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, Self

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
)

from fleet_trip_sync.common.timeutils import utc_now
from fleet_trip_sync.common.truststore_context import build_ssl_verify
from fleet_trip_sync.config import VendorConfig
from fleet_trip_sync.errors import (
    BudgetExhaustedError,
    RateLimitedError,
    TransientError,
    VendorAPIError,
    VendorError,
)
from fleet_trip_sync.models import VendorResponse
from fleet_trip_sync.rate_limiter import SharedRateLimiter

__all__: list[str] = [
    'BudgetExhaustedError',
    'RateLimitedError',
    'TransientError',
    'VendorAPIError',
    'VendorClient',
    'VendorError',
]

logger: logging.Logger = logging.getLogger(__name__)

HTTP_STATUS_RATE_LIMITED: Final[int] = 429
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500
HTTP_STATUS_SERVER_ERROR_MAX: Final[int] = 599

API_PATH: Final[str] = '/openapi'
BODY_PREVIEW_CHARS: Final[int] = 500


# =============================================================================
# Retry Budget
# =============================================================================


class _RetryBudget:
    """
    Per-call bookkeeping for the two independent retry budgets.

    Failures are recorded as they are raised; tenacity's stop and wait hooks
    only read the counters.
    """

    def __init__(self, config: VendorConfig) -> None:
        self._config: VendorConfig = config
        self.transient_failures: int = 0
        self.rate_limit_failures: int = 0
        self.shared_streak: int = 0

    def record(self, error: VendorAPIError, shared_streak: int = 0) -> None:
        if isinstance(error, RateLimitedError):
            self.rate_limit_failures += 1
            self.shared_streak = shared_streak
        else:
            self.transient_failures += 1

    def should_stop(self, retry_state: RetryCallState) -> bool:
        error: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )
        if isinstance(error, RateLimitedError):
            return self.rate_limit_failures > self._config.max_rate_limit_retries
        return self.transient_failures > self._config.max_transient_retries

    def next_wait(self, retry_state: RetryCallState) -> float:
        error: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )
        if isinstance(error, RateLimitedError):
            # Throttles published by other workers escalate this call too
            return self.rate_limit_delay(max(self.rate_limit_failures, self.shared_streak + 1))
        return self._config.transient_backoff_seconds

    def rate_limit_delay(self, failure_count: int) -> float:
        """Exponential throttling backoff for the n-th consecutive rate limit."""
        exponential: float = self._config.rate_limit_base_delay_seconds * (
            2 ** (max(failure_count, 1) - 1)
        )
        return min(exponential, self._config.rate_limit_max_delay_seconds)


# =============================================================================
# HTTP Client
# =============================================================================


class VendorClient:
    """
    Sole choke point for vendor API calls.

    Thread Safety:
        The underlying httpx.Client is thread-safe and the shared budget lives
        in the database, so one instance may serve a thread pool of device
        syncs.

    Example:
        >>> limiter = SharedRateLimiter(session_factory)
        >>> with VendorClient(config.vendor, limiter) as client:
        ...     response = client.call('querytrips', {'deviceid': '3566...'})
        ...     print(len(response.result_list()))
    """

    def __init__(
        self,
        config: VendorConfig,
        rate_limiter: SharedRateLimiter,
        pool_connections: int = 5,
        pool_maxsize: int = 10,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the vendor client.

        Args:
            config: Vendor connection, retry and rate-limit settings.
            rate_limiter: Shared call budget every call draws from.
            pool_connections: Keepalive connections kept in the pool.
            pool_maxsize: Maximum total connections in the pool.
            clock: Time source used for published backoff instants.
            sleep: Sleep function used between retries.

        Raises:
            RuntimeError: If use_truststore=True and truststore is missing.
        """
        self._config: VendorConfig = config
        self._rate_limiter: SharedRateLimiter = rate_limiter
        self._clock: Callable[[], datetime] = clock
        self._sleep: Callable[[float], None] = sleep

        ssl_verify: SSLContext | bool | str = build_ssl_verify(
            config.verify_ssl, config.use_truststore
        )

        connect_timeout: int
        read_timeout: int
        connect_timeout, read_timeout = config.request_timeout

        self._http_client: httpx.Client = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=read_timeout,
                write=connect_timeout,
                pool=connect_timeout,
            ),
            verify=ssl_verify,
            limits=httpx.Limits(
                max_keepalive_connections=pool_connections,
                max_connections=pool_maxsize,
            ),
        )

        logger.info(
            'Initialized VendorClient: base_url=%r, pool_size=%d',
            config.base_url,
            pool_maxsize,
        )

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the HTTP client. Safe to call more than once."""
        self._http_client.close()
        logger.debug('VendorClient closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def config(self) -> VendorConfig:
        return self._config

    def call(
        self,
        action: str,
        params: Mapping[str, Any] | None = None,
    ) -> VendorResponse:
        """
        Execute one vendor action with rate limiting and retries.

        Args:
            action: Vendor action name (e.g. 'querytrips', 'lastposition').
            params: JSON body parameters for the action.

        Returns:
            The parsed response envelope (status is always 0 here).

        Raises:
            RateLimitedError: Throttling persisted past the retry budget.
            BudgetExhaustedError: Shared budget unavailable within the timeout.
            TransientError: Transient failures persisted past the retry budget.
            VendorError: The vendor rejected the request.
        """
        budget = _RetryBudget(self._config)

        retrying = Retrying(
            retry=(
                retry_if_exception_type((TransientError, RateLimitedError))
                & retry_if_not_exception_type(BudgetExhaustedError)
            ),
            stop=budget.should_stop,
            wait=budget.next_wait,
            before_sleep=self._before_retry_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        response: VendorResponse = retrying(
            self._attempt, action, dict(params or {}), budget
        )
        self._rate_limiter.record_success()
        return response

    # -------------------------------------------------------------------------
    # Retry Plumbing
    # -------------------------------------------------------------------------

    def _attempt(
        self,
        action: str,
        params: dict[str, Any],
        budget: _RetryBudget,
    ) -> VendorResponse:
        self._rate_limiter.acquire()
        try:
            http_response: httpx.Response = self._send_http_request(action, params)
            return self._handle_response(action, http_response)
        except RateLimitedError as error:
            budget.record(error, self._rate_limiter.snapshot().consecutive_rate_limits)
            raise
        except TransientError as error:
            budget.record(error)
            raise

    def _before_retry_sleep(self, retry_state: RetryCallState) -> None:
        error: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )
        delay_seconds: float = (
            retry_state.next_action.sleep if retry_state.next_action else 0.0
        )

        if isinstance(error, RateLimitedError):
            backoff_until: datetime = self._clock() + timedelta(seconds=delay_seconds)
            self._rate_limiter.publish_backoff(backoff_until)
            logger.warning(
                'Vendor throttled (attempt %d); backing off %.1fs: %s',
                retry_state.attempt_number,
                delay_seconds,
                error,
            )
        else:
            logger.warning(
                'Transient vendor failure (attempt %d); retrying in %.1fs: %s',
                retry_state.attempt_number,
                delay_seconds,
                error,
            )

    # -------------------------------------------------------------------------
    # HTTP Execution Layer
    # -------------------------------------------------------------------------

    def _build_query_params(self, action: str) -> dict[str, str]:
        query: dict[str, str] = {
            'action': action,
            'token': self._config.token.get_secret_value(),
        }
        if self._config.server_id:
            query['serverid'] = self._config.server_id
        return query

    def _send_http_request(self, action: str, params: dict[str, Any]) -> httpx.Response:
        """
        POST the action, converting transport errors to TransientError.

        Raises:
            TransientError: On timeout or connection errors.
        """
        try:
            return self._http_client.request(
                method='POST',
                url=API_PATH,
                params=self._build_query_params(action),
                json=params,
            )
        except httpx.TimeoutException as error:
            raise TransientError(f'Vendor request timeout ({action}): {error}') from error
        except httpx.RequestError as error:
            raise TransientError(
                f'Vendor connection error ({action}): {error}'
            ) from error

    def _handle_response(self, action: str, response: httpx.Response) -> VendorResponse:
        """
        Classify an HTTP response and parse the vendor envelope.

        Raises:
            RateLimitedError: HTTP 429 or a rate-limit vendor status.
            TransientError: HTTP 5xx.
            VendorError: Other HTTP errors, malformed bodies, non-zero status.
        """
        status_code: int = response.status_code

        if status_code == HTTP_STATUS_RATE_LIMITED:
            raise RateLimitedError(
                f'Vendor HTTP 429 for {action}',
                status_code=status_code,
                response_body=response.text[:BODY_PREVIEW_CHARS],
            )

        if HTTP_STATUS_SERVER_ERROR_MIN <= status_code <= HTTP_STATUS_SERVER_ERROR_MAX:
            raise TransientError(
                f'Vendor server error HTTP {status_code} for {action}',
                status_code=status_code,
                response_body=response.text[:BODY_PREVIEW_CHARS],
            )

        if not response.is_success:
            logger.error(
                'Vendor client error %d for %s (not retryable): %s',
                status_code,
                action,
                response.text[:BODY_PREVIEW_CHARS],
            )
            raise VendorError(
                f'Vendor client error HTTP {status_code} for {action}',
                status_code=status_code,
                response_body=response.text[:BODY_PREVIEW_CHARS],
            )

        try:
            json_body: Any = response.json()
        except ValueError as parse_error:
            raise VendorError(
                f'Invalid JSON from vendor for {action}: {parse_error}',
                status_code=status_code,
                response_body=response.text[:BODY_PREVIEW_CHARS],
            ) from parse_error

        try:
            envelope: VendorResponse = VendorResponse.model_validate(json_body)
        except ValidationError as validation_error:
            raise VendorError(
                f'Unexpected vendor response shape for {action}: {validation_error}',
                status_code=status_code,
                response_body=response.text[:BODY_PREVIEW_CHARS],
            ) from validation_error

        if envelope.is_success:
            return envelope

        if envelope.status in self._config.rate_limit_codes:
            raise RateLimitedError(
                f'Vendor rate limit status {envelope.status} for {action}: '
                f'{envelope.cause or "no cause given"}',
                status_code=status_code,
                vendor_status=envelope.status,
            )

        logger.error(
            'Vendor rejected %s with status %d: %s',
            action,
            envelope.status,
            envelope.cause,
        )
        raise VendorError(
            f'Vendor rejected {action} with status {envelope.status}: '
            f'{envelope.cause or "no cause given"}',
            status_code=status_code,
            vendor_status=envelope.status,
        )
