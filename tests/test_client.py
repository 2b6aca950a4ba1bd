"""
Tests for fleet_trip_sync.client module.

Tests VendorClient request building, response classification, the two
independent retry budgets and the shared backoff it publishes.
"""
# pyright: reportPrivateUsage=false

from datetime import timedelta
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from conftest import FakeClock, make_http_response

from fleet_trip_sync.client import (
    BudgetExhaustedError,
    RateLimitedError,
    TransientError,
    VendorClient,
    VendorError,
)
from fleet_trip_sync.config import VendorConfig
from fleet_trip_sync.models import VendorResponse
from fleet_trip_sync.rate_limiter import SharedRateLimiter


@pytest.fixture
def client(
    vendor_config: VendorConfig,
    rate_limiter: SharedRateLimiter,
    fake_clock: FakeClock,
) -> VendorClient:
    return VendorClient(
        vendor_config, rate_limiter, clock=fake_clock, sleep=fake_clock.sleep
    )


def _ok(**payload: Any) -> dict[str, Any]:
    return {'status': 0, **payload}


class TestVendorClientRequests:
    """Test how actions are sent."""

    def test_posts_action_with_token_and_json_body(self, client: VendorClient) -> None:
        """Should POST to /openapi with action and token as query parameters."""
        with patch.object(
            client._http_client,
            'request',
            return_value=make_http_response(200, _ok(records=[])),
        ) as mock_request:
            client.call('querytrips', {'deviceid': 'abc'})

        call_kwargs: dict[str, Any] = mock_request.call_args.kwargs
        assert call_kwargs['method'] == 'POST'
        assert call_kwargs['url'] == '/openapi'
        assert call_kwargs['params'] == {'action': 'querytrips', 'token': 'test-token-123'}
        assert call_kwargs['json'] == {'deviceid': 'abc'}

    def test_server_id_is_sent_when_configured(
        self,
        vendor_config: VendorConfig,
        rate_limiter: SharedRateLimiter,
    ) -> None:
        """Should append serverid to the query string."""
        config: VendorConfig = vendor_config.model_copy(update={'server_id': '7'})

        with (
            VendorClient(config, rate_limiter) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=make_http_response(200, _ok()),
            ) as mock_request,
        ):
            client.call('lastposition')

        assert mock_request.call_args.kwargs['params']['serverid'] == '7'

    def test_successful_response_is_parsed(self, client: VendorClient) -> None:
        """Should return the envelope with its rows."""
        body: dict[str, Any] = _ok(totaltrips=[{'starttime': 1}, 'junk'])

        with patch.object(
            client._http_client, 'request', return_value=make_http_response(200, body)
        ):
            response: VendorResponse = client.call('querytrips')

        assert response.is_success
        assert response.result_list('totaltrips') == [{'starttime': 1}]


class TestVendorClientErrors:
    """Test response classification."""

    def test_vendor_error_status_is_not_retried(
        self,
        client: VendorClient,
        fake_clock: FakeClock,
    ) -> None:
        """Should raise VendorError immediately for a non-throttling status."""
        with (
            patch.object(
                client._http_client,
                'request',
                return_value=make_http_response(200, {'status': 1, 'cause': 'bad device'}),
            ) as mock_request,
            pytest.raises(VendorError) as exc_info,
        ):
            client.call('querytrips')

        assert mock_request.call_count == 1
        assert exc_info.value.vendor_status == 1
        assert fake_clock.sleeps == []

    def test_http_client_error_raises_vendor_error(self, client: VendorClient) -> None:
        """Should raise VendorError on HTTP 4xx other than 429."""
        with (
            patch.object(
                client._http_client,
                'request',
                return_value=make_http_response(403, text='Forbidden'),
            ),
            pytest.raises(VendorError) as exc_info,
        ):
            client.call('querytrips')

        assert exc_info.value.status_code == 403  # noqa: PLR2004

    def test_invalid_json_raises_vendor_error(self, client: VendorClient) -> None:
        """Should raise VendorError when the body is not JSON."""
        with (
            patch.object(
                client._http_client,
                'request',
                return_value=make_http_response(200, None, text='<html>'),
            ),
            pytest.raises(VendorError),
        ):
            client.call('querytrips')

    def test_envelope_without_status_raises_vendor_error(self, client: VendorClient) -> None:
        """Should raise VendorError when the envelope has no status."""
        with (
            patch.object(
                client._http_client,
                'request',
                return_value=make_http_response(200, {'records': []}),
            ),
            pytest.raises(VendorError),
        ):
            client.call('querytrips')


class TestVendorClientRetries:
    """Test the transient and rate-limit retry budgets."""

    def test_rate_limit_backs_off_exponentially_then_succeeds(
        self,
        client: VendorClient,
        fake_clock: FakeClock,
    ) -> None:
        """Three throttling replies then success should sleep 1s, 2s, 4s."""
        throttled = make_http_response(200, {'status': 8902, 'cause': 'too frequent'})
        success = make_http_response(200, _ok(records=[{'deviceid': 'a'}]))

        with patch.object(
            client._http_client,
            'request',
            side_effect=[throttled, throttled, throttled, success],
        ) as mock_request:
            response: VendorResponse = client.call('lastposition')

        assert mock_request.call_count == 4  # noqa: PLR2004
        assert fake_clock.sleeps == [1.0, 2.0, 4.0]
        assert response.result_list() == [{'deviceid': 'a'}]

    def test_rate_limit_budget_exhaustion_raises(
        self,
        client: VendorClient,
        fake_clock: FakeClock,
    ) -> None:
        """Should surface RateLimitedError after max_rate_limit_retries."""
        throttled = make_http_response(200, {'status': 9903})

        with (
            patch.object(
                client._http_client, 'request', return_value=throttled
            ) as mock_request,
            pytest.raises(RateLimitedError) as exc_info,
        ):
            client.call('querytrips')

        # One initial attempt plus three retries
        assert mock_request.call_count == 4  # noqa: PLR2004
        assert exc_info.value.vendor_status == 9903  # noqa: PLR2004
        assert fake_clock.sleeps == [1.0, 2.0, 4.0]

    def test_http_429_is_rate_limited(self, client: VendorClient) -> None:
        """Should treat HTTP 429 like a throttling status."""
        with (
            patch.object(
                client._http_client,
                'request',
                return_value=make_http_response(429, text='slow down'),
            ),
            pytest.raises(RateLimitedError),
        ):
            client.call('querytrips')

    def test_backoff_is_published_to_shared_limiter(
        self,
        client: VendorClient,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """A throttled call should leave a backoff visible to other workers."""
        start = fake_clock()
        throttled = make_http_response(200, {'status': 8902})

        with (
            patch.object(client._http_client, 'request', return_value=throttled),
            pytest.raises(RateLimitedError),
        ):
            client.call('querytrips')

        snapshot = rate_limiter.snapshot()
        assert snapshot.backoff_until is not None
        # Last published backoff: t+3s (after 1s and 2s sleeps) plus 4s
        assert snapshot.backoff_until == start + timedelta(seconds=7)
        assert snapshot.consecutive_rate_limits == 3  # noqa: PLR2004

    def test_success_clears_throttle_streak(
        self,
        client: VendorClient,
        rate_limiter: SharedRateLimiter,
    ) -> None:
        """A successful call after throttling should reset the shared streak."""
        throttled = make_http_response(200, {'status': 8902})
        success = make_http_response(200, _ok())

        with patch.object(
            client._http_client, 'request', side_effect=[throttled, success]
        ):
            client.call('querytrips')

        snapshot = rate_limiter.snapshot()
        assert snapshot.backoff_until is None
        assert snapshot.consecutive_rate_limits == 0

    def test_throttles_from_other_workers_escalate_delay(
        self,
        client: VendorClient,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """Two throttles already published fleet-wide make the first wait 4s."""
        rate_limiter.publish_backoff(fake_clock())
        rate_limiter.publish_backoff(fake_clock())
        throttled = make_http_response(200, {'status': 8902})
        success = make_http_response(200, _ok())

        with patch.object(
            client._http_client, 'request', side_effect=[throttled, success]
        ):
            client.call('querytrips')

        assert fake_clock.sleeps == [4.0]
        assert rate_limiter.snapshot().consecutive_rate_limits == 0

    def test_transient_errors_retry_with_fixed_delay(
        self,
        client: VendorClient,
        fake_clock: FakeClock,
    ) -> None:
        """Timeouts and 5xx should retry after transient_backoff_seconds."""
        success = make_http_response(200, _ok())

        with patch.object(
            client._http_client,
            'request',
            side_effect=[
                httpx.ReadTimeout('timed out'),
                make_http_response(503, text='unavailable'),
                success,
            ],
        ):
            response: VendorResponse = client.call('querytrips')

        assert response.is_success
        assert fake_clock.sleeps == [0.5, 0.5]

    def test_transient_budget_exhaustion_raises(
        self,
        client: VendorClient,
    ) -> None:
        """Should surface TransientError after max_transient_retries."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=httpx.ConnectError('refused'),
            ) as mock_request,
            pytest.raises(TransientError),
        ):
            client.call('querytrips')

        assert mock_request.call_count == 3  # noqa: PLR2004

    def test_budgets_are_independent(
        self,
        client: VendorClient,
        fake_clock: FakeClock,
    ) -> None:
        """Transient failures should not consume the rate-limit budget."""
        throttled = make_http_response(200, {'status': 8902})
        success = make_http_response(200, _ok())

        with patch.object(
            client._http_client,
            'request',
            side_effect=[
                httpx.ConnectError('refused'),
                throttled,
                httpx.ConnectError('refused'),
                throttled,
                throttled,
                success,
            ],
        ):
            response: VendorResponse = client.call('querytrips')

        assert response.is_success
        assert fake_clock.sleeps == [0.5, 1.0, 0.5, 2.0, 4.0]

    def test_budget_exhausted_is_not_retried(
        self,
        client: VendorClient,
        rate_limiter: SharedRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """A shared budget timeout should surface without further attempts."""
        rate_limiter.publish_backoff(fake_clock() + timedelta(minutes=10))

        with (
            patch.object(client._http_client, 'request') as mock_request,
            pytest.raises(BudgetExhaustedError),
        ):
            client.call('querytrips')

        mock_request.assert_not_called()
