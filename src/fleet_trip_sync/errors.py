# fleet_trip_sync/errors.py
"""
Vendor API error hierarchy.

    VendorAPIError
    ├── RateLimitedError   vendor throttling; exponential backoff, small retry budget
    │   └── BudgetExhaustedError  shared call budget unavailable within the timeout
    ├── TransientError     timeouts, connection failures, HTTP 5xx; short fixed backoff
    └── VendorError        domain rejection (unknown device, bad token); never retried

Catch `VendorAPIError` to handle every vendor failure; catch a subclass for
the specific recovery policy.
"""

__all__: list[str] = [
    'BudgetExhaustedError',
    'RateLimitedError',
    'TransientError',
    'VendorAPIError',
    'VendorError',
]


class VendorAPIError(Exception):
    """
    Base exception for vendor API failures.

    Attributes:
        status_code: HTTP status code if available, None for transport errors.
        vendor_status: Vendor `status` field if the body was parsed.
        response_body: Truncated raw body for debugging.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        vendor_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.vendor_status: int | None = vendor_status
        self.response_body: str | None = response_body


class RateLimitedError(VendorAPIError):
    """
    Raised when the vendor signals throttling, or when the shared call budget
    stayed exhausted past the acquire timeout.

    Callers at the operational boundary report this as "degraded, will retry"
    rather than as a hard failure.
    """


class BudgetExhaustedError(RateLimitedError):
    """
    Raised when the shared call budget did not free up within the acquire
    timeout. The wait already happened, so the client does not retry it.
    """


class TransientError(VendorAPIError):
    """Raised for timeouts, connection failures and HTTP 5xx responses."""


class VendorError(VendorAPIError):
    """Raised when the vendor rejects a request; retrying will not help."""
