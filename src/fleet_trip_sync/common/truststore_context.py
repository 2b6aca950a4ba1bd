# fleet_trip_sync/common/truststore_context.py
"""
SSL verification settings for the vendor HTTP client.

The vendor API is often reached through corporate proxies (Zscaler and
similar) that re-sign TLS traffic with a private root CA. That CA lives in
the operating system trust store but not in certifi's bundle, so httpx
fails with `SSLCertVerificationError` unless the context is built from the
system store.

`truststore` is an optional dependency, imported lazily so Linux workers
without it keep working with the plain `verify_ssl` setting.

Dependencies:
    - truststore: Optional. Install with `pip install fleet-trip-sync[truststore]`.
"""

import logging
import ssl
from ssl import SSLContext

__all__: list[str] = ['build_ssl_verify', 'build_truststore_ssl_context']

logger: logging.Logger = logging.getLogger(__name__)


def build_truststore_ssl_context() -> SSLContext:
    """
    Create an SSLContext that validates certificates against the OS trust store.

    Returns:
        SSLContext using PROTOCOL_TLS_CLIENT backed by truststore.

    Raises:
        RuntimeError: If truststore is not installed.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'truststore is required when use_truststore=True; '
            'install it with: pip install truststore'
        ) from import_error

    ssl_context: SSLContext = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    return ssl_context


def build_ssl_verify(
    verify_ssl: bool | str,
    use_truststore: bool = False,
) -> SSLContext | bool | str:
    """
    Resolve the value passed to `httpx.Client(verify=...)`.

    Args:
        verify_ssl: True/False, or a path to a CA bundle.
        use_truststore: Prefer the OS trust store over `verify_ssl`.

    Returns:
        SSLContext when truststore is requested, otherwise `verify_ssl` as-is.
    """
    if use_truststore:
        logger.debug('Building SSLContext from system trust store')
        return build_truststore_ssl_context()

    if verify_ssl is False:
        logger.warning('SSL verification disabled for vendor API calls')
    return verify_ssl
