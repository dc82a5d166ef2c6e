import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# HTTP/2 needs the optional 'h2' package.
try:
    import h2  # type: ignore  # noqa: F401
    _HTTP2_AVAILABLE = True
except ImportError:
    _HTTP2_AVAILABLE = False
    logger.debug("HTTP/2 disabled: 'h2' package is not installed.")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class OptimizedHTTPClient:
    """Pooled async HTTP client with exponential-backoff retries."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        client_timeout = httpx.Timeout(
            timeout=timeout,
            connect=min(5.0, timeout),
        )

        kwargs = {}
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=client_timeout,
            follow_redirects=True,
            http2=_HTTP2_AVAILABLE and transport is None,
            **kwargs
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self._client.request(method, url, **kwargs)

    async def request_with_retry(self, method: str, url: str, retries: int = 3, backoff: float = 0.5,
                                 **kwargs) -> httpx.Response:
        """Send a request, retrying transport errors and throttling/server responses.

        The last response is returned even when it is still an error status;
        the last transport error is re-raised when every attempt failed.
        """
        attempts = max(retries, 1)
        attempt = 0
        while True:
            last_attempt = attempt >= attempts - 1
            try:
                response = await self.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if last_attempt:
                    raise
                logger.warning("%s %s failed (%s), retrying", method, url, e)
            else:
                if last_attempt or response.status_code not in RETRYABLE_STATUS:
                    return response
                logger.warning("%s %s returned %s, retrying", method, url, response.status_code)
            await asyncio.sleep(backoff * (2 ** attempt))
            attempt += 1

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
