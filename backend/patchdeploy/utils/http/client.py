"""
HTTP client utilities for probing live sites.
"""
import logging
import time
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

import httpx
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class HttpResponse(BaseModel):
    """Model for HTTP response data."""
    status_code: int
    text: str = ""
    headers: Dict[str, str] = {}
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """Check if the response status code indicates success."""
        return 200 <= self.status_code < 300

    @property
    def is_error(self) -> bool:
        """Check if the request failed or the status code indicates an error."""
        return self.error is not None or not self.is_success


class HttpClientConfig(BaseModel):
    """Configuration for HTTP client."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    headers: Dict[str, str] = {"User-Agent": "PatchDeploy-HealthCheck/1.0"}
    timeout: float = 10.0
    verify: bool = True
    follow_redirects: bool = True
    transport: Optional[httpx.AsyncBaseTransport] = None


@asynccontextmanager
async def get_http_client(config: Optional[HttpClientConfig] = None):
    """
    Get an HTTP client with the specified configuration.

    Args:
        config: Configuration for the HTTP client

    Yields:
        An HTTP client instance
    """
    client_config = config or HttpClientConfig()

    async with httpx.AsyncClient(
        headers=client_config.headers,
        timeout=client_config.timeout,
        verify=client_config.verify,
        follow_redirects=client_config.follow_redirects,
        transport=client_config.transport,
    ) as client:
        yield client


async def timed_get(
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    config: Optional[HttpClientConfig] = None,
) -> HttpResponse:
    """
    Make a GET request and measure how long it took.

    Network failures do not raise; they come back as a response with
    ``status_code`` 0 and ``error`` set.

    Args:
        url: URL to make the request to
        params: Query parameters
        config: HTTP client configuration

    Returns:
        HTTP response
    """
    start = time.perf_counter()
    try:
        async with get_http_client(config) as client:
            response = await client.get(url, params=params)
            return HttpResponse(
                status_code=response.status_code,
                text=response.text,
                headers=dict(response.headers),
                elapsed_ms=(time.perf_counter() - start) * 1000,
            )
    except httpx.RequestError as e:
        logger.error(f"HTTP request error for {url}: {str(e)}")
        return HttpResponse(
            status_code=0,
            elapsed_ms=(time.perf_counter() - start) * 1000,
            error=str(e) or e.__class__.__name__,
        )
