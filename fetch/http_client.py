import httpx
import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, AsyncIterator

# Default timeout configuration (in seconds)
DEFAULT_TIMEOUT = 185.0
DEFAULT_CONNECT_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


def build_client(
    base_url: str,
    timeout: Optional[float] = None,
    connect_timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the shared async client for one backend.

    Args:
        base_url: API root, e.g. http://localhost:5000/api
        timeout: Total request timeout in seconds (default: 185s)
        connect_timeout: Connection timeout in seconds (default: 5s)
        transport: Optional transport override (tests use httpx.MockTransport)
    """
    timeout_config = httpx.Timeout(
        timeout=timeout or DEFAULT_TIMEOUT,
        connect=connect_timeout or DEFAULT_CONNECT_TIMEOUT
    )
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout_config,
        follow_redirects=True,
        transport=transport,
    )


async def fetch_url(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    json: Optional[Any] = None,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[httpx.Timeout] = None,
) -> httpx.Response:
    """
    Send one request and return the full response.

    Status codes are not raised here; callers decide how to read error bodies.
    """
    logger.debug(f"HTTP {method} {url}")
    extra = {"timeout": timeout} if timeout is not None else {}

    try:
        response = await client.request(method, url, json=json, params=params, **extra)
        logger.debug(f"HTTP {response.status_code} {url} ({len(response.content)} bytes)")
        return response
    except httpx.TimeoutException as e:
        logger.warning(f"HTTP timeout for {url}: {e}")
        raise
    except httpx.RequestError as e:
        logger.warning(f"HTTP request error for {url}: {e}")
        raise


@asynccontextmanager
async def stream_url(
    client: httpx.AsyncClient,
    url: str,
    method: str = "POST",
    json: Optional[Any] = None,
    timeout: Optional[httpx.Timeout] = None,
) -> AsyncIterator[httpx.Response]:
    """
    Open a streaming request; the body is read by the caller.

    The response is closed when the context exits, including on early exit.
    """
    logger.debug(f"HTTP {method} {url} (streaming)")
    extra = {"timeout": timeout} if timeout is not None else {}

    try:
        async with client.stream(method, url, json=json, **extra) as response:
            logger.debug(f"HTTP {response.status_code} {url} (stream open)")
            yield response
    except httpx.TimeoutException as e:
        logger.warning(f"HTTP timeout for {url}: {e}")
        raise
    except httpx.RequestError as e:
        logger.warning(f"HTTP request error for {url}: {e}")
        raise
