"""Async client for the Inspectra backend API."""
import logging
from contextlib import asynccontextmanager
from typing import List, Dict, Any, Optional, AsyncIterator
from urllib.parse import quote

import httpx

from core.config import Settings
from core.errors import BackendError, TransportError
from fetch.event_stream import iter_events
from fetch.http_client import build_client, fetch_url, stream_url
from models.events import StreamEvent

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> Optional[str]:
    """Return the backend's `error` field from a JSON body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("success") is False:
        return str(body.get("error") or "Request failed")
    return None


def _read_json(response: httpx.Response) -> Dict[str, Any]:
    message = _error_message(response)
    if message is not None:
        raise BackendError(message, status_code=response.status_code)
    if response.is_error:
        raise BackendError(f"HTTP {response.status_code} from {response.request.url}", status_code=response.status_code)
    try:
        body = response.json()
    except ValueError as e:
        raise BackendError(f"Invalid JSON from {response.request.url}", status_code=response.status_code) from e
    if not isinstance(body, dict):
        raise BackendError(f"Unexpected payload from {response.request.url}", status_code=response.status_code)
    return body


class InspectraClient:
    """One method per backend endpoint.

    Use as an async context manager so the underlying connection pool is closed:

        async with InspectraClient(settings) as client:
            result = await client.run_scan("https://example.com")
    """

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or Settings()
        self._http = build_client(
            self.settings.api_url,
            timeout=self.settings.timeout,
            connect_timeout=self.settings.connect_timeout,
            transport=transport,
        )
        self._stream_timeout = httpx.Timeout(
            self.settings.stream_timeout,
            connect=self.settings.connect_timeout,
        )

    async def __aenter__(self) -> "InspectraClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, json: Any = None, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = await fetch_url(self._http, path, method=method, json=json, params=params)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        return _read_json(response)

    @asynccontextmanager
    async def _event_stream(self, path: str, body: Dict[str, Any]) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        try:
            async with stream_url(self._http, path, json=body, timeout=self._stream_timeout) as response:
                if response.is_error:
                    await response.aread()
                    message = _error_message(response) or f"HTTP {response.status_code} from {response.request.url}"
                    raise BackendError(message, status_code=response.status_code)
                events = iter_events(response.aiter_bytes())
                try:
                    yield events
                finally:
                    await events.aclose()
        except httpx.HTTPError as e:
            raise TransportError(f"POST {path} failed: {e}") from e

    # -- scans ---------------------------------------------------------------

    async def run_scan(self, url: str, username: Optional[str] = None, password: Optional[str] = None) -> Dict[str, Any]:
        """POST /scan. Blocks until the backend finishes the whole scan."""
        body: Dict[str, Any] = {"url": url}
        if username:
            body["username"] = username
        if password:
            body["password"] = password
        logger.info(f"Requesting scan of {url}")
        return await self._request("POST", "/scan", json=body)

    # -- network monitor -----------------------------------------------------

    def monitor_network(self, url: str):
        """POST /network/monitor; yields an async iterator of StreamEvents."""
        return self._event_stream("/network/monitor", {"url": url})

    async def network_results(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/network/results")
        return body.get("results") or []

    # -- page classifier -----------------------------------------------------

    async def classify(self, url: str) -> Dict[str, Any]:
        return await self._request("POST", "/classifier/classify", json={"url": url})

    def classify_batch(self, urls: List[str]):
        """POST /classifier/batch; one progress and one result event per URL."""
        return self._event_stream("/classifier/batch", {"urls": list(urls)})

    async def classifier_results(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/classifier/results")
        return body.get("pages") or []

    async def override_page_type(self, url: str, page_type: str) -> Dict[str, Any]:
        return await self._request("PATCH", "/classifier/override", json={"url": url, "pageType": page_type})

    async def delete_classified(self, url: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/classifier/results/{quote(url, safe='')}")

    # -- scores --------------------------------------------------------------

    async def hygiene_score(self, url: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/hygiene/score", params={"url": url} if url else None)

    async def severity_matrix(self, url: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/severity/matrix", params={"url": url} if url else None)

    async def health(self) -> Dict[str, Any]:
        """GET /health on the server root (outside /api)."""
        return await self._request("GET", f"{self.settings.server_url}/health")
