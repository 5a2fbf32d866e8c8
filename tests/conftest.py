import os
import sys
from typing import Callable, Iterable, List

import httpx
import pytest

# Ensure project root is on sys.path for imports like `core.*`
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from core.api_client import InspectraClient  # noqa: E402
from core.config import Settings  # noqa: E402


def event_stream_response(chunks: Iterable[bytes], status_code: int = 200) -> httpx.Response:
    """A streaming response that delivers `chunks` one at a time."""
    async def body():
        for chunk in chunks:
            yield chunk

    return httpx.Response(status_code, headers={"content-type": "text/event-stream"}, content=body())


def sse(*payloads: str) -> bytes:
    """Encode raw JSON payload strings the way the backend writes them."""
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(api_base="http://backend.test", state_file=str(tmp_path / "state.json"))


@pytest.fixture
def make_client(settings) -> Callable[[Callable[[httpx.Request], httpx.Response]], InspectraClient]:
    """Build an InspectraClient whose requests go to `handler` and are recorded."""
    def factory(handler, requests: List[httpx.Request] = None) -> InspectraClient:
        def recording(request: httpx.Request):
            if requests is not None:
                requests.append(request)
            return handler(request)

        return InspectraClient(settings, transport=httpx.MockTransport(recording))

    return factory
