"""
Consumers for the backend's streaming endpoints.

A run owns the state produced by one streaming request: progress, the
terminal result, and an error message. Dispatch rules shared by all runs:

- progress events update `progress`
- an error event records `error` and stops further updates, but the body
  is still read to the end
- transport and backend failures end up in `error`; nothing is retried
- abort() stops dispatch and cancels a pending read, which closes the response
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from core.api_client import InspectraClient
from core.errors import InspectraError
from models.events import StreamEvent, ProgressEvent, ResultEvent, ErrorEvent
from models.scan import ScanResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    phase: Optional[str] = None
    pct: float = 0
    index: Optional[int] = None
    total: Optional[int] = None
    url: Optional[str] = None


EventCallback = Callable[["StreamRun", StreamEvent], None]


def _hostname(url: Any) -> Optional[str]:
    """Hostname of `url`, or None when it is missing or unparseable."""
    if not isinstance(url, str) or not url:
        return None
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


class StreamRun:
    """Base class; subclasses implement `apply` for their event types."""

    def __init__(self, on_event: Optional[EventCallback] = None):
        self.on_event = on_event
        self.progress = Progress()
        self.error: Optional[str] = None
        self.running = False
        self.halted = False
        self._abort = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        if not self._abort.is_set():
            logger.debug(f"Aborting {type(self).__name__}")
        self._abort.set()

    def dispatch(self, event: StreamEvent) -> bool:
        """Apply one event unless the run is halted; returns True if it was applied."""
        if self.halted or self.aborted:
            return False
        applied = self.apply(event)
        if applied and self.on_event is not None:
            self.on_event(self, event)
        return applied

    def apply(self, event: StreamEvent) -> bool:
        raise NotImplementedError

    def _fail(self, message: str) -> None:
        self.error = message
        self.halted = True

    def _finish(self) -> None:
        """Hook run once the stream has ended, in every outcome."""

    async def run(self, open_stream: Callable[[], Any]) -> "StreamRun":
        """Drive one streaming request to completion.

        Args:
            open_stream: Zero-argument callable returning the async context
                manager from InspectraClient.monitor_network / classify_batch
        """
        self.running = True
        reader = asyncio.ensure_future(self._consume(open_stream))
        abort_waiter = asyncio.ensure_future(self._abort.wait())
        try:
            await asyncio.wait({reader, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not reader.done():
                # Aborted while waiting for bytes: cancelling the reader closes the response
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    logger.debug(f"{type(self).__name__} request cancelled after abort")
            else:
                reader.result()
        except InspectraError as e:
            if self.aborted:
                logger.debug(f"Ignoring error after abort: {e}")
            elif not self.halted:
                logger.warning(f"{type(self).__name__} failed: {e}")
                self._fail(str(e))
        finally:
            abort_waiter.cancel()
            if not reader.done():
                reader.cancel()
            self.running = False
            self._finish()
        return self

    async def _consume(self, open_stream: Callable[[], Any]) -> None:
        async with open_stream() as events:
            async for event in events:
                if self.aborted:
                    break
                self.dispatch(event)


class NetworkMonitorRun(StreamRun):
    """Consumes POST /network/monitor: phased progress and a single result."""

    def __init__(self, url: str, on_event: Optional[EventCallback] = None):
        super().__init__(on_event)
        self.url = url
        self.progress = Progress(phase="starting", pct=5)
        self.result: Any = None
        self.finished = False

    def apply(self, event: StreamEvent) -> bool:
        # Nothing after the terminal result is applied
        if self.finished:
            return False
        if isinstance(event, ProgressEvent):
            self.progress = Progress(phase=event.phase, pct=event.pct or 0)
            return True
        if isinstance(event, ResultEvent):
            self.result = event.result
            self.finished = True
            return True
        if isinstance(event, ErrorEvent):
            self._fail(event.message)
            return True
        return False

    async def start(self, client: InspectraClient) -> "NetworkMonitorRun":
        logger.info(f"Monitoring network traffic of {self.url}")
        await self.run(lambda: client.monitor_network(self.url))
        return self


class ClassifierBatchRun(StreamRun):
    """Consumes POST /classifier/batch: one progress and one result per URL.

    Results are upserted by page URL into `pages`, which may be shared with a
    PageClassifierView. An error event naming a URL is a per-page failure and
    the batch continues; an error without a URL halts the run.
    """

    def __init__(self, urls: List[str], pages: Optional[Dict[str, Dict[str, Any]]] = None,
                 on_event: Optional[EventCallback] = None):
        super().__init__(on_event)
        self.urls = list(urls)
        self.pages = pages if pages is not None else {}
        self.failures: Dict[str, str] = {}
        self.progress = Progress(
            index=0,
            total=len(self.urls),
            url=self.urls[0] if self.urls else None,
            pct=0,
        )

    def apply(self, event: StreamEvent) -> bool:
        if isinstance(event, ProgressEvent):
            self.progress = Progress(index=event.index, total=event.total, url=event.url, pct=event.pct or 0)
            return True
        if isinstance(event, ResultEvent):
            page = event.result
            if not isinstance(page, dict) or not page.get("url"):
                logger.debug(f"Skipping classifier result without a url: {page!r}")
                return False
            # Re-insert so the newest result sorts last
            self.pages.pop(page["url"], None)
            self.pages[page["url"]] = page
            return True
        if isinstance(event, ErrorEvent):
            if event.url:
                self.failures[event.url] = event.message
                logger.warning(f"Classification failed for {event.url}: {event.message}")
            else:
                self._fail(event.message)
            return True
        return False

    def _finish(self) -> None:
        self.progress = replace(self.progress, pct=100)

    async def start(self, client: InspectraClient) -> "ClassifierBatchRun":
        logger.info(f"Classifying {len(self.urls)} pages")
        await self.run(lambda: client.classify_batch(self.urls))
        return self


class PageClassifierView:
    """Classified pages for the current session, with local overrides.

    Overrides live only in memory; the backend keeps its own copy via PATCH.
    """

    SORT_KEYS = ("confidence", "type")

    def __init__(self, client: InspectraClient):
        self.client = client
        self.pages: Dict[str, Dict[str, Any]] = {}
        self.current: Optional[ClassifierBatchRun] = None

    @staticmethod
    def urls_for(scan_result: Optional[ScanResult], target_url: str) -> List[str]:
        """Pages from the last scan, or just the target when there is none."""
        scan_pages = scan_result.page_urls if scan_result is not None else []
        if scan_pages:
            return scan_pages
        return [target_url] if target_url else []

    async def classify(self, urls: List[str], on_event: Optional[EventCallback] = None) -> ClassifierBatchRun:
        """Start a batch; an in-flight batch is aborted first."""
        if self.current is not None and self.current.running:
            logger.info("Superseding in-flight classification batch")
            self.current.abort()
        run = ClassifierBatchRun(urls, pages=self.pages, on_event=on_event)
        self.current = run
        return await run.start(self.client)

    async def override(self, url: str, page_type: str) -> Dict[str, Any]:
        await self.client.override_page_type(url, page_type)
        page = dict(self.pages.get(url) or {"url": url})
        page.update(pageType=page_type, overridden=True, confidence=100)
        self.pages[url] = page
        return page

    async def delete(self, url: str) -> None:
        await self.client.delete_classified(url)
        self.pages.pop(url, None)

    def visible_pages(self, target_url: str, page_type: str = "all", sort_key: str = "confidence") -> List[Dict[str, Any]]:
        """Pages on the target's host, filtered by type and sorted."""
        if not target_url:
            return []
        if sort_key not in self.SORT_KEYS:
            raise ValueError(f"sort_key must be one of {self.SORT_KEYS}, got {sort_key}")
        hostname = _hostname(target_url)
        if hostname is None:
            return []
        same_host = [p for p in self.pages.values() if _hostname(p.get("url")) == hostname]
        if page_type != "all":
            same_host = [p for p in same_host if p.get("pageType") == page_type]
        if sort_key == "confidence":
            return sorted(same_host, key=lambda p: p.get("confidence") or 0, reverse=True)
        return sorted(same_host, key=lambda p: p.get("pageType") or "")
