"""Shared scan state: the single active target and its latest result."""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.api_client import InspectraClient
from core.errors import BackendError, IncompletePayloadError, InspectraError
from core.state_store import (
    StateStore,
    TARGET_URL_KEY,
    BASELINE_URL_KEY,
    SCAN_RESULT_KEY,
    SCAN_CREDENTIALS_KEY,
    SCAN_HISTORY_KEY,
)
from models.scan import HistoryEntry, ScanResult

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ScanSession:
    """Reads and writes the persisted scan state through a StateStore."""

    def __init__(
        self,
        store: StateStore,
        client: Optional[InspectraClient] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        require_intelligence: bool = True,
    ):
        self.store = store
        self.client = client
        self.history_limit = history_limit
        self.require_intelligence = require_intelligence
        self.is_scanning = False
        self.scan_started_at: Optional[float] = None
        self.last_error: Optional[str] = None

    # -- target / baseline ---------------------------------------------------

    @property
    def target_url(self) -> str:
        return self.store.get(TARGET_URL_KEY) or ""

    def set_target_url(self, url: Optional[str]) -> None:
        """Switching targets drops the old result and credentials."""
        if (url or "") != self.target_url:
            self.set_scan_result(None)
            self.store.remove(SCAN_CREDENTIALS_KEY)
        self.store.set(TARGET_URL_KEY, url or None)

    def clear_target_url(self) -> None:
        self.store.remove(TARGET_URL_KEY)
        self.store.remove(BASELINE_URL_KEY)

    @property
    def baseline_url(self) -> str:
        return self.store.get(BASELINE_URL_KEY) or ""

    def set_baseline_url(self, url: Optional[str]) -> None:
        self.store.set(BASELINE_URL_KEY, url or None)

    # -- result / credentials ------------------------------------------------

    @property
    def scan_result(self) -> Optional[ScanResult]:
        raw = self.store.get(SCAN_RESULT_KEY)
        return ScanResult.from_dict(raw) if isinstance(raw, dict) else None

    def set_scan_result(self, result: Optional[Dict[str, Any]]) -> None:
        self.store.set(SCAN_RESULT_KEY, result or None)

    @property
    def credentials(self) -> Dict[str, str]:
        saved = self.store.get(SCAN_CREDENTIALS_KEY)
        return dict(saved) if isinstance(saved, dict) else {}

    def set_credentials(self, credentials: Optional[Dict[str, str]]) -> None:
        self.store.set(SCAN_CREDENTIALS_KEY, dict(credentials) if credentials else None)

    # -- history -------------------------------------------------------------

    @property
    def history(self) -> List[HistoryEntry]:
        saved = self.store.get(SCAN_HISTORY_KEY)
        if not isinstance(saved, list):
            return []
        entries = [HistoryEntry.from_dict(item) for item in saved]
        return [e for e in entries if e is not None]

    def add_to_history(self, url: str) -> List[HistoryEntry]:
        """Move `url` to the front with a fresh timestamp, keeping at most history_limit entries."""
        entry = HistoryEntry(url=url, timestamp=_now_iso())
        updated = [entry] + [h for h in self.history if h.url != url]
        updated = updated[: self.history_limit]
        self.store.set(SCAN_HISTORY_KEY, [h.to_dict() for h in updated])
        return updated

    # -- scanning ------------------------------------------------------------

    async def start_scan(self, url: str, credentials: Optional[Dict[str, str]] = None) -> ScanResult:
        """
        Run a blocking scan of `url` and persist the result.

        On failure the previous result for the same target is put back and the
        error is re-raised; `last_error` keeps its message.

        Raises:
            BackendError: the backend reported {success: false}
            IncompletePayloadError: success without intelligence pillars
            TransportError: the backend could not be reached
        """
        if self.client is None:
            raise RuntimeError("ScanSession.start_scan needs an InspectraClient")

        credentials = credentials or {}
        # Only a re-scan of the same target has a result worth restoring
        previous = self.store.get(SCAN_RESULT_KEY) if url == self.target_url else None

        self.is_scanning = True
        self.scan_started_at = time.time()
        self.last_error = None
        self.set_scan_result(None)
        self.set_target_url(url)
        self.set_credentials(credentials)

        try:
            logger.info(f"Initiating scan for {url}")
            data = await self.client.run_scan(url, credentials.get("username"), credentials.get("password"))
            result = ScanResult.from_dict(data)

            if not result.success:
                raise BackendError(result.error or "Failed to complete scan.")
            if self.require_intelligence and result.production_pillars is None:
                logger.error(f"Incomplete payload received for {url}: keys={sorted(data)}")
                raise IncompletePayloadError(
                    "Received incomplete intelligence engine payload. Please check backend logs."
                )

            self.set_scan_result(data)
            self.add_to_history(url)
            logger.info(f"Scan of {url} completed: {len(result.pages)} pages")
            return result
        except InspectraError as e:
            self.last_error = str(e) or "Failed to scan application."
            logger.error(f"Scan request failed: {self.last_error}")
            self.set_scan_result(previous)
            raise
        finally:
            self.is_scanning = False
