from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional


@dataclass(frozen=True)
class HistoryEntry:
    """A previously scanned target."""
    url: str
    timestamp: str  # ISO-8601, UTC

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["HistoryEntry"]:
        url = data.get("url") if isinstance(data, dict) else None
        if not url:
            return None
        return cls(url=url, timestamp=str(data.get("timestamp") or ""))


@dataclass(frozen=True)
class ScanResult:
    """Typed view over a scan payload.

    The backend owns this shape; the raw dict is kept verbatim so it can be
    persisted and re-hydrated without loss. Absent fields are None or empty.
    """
    raw: Dict[str, Any]
    success: bool = False
    id: Optional[str] = None
    target_url: Optional[str] = None
    issues_summary: Dict[str, Any] = field(default_factory=dict)
    pages: List[Dict[str, Any]] = field(default_factory=list)
    total_pages_scanned: Optional[int] = None
    duration: Optional[float] = None
    overall_score: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanResult":
        summary = data.get("issuesSummary")
        pages = data.get("pages")
        duration = data.get("duration")
        if duration is None:
            duration = data.get("scanDuration")
        return cls(
            raw=data,
            success=bool(data.get("success")),
            id=data.get("id"),
            target_url=data.get("targetUrl"),
            issues_summary=summary if isinstance(summary, dict) else {},
            pages=[p for p in pages if isinstance(p, dict)] if isinstance(pages, list) else [],
            total_pages_scanned=data.get("totalPagesScanned"),
            duration=duration,
            overall_score=data.get("overallScore"),
            error=data.get("error"),
        )

    @property
    def production_pillars(self) -> Optional[Dict[str, Any]]:
        """issuesSummary.productionIntelligence.pillars, or None when any level is missing."""
        intelligence = self.issues_summary.get("productionIntelligence")
        if not isinstance(intelligence, dict):
            return None
        pillars = intelligence.get("pillars")
        return pillars or None

    @property
    def page_urls(self) -> List[str]:
        return [p["url"] for p in self.pages if p.get("url")]
