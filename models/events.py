from dataclasses import dataclass, field
from typing import Dict, Any, Optional


@dataclass(frozen=True)
class StreamEvent:
    """A single decoded `data: ` record from a progress stream."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)  # the full decoded object


@dataclass(frozen=True)
class ProgressEvent(StreamEvent):
    phase: Optional[str] = None
    pct: Optional[float] = None
    # Batch streams report position instead of a phase
    index: Optional[int] = None
    total: Optional[int] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class ResultEvent(StreamEvent):
    result: Any = None
    index: Optional[int] = None


@dataclass(frozen=True)
class ErrorEvent(StreamEvent):
    message: str = ""
    index: Optional[int] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class DoneEvent(StreamEvent):
    pct: Optional[float] = None
    total: Optional[int] = None


def event_from_dict(payload: Dict[str, Any]) -> StreamEvent:
    """Build the typed event for a decoded payload, reading fields with defaults."""
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        event_type = ""

    if event_type == "progress":
        return ProgressEvent(
            type=event_type,
            data=payload,
            phase=payload.get("phase"),
            pct=payload.get("pct"),
            index=payload.get("index"),
            total=payload.get("total"),
            url=payload.get("url"),
        )
    if event_type == "result":
        return ResultEvent(type=event_type, data=payload, result=payload.get("result"), index=payload.get("index"))
    if event_type == "error":
        return ErrorEvent(
            type=event_type,
            data=payload,
            message=str(payload.get("message") or "Unknown error"),
            index=payload.get("index"),
            url=payload.get("url"),
        )
    if event_type == "done":
        return DoneEvent(type=event_type, data=payload, pct=payload.get("pct"), total=payload.get("total"))
    return StreamEvent(type=event_type, data=payload)
