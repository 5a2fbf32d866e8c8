"""Incremental reader for `data: `-prefixed, newline-delimited JSON event streams.

The backend keeps the response open and writes one `data: {json}` record per
progress step. Chunks can end anywhere: mid-line, mid-token, even inside a
multibyte UTF-8 sequence, so decoding and line splitting are both incremental.
"""
import codecs
import json
import logging
from typing import List, Optional, AsyncIterable, AsyncIterator

from models.events import StreamEvent, event_from_dict

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


def parse_line(line: str) -> Optional[StreamEvent]:
    """Parse one complete line into an event.

    Returns None for lines without the `data: ` prefix, for payloads that are
    not valid JSON, and for JSON that is not an object.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX):]
    try:
        payload = json.loads(raw)
    except ValueError:
        # Partial or corrupt records are expected at chunk boundaries
        logger.debug(f"Dropping malformed stream line: {raw[:80]!r}")
        return None
    if not isinstance(payload, dict):
        logger.debug(f"Dropping non-object stream payload: {raw[:80]!r}")
        return None
    return event_from_dict(payload)


class EventStreamReader:
    """Turns raw body chunks into StreamEvents.

    Example:
        reader = EventStreamReader()
        for chunk in body:
            for event in reader.feed(chunk):
                ...
        reader.close()
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._closed = False

    @property
    def pending(self) -> str:
        """Text received after the last newline, not yet parsed."""
        return self._buffer

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        if self._closed:
            raise RuntimeError("feed() called on a closed EventStreamReader")
        self._buffer += self._decoder.decode(chunk)
        return self._drain_lines()

    def close(self) -> List[StreamEvent]:
        """Flush the decoder at end of stream.

        An unterminated trailing fragment is discarded, never parsed.
        """
        if self._closed:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        events = self._drain_lines()
        if self._buffer:
            logger.debug(f"Discarding unterminated stream fragment ({len(self._buffer)} chars)")
        self._buffer = ""
        self._closed = True
        return events

    def _drain_lines(self) -> List[StreamEvent]:
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: List[StreamEvent] = []
        for line in lines:
            event = parse_line(line)
            if event is not None:
                events.append(event)
        return events


async def iter_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Yield events from an async byte stream such as `response.aiter_bytes()`."""
    reader = EventStreamReader()
    async for chunk in chunks:
        for event in reader.feed(chunk):
            yield event
    for event in reader.close():
        yield event
