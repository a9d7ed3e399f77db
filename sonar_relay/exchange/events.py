"""Incremental decoder for ``data:``-prefixed event streams.

Upstream delivers ``data: {json}`` events separated by blank lines and ends
with ``data: [DONE]``. Network reads split the stream at arbitrary byte
offsets, so the decoder keeps the unfinished tail between reads.
"""

import codecs
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import orjson

from sonar_relay.config.log import get_logger
from sonar_relay.exceptions import MalformedEventLine

logger = get_logger(__name__)

DATA_PREFIX = 'data:'
DONE_MARKER = '[DONE]'
EVENT_SEPARATOR = '\n\n'


@dataclass(frozen=True)
class ProtocolEvent:
    """One decoded event: a JSON object, or the terminal sentinel."""

    data: Optional[Dict[str, Any]] = None
    done: bool = False


DONE_EVENT = ProtocolEvent(done=True)


def _parse_data(payload: str) -> Dict[str, Any]:
    try:
        parsed = orjson.loads(payload)
    except orjson.JSONDecodeError as exc:
        raise MalformedEventLine(f'Invalid JSON in event line: {exc}', line=payload) from exc
    if not isinstance(parsed, dict):
        raise MalformedEventLine('Event data is not a JSON object', line=payload)
    return parsed


class EventStreamDecoder:
    """Turns raw byte chunks into ProtocolEvents.

    ``feed`` may be called with any fragmentation of the stream; the pending
    buffer persists across calls. Once the sentinel has been decoded the
    decoder is finished and ignores further input.
    """

    def __init__(self, text_decoder: Optional[codecs.IncrementalDecoder] = None):
        self._text_decoder = text_decoder or codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ''
        self.finished = False
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> List[ProtocolEvent]:
        if self.finished:
            return []
        self._buffer += self._text_decoder.decode(chunk)
        self._buffer = self._buffer.replace('\r\n', '\n')

        *raw_events, self._buffer = self._buffer.split(EVENT_SEPARATOR)
        return self._decode_raw_events(raw_events)

    def close(self) -> List[ProtocolEvent]:
        """Flush the text decoder and decode whatever complete lines remain."""
        if self.finished:
            return []
        tail = self._buffer + self._text_decoder.decode(b'', final=True)
        self._buffer = ''
        events = self._decode_raw_events([tail.replace('\r\n', '\n')]) if tail.strip() else []
        self.finished = True
        return events

    def _decode_raw_events(self, raw_events: List[str]) -> List[ProtocolEvent]:
        events: List[ProtocolEvent] = []
        for raw_event in raw_events:
            for line in raw_event.split('\n'):
                line = line.strip()
                if not line or not line.startswith(DATA_PREFIX):
                    continue
                payload = line[len(DATA_PREFIX) :].strip()
                if not payload:
                    continue
                if payload == DONE_MARKER:
                    self.finished = True
                    self._buffer = ''
                    events.append(DONE_EVENT)
                    return events
                try:
                    events.append(ProtocolEvent(data=_parse_data(payload)))
                except MalformedEventLine as exc:
                    # Keep-alive and other non-JSON lines are skipped
                    self.skipped_lines += 1
                    logger.debug('Skipping malformed event line', error=exc.message, line=exc.line[:200])
        return events


async def iter_events(chunks: AsyncIterable[bytes], text_decoder: Optional[codecs.IncrementalDecoder] = None) -> AsyncIterator[ProtocolEvent]:
    """Lazily decode an async byte stream into events.

    Stops at the sentinel (which is yielded last) without reading further
    chunks, or when the byte stream ends.
    """
    decoder = EventStreamDecoder(text_decoder)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.close():
        yield event
