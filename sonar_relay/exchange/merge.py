"""Folding upstream events and final payloads into a ResultAccumulator."""

from typing import Any, Dict, Optional

from sonar_relay.exchange.accumulator import ResultAccumulator, ResultFragment
from sonar_relay.exchange.cancellation import CancellationToken
from sonar_relay.exchange.events import ProtocolEvent


def apply_fragment(accumulator: ResultAccumulator, fragment: ResultFragment) -> ResultAccumulator:
    if fragment.content is not None:
        accumulator.content = fragment.content
    if fragment.content_delta:
        accumulator.content += fragment.content_delta
    for name, value in fragment.present_side_channels().items():
        setattr(accumulator, name, value)
    return accumulator


def merge_chunk(accumulator: ResultAccumulator, chunk: Dict[str, Any]) -> ResultAccumulator:
    """Apply one streamed chunk: append its text delta, replace any side-channel field it carries."""
    return apply_fragment(accumulator, ResultFragment.from_chunk(chunk))


def merge_final(accumulator: ResultAccumulator, payload: Dict[str, Any]) -> ResultAccumulator:
    """Apply a complete response in one step. Applying it twice has the same effect as once."""
    return apply_fragment(accumulator, ResultFragment.from_final(payload))


def merge_event(accumulator: ResultAccumulator, event: ProtocolEvent, token: Optional[CancellationToken] = None) -> ResultAccumulator:
    """Merge a decoded event. The terminal sentinel carries nothing and is a no-op."""
    if token is not None:
        token.raise_if_cancelled()
    if event.done or event.data is None:
        return accumulator
    return merge_chunk(accumulator, event.data)
