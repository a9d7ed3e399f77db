"""Common dependency injection functions for FastAPI."""

from fastapi import Request

from sonar_relay.exceptions import MissingCredential
from sonar_relay.relay.stream import StreamRelay
from sonar_relay.relay.upstream import UpstreamService

API_KEY_HEADERS = ('x-pplx-key', 'x-perplexity-key')


def get_upstream_service(request: Request) -> UpstreamService:
    return request.app.state.upstream_service


def get_stream_relay(request: Request) -> StreamRelay:
    return request.app.state.stream_relay


def get_api_key(request: Request) -> str:
    """Read the caller's key from the dedicated header. Fails before any upstream call."""
    for header in API_KEY_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    raise MissingCredential()
