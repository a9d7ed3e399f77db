"""Pass-through relay of upstream HTTP responses.

The relay never parses the body: status, an allow-list of headers, and the raw
bytes are forwarded as they arrive, so memory stays bounded by one read
buffer regardless of response size.
"""

import asyncio
from typing import AsyncIterator, Dict, Iterable, List, Optional

import httpx
from fastapi.responses import Response, StreamingResponse

from sonar_relay.config.log import get_logger
from sonar_relay.config.models import DEFAULT_RELAY_HEADERS
from sonar_relay.exchange.cancellation import CancellationToken

logger = get_logger(__name__)


def select_headers(headers: httpx.Headers, allow: Iterable[str] = DEFAULT_RELAY_HEADERS) -> Dict[str, str]:
    """Copy only allow-listed, non-empty headers."""
    out = {}
    for name in allow:
        value = headers.get(name)
        if value:
            out[name.lower()] = value
    return out


class StreamRelay:
    def __init__(self, allow_headers: Iterable[str] = DEFAULT_RELAY_HEADERS):
        self._allow_headers = list(allow_headers)

    @property
    def allow_headers(self) -> List[str]:
        return list(self._allow_headers)

    def relay(self, upstream: httpx.Response, token: Optional[CancellationToken] = None) -> Response:
        """Build the downstream response for an upstream response opened with ``stream=True``.

        The upstream response is closed once the body has been forwarded or the
        relay was cancelled.
        """
        token = token or CancellationToken('relay')
        headers = select_headers(upstream.headers, self._allow_headers)

        if upstream.is_stream_consumed:
            # Body already read: send it at once
            return Response(content=upstream.content, status_code=upstream.status_code, headers=headers)

        return StreamingResponse(self._forward(upstream, token), status_code=upstream.status_code, headers=headers)

    async def _forward(self, upstream: httpx.Response, token: CancellationToken) -> AsyncIterator[bytes]:
        forwarded = 0
        try:
            try:
                async for chunk in upstream.aiter_raw():
                    if not chunk:
                        continue
                    if token.cancelled:
                        logger.info('Relay cancelled', forwarded_bytes=forwarded)
                        return
                    forwarded += len(chunk)
                    yield chunk
            except (httpx.StreamError, httpx.TransportError) as exc:
                body = self._buffered_body(upstream) if not forwarded else b''
                if body and not token.cancelled:
                    logger.warning('Upstream body stream unavailable, sending buffered body', error=str(exc))
                    forwarded += len(body)
                    yield body
                else:
                    logger.warning('Upstream body stream failed, response truncated', error=str(exc), forwarded_bytes=forwarded)
            logger.debug('Relay finished', status_code=upstream.status_code, forwarded_bytes=forwarded)
        except asyncio.CancelledError:
            # Caller went away; the server cancels the body task
            token.cancel()
            logger.info('Caller disconnected, relay stopped', forwarded_bytes=forwarded)
            raise
        finally:
            await upstream.aclose()

    def _buffered_body(self, upstream: httpx.Response) -> bytes:
        """Body read elsewhere before forwarding started; the network stream itself cannot be re-read."""
        try:
            return upstream.content
        except httpx.ResponseNotRead:
            return b''
