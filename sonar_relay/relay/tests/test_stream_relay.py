import asyncio

import httpx
import pytest
from fastapi.responses import StreamingResponse

from sonar_relay.exchange.cancellation import CancellationToken
from sonar_relay.relay.stream import StreamRelay, select_headers

UPSTREAM_HEADERS = {
    'content-type': 'text/event-stream',
    'cache-control': 'no-cache',
    'x-request-id': 'req-1',
    'x-ratelimit-remaining': '49',
    'set-cookie': 'session=secret',
    'server': 'upstream',
}


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks, fail_after=None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.closed = False

    async def __aiter__(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise httpx.ReadError('connection reset')
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def streaming_response(chunks, status_code=200, fail_after=None):
    stream = TrackingStream(chunks, fail_after)
    return httpx.Response(status_code, headers=UPSTREAM_HEADERS, stream=stream), stream


async def collect(response: StreamingResponse) -> bytes:
    return b''.join([chunk async for chunk in response.body_iterator])


def test_select_headers_uses_allow_list():
    headers = select_headers(httpx.Headers(UPSTREAM_HEADERS))
    assert headers == {
        'content-type': 'text/event-stream',
        'cache-control': 'no-cache',
        'x-request-id': 'req-1',
        'x-ratelimit-remaining': '49',
    }


def test_select_headers_with_custom_list():
    assert select_headers(httpx.Headers(UPSTREAM_HEADERS), ['X-Request-Id']) == {'x-request-id': 'req-1'}


@pytest.mark.asyncio
async def test_body_is_forwarded_byte_for_byte():
    chunks = [b'data: {"a"', b': 1}\n\n', b'\xff\xfe raw', b'data: [DONE]\n\n']
    upstream, stream = streaming_response(chunks)

    response = StreamRelay().relay(upstream)

    assert isinstance(response, StreamingResponse)
    assert response.status_code == 200
    assert response.headers['content-type'] == 'text/event-stream'
    assert response.headers['x-request-id'] == 'req-1'
    assert 'set-cookie' not in response.headers
    assert 'server' not in response.headers
    assert [chunk async for chunk in response.body_iterator] == chunks
    assert stream.closed


@pytest.mark.asyncio
async def test_error_status_and_body_are_forwarded_as_is():
    upstream, _ = streaming_response([b'{"error": {"message": "invalid model"}}'], status_code=400)

    response = StreamRelay().relay(upstream)

    assert response.status_code == 400
    assert await collect(response) == b'{"error": {"message": "invalid model"}}'


@pytest.mark.asyncio
async def test_already_read_body_is_sent_at_once():
    upstream = httpx.Response(200, headers={'content-type': 'application/json'}, content=b'{"id": "job-1"}')

    response = StreamRelay().relay(upstream)

    assert not isinstance(response, StreamingResponse)
    assert response.body == b'{"id": "job-1"}'
    assert response.headers['content-type'] == 'application/json'


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_the_next_write():
    token = CancellationToken()
    upstream, stream = streaming_response([b'one', b'two', b'three'])
    response = StreamRelay().relay(upstream, token)

    received = []
    async for chunk in response.body_iterator:
        received.append(chunk)
        token.cancel()

    assert received == [b'one']
    assert stream.closed


@pytest.mark.asyncio
async def test_stream_failure_delivers_what_is_available():
    upstream, stream = streaming_response([b'first', b'second'], fail_after=1)

    response = StreamRelay().relay(upstream)

    assert await collect(response) == b'first'
    assert stream.closed


@pytest.mark.asyncio
async def test_failure_before_first_chunk_truncates_without_rereading():
    upstream, stream = streaming_response([b'lost'], fail_after=0)

    response = StreamRelay().relay(upstream)

    assert await collect(response) == b''
    assert stream.closed


@pytest.mark.asyncio
async def test_body_read_before_forwarding_is_sent_whole():
    upstream, stream = streaming_response([b'whole ', b'body'])
    response = StreamRelay().relay(upstream)

    # Something read the body after the relay response was built
    await upstream.aread()

    assert await collect(response) == b'whole body'
    assert stream.closed


@pytest.mark.asyncio
async def test_caller_disconnect_trips_the_token():
    token = CancellationToken()
    gate = asyncio.Event()

    class SlowStream(TrackingStream):
        async def __aiter__(self):
            yield b'first'
            await gate.wait()
            yield b'never'

    stream = SlowStream([])
    upstream = httpx.Response(200, headers=UPSTREAM_HEADERS, stream=stream)
    response = StreamRelay().relay(upstream, token)

    async def consume():
        async for _ in response.body_iterator:
            pass

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert token.cancelled
    assert stream.closed
