from typing import Any, Dict

import httpx
from fastapi import APIRouter, Body, Depends
from fastapi.responses import Response

from sonar_relay.api.errors import SERVER_PROXY_ERROR, error_response
from sonar_relay.common.vars import get_request_context
from sonar_relay.config.log import get_logger
from sonar_relay.dependencies import get_api_key, get_stream_relay, get_upstream_service
from sonar_relay.exchange.cancellation import CancellationToken
from sonar_relay.relay.stream import StreamRelay, select_headers
from sonar_relay.relay.upstream import UpstreamService

router = APIRouter(tags=['relay'])
logger = get_logger(__name__)


def _record_upstream(endpoint: str, upstream: httpx.Response) -> None:
    ctx = get_request_context()
    ctx.endpoint = endpoint
    ctx.update_upstream_info(upstream.status_code, upstream.headers.get('x-request-id'))
    if upstream.is_error:
        logger.warning('Upstream returned error status, forwarding as-is', endpoint=endpoint, status_code=upstream.status_code)


@router.post('/chat')
async def chat(
    payload: Dict[str, Any] = Body(...),
    api_key: str = Depends(get_api_key),
    upstream_service: UpstreamService = Depends(get_upstream_service),
    relay: StreamRelay = Depends(get_stream_relay),
):
    """Relay a chat completion request; the body is the upstream request body."""
    try:
        upstream = await upstream_service.open_chat(api_key, payload)
    except httpx.HTTPError as exc:
        logger.error('Proxy error', endpoint='chat', error=str(exc))
        return error_response(SERVER_PROXY_ERROR, 500)

    _record_upstream('chat', upstream)
    return relay.relay(upstream, CancellationToken('relay-chat'))


@router.post('/async/submit')
async def async_submit(
    payload: Dict[str, Any] = Body(...),
    api_key: str = Depends(get_api_key),
    upstream_service: UpstreamService = Depends(get_upstream_service),
    relay: StreamRelay = Depends(get_stream_relay),
):
    """Relay an async job submission. Body shape: ``{"request": {...chat completion body...}}``."""
    try:
        upstream = await upstream_service.open_async_submit(api_key, payload)
    except httpx.HTTPError as exc:
        logger.error('Proxy error', endpoint='async_submit', error=str(exc))
        return error_response(SERVER_PROXY_ERROR, 500)

    _record_upstream('async_submit', upstream)
    return relay.relay(upstream, CancellationToken('relay-async-submit'))


@router.get('/async/get/{job_id}')
async def async_get(
    job_id: str,
    api_key: str = Depends(get_api_key),
    upstream_service: UpstreamService = Depends(get_upstream_service),
    relay: StreamRelay = Depends(get_stream_relay),
):
    """Relay a job status lookup. The JSON body is read fully and sent as-is."""
    job_id = job_id.strip()
    if not job_id:
        return error_response('Missing async request id.', 400)
    get_request_context().job_id = job_id

    try:
        upstream = await upstream_service.fetch_async_job(api_key, job_id)
    except httpx.HTTPError as exc:
        logger.error('Proxy error', endpoint='async_get', job_id=job_id, error=str(exc))
        return error_response(SERVER_PROXY_ERROR, 500)

    _record_upstream('async_get', upstream)
    headers = select_headers(upstream.headers, relay.allow_headers)
    headers.pop('content-type', None)
    return Response(content=upstream.content, status_code=upstream.status_code, headers=headers, media_type='application/json')
