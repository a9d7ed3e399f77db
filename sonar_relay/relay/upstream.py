from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import orjson

from sonar_relay.config.log import get_logger
from sonar_relay.config.models import ConfigModel

logger = get_logger(__name__)

CHAT_PATH = '/chat/completions'
ASYNC_PATH = '/async/chat/completions'


class UpstreamService:
    """Opens requests against the completion API on behalf of a caller.

    The caller's key is sent as a bearer token and never placed in the body.
    Responses are returned unread (``stream=True``); the relay owns closing them.
    """

    def __init__(self, client: httpx.AsyncClient, config: ConfigModel):
        self._client = client
        self._base_url = config.upstream_base_url.rstrip('/')

    def _headers(self, api_key: str, json_body: bool) -> Dict[str, str]:
        headers = {
            'authorization': f'Bearer {api_key}',
            # Bytes are relayed untouched, so ask for them unencoded
            'accept-encoding': 'identity',
        }
        if json_body:
            headers['content-type'] = 'application/json'
        return headers

    async def _open(self, method: str, url: str, api_key: str, body: Optional[Any] = None) -> httpx.Response:
        request = self._client.build_request(
            method,
            url,
            headers=self._headers(api_key, json_body=body is not None),
            content=orjson.dumps(body) if body is not None else None,
        )
        logger.debug('Opening upstream request', method=method, url=url)
        return await self._client.send(request, stream=True)

    async def open_chat(self, api_key: str, body: Any) -> httpx.Response:
        return await self._open('POST', f'{self._base_url}{CHAT_PATH}', api_key, body)

    async def open_async_submit(self, api_key: str, body: Any) -> httpx.Response:
        return await self._open('POST', f'{self._base_url}{ASYNC_PATH}', api_key, body)

    async def fetch_async_job(self, api_key: str, job_id: str) -> httpx.Response:
        """Fetch a job status; the body is read before returning."""
        response = await self._client.get(
            f'{self._base_url}{ASYNC_PATH}/{quote(job_id, safe="")}',
            headers=self._headers(api_key, json_body=False),
        )
        return response
