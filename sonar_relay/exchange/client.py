"""HTTP client used by exchanges to talk to the relay.

Every call returns an explicit outcome instead of raising: ``Ok`` with the
response, ``NetworkError`` when no response arrived, or ``UpstreamError`` with
the status and verbatim body. Callers turn outcomes into exceptions with
``unwrap()``. There is no automatic retry.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Union
from urllib.parse import quote

import httpx
import orjson

from sonar_relay.config.log import get_logger
from sonar_relay.exceptions import MissingCredential, NetworkFailure, UpstreamHTTPError
from sonar_relay.exchange.payload import AsyncSubmission, RequestPayload

logger = get_logger(__name__)

API_KEY_HEADER = 'x-pplx-key'


@dataclass
class Ok:
    response: httpx.Response

    def unwrap(self, context: str = '') -> httpx.Response:
        return self.response


@dataclass
class NetworkError:
    message: str

    def unwrap(self, context: str = '') -> httpx.Response:
        raise NetworkFailure(f'{context}: {self.message}' if context else self.message)


@dataclass
class UpstreamError:
    status_code: int
    body: str

    def unwrap(self, context: str = 'Upstream error') -> httpx.Response:
        raise UpstreamHTTPError(f'{context} ({self.status_code}): {self.body}', status_code=self.status_code, body=self.body)


CallResult = Union[Ok, NetworkError, UpstreamError]


class ExchangeClient:
    """Calls the relay's chat and async-job endpoints with the caller's API key."""

    def __init__(self, http_client: httpx.AsyncClient, api_key: str, base_url: str = 'http://127.0.0.1:3000/api'):
        self._client = http_client
        self._api_key = (api_key or '').strip()
        self._base_url = base_url.rstrip('/')

    def _headers(self, json_body: bool = True) -> Dict[str, str]:
        if not self._api_key:
            raise MissingCredential()
        headers = {API_KEY_HEADER: self._api_key}
        if json_body:
            headers['content-type'] = 'application/json'
        return headers

    async def _outcome(self, response: httpx.Response) -> CallResult:
        if response.is_success:
            return Ok(response)
        body = (await response.aread()).decode('utf-8', errors='replace')
        logger.warning('Relay call returned error status', status_code=response.status_code, url=str(response.request.url))
        return UpstreamError(response.status_code, body)

    @asynccontextmanager
    async def open_chat(self, payload: RequestPayload) -> AsyncIterator[CallResult]:
        """POST a chat completion and keep the response open for streaming."""
        request = self._client.build_request('POST', f'{self._base_url}/chat', headers=self._headers(), content=orjson.dumps(payload.to_dict()))
        response = None
        try:
            response = await self._client.send(request, stream=True)
            outcome = await self._outcome(response)
        except httpx.RequestError as exc:
            logger.warning('Relay chat call failed', error=str(exc))
            outcome = NetworkError(str(exc) or exc.__class__.__name__)
        try:
            yield outcome
        finally:
            if response is not None:
                await response.aclose()

    async def submit_job(self, payload: RequestPayload) -> CallResult:
        body = AsyncSubmission(request=payload).to_dict()
        return await self._send('POST', f'{self._base_url}/async/submit', headers=self._headers(), content=orjson.dumps(body))

    async def fetch_job(self, job_id: str) -> CallResult:
        return await self._send('GET', f'{self._base_url}/async/get/{quote(job_id, safe="")}', headers=self._headers(json_body=False))

    async def _send(self, method: str, url: str, **kwargs: Any) -> CallResult:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            logger.warning('Relay call failed', method=method, url=url, error=str(exc))
            return NetworkError(str(exc) or exc.__class__.__name__)
        return await self._outcome(response)


def read_json(response: httpx.Response, context: str) -> Dict[str, Any]:
    """Parse a buffered JSON object body, raising UpstreamHTTPError on garbage."""
    try:
        data = orjson.loads(response.content)
    except orjson.JSONDecodeError as exc:
        raise UpstreamHTTPError(f'{context}: invalid JSON body', status_code=response.status_code, body=response.text) from exc
    if not isinstance(data, dict):
        raise UpstreamHTTPError(f'{context}: expected a JSON object', status_code=response.status_code, body=response.text)
    return data
