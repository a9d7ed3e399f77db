"""Conversation and exchange orchestration.

A Conversation owns the message history, the single cancellation-token slot,
and the accumulator of the exchange in flight. Each ``send`` replaces both
wholesale: the previous token is invalidated first so anything still running
for the old exchange stops writing at its next checkpoint.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from sonar_relay.config.log import get_logger
from sonar_relay.exceptions import Cancelled, NetworkFailure, RelayError
from sonar_relay.exchange.accumulator import ResultAccumulator
from sonar_relay.exchange.cancellation import CancellationController, CancellationToken
from sonar_relay.exchange.client import ExchangeClient, read_json
from sonar_relay.exchange.events import iter_events
from sonar_relay.exchange.merge import merge_event, merge_final
from sonar_relay.exchange.payload import GenerationSettings, RequestPayload, build_payload
from sonar_relay.exchange.poller import DEFAULT_POLL_INTERVAL, AsyncJobPoller, Sleep

logger = get_logger(__name__)

Listener = Callable[[ResultAccumulator], Any]
Content = Union[str, List[Dict[str, Any]]]


class ExchangeStatus(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    DONE = 'done'
    STOPPED = 'stopped'
    ERROR = 'error'


class Exchange:
    """One request and its result. ``result`` is written only by the merge engine and the poller."""

    def __init__(self, token: CancellationToken):
        self.token = token
        self.result = ResultAccumulator()
        self.status = ExchangeStatus.IDLE
        self.error: Optional[RelayError] = None


class Conversation:
    def __init__(
        self,
        client: ExchangeClient,
        settings: Optional[GenerationSettings] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Optional[Sleep] = None,
        on_update: Optional[Listener] = None,
    ):
        self._client = client
        self.settings = settings or GenerationSettings()
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._on_update = on_update
        self._controller = CancellationController()
        self.messages: List[Dict[str, Any]] = []
        self.exchange: Optional[Exchange] = None

    @property
    def accumulator(self) -> Optional[ResultAccumulator]:
        return self.exchange.result if self.exchange else None

    def stop(self) -> None:
        """Invalidate the exchange in flight. Its partial result is kept."""
        self._controller.cancel()

    def history(self) -> List[Dict[str, Any]]:
        """Messages as sent upstream; assistant turns carry their accumulated content."""
        out = []
        for message in self.messages:
            result = message.get('result')
            if isinstance(result, ResultAccumulator):
                out.append({'role': message['role'], 'content': result.content})
            else:
                out.append(message)
        return out

    async def send(self, content: Content) -> Optional[Exchange]:
        if not content or (isinstance(content, str) and not content.strip()):
            return None

        token = self._controller.renew()
        exchange = Exchange(token)
        self.exchange = exchange

        self.messages.append({'role': 'user', 'content': content})
        payload = build_payload(self.settings, self.history())
        self.messages.append({'role': 'assistant', 'result': exchange.result})

        exchange.status = ExchangeStatus.RUNNING
        try:
            if self.settings.uses_async_job:
                await self._run_async_job(exchange, payload)
            else:
                await self._run_chat_completion(exchange, payload)
            token.raise_if_cancelled()
            exchange.status = ExchangeStatus.DONE
        except Cancelled:
            exchange.status = ExchangeStatus.STOPPED
            logger.info('Exchange stopped', token=token.label)
        except RelayError as exc:
            if token.cancelled:
                # A superseded exchange must not touch its result any more
                exchange.status = ExchangeStatus.STOPPED
                logger.info('Exchange failed after cancellation', token=token.label, error=exc.message)
            else:
                exchange.status = ExchangeStatus.ERROR
                exchange.error = exc
                exchange.result.content += f'\n\n⚠️ {exc.message}'
                logger.error('Exchange failed', error=exc.message, error_type=exc.__class__.__name__)
                self._notify(exchange)
        return exchange

    def _notify(self, exchange: Exchange) -> None:
        if self._on_update is not None:
            self._on_update(exchange.result)

    async def _run_chat_completion(self, exchange: Exchange, payload: RequestPayload) -> None:
        async with self._client.open_chat(payload) as outcome:
            response = outcome.unwrap('Perplexity API error')
            exchange.token.raise_if_cancelled()

            try:
                if payload.stream:
                    async for event in iter_events(response.aiter_bytes()):
                        merge_event(exchange.result, event, exchange.token)
                        self._notify(exchange)
                    return
                await response.aread()
            except httpx.RequestError as exc:
                raise NetworkFailure(f'Perplexity API stream interrupted: {exc}') from exc

            data = read_json(response, 'Perplexity API error')
            exchange.token.raise_if_cancelled()
            merge_final(exchange.result, data)
            self._notify(exchange)

    async def _run_async_job(self, exchange: Exchange, payload: RequestPayload) -> None:
        kwargs = {'sleep': self._sleep} if self._sleep is not None else {}
        poller = AsyncJobPoller(
            self._client,
            exchange.result,
            exchange.token,
            interval=self._poll_interval,
            on_update=self._on_update,
            **kwargs,
        )
        await poller.run(payload)
