"""Async job poller.

Submits a job, then fetches its status on a fixed interval until the job
completes, fails, or the exchange is cancelled::

    SUBMITTED -> POLLING -> COMPLETED | FAILED | CANCELLED

There is no iteration cap; only the job status or the cancellation token end
the loop. Any transport or HTTP error while polling is fatal to the exchange.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sonar_relay.config.log import get_logger
from sonar_relay.exceptions import Cancelled, JobFailed, NetworkFailure, UpstreamHTTPError
from sonar_relay.exchange.accumulator import ResultAccumulator
from sonar_relay.exchange.cancellation import CancellationToken
from sonar_relay.exchange.client import ExchangeClient, read_json
from sonar_relay.exchange.merge import merge_final
from sonar_relay.exchange.payload import RequestPayload

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
RUNNING_NOTE = '⏳ Deep research is running. This can take a while.'


class PollerState(str, Enum):
    IDLE = 'IDLE'
    SUBMITTED = 'SUBMITTED'
    POLLING = 'POLLING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'


class JobStatus(str, Enum):
    """Job statuses the poller acts on. Any other value means the job is still running."""

    CREATED = 'CREATED'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


@dataclass
class AsyncJob:
    id: str
    status: str = JobStatus.CREATED.value
    error_message: Optional[str] = None
    response: Optional[Dict[str, Any]] = None

    @property
    def failed(self) -> bool:
        return self.status == JobStatus.FAILED.value

    @property
    def completed(self) -> bool:
        return self.status == JobStatus.COMPLETED.value and self.response is not None

    def update(self, data: Dict[str, Any]) -> None:
        self.status = str(data.get('status') or 'UNKNOWN')
        self.error_message = data.get('error_message')
        response = data.get('response')
        self.response = response if isinstance(response, dict) else None


Sleep = Callable[[float], Awaitable[Any]]
Listener = Callable[[ResultAccumulator], Any]


class AsyncJobPoller:
    def __init__(
        self,
        client: ExchangeClient,
        accumulator: ResultAccumulator,
        token: CancellationToken,
        interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Sleep = asyncio.sleep,
        on_update: Optional[Listener] = None,
    ):
        self._client = client
        self._accumulator = accumulator
        self._token = token
        self._interval = interval
        self._sleep = sleep
        self._on_update = on_update
        self.state = PollerState.IDLE
        self.job: Optional[AsyncJob] = None
        self.iterations = 0

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self._accumulator)

    def _checkpoint(self) -> None:
        if self._token.cancelled:
            self.state = PollerState.CANCELLED
            logger.info('Async job polling cancelled', job_id=self.job.id if self.job else None, iterations=self.iterations)
            raise Cancelled()

    async def submit(self, payload: RequestPayload) -> AsyncJob:
        self._checkpoint()
        response = (await self._client.submit_job(payload)).unwrap('Async submit error')
        self._checkpoint()

        data = read_json(response, 'Async submit error')
        job_id = data.get('id')
        if not job_id:
            raise UpstreamHTTPError('Async submit error: response carried no job id', status_code=response.status_code, body=response.text)

        self.job = AsyncJob(id=str(job_id))
        self.job.update({**data, 'status': data.get('status') or JobStatus.CREATED.value})
        self.state = PollerState.SUBMITTED
        self._accumulator.async_status = f'Request created: {self.job.id}. Polling…'
        self._accumulator.content = self._accumulator.content or RUNNING_NOTE
        logger.info('Async job submitted', job_id=self.job.id)
        self._notify()
        return self.job

    async def poll(self) -> ResultAccumulator:
        """Loop until the submitted job is terminal. Raises JobFailed or Cancelled."""
        if self.job is None:
            raise RuntimeError('poll() called before submit()')
        job = self.job
        self.state = PollerState.POLLING

        while True:
            self._checkpoint()
            await self._sleep(self._interval)
            self._checkpoint()

            outcome = await self._client.fetch_job(job.id)
            self._checkpoint()
            self.iterations += 1

            try:
                response = outcome.unwrap('Async poll error')
                data = read_json(response, 'Async poll error')
            except (NetworkFailure, UpstreamHTTPError):
                self.state = PollerState.FAILED
                raise

            job.update(data)
            self._accumulator.async_status = f'Status: {job.status} • id: {job.id}'
            logger.debug('Async job status', job_id=job.id, status=job.status, iteration=self.iterations)

            if job.failed:
                self.state = PollerState.FAILED
                self._notify()
                raise JobFailed(job.error_message or 'Deep research request failed')

            if job.completed:
                merge_final(self._accumulator, job.response)
                self._accumulator.async_status = f'Completed • id: {job.id}'
                self.state = PollerState.COMPLETED
                logger.info('Async job completed', job_id=job.id, iterations=self.iterations)
                self._notify()
                return self._accumulator

            self._notify()

    async def run(self, payload: RequestPayload) -> ResultAccumulator:
        await self.submit(payload)
        return await self.poll()
