import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Type,
    TypeVar,
    Union,
)

import aiohttp
from loguru import logger
from runpod_client.models import (
    MAX_WAIT_MS,
    MIN_WAIT_MS,
    ClientConfig,
    EndpointInput,
    EndpointRequestError,
    EndpointResponse,
    ErrorResult,
    HealthResult,
    JobResult,
    JobStatus,
    PurgeQueueResult,
    StreamChunk,
)
from runpod_client.normalizer import normalize_response

R = TypeVar("R", bound=EndpointResponse)
StatusCallback = Callable[[JobResult], Union[Awaitable[Any], Any]]


def clamp_wait(wait_ms: float) -> int:
    """Clamps a requested server-side wait into [MIN_WAIT_MS, MAX_WAIT_MS]"""
    return int(min(max(wait_ms, MIN_WAIT_MS), MAX_WAIT_MS))


class EndpointClient:
    def __init__(
        self,
        endpoint_id: str,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
        on_status_change: Optional[StatusCallback] = None,
    ):
        self.endpoint_id = endpoint_id
        self.config = config
        self.base_url = f"{config.resolved_base_url}/{endpoint_id}"
        self.logger = logger
        self.on_status_change = on_status_change
        self._session = session

    @asynccontextmanager
    async def _open_session(self) -> AsyncIterator[aiohttp.ClientSession]:
        """Yields the shared session if one was given, otherwise a short-lived one"""
        if self._session is not None:
            yield self._session
            return
        async with aiohttp.ClientSession() as session:
            yield session

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        operation: str,
        model: Type[R],
        payload: Optional[dict] = None,
        wait_ms: Optional[int] = None,
    ) -> Union[ErrorResult, R]:
        """Performs one round trip and normalizes the outcome"""
        start_time = asyncio.get_event_loop().time()
        url = f"{self.base_url}/{operation}"
        params = {"wait": str(wait_ms)} if wait_ms is not None else None
        timeout = aiohttp.ClientTimeout(
            total=(self.config.request_timeout_ms + (wait_ms or 0)) / 1000
        )

        try:
            async with session.request(
                method,
                url,
                json=payload,
                params=params,
                headers=self._headers(),
                timeout=timeout,
            ) as response:
                body = await response.json() if response.status == 200 else None
                result = normalize_response(
                    response.status, response.reason or "", body, model
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Request {method} {url} failed: {e!r}")
            raise

        if isinstance(result, ErrorResult):
            self.logger.error(
                f"HTTP error {result.status} at {url}: {result.status_text}"
            )
            return result

        result.elapsed_time = asyncio.get_event_loop().time() - start_time
        self.logger.debug(f"{method} {url} took {result.elapsed_time:.3f}s")
        return result

    @staticmethod
    def _payload(request: Union[EndpointInput, dict]) -> EndpointInput:
        if isinstance(request, EndpointInput):
            return request
        return EndpointInput.model_validate(request)

    def _wait_budget(self, request: EndpointInput, timeout_ms: Optional[float]) -> float:
        """Caller timeout, else the policy's executionTimeout, else the configured default"""
        if timeout_ms is not None:
            return timeout_ms
        if request.policy is not None and request.policy.execution_timeout is not None:
            return request.policy.execution_timeout
        return self.config.default_timeout_ms

    async def _submit(
        self, session: aiohttp.ClientSession, request: EndpointInput
    ) -> Union[ErrorResult, JobResult]:
        result = await self._request(
            session, "POST", "run", JobResult, payload=request.to_payload()
        )
        if not isinstance(result, ErrorResult):
            self.logger.info(f"Submitted job {result.id} to {self.endpoint_id}")
        return result

    async def _submit_and_wait(
        self, session: aiohttp.ClientSession, request: EndpointInput, wait_ms: float
    ) -> Union[ErrorResult, JobResult]:
        result = await self._request(
            session,
            "POST",
            "runsync",
            JobResult,
            payload=request.to_payload(),
            wait_ms=clamp_wait(wait_ms),
        )
        if not isinstance(result, ErrorResult):
            self.logger.info(
                f"Submitted job {result.id} to {self.endpoint_id} ({result.status.value})"
            )
        return result

    async def _poll_bounded(
        self, session: aiohttp.ClientSession, job_id: str, wait_ms: float
    ) -> Union[ErrorResult, JobResult]:
        return await self._request(
            session,
            "GET",
            f"status-sync/{job_id}",
            JobResult,
            wait_ms=clamp_wait(wait_ms),
        )

    async def run(self, request: Union[EndpointInput, dict]) -> Union[ErrorResult, JobResult]:
        """Submits a job without waiting for it"""
        async with self._open_session() as session:
            return await self._submit(session, self._payload(request))

    async def run_sync(
        self, request: Union[EndpointInput, dict], timeout_ms: float = MAX_WAIT_MS
    ) -> Union[ErrorResult, JobResult]:
        """Submits a job and lets the server hold the response up to the clamped wait"""
        async with self._open_session() as session:
            return await self._submit_and_wait(session, self._payload(request), timeout_ms)

    async def status(self, job_id: str) -> Union[ErrorResult, JobResult]:
        """Returns the job snapshot immediately"""
        async with self._open_session() as session:
            return await self._request(session, "GET", f"status/{job_id}", JobResult)

    async def status_sync(
        self, job_id: str, timeout_ms: float
    ) -> Union[ErrorResult, JobResult]:
        """Returns the job snapshot once it changes state or the clamped wait elapses"""
        async with self._open_session() as session:
            return await self._poll_bounded(session, job_id, timeout_ms)

    async def cancel(self, job_id: str) -> Union[ErrorResult, JobResult]:
        """Cancels a job. Cancelling a finished job returns its unchanged snapshot"""
        async with self._open_session() as session:
            return await self._request(
                session, "POST", f"cancel/{job_id}", JobResult, payload={}
            )

    async def purge_queue(self) -> Union[ErrorResult, PurgeQueueResult]:
        async with self._open_session() as session:
            return await self._request(
                session, "POST", "purge-queue", PurgeQueueResult, payload={}
            )

    async def health(self) -> Union[ErrorResult, HealthResult]:
        async with self._open_session() as session:
            return await self._request(session, "GET", "health", HealthResult)

    async def _handle_status_change(
        self, result: JobResult, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != result.status and self.on_status_change is not None:
            self.logger.debug(f"Job {result.id} status changed to {result.status.value}")
            outcome = self.on_status_change(result)
            if inspect.isawaitable(outcome):
                await outcome

    async def run_until_complete(
        self,
        request: Union[EndpointInput, dict],
        timeout_ms: Optional[float] = None,
    ) -> Union[ErrorResult, JobResult]:
        """Submit a job and poll it until it reaches a terminal status.

        The wait budget is the caller's timeout, else the policy's
        executionTimeout, else the configured default. Each poll is held
        server-side for the remaining budget (clamped), so the loop advances on
        state changes rather than on a fixed tick. Running out of budget
        returns the last snapshot with completed=False and leaves the remote
        job running; an error response is returned as soon as it is seen.
        """
        request = self._payload(request)
        budget_ms = self._wait_budget(request, timeout_ms)
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        last_status = None

        async with self._open_session() as session:
            result = await self._submit_and_wait(session, request, budget_ms)

            while not isinstance(result, ErrorResult):
                await self._handle_status_change(result, last_status)
                last_status = result.status

                if result.completed:
                    self.logger.info(f"Job {result.id} finished with {result.status.value}")
                    return result

                elapsed_ms = (loop.time() - start_time) * 1000
                if elapsed_ms > budget_ms:
                    self.logger.warning(
                        f"Job {result.id} still {result.status.value} after "
                        f"{elapsed_ms:.0f}ms, no longer waiting on it"
                    )
                    return result

                result = await self._poll_bounded(
                    session, result.id, budget_ms - elapsed_ms
                )

        return result

    async def stream(
        self, job_id: str, timeout_ms: Optional[float] = None
    ) -> AsyncIterator[StreamChunk]:
        """Yield a job's output chunks in the order received until it terminates.

        Chunks that arrive together with the terminal status are still
        yielded, and no fetch is made after it. With timeout_ms the sequence
        ends quietly once that much time has passed. A non-200 fetch raises
        EndpointRequestError.
        """
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        completed = False

        async with self._open_session() as session:
            while not completed:
                result = await self._request(
                    session, "GET", f"stream/{job_id}", JobResult
                )
                if isinstance(result, ErrorResult):
                    raise EndpointRequestError(result)

                if timeout_ms is not None and (loop.time() - start_time) * 1000 > timeout_ms:
                    self.logger.warning(f"Stopped streaming job {job_id} after {timeout_ms}ms")
                    completed = True
                if result.completed:
                    self.logger.debug(f"Stream for job {job_id} ended with {result.status.value}")
                    completed = True

                for chunk in result.stream:
                    yield chunk


class RunpodClient:
    """Entry point holding the immutable config shared by endpoint clients"""

    def __init__(self, config: ClientConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.session = session

    def endpoint(
        self,
        endpoint_id: str,
        on_status_change: Optional[StatusCallback] = None,
    ) -> EndpointClient:
        return EndpointClient(
            endpoint_id,
            self.config,
            session=self.session,
            on_status_change=on_status_change,
        )
