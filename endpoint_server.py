import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web
from loguru import logger
from runpod_client.models import MAX_WAIT_MS, TERMINAL_STATUSES, JobStatus

HOLD_STEP = 0.05


class MockJob:
    """A job whose status is derived from wall-clock time since submission"""

    def __init__(
        self,
        payload: Dict[str, Any],
        completion_time: float,
        queue_time: float,
        enforce_execution_timeout: bool,
    ):
        self.id = str(uuid.uuid4())
        self.created_at = datetime.now()
        self.queue_time = queue_time

        job_input = payload.get("input")
        self.job_input = job_input if isinstance(job_input, dict) else {}
        self.chunks = list(self.job_input.get("mock_return", []))
        self.chunk_delay = float(self.job_input.get("mock_delay", 0.0))
        self.fail = bool(self.job_input.get("mock_error", False))

        if "mock_duration" in self.job_input:
            self.duration = queue_time + float(self.job_input["mock_duration"])
        elif self.chunks and self.chunk_delay > 0:
            self.duration = queue_time + len(self.chunks) * self.chunk_delay
        else:
            self.duration = completion_time
        self.duration = max(self.duration, queue_time)

        policy = payload.get("policy") or {}
        self.execution_timeout = (
            policy.get("executionTimeout") if enforce_execution_timeout else None
        )
        self.final_status: Optional[JobStatus] = None
        self.final_chunks = 0
        self.finished_after = 0.0
        self.stream_cursor = 0

    def elapsed(self) -> float:
        return (datetime.now() - self.created_at).total_seconds()

    def status(self) -> JobStatus:
        if self.final_status is not None:
            return self.final_status

        elapsed = self.elapsed()
        timeout = self.execution_timeout
        if elapsed >= self.duration and (timeout is None or self.duration * 1000 <= timeout):
            self.finish(JobStatus.failed if self.fail else JobStatus.completed)
        elif timeout is not None and elapsed * 1000 > timeout:
            self.finish(JobStatus.timed_out)
        elif elapsed >= self.queue_time:
            return JobStatus.in_progress
        else:
            return JobStatus.in_queue
        return self.final_status

    def finish(self, status: JobStatus) -> None:
        self.final_chunks = (
            len(self.chunks) if status == JobStatus.completed else self.chunks_ready()
        )
        self.finished_after = self.elapsed()
        self.final_status = status

    def chunks_ready(self) -> int:
        if self.final_status is not None:
            return self.final_chunks
        running = self.elapsed() - self.queue_time
        if running < 0 or self.chunk_delay <= 0:
            return 0
        return min(len(self.chunks), int(running / self.chunk_delay))

    def snapshot(self) -> Dict[str, Any]:
        status = self.status()
        body: Dict[str, Any] = {"id": self.id, "status": status.value}
        if status in TERMINAL_STATUSES:
            body["delayTime"] = int(self.queue_time * 1000)
            body["executionTime"] = int(max(self.finished_after - self.queue_time, 0) * 1000)
        if status == JobStatus.completed:
            body["output"] = self.chunks if self.chunks else {"input": self.job_input}
        elif status == JobStatus.failed:
            body["error"] = "mock failure"
        return body


class EndpointServer:
    def __init__(
        self,
        endpoint_id: str = "test-endpoint",
        api_key: str = "test-key",
        completion_time: float = 2.0,
        queue_time: float = 0.2,
        enforce_execution_timeout: bool = True,
        stream_hold: float = 1.0,
        max_wait_ms: int = MAX_WAIT_MS,
    ):
        self.endpoint_id = endpoint_id
        self.api_key = api_key
        self.completion_time = completion_time
        self.queue_time = queue_time
        self.enforce_execution_timeout = enforce_execution_timeout
        self.stream_hold = stream_hold
        self.max_wait_ms = max_wait_ms
        self.jobs: Dict[str, MockJob] = {}
        self.requests: List[Tuple[str, Optional[str], Optional[int]]] = []
        self.stream_statuses: List[JobStatus] = []
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

        self.app = web.Application(middlewares=[self._auth_middleware()])
        prefix = f"/{endpoint_id}"
        self.app.router.add_post(f"{prefix}/run", self.handle_run)
        self.app.router.add_post(f"{prefix}/runsync", self.handle_runsync)
        self.app.router.add_get(f"{prefix}/status/{{job_id}}", self.handle_status)
        self.app.router.add_get(f"{prefix}/status-sync/{{job_id}}", self.handle_status_sync)
        self.app.router.add_get(f"{prefix}/stream/{{job_id}}", self.handle_stream)
        self.app.router.add_post(f"{prefix}/cancel/{{job_id}}", self.handle_cancel)
        self.app.router.add_get(f"{prefix}/health", self.handle_health)
        self.app.router.add_post(f"{prefix}/purge-queue", self.handle_purge_queue)

    def _auth_middleware(self):
        @web.middleware
        async def middleware(request, handler):
            if request.headers.get("Authorization") != f"Bearer {self.api_key}":
                raise web.HTTPUnauthorized()
            return await handler(request)

        return middleware

    def _record(self, request, operation: str) -> Optional[int]:
        wait = request.query.get("wait")
        wait_ms = int(wait) if wait is not None else None
        self.requests.append((operation, request.match_info.get("job_id"), wait_ms))
        return wait_ms

    def _job(self, request) -> MockJob:
        job = self.jobs.get(request.match_info["job_id"])
        if job is None:
            raise web.HTTPNotFound()
        return job

    def _hold_seconds(self, wait_ms: Optional[int]) -> float:
        return min(wait_ms or 0, self.max_wait_ms) / 1000

    async def _hold(self, seconds: float, done) -> None:
        loop = asyncio.get_event_loop()
        deadline = loop.time() + seconds
        while loop.time() < deadline and not done():
            await asyncio.sleep(HOLD_STEP)

    async def _submit(self, request) -> MockJob:
        payload = await request.json()
        job = MockJob(
            payload,
            completion_time=self.completion_time,
            queue_time=self.queue_time,
            enforce_execution_timeout=self.enforce_execution_timeout,
        )
        self.jobs[job.id] = job
        self.logger.info(f"Accepted job {job.id}")
        return job

    async def handle_run(self, request):
        self._record(request, "run")
        job = await self._submit(request)
        return web.json_response({"id": job.id, "status": job.status().value})

    async def handle_runsync(self, request):
        wait_ms = self._record(request, "runsync")
        job = await self._submit(request)
        await self._hold(
            self._hold_seconds(wait_ms), lambda: job.status() in TERMINAL_STATUSES
        )
        return web.json_response(job.snapshot())

    async def handle_status(self, request):
        self._record(request, "status")
        return web.json_response(self._job(request).snapshot())

    async def handle_status_sync(self, request):
        wait_ms = self._record(request, "status-sync")
        job = self._job(request)
        initial = job.status()
        await self._hold(self._hold_seconds(wait_ms), lambda: job.status() != initial)
        self.logger.info(f"Returning {job.status().value} for job {job.id}")
        return web.json_response(job.snapshot())

    async def handle_stream(self, request):
        self._record(request, "stream")
        job = self._job(request)
        await self._hold(
            min(self.stream_hold, self.max_wait_ms / 1000),
            lambda: job.status() in TERMINAL_STATUSES
            or job.chunks_ready() > job.stream_cursor,
        )
        status = job.status()
        ready = job.chunks_ready()
        chunks = job.chunks[job.stream_cursor : ready]
        job.stream_cursor = ready
        self.stream_statuses.append(status)
        return web.json_response(
            {
                "id": job.id,
                "status": status.value,
                "stream": [{"output": chunk} for chunk in chunks],
            }
        )

    async def handle_cancel(self, request):
        self._record(request, "cancel")
        job = self._job(request)
        if job.status() not in TERMINAL_STATUSES:
            job.finish(JobStatus.cancelled)
            self.logger.info(f"Cancelled job {job.id}")
        return web.json_response(job.snapshot())

    async def handle_health(self, request):
        self._record(request, "health")
        counts = {status: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status()] += 1
        return web.json_response(
            {
                "jobs": {
                    "completed": counts[JobStatus.completed],
                    "failed": counts[JobStatus.failed]
                    + counts[JobStatus.timed_out]
                    + counts[JobStatus.cancelled],
                    "inProgress": counts[JobStatus.in_progress],
                    "inQueue": counts[JobStatus.in_queue],
                    "retried": 0,
                },
                "workers": {"idle": 0, "running": counts[JobStatus.in_progress]},
            }
        )

    async def handle_purge_queue(self, request):
        self._record(request, "purge-queue")
        queued = [
            job_id
            for job_id, job in self.jobs.items()
            if job.status() == JobStatus.in_queue
        ]
        for job_id in queued:
            del self.jobs[job_id]
        return web.json_response({"removed": len(queued), "status": "completed"})

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
