"""
Asyncio task queue for pipeline jobs.

Handlers are plain synchronous functions taking the job payload. They run
in a bounded thread pool since the database is the only blocking point.
Jobs for the same user are serialized through a per-user lock; different
users run concurrently up to ``max_workers``. A job submitted while an
identical one is still queued and not started returns the existing handle.

Usage:
    queue = TaskQueue()
    queue.register("recompute_user_impacts", recompute_user_impacts)
    async with queue:
        handle = queue.submit("recompute_user_impacts", {"user_id": 1})
        await handle.wait()
"""

import asyncio
import contextvars
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.log_config import get_logger
from signalcopilot.utils.errors import UnknownJobKindError, is_retryable


log = get_logger(__name__)

JobHandler = Callable[[Dict[str, Any]], Any]


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobHandle:
    """Tracks one submitted job. ``future`` is safe to wait on from any thread."""

    kind: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    future: Future = field(default_factory=Future, repr=False)

    @property
    def user_id(self) -> Optional[int]:
        return self.payload.get("user_id")

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    async def wait(self) -> Any:
        return await asyncio.wrap_future(self.future)


def coalesce_key(kind: str, payload: Dict[str, Any]) -> Tuple:
    return (kind, tuple(sorted((k, repr(v)) for k, v in payload.items())))


class TaskQueue:
    """Bounded async job queue with per-user serialization and retries."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        max_workers: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_min_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
    ):
        config = config or default_settings
        self.max_workers = max_workers or config.task_max_workers
        self.max_attempts = max_attempts or config.task_max_attempts
        self.retry_min_seconds = config.task_retry_min_seconds if retry_min_seconds is None else retry_min_seconds
        self.retry_max_seconds = config.task_retry_max_seconds if retry_max_seconds is None else retry_max_seconds

        self._handlers: Dict[str, JobHandler] = {}
        self._pending: Dict[Tuple, JobHandle] = {}
        self._backlog: List[JobHandle] = []
        self._state_lock = threading.Lock()
        self._user_locks: Dict[int, asyncio.Lock] = {}

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Registration and submission
    # ------------------------------------------------------------------

    def register(self, kind: str, handler: JobHandler) -> None:
        if kind in self._handlers:
            log.warning("job_handler_replaced", job_kind=kind)
        self._handlers[kind] = handler

    @property
    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def submit(self, kind: str, payload: Optional[Dict[str, Any]] = None) -> JobHandle:
        """
        Enqueue a job. Safe to call from the loop or from worker threads.

        Raises:
            UnknownJobKindError: If no handler is registered for ``kind``
        """
        if kind not in self._handlers:
            raise UnknownJobKindError(f"No handler registered for job kind '{kind}'", details={"kind": kind})

        payload = dict(payload or {})
        key = coalesce_key(kind, payload)
        with self._state_lock:
            existing = self._pending.get(key)
            if existing is not None:
                log.debug("job_coalesced", job_id=existing.id, job_kind=kind)
                return existing
            handle = JobHandle(kind=kind, payload=payload)
            self._pending[key] = handle
            if self._loop is None:
                self._backlog.append(handle)
                return handle

        self._enqueue(handle)
        log.debug("job_submitted", job_id=handle.id, job_kind=kind)
        return handle

    def _enqueue(self, handle: JobHandle) -> None:
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is self._loop:
            self._queue.put_nowait(handle)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, handle)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._user_locks = {}
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="signal-job-")
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.max_workers)]

        with self._state_lock:
            self._loop = asyncio.get_running_loop()
            backlog, self._backlog = self._backlog, []
        for handle in backlog:
            self._queue.put_nowait(handle)
        log.info("task_queue_started", workers=self.max_workers, backlog=len(backlog))

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        with self._state_lock:
            self._loop = None
        log.info("task_queue_stopped")

    async def __aenter__(self) -> "TaskQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.join()
        await self.stop()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _worker(self, index: int) -> None:
        while True:
            handle = await self._queue.get()
            try:
                with self._state_lock:
                    self._pending.pop(coalesce_key(handle.kind, handle.payload), None)
                if handle.user_id is not None:
                    async with self._user_lock(handle.user_id):
                        await self._execute(handle)
                else:
                    await self._execute(handle)
            finally:
                self._queue.task_done()

    async def _execute(self, handle: JobHandle) -> None:
        handler = self._handlers[handle.kind]
        handle.status = JobStatus.RUNNING
        structlog.contextvars.bind_contextvars(job_id=handle.id, job_kind=handle.kind, user_id=handle.user_id)
        try:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=self.retry_min_seconds, max=self.retry_max_seconds),
                retry=retry_if_exception(is_retryable),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    handle.attempts += 1
                    if handle.attempts > 1:
                        log.warning("job_retrying", attempt=handle.attempts)
                    context = contextvars.copy_context()
                    result = await self._loop.run_in_executor(self._executor, context.run, handler, handle.payload)
        except Exception as e:
            handle.status = JobStatus.FAILED
            handle.future.set_exception(e)
            log.error("job_failed", attempts=handle.attempts, error=str(e), error_type=type(e).__name__)
        else:
            handle.status = JobStatus.SUCCEEDED
            handle.future.set_result(result)
            log.info("job_succeeded", attempts=handle.attempts)
        finally:
            structlog.contextvars.unbind_contextvars("job_id", "job_kind", "user_id")
