import asyncio
import logging
import uuid
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple
from .config import settings
from .connectivity import ConnectivityMonitor

logger = logging.getLogger(__name__)

class WorkConstraint(str, Enum):
    NETWORK_CONNECTED = "network_connected"

class ExistingWorkPolicy(str, Enum):
    REPLACE = "replace"  # drop the pending unit, enqueue the new one
    KEEP = "keep"        # keep the pending unit, drop the new one

class WorkResult(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FAILURE = "failure"

class WorkState(str, Enum):
    ENQUEUED = "enqueued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

Work = Callable[[], Awaitable[WorkResult]]

class WorkRequest:
    def __init__(self, name: str, work: Work, constraints: Tuple[WorkConstraint, ...]):
        self.id = uuid.uuid4().hex
        self.name = name
        self.work = work
        self.constraints = constraints
        self.state = WorkState.ENQUEUED
        self.run_attempt_count = 0
        self.task: Optional[asyncio.Task] = None
        self.superseded = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self.state in (WorkState.SUCCEEDED, WorkState.FAILED, WorkState.CANCELLED)

    def __repr__(self):
        return f"WorkRequest({self.name!r}, {self.id[:8]}, {self.state.value})"

class WorkQueue:
    """
    In-process scheduler for named units of work.

    Per name there is at most one unit running and one pending. A pending unit
    starts once the running one has finished and its constraints hold.
    """

    def __init__(self, connectivity: ConnectivityMonitor,
                 backoff_seconds: Optional[float] = None,
                 max_backoff_seconds: Optional[float] = None):
        self.connectivity = connectivity
        self.backoff_seconds = settings.WORK_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.max_backoff_seconds = settings.WORK_MAX_BACKOFF_SECONDS if max_backoff_seconds is None else max_backoff_seconds
        self._pending: Dict[str, WorkRequest] = {}
        self._running: Dict[str, WorkRequest] = {}

    def enqueue_unique(self, name: str, work: Work,
                       constraints: Iterable[WorkConstraint] = (),
                       policy: ExistingWorkPolicy = ExistingWorkPolicy.REPLACE) -> WorkRequest:
        pending = self._pending.get(name)
        if pending is not None:
            if policy == ExistingWorkPolicy.KEEP:
                logger.debug(f"Keeping pending work {pending}")
                return pending
            logger.debug(f"Replacing pending work {pending}")
            self._cancel(pending)

        request = WorkRequest(name, work, tuple(constraints))
        self._pending[name] = request
        running = self._running.get(name)
        if running is not None:
            # A unit waiting out a retry backoff gives way to the new one.
            running.superseded.set()
        request.task = asyncio.get_running_loop().create_task(self._execute(request))
        return request

    def cancel_unique(self, name: str) -> bool:
        cancelled = False
        for table in (self._pending, self._running):
            request = table.get(name)
            if request is not None:
                self._cancel(request)
                cancelled = True
        if cancelled:
            logger.info(f"Cancelled work '{name}'")
        return cancelled

    def get_state(self, name: str) -> Optional[WorkState]:
        request = self._pending.get(name) or self._running.get(name)
        return request.state if request else None

    def is_pending(self, name: str) -> bool:
        return name in self._pending

    async def join(self, name: str):
        """Wait until nothing is pending or running under `name`."""
        while True:
            tasks = [r.task for r in (self._running.get(name), self._pending.get(name)) if r and r.task]
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def close(self):
        tasks = []
        for table in (self._pending, self._running):
            for request in list(table.values()):
                self._cancel(request)
                if request.task:
                    tasks.append(request.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _cancel(self, request: WorkRequest):
        request.state = WorkState.CANCELLED
        # A running unit stays registered until its task has unwound.
        if self._pending.get(request.name) is request:
            del self._pending[request.name]
        if request.task and not request.task.done():
            request.task.cancel()

    async def _await_constraints(self, request: WorkRequest):
        if WorkConstraint.NETWORK_CONNECTED in request.constraints and not self.connectivity.is_online:
            logger.info(f"{request} waiting for network connectivity")
            await self.connectivity.wait_online()

    async def _execute(self, request: WorkRequest):
        name = request.name
        try:
            running = self._running.get(name)
            while running is not None and running.task is not None:
                await asyncio.wait([running.task])
                running = self._running.get(name)

            await self._await_constraints(request)

            del self._pending[name]
            self._running[name] = request
            request.state = WorkState.RUNNING

            delay = self.backoff_seconds
            while True:
                request.run_attempt_count += 1
                result = await request.work()
                if result != WorkResult.RETRY:
                    break
                if request.superseded.is_set():
                    logger.debug(f"{request} asked for retry, newer work already pending")
                    break
                logger.info(f"{request} will retry in {delay:.0f}s")
                try:
                    await asyncio.wait_for(request.superseded.wait(), timeout=delay)
                    logger.debug(f"{request} dropping retry, newer work enqueued")
                    break
                except asyncio.TimeoutError:
                    pass
                delay = min(delay * 2, self.max_backoff_seconds)
                await self._await_constraints(request)
                if request.superseded.is_set():
                    break

            if result == WorkResult.FAILURE:
                request.state = WorkState.FAILED
            elif result == WorkResult.RETRY:
                request.state = WorkState.CANCELLED
            else:
                request.state = WorkState.SUCCEEDED

        except asyncio.CancelledError:
            request.state = WorkState.CANCELLED
            raise
        except Exception as e:
            request.state = WorkState.FAILED
            logger.error(f"{request} failed: {e}", exc_info=True)
        finally:
            if self._pending.get(name) is request:
                del self._pending[name]
            if self._running.get(name) is request:
                del self._running[name]
