import asyncio
import logging
import queue
import threading
from typing import Optional
from .config import settings
from .engine import SyncEngine
from .workqueue import ExistingWorkPolicy, WorkConstraint, WorkQueue, WorkResult

logger = logging.getLogger(__name__)

SYNC_WORK_NAME = "user_data_sync"

class SyncScheduler:
    """
    Decides when a sync pass runs.

    request_sync() may be called from any thread. It only drops a signal into a
    bounded channel; the pump drains the channel and enqueues a single unit of
    work named SYNC_WORK_NAME, replacing any unit that has not started yet. Many
    requests therefore collapse into one pending pass.
    """

    def __init__(self, work_queue: WorkQueue, engine: SyncEngine,
                 max_signals: Optional[int] = None):
        self.work_queue = work_queue
        self.engine = engine
        self._signals: "queue.Queue[str]" = queue.Queue(maxsize=max_signals or settings.SYNC_SIGNAL_QUEUE_SIZE)
        self._wakeup = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

    def request_sync(self, reason: str = "mutation"):
        try:
            self._signals.put_nowait(reason)
        except queue.Full:
            logger.debug(f"Sync already requested, coalescing ({reason})")
        self._notify()

    def _notify(self):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if threading.get_ident() == self._loop_thread:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    def _drain(self) -> list:
        reasons = []
        while True:
            try:
                reasons.append(self._signals.get_nowait())
            except queue.Empty:
                return reasons

    def flush(self) -> bool:
        """Turn queued signals into at most one enqueued pass. Must run on the event loop."""
        reasons = self._drain()
        if not reasons:
            return False
        try:
            self.work_queue.enqueue_unique(
                SYNC_WORK_NAME,
                self._run_pass,
                constraints=(WorkConstraint.NETWORK_CONNECTED,),
                policy=ExistingWorkPolicy.REPLACE,
            )
            logger.debug(f"User data sync scheduled ({len(reasons)} requests: {', '.join(sorted(set(reasons)))})")
            return True
        except Exception as e:
            logger.error(f"Failed to schedule user data sync: {e}", exc_info=True)
            return False

    def cancel(self):
        self._drain()
        try:
            self.work_queue.cancel_unique(SYNC_WORK_NAME)
        except Exception as e:
            logger.error(f"Failed to cancel user data sync: {e}", exc_info=True)

    async def run(self):
        """Pump: wait for signals and flush them onto the work queue."""
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        logger.info("Sync scheduler started")
        try:
            while True:
                if self._signals.empty():
                    await self._wakeup.wait()
                self._wakeup.clear()
                self.flush()
        finally:
            self._loop = None
            self._loop_thread = None

    async def _run_pass(self) -> WorkResult:
        report = await self.engine.run_pass()
        return WorkResult.RETRY if report.should_retry else WorkResult.SUCCESS
