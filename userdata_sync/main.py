import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .state import PlaybackStateStore
from .connectivity import ConnectivityMonitor
from .workqueue import WorkQueue
from .engine import SyncEngine
from .scheduler import SyncScheduler
from .recorder import MutationRecorder
from . import server

logger = logging.getLogger("main")

def setup_logging():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

class SyncService:
    def __init__(self, store: PlaybackStateStore = None, connectivity: ConnectivityMonitor = None,
                 engine: SyncEngine = None):
        self.store = store or PlaybackStateStore(settings.STATE_PATH, persist=settings.PERSIST_ENABLED)
        self.connectivity = connectivity or ConnectivityMonitor(
            addresses=lambda: [s.address for s in self.store.list_servers()],
            initially_online=settings.CONNECTIVITY_ASSUME_ONLINE,
        )
        self.work_queue = WorkQueue(self.connectivity)
        self.engine = engine or SyncEngine(self.store)
        self.scheduler = SyncScheduler(self.work_queue, self.engine)
        self.recorder = MutationRecorder(self.store, self.scheduler)

        # Link service to server module
        server.service = self

    def on_foreground(self):
        self.scheduler.request_sync("foreground")

    async def sign_out(self, user_id: str) -> bool:
        """Stop syncing, then drop the user and its playback state."""
        self.scheduler.cancel()
        removed = self.store.delete_user(user_id)
        if self.store.count_dirty():
            self.scheduler.request_sync("sign_out")
        return removed

    async def remove_server(self, server_id: str) -> bool:
        self.scheduler.cancel()
        removed = self.store.delete_server(server_id)
        if self.store.count_dirty():
            self.scheduler.request_sync("server_removed")
        return removed

    async def periodic_sync(self):
        """Safety net against missed notifications."""
        while True:
            await asyncio.sleep(settings.SYNC_INTERVAL_SECONDS)
            if self.store.count_dirty():
                self.scheduler.request_sync("periodic")

    async def start(self):
        tasks = [
            asyncio.create_task(self.scheduler.run()),
            asyncio.create_task(self.connectivity.run()),
            asyncio.create_task(self.periodic_sync()),
        ]
        self.on_foreground()

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            for task in tasks:
                task.cancel()
            await self.work_queue.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    setup_logging()
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
