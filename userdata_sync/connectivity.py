import asyncio
import logging
import httpx
from typing import Callable, Iterable, Optional
from .config import settings

logger = logging.getLogger(__name__)

class ConnectivityMonitor:
    """
    Tracks whether the media servers are reachable.

    Work gated on network connectivity awaits wait_online(). The state is either
    driven by the periodic ping or set explicitly (tests, platform hooks).
    """

    def __init__(self, addresses: Optional[Callable[[], Iterable[str]]] = None,
                 initially_online: bool = True,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._addresses = addresses or (lambda: [])
        self._transport = transport
        self._online = asyncio.Event()
        if initially_online:
            self._online.set()

    @property
    def is_online(self) -> bool:
        return self._online.is_set()

    def set_online(self, online: bool):
        if online == self.is_online:
            return
        if online:
            logger.info("Connectivity restored")
            self._online.set()
        else:
            logger.info("Connectivity lost")
            self._online.clear()

    async def wait_online(self):
        await self._online.wait()

    async def ping(self) -> bool:
        """Ping every known server; online if any of them answers."""
        addresses = list(self._addresses())
        if not addresses:
            return self.is_online

        online = False
        async with httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS,
                                     transport=self._transport) as client:
            for address in addresses:
                try:
                    resp = await client.get(f"{address.rstrip('/')}/System/Ping")
                    if resp.status_code < 500:
                        online = True
                        break
                except httpx.TransportError as e:
                    logger.debug(f"Ping to {address} failed: {e}")

        self.set_online(online)
        return online

    async def run(self):
        logger.info("Connectivity monitor started")
        while True:
            try:
                await self.ping()
            except Exception as e:
                logger.error(f"Error checking connectivity: {e}", exc_info=True)
            await asyncio.sleep(settings.CONNECTIVITY_CHECK_INTERVAL_SECONDS)
