import asyncio
import inspect
import logging
from typing import List, Optional, Set

import httpx

from trainer_service.core.interfaces import ConnectivityListener, ConnectivitySignal

logger = logging.getLogger(__name__)


class ManualConnectivity(ConnectivitySignal):
    """Connectivity flag set by the host (tests, HTTP override, probes)."""

    def __init__(self, connected: bool = True):
        self._connected = bool(connected)
        self._listeners: List[ConnectivityListener] = []
        self._tasks: Set[asyncio.Task] = set()

    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    def set_connected(self, connected: bool) -> None:
        connected = bool(connected)
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Connectivity changed: connected={connected}")
        for listener in list(self._listeners):
            outcome = listener(connected)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for listener coroutines started by the last change."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class HttpProbeConnectivity(ManualConnectivity):
    """Polls a URL; any HTTP response counts as connected, transport errors as offline."""

    def __init__(self, url: str, interval_sec: float = 15.0, timeout_sec: float = 5.0, connected: bool = True):
        super().__init__(connected)
        self.url = url
        self.interval = interval_sec
        self.timeout = timeout_sec
        self._runner: Optional[asyncio.Task] = None

    async def probe(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await client.head(self.url)
            return True
        except httpx.TransportError as e:
            logger.debug(f"Connectivity probe failed: {type(e).__name__}")
            return False

    async def _loop(self) -> None:
        while True:
            self.set_connected(await self.probe())
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
