"""Fixed-interval refresh loop for session viewers."""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from boardbank.config import config
from boardbank.ledger.coordinator import SessionCoordinator
from boardbank.ledger.errors import SessionNotFound
from boardbank.ledger.models import SessionSnapshot
from boardbank.utils.logger import get_logger

logger = get_logger(__name__)

SnapshotCallback = Callable[[SessionSnapshot], Union[Awaitable[Any], Any]]


class SessionPoller:
    """Loads a session snapshot every interval and hands it to a callback.
    
    The loop lives as long as the viewer: ``stop()`` cancels it. A failing
    tick is logged and the next tick runs as usual; the loop ends on its
    own once the session is gone.
    """
    
    def __init__(
        self,
        coordinator: SessionCoordinator,
        session_id: str,
        callback: SnapshotCallback,
        interval: Optional[float] = None,
    ):
        self.coordinator = coordinator
        self.session_id = session_id
        self.callback = callback
        self.interval = interval if interval is not None else config.poll_interval_seconds
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
    
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
    
    def start(self) -> asyncio.Task:
        """Start polling in the background."""
        if not self.running:
            self._task = asyncio.create_task(self.run())
        return self._task
    
    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
    
    async def tick(self) -> SessionSnapshot:
        """Load one snapshot and deliver it."""
        snapshot = await self.coordinator.snapshot(self.session_id)
        result = self.callback(snapshot)
        if inspect.isawaitable(result):
            await result
        self.ticks += 1
        return snapshot
    
    async def run(self) -> None:
        """Poll until cancelled or the session ends."""
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except SessionNotFound:
                logger.info(f"Session {self.session_id} ended, stopping poller")
                return
            except Exception as e:
                logger.error(f"Error polling session {self.session_id}: {e}")
            await asyncio.sleep(self.interval)
