# core/background.py
import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


# ========================================
# ⏱️ Owned periodic task
# ========================================
class PeriodicTask:
    """
    Runs a blocking job every ``interval`` seconds in a worker thread.
    Started and stopped by the app lifespan; stop() cancels the loop and
    waits for it, so nothing keeps running after shutdown.
    """

    def __init__(self, name: str, job: Callable[[], object], interval: float, run_immediately: bool = False):
        self.name = name
        self.job = job
        self.interval = interval
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"⏱️ Background task '{self.name}' started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"🛑 Background task '{self.name}' stopped")

    async def run_once(self) -> None:
        try:
            await asyncio.to_thread(self.job)
        except Exception as e:
            logger.error(f"❌ Background task '{self.name}' failed: {e}")

    async def _loop(self) -> None:
        if self.run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
