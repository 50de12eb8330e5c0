"""
Graceful Shutdown Handler
Turns SIGINT/SIGTERM into an asyncio event and runs registered cleanup in order
"""

import asyncio
import logging
import signal
from typing import Callable, List, Optional, Set

logger = logging.getLogger(__name__)


class GracefulShutdownManager:
    """Manages graceful shutdown of the worker process"""

    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self.running_tasks: Set[asyncio.Task] = set()
        self.cleanup_tasks: List[Callable] = []
        self.received_signal: Optional[int] = None

    def add_cleanup_task(self, cleanup_func: Callable) -> None:
        """Add a cleanup function (sync or async) to run during shutdown"""
        self.cleanup_tasks.append(cleanup_func)

    def track_task(self, task: asyncio.Task) -> None:
        self.running_tasks.add(task)
        task.add_done_callback(self.running_tasks.discard)

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            self.received_signal = signum
            logger.info(f"🛑 Received signal {signum}, initiating shutdown...")
        self.shutdown_event.set()

    async def wait(self) -> None:
        await self.shutdown_event.wait()

    async def shutdown(self) -> None:
        """Cancel tracked tasks, then run cleanup functions; a failing cleanup does not stop the rest"""
        logger.info("🔄 Starting graceful shutdown...")
        self.shutdown_event.set()

        if self.running_tasks:
            logger.info(f"📋 Cancelling {len(self.running_tasks)} pending tasks...")
            for task in list(self.running_tasks):
                if not task.done():
                    task.cancel()
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.running_tasks, return_exceptions=True),
                    timeout=5.0
                )
            except asyncio.TimeoutError:
                logger.warning("⚠️ Some tasks didn't cancel within timeout")

        for cleanup_func in self.cleanup_tasks:
            name = getattr(cleanup_func, "__name__", repr(cleanup_func))
            try:
                result = cleanup_func()
                if asyncio.iscoroutine(result):
                    await result
                logger.debug(f"✅ Cleanup completed: {name}")
            except Exception as e:
                logger.error(f"❌ Cleanup failed for {name}: {e}")

        logger.info("✅ Graceful shutdown completed")

    def setup_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT and SIGTERM to request_shutdown on the running loop"""
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(self.request_shutdown, s))
