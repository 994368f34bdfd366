import asyncio
import concurrent.futures
import threading
from typing import Any, Coroutine, Optional

from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)


class EventLoopThread:
    """Runs one asyncio loop in a daemon thread.

    All websocket and outbound REST I/O lives on this loop; Flask request
    threads hand coroutines over with `run()` and block on the result.
    """

    def __init__(self, name: str = "proxy-loop"):
        self.name = name
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    def start(self) -> "EventLoopThread":
        if self._thread is not None:
            return self

        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()
        return self

    def _run(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._ready.set()
        try:
            self.loop.run_forever()
        finally:
            self.loop.run_until_complete(self.loop.shutdown_asyncgens())
            self.loop.close()
            logger.info("Event loop stopped")

    def submit(self, coro: Coroutine) -> concurrent.futures.Future:
        """Schedule a coroutine from any thread"""
        if self.loop is None:
            raise RuntimeError("event loop thread is not running")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro: Coroutine, timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the loop and wait for its result"""
        return self.submit(coro).result(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        if self.loop is None or self._thread is None:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self._thread = None
