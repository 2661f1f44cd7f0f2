"""Background event loop used to drive asyncpg from blocking callers."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Any, Coroutine, TypeVar

T = TypeVar("T")


class EventLoopThread:
    """Runs an asyncio event loop on a daemon thread."""

    def __init__(self, name: str = "recordset-asyncpg-loop") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever,
            name=name,
            daemon=True,
        )
        self._thread.start()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        """Schedule ``coro`` on the loop and return a thread-safe future."""

        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` on the loop and block until it finishes."""

        if threading.current_thread() is self._thread:
            coro.close()
            raise RuntimeError("Blocking cursor calls cannot run on the cursor's own event loop thread.")
        return self.submit(coro).result()

    def shutdown(self) -> None:
        """Stop the background event loop (testing helper)."""

        if not self._loop.is_running():  # pragma: no cover
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass


_default_runner: EventLoopThread | None = None
_default_lock = threading.Lock()


def default_runner() -> EventLoopThread:
    """Return the shared runner, starting it on first use."""

    global _default_runner
    with _default_lock:
        if _default_runner is None:
            _default_runner = EventLoopThread()
        return _default_runner


__all__ = ["EventLoopThread", "default_runner"]
