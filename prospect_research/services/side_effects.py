"""
Best-effort background side effects.

Work submitted here (completion notifications, cache hit counters) runs as
its own asyncio task. Its failures are logged and never reach the caller, so
the batch outcome can not depend on it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

logger = logging.getLogger(__name__)

SideEffectFactory = Callable[[], Awaitable[object]]


class SideEffectSink(Protocol):
    def submit(self, name: str, factory: SideEffectFactory) -> Optional[asyncio.Task]: ...


class SideEffectRunner:
    """Tracks fire-and-forget tasks so they can be drained on shutdown or in tests."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, factory: SideEffectFactory) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; side effect %s dropped", name)
            return None
        task = loop.create_task(self._run(name, factory), name=f"side-effect:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: SideEffectFactory) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Side effect %s failed", name)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every submitted task (used by tests and graceful shutdown)."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
