"""
Debounced autosave.

Rapid edits to one logical entity (a sheet's marks, one chapter's text) are
coalesced into a single write per debounce window. Each entity key owns an
independent timer task:

    idle -> pending      first edit arms the timer
    pending -> pending   another edit cancels and re-arms it
    pending -> firing    the timer elapses and the write runs
    firing -> idle       the write finished (or failed)

The write callable reads the latest in-memory state when it fires, so the
stored value is always the most recent one, never an intermediate.
An edit that lands while a write is in flight arms a fresh timer; it does not
interrupt the in-flight write.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, Optional

from workbook_tracker.core.errors import PersistenceError

logger = logging.getLogger(__name__)

Write = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[Hashable, PersistenceError], None]

IDLE = "idle"
PENDING = "pending"
FIRING = "firing"


class AutoSavePersister:
    def __init__(self, delay: float = 0.7, on_error: Optional[ErrorCallback] = None):
        self.delay = delay
        self.on_error = on_error
        self._pending: Dict[Hashable, asyncio.Task] = {}
        self._writes: Dict[Hashable, Write] = {}
        self._firing: Dict[Hashable, asyncio.Task] = {}
        self._closed = False

    def state(self, key: Hashable) -> str:
        if key in self._pending:
            return PENDING
        if key in self._firing:
            return FIRING
        return IDLE

    @property
    def pending_keys(self):
        return list(self._pending)

    def schedule(self, key: Hashable, write: Write) -> None:
        """Arm (or re-arm) the timer for ``key``. Must be called from a running loop."""
        if self._closed:
            raise RuntimeError("autosave persister is closed")
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._writes[key] = write
        self._pending[key] = asyncio.get_running_loop().create_task(self._run(key))

    def cancel(self, key: Hashable) -> bool:
        """Drop a pending write for ``key``. An in-flight write is left alone."""
        task = self._pending.pop(key, None)
        self._writes.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _run(self, key: Hashable) -> None:
        await asyncio.sleep(self.delay)
        await self._fire(key)

    async def _fire(self, key: Hashable) -> None:
        self._pending.pop(key, None)
        write = self._writes.pop(key, None)
        if write is None:
            return
        runner = asyncio.current_task()
        self._firing[key] = runner
        try:
            await write()
        except PersistenceError as e:
            logger.warning("Autosave of %s failed: %s", key, e.detail)
            if self.on_error is not None:
                self.on_error(key, e)
        finally:
            if self._firing.get(key) is runner:
                del self._firing[key]

    async def flush(self, key: Optional[Hashable] = None) -> None:
        """Fire pending writes now instead of waiting for their timers."""
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            task = self._pending.get(k)
            if task is None:
                continue
            task.cancel()
            await self._fire(k)
        # Let any writes already in flight finish too
        in_flight = [t for t in self._firing.values() if t is not asyncio.current_task()]
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

    async def close(self) -> None:
        """
        Cancel every outstanding timer.

        Called when the owning session or view ends, so nothing is written
        against an entity the user has navigated away from.
        """
        self._closed = True
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        self._pending.clear()
        self._writes.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Autosave closed, %d pending write(s) cancelled", len(tasks))
