"""Registry of detached scan tasks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class ScanSupervisor:
    """Keeps a strong reference to every running scan task, keyed by scan id.

    Tasks are removed when they finish. ``shutdown`` cancels whatever is
    still running; an interrupted scan keeps its last checkpoint on the job
    row and is picked up again by orphan reclamation on the next start.
    """

    def __init__(self) -> None:
        self._tasks: dict[int, asyncio.Task[None]] = {}

    def spawn(self, scan_id: int, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"scan-{scan_id}")
        self._tasks[scan_id] = task
        task.add_done_callback(lambda t: self._forget(scan_id, t))
        logger.debug("scan task spawned", extra={"scan_id": scan_id})
        return task

    def _forget(self, scan_id: int, task: asyncio.Task[None]) -> None:
        if self._tasks.get(scan_id) is task:
            del self._tasks[scan_id]

    def is_running(self, scan_id: int) -> bool:
        task = self._tasks.get(scan_id)
        return task is not None and not task.done()

    async def join(self, scan_id: int) -> None:
        """Wait for the scan's task, if any, without propagating its outcome."""
        task = self._tasks.get(scan_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("cancelling scan tasks", extra={"count": len(tasks)})
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
