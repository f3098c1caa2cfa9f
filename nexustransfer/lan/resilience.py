"""Background-task helpers shared by the LAN components.

- ``supervised_task`` — ``asyncio.create_task`` whose crash is logged, not lost
- ``cancel_task``     — cancel and wait, tolerating ``None`` and finished tasks
- ``Watchdog``        — periodic callback that stops promptly on request
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


def _report_crash(task: asyncio.Task) -> None:
    # Cancellation is how long-lived tasks are shut down.
    if task.cancelled() or task.exception() is None:
        return
    logger.error("[Lan/Tasks] {} crashed: {!r}", task.get_name(), task.exception())


def supervised_task(coro: Awaitable[Any], *, name: str = "") -> asyncio.Task:
    """Schedule *coro*; an exception it raises is logged under the task name."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    task.add_done_callback(_report_crash)
    return task


async def cancel_task(task: asyncio.Task | None) -> None:
    """Cancel *task* and wait until it has finished unwinding."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class Watchdog:
    """Call *callback* every *interval* seconds until ``stop``.

    *callback* may return an awaitable.  A failing tick is logged and the
    next one still runs.  ``stop`` wakes the loop immediately instead of
    waiting out the current interval.
    """

    def __init__(self, name: str, callback: Callable[[], Any], interval: float) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        """Run the callback once, logging instead of raising."""
        try:
            result = self._callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.warning("[Lan/Watchdog] {} tick failed: {}", self.name, exc)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.tick()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = supervised_task(self._run(), name=f"watchdog-{self.name}")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=self.interval + 1.0)
            except asyncio.TimeoutError:
                await cancel_task(self._task)
        self._task = None
