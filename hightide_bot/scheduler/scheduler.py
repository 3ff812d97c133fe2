from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

TaskAction = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """Runs ``action`` every ``interval`` seconds on the current event loop.

    A failing run is logged and the next tick proceeds as usual. ``stop()``
    interrupts the sleep between runs but lets an in-flight run finish.
    """

    def __init__(
        self,
        name: str,
        action: TaskAction,
        interval: float,
        *,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._action = action
        self._interval = interval
        self._run_immediately = run_immediately
        self._running = False
        self._stop_requested = asyncio.Event()
        self._main_task: Optional[asyncio.Task[None]] = None
        self.runs = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_requested.clear()
        self._main_task = asyncio.create_task(self._run(), name=f"periodic:{self._name}")
        logger.info("periodic_task_started", task=self._name, interval=self._interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_requested.set()
        if self._main_task:
            await asyncio.gather(self._main_task, return_exceptions=True)
            self._main_task = None
        logger.info("periodic_task_stopped", task=self._name, runs=self.runs)

    async def run_once(self) -> None:
        try:
            await self._action()
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("periodic_task_failed", task=self._name, error=str(exc))
        finally:
            self.runs += 1

    async def _run(self) -> None:
        delay_first = not self._run_immediately
        while self._running:
            if delay_first and await self._sleep():
                break
            delay_first = True
            await self.run_once()

    async def _sleep(self) -> bool:
        """Wait one interval; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            return False
        return True
