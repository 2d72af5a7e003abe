"""Background polling loops for the bridge.

Two loops run for the lifetime of the service:
    records        — reconciliation cycle, every 5 minutes
    pump_settings  — profile synchronisation, every 12 hours

A loop awaits its task, then sleeps for the interval.  Failures are logged
and the next tick is the retry; there is no separate backoff.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger("bridge.sync.scheduler")


class PollingLoop:
    """Run an async task repeatedly on a fixed interval.

    Usage::

        loop = PollingLoop("records", 300, service.run_cycle)
        loop.start()
        ...
        await loop.stop()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        task: Callable[[], Awaitable[Any]],
    ) -> None:
        """Initialize the loop.

        Args:
            name:             Label used in log messages.
            interval_seconds: Pause between the end of one run and the next.
            task:             Zero-argument coroutine function to run.
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self._task = task
        self._stop_event = asyncio.Event()
        self._runner: asyncio.Task | None = None
        self.iterations = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def run_once(self) -> bool:
        """Run the task once; return False if it raised."""
        try:
            await self._task()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception(
                "Polling loop %r: run failed; retrying in %ss", self.name, self.interval_seconds
            )
            return False
        finally:
            self.iterations += 1
        return True

    async def run(self) -> None:
        """Loop until ``stop()`` is called."""
        logger.info("Polling loop %r started (every %ss)", self.name, self.interval_seconds)
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Polling loop %r stopped after %d runs", self.name, self.iterations)

    def start(self) -> asyncio.Task:
        """Schedule ``run()`` on the running event loop."""
        if self.is_running:
            raise RuntimeError(f"Polling loop {self.name!r} is already running")
        self._stop_event.clear()
        self._runner = asyncio.create_task(self.run(), name=f"polling-{self.name}")
        return self._runner

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight run complete."""
        self._stop_event.set()
        if self._runner is not None:
            await self._runner
            self._runner = None
