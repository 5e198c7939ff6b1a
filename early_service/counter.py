# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Counter state and the periodic ticker that advances it.

Both live on the event-loop thread.  Every mutation happens inside a single
callback that runs to completion, so the counter needs no lock as long as it
is never touched from another thread.
"""

from __future__ import annotations

import asyncio
import contextlib

from early_service._common import DEFAULT_TIMER_DELAY_MS, _ticker_logger

__all__ = ["Counter", "Ticker"]


class Counter:
    """A single mutable signed integer shared by the ticker and all connections."""

    __slots__ = ("value",)

    def __init__(self, value: int = 0) -> None:
        """Initialize with a starting value."""
        self.value = value

    def increment(self) -> int:
        """Add one and return the new value."""
        self.value += 1
        return self.value

    def replace(self, value: int) -> int:
        """Overwrite the value and return the previous one."""
        previous = self.value
        self.value = value
        return previous

    def __repr__(self) -> str:
        return f"Counter({self.value})"


class Ticker:
    """Increment a :class:`Counter` on a fixed interval and log each new value.

    A non-positive interval disables ticking entirely.
    """

    __slots__ = ("_counter", "_interval_ms", "_task")

    def __init__(self, counter: Counter, interval_ms: int = DEFAULT_TIMER_DELAY_MS) -> None:
        """Initialize with the counter to advance and the interval in milliseconds."""
        self._counter = counter
        self._interval_ms = interval_ms
        self._task: asyncio.Task[None] | None = None

    @property
    def interval_ms(self) -> int:
        """Tick interval in milliseconds."""
        return self._interval_ms

    @property
    def running(self) -> bool:
        """Whether the ticker task is active."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule ticking on the running event loop."""
        if self._task is not None:
            raise RuntimeError("Ticker already started")
        if self._interval_ms <= 0:
            _ticker_logger.debug("Ticker disabled (interval_ms=%d)", self._interval_ms)
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="early-service-ticker")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._interval_ms / 1000
        deadline = loop.time()
        while True:
            # Schedule against a fixed deadline so slow callbacks do not accumulate drift.
            deadline += interval
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            _ticker_logger.info("%d", self._counter.increment(), extra={"counter": self._counter.value})

    async def cancel(self) -> None:
        """Stop ticking and wait for the task to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
