"""Tick scheduling capability for the cooperative simulation loop."""

import asyncio
from collections.abc import Callable
from typing import Protocol


class TickHandle(Protocol):
    def cancel(self) -> None: ...


class Ticker(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TickHandle: ...


class LoopTicker:
    """Schedules ticks as timer callbacks on the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)
