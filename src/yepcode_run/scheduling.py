import asyncio
from typing import Callable, Protocol


class Scheduler(Protocol):
    """Clock and delayed-callback capability used to drive execution polling."""

    def time_millis(self) -> float:
        """Current monotonic time in milliseconds."""
        ...

    def call_later(self, delay_millis: float, callback: Callable[[], None]) -> None:
        """
        Run `callback` once, on the event loop, after `delay_millis`.

        The callback is a plain function; it is responsible for spawning any
        coroutine work it needs.
        """
        ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def time_millis(self) -> float:
        return asyncio.get_running_loop().time() * 1000.0

    def call_later(self, delay_millis: float, callback: Callable[[], None]) -> None:
        asyncio.get_running_loop().call_later(delay_millis / 1000.0, callback)
