"""Poll loops with explicit start/stop handles."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PollLoop:
    """
    Runs an async tick immediately and then every ``interval`` seconds.

    The activation condition is checked before every tick; when it no longer
    holds the loop stops itself. ``stop()`` lets an in-flight tick finish but
    no further tick starts. Tick exceptions are logged and the loop goes on.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
        condition: Optional[Callable[[], bool]] = None
    ):
        self.name = name
        self.interval = interval
        self.tick = tick
        self.condition = condition or (lambda: True)
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and self._stop_event is not None
            and not self._stop_event.is_set()
        )

    def start(self) -> bool:
        """
        Start the loop on the running event loop.

        Returns:
            False if the loop was already running
        """
        if self.running:
            return False

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name=f"poll-{self.name}")
        logger.info(f"Poll loop {self.name} started (every {self.interval}s)")
        return True

    def stop(self) -> None:
        """Stop the loop. An in-flight tick completes; no further tick starts."""
        if self._stop_event is not None and not self._stop_event.is_set():
            self._stop_event.set()
            logger.info(f"Poll loop {self.name} stopped")

    async def aclose(self) -> None:
        """Stop the loop and cancel its task, including an in-flight tick."""
        self.stop()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            if not self.condition():
                logger.info(f"Poll loop {self.name} condition no longer holds")
                stop_event.set()
                break

            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Poll loop {self.name} tick failed: {e}", exc_info=True)
            self.tick_count += 1

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
