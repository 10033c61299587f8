"""
Fixed-interval asyncio ticker used by the reconciliation loops.

The loop sleeps on a stop event rather than ``asyncio.sleep`` so ``stop()``
takes effect at once while idle. A callback that is already running is never
cancelled by ``stop()``; ``drain()`` waits for it.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class PeriodicTicker:
    """Calls an async callback every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.run_immediately = run_immediately
        self.next_run_at: Optional[datetime] = None

        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        # Loops that were stopped but may still be finishing a callback
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and self._stop_event is not None
            and not self._stop_event.is_set()
        )

    def start(self) -> bool:
        """Start the loop. Returns False if it is already running.

        Must be called with a running event loop.
        """
        if self.is_running:
            return False
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(self._stop_event), name=f"ticker:{self.name}")
        self._tasks.add(self._task)
        self._task.add_done_callback(self._tasks.discard)
        logger.info(f"Ticker '{self.name}' started (every {self.interval_seconds:g}s)")
        return True

    def stop(self) -> bool:
        """Stop scheduling new ticks. Returns False if it was not running."""
        if not self.is_running:
            return False
        self._stop_event.set()
        self.next_run_at = None
        logger.info(f"Ticker '{self.name}' stopped")
        return True

    def reconfigure(self, interval_seconds: float) -> None:
        """Change the interval used from the next loop start onwards."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for stopped loops to finish their current callback.

        Loops still busy after ``timeout`` seconds are cancelled.

        Returns:
            True if every loop finished on its own.
        """
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return True
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            logger.warning(f"Ticker '{self.name}' did not finish in {timeout}s, cancelling")
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
        return not still_pending

    async def _run(self, stop_event: asyncio.Event) -> None:
        if self.run_immediately:
            await self._invoke()

        while not stop_event.is_set():
            interval = self.interval_seconds
            self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=interval)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            await self._invoke()

    async def _invoke(self) -> None:
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"Ticker '{self.name}' callback failed: {e}", exc_info=True)
