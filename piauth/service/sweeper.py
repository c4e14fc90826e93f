"""Background task that evicts expired revocation entries and stale sessions.

Only the in-process stores need it; Redis expires keys on its own, so stores
without a ``sweep_expired`` method are skipped.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Iterable, List, Optional

from piauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300
MAX_BACKOFF_SECONDS = 300


class RevocationSweeper:
    def __init__(
        self,
        stores: Iterable[Any],
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.stores: List[Any] = [s for s in stores if hasattr(s, "sweep_expired")]
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("revocation_sweeper_already_running")
            return
        if not self.stores:
            logger.info("revocation_sweeper_not_needed")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("revocation_sweeper_started", interval=self.interval, stores=len(self.stores))

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("revocation_sweeper_stopped")

    async def sweep_once(self) -> int:
        removed = 0
        for store in self.stores:
            result = store.sweep_expired()
            if inspect.isawaitable(result):
                result = await result
            removed += int(result or 0)
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                removed = await self.sweep_once()
                if removed:
                    logger.info("revocation_sweep_completed", removed=removed)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "revocation_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "revocation_sweep_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)


__all__ = ["RevocationSweeper"]
