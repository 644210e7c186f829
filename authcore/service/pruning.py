"""Periodic removal of expired and deactivated refresh sessions.

Rotation and logout only deactivate rows; this worker deletes them (and the
ones that simply ran out) so the session table stays proportional to the
number of live devices.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from authcore.logging import get_logger
from authcore.service.sessions import SessionManager

logger = get_logger(__name__)

DEFAULT_PRUNE_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 6 * 60 * 60


class SessionPruner:
    """Background asyncio task calling :meth:`SessionManager.prune_expired`."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval: int = DEFAULT_PRUNE_INTERVAL_SECONDS,
    ) -> None:
        if interval <= 0:
            raise ValueError("prune interval must be positive")
        self.sessions = sessions
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.total_pruned = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_pruner_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_pruner_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_pruner_stopped", total_pruned=self.total_pruned)

    async def run_once(self) -> int:
        # Store calls block; keep them off the event loop
        removed = await asyncio.to_thread(self.sessions.prune_expired)
        self.total_pruned += removed
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_pruner_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "session_pruner_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
