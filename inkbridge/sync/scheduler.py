"""Automatic sync scheduler: drains the upload queue on an interval."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from inkbridge.store import PageStatusStore
from inkbridge.sync.queue import QueueResult, UploadQueueProcessor

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs :meth:`UploadQueueProcessor.process_queue` in the background.

    :meth:`stop` asks the current pass to stop between pages and waits
    for the page in flight to finish.
    """

    def __init__(
        self,
        processor: UploadQueueProcessor,
        interval_minutes: int = 30,
        store: PageStatusStore | None = None,
        cache_retention_days: int = 0,
    ) -> None:
        self.processor = processor
        self.interval = interval_minutes
        self.store = store or processor.store
        self.cache_retention_days = cache_retention_days
        self._running = False
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._last_sync: str | None = None

    async def start(self) -> None:
        """Start the background sync loop."""
        if self._running:
            logger.warning("Sync scheduler is already running")
            return

        self._running = True
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("Sync scheduler started (interval=%d min)", self.interval)

    async def stop(self) -> None:
        """Stop the loop; the page being uploaded completes first."""
        self._running = False
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Sync scheduler stopped")

    async def run_once(self) -> QueueResult:
        """Run a single sync cycle, then apply cache retention."""
        result = await self.processor.process_queue(cancel=self._stop if self._running else None)
        if not result.skipped:
            self._last_sync = datetime.now(timezone.utc).isoformat()
        if self.cache_retention_days > 0:
            self.store.cleanup_old_cache(self.cache_retention_days)
        return result

    @property
    def running(self) -> bool:
        """Whether the sync loop is currently active."""
        return self._running

    @property
    def last_sync(self) -> str | None:
        """ISO timestamp of the last completed sync cycle, or None."""
        return self._last_sync

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _loop(self) -> None:
        while self._running:
            try:
                result = await self.run_once()
                if result.skipped:
                    logger.info("Sync cycle skipped: a pass is already running")
                else:
                    logger.info(
                        "Sync cycle complete: %d uploaded, %d failed",
                        result.uploaded,
                        result.failed,
                    )
            except Exception as exc:
                logger.error("Sync cycle failed: %s", exc)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval * 60)
            except asyncio.TimeoutError:
                pass
