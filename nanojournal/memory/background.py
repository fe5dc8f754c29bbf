"""Background maintenance for the pattern memory.

ExpiryMaintenance periodically deprecates event and fact patterns whose
expiry has passed, then purges chat messages compacted more than
``message_retention_days`` ago. The pattern sweep is idempotent and only
ever moves rows from active to deprecated, so it may overlap with a
compaction run. The purge never touches uncompacted messages.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from nanojournal.config.schema import BackgroundConfig
from nanojournal.memory.store import PatternStore


class ExpiryMaintenance:
    """
    Minimal periodic expiry sweep.

    Runs one sweep every ``interval_seconds``; errors are logged and the
    loop keeps going.
    """

    def __init__(self, store: PatternStore, config: BackgroundConfig):
        """
        Initialize the maintenance loop.

        Args:
            store: PatternStore to sweep
            config: Background settings (interval, enabled flag)
        """
        self.store = store
        self.config = config
        self.interval_seconds = config.interval_seconds

        self.running = False
        self._task: Optional[asyncio.Task] = None
        self.last_run: Optional[datetime] = None
        self.total_expired = 0
        self.total_purged = 0

        logger.info(f"ExpiryMaintenance initialized (interval: {self.interval_seconds}s)")

    async def start(self):
        """Start the maintenance loop."""
        if not self.config.enabled:
            logger.info("Expiry maintenance disabled")
            return
        if self.running:
            return

        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Expiry maintenance started")

    async def stop(self):
        """Stop the maintenance loop gracefully."""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry maintenance stopped")

    async def _loop(self):
        """Main maintenance loop."""
        while self.running:
            await asyncio.sleep(self.interval_seconds)

            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Expiry maintenance error: {e}")
                # Log and continue - will retry next cycle

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """
        Run a single expiry sweep and message purge.

        Returns:
            Number of patterns deprecated
        """
        now = now or datetime.now()
        expired = self.store.expire_event_patterns(now)
        purged = self.store.purge_compacted_messages(
            now - timedelta(days=self.config.message_retention_days)
        )

        self.last_run = now
        self.total_expired += expired
        self.total_purged += purged
        if expired or purged:
            logger.info(f"Maintenance deprecated {expired} patterns, purged {purged} compacted messages")
        else:
            logger.debug("Maintenance found nothing to deprecate or purge")
        return expired
