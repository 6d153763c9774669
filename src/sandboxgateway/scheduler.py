from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import R2Credentials
from .gateway.sync import SyncEngine, SyncResult


logger = logging.getLogger(__name__)


class BackupScheduler:
    """Periodic backup sync, independent of request traffic."""

    def __init__(self, sync_engine: SyncEngine, *, credentials: R2Credentials, interval_s: float):
        self._sync_engine = sync_engine
        self._credentials = credentials
        self._interval_s = float(interval_s)
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def enabled(self) -> bool:
        return self._interval_s > 0 and self._credentials.configured

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.enabled:
            logger.info("BackupScheduler disabled (interval=%ss, storage configured=%s)", self._interval_s, self._credentials.configured)
            return
        if self.running:
            return
        self._task = asyncio.ensure_future(self._loop())
        logger.info("BackupScheduler started (interval=%ss)", self._interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self) -> SyncResult:
        logger.info("[cron] Starting backup sync to durable storage...")
        result = await self._sync_engine.sync(self._credentials)
        if result.success:
            logger.info("[cron] Backup sync completed successfully at %s", result.last_sync)
        else:
            logger.error("[cron] Backup sync failed: %s %s", result.error, result.details or "")
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("BackupScheduler sync raised")
