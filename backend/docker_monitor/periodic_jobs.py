"""
Periodic Jobs Module for Refit
Runs the update check (and optional apply) at a fixed interval
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from config.settings import UpdaterConfig
from updates.applier import UpdateApplier
from updates.auto_updater import AutoUpdater
from updates.batch_checker import BatchUpdateChecker

logger = logging.getLogger(__name__)


class UpdateJobsManager:
    """Schedules check → cleanup → (optional) apply runs"""

    def __init__(
        self,
        checker: BatchUpdateChecker,
        applier: UpdateApplier,
        auto_updater: Optional[AutoUpdater] = None,
        config: Optional[UpdaterConfig] = None,
    ):
        self.checker = checker
        self.applier = applier
        self.auto_updater = auto_updater
        self.config = config or UpdaterConfig()
        self._last_update_check: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def last_update_check(self) -> Optional[datetime]:
        return self._last_update_check

    async def run_forever(self):
        """
        Background loop. Errors are logged and retried after error_retry_seconds.
        """
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self.config.check_interval_seconds)
            except asyncio.CancelledError:
                logger.info("Update scheduler stopped")
                raise
            except Exception as e:
                logger.error(f"Error in update scheduler: {e}", exc_info=True)
                await asyncio.sleep(self.config.error_retry_seconds)

    async def run_once(self) -> dict:
        """
        One scheduled cycle.

        Raises:
            DaemonError: image list failed
        """
        async with self._lock:
            stats = await self._check()

            deleted = await self.checker.record_store.cleanup_orphaned_records()
            stats['orphans_deleted'] = deleted

            if self.config.auto_apply:
                result = await self.applier.apply_pending(dry_run=False)
                stats['apply'] = {
                    'checked': result.checked,
                    'updated': result.updated,
                    'skipped': result.skipped,
                    'failed': result.failed,
                    'error': result.error,
                }
                logger.info(f"Auto-apply complete: {stats['apply']}")

            if self.auto_updater is not None:
                containers = await self.auto_updater.check_and_update_containers()
                stacks = await self.auto_updater.check_and_update_stacks()
                stats['auto_update'] = {
                    'containers_updated': containers.updated,
                    'stacks_updated': stacks.updated,
                }

            return stats

    async def check_now(self) -> dict:
        """
        Manually trigger an immediate update check (called from API endpoint).

        Returns:
            Dict with stats (checked, updates_found, errors)
        """
        logger.info("Manual update check triggered")
        try:
            async with self._lock:
                return await self._check()
        except Exception as e:
            logger.error(f"Error in manual update check: {e}", exc_info=True)
            return {"checked": 0, "updates_found": 0, "errors": 1}

    async def _check(self) -> dict:
        results = await self.checker.check_all_images()
        stats = {
            'checked': len(results),
            'updates_found': sum(1 for r in results.values() if r.has_update),
            'errors': sum(1 for r in results.values() if r.error),
        }
        self._last_update_check = datetime.now(timezone.utc)
        logger.info(
            f"Update check complete: checked {stats['checked']} images, "
            f"found {stats['updates_found']} updates available, {stats['errors']} errors"
        )
        return stats
