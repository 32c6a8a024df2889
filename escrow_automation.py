"""
Escrow Automation Module

This module handles background automation tasks for the escrow system:
- Auto-release of delivered transactions whose inspection period lapsed
- Purging audit records past the retention window

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py: For escrow operations
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from escrow_models import utcnow
from escrow_service import EscrowService

logger = logging.getLogger(__name__)

AUTO_RELEASE_BATCH_SIZE = 100


class EscrowAutomation:
    """
    Automation service for the escrow system.

    Each run processes candidates independently: one failure is logged with
    the transaction id and never aborts the rest of the batch. Overlapping
    runs are prevented by ``max_instances=1``; the orchestration service's
    reservation guard covers overlap with manual releases.
    """

    def __init__(
        self,
        service: EscrowService,
        interval_hours: int = 1,
        audit_retention_days: int = 90,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize escrow automation service.

        Args:
            service: Escrow orchestration service
            interval_hours: Hours between auto-release scans
            audit_retention_days: Age after which audit records are purged
            clock: Callable returning the current aware UTC datetime
        """
        self.service = service
        self.interval_hours = interval_hours
        self.audit_retention_days = audit_retention_days
        self.clock = clock or utcnow
        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.is_running = False

        # Statistics
        self.stats = {
            'auto_releases': 0,
            'auto_release_failures': 0,
            'audit_purged': 0,
            'last_run': {}
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        self.stats['start_time'] = self.clock()

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        # Auto-release payments
        self.scheduler.add_job(
            self.auto_release_payments,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id='auto_release_payments',
            name='Auto Release Payments',
            max_instances=1,
            misfire_grace_time=300,
            replace_existing=True
        )

        # Purge old audit records - Daily at 3 AM UTC
        self.scheduler.add_job(
            self.purge_audit_log,
            trigger=CronTrigger(hour=3, minute=0),
            id='purge_audit_log',
            name='Purge Audit Log',
            max_instances=1,
            replace_existing=True
        )

        logger.info("All automation tasks scheduled")

    async def auto_release_payments(self) -> Dict[str, int]:
        """
        Release delivered transactions whose inspection period has elapsed.

        Process:
        1. Find delivered transactions with an elapsed inspection window
        2. Force settlement through the escrow service
        3. Record per-run statistics

        Returns:
            Dict with ``released``, ``skipped`` and ``failed`` counts
        """
        logger.info("Starting auto-release payments task")
        start_time = self.clock()
        released_count = 0
        skipped_count = 0
        failed_count = 0

        try:
            candidates = await self.service.get_auto_release_candidates(AUTO_RELEASE_BATCH_SIZE)
        except Exception as e:
            logger.error(f"Auto-release candidate scan failed: {e}", exc_info=True)
            return {'released': 0, 'skipped': 0, 'failed': 0}

        logger.info(f"Found {len(candidates)} transactions eligible for auto-release")

        for transaction_id in candidates:
            try:
                result = await self.service.auto_release(transaction_id)
                if result is None:
                    skipped_count += 1
                else:
                    released_count += 1
                    logger.info(f"Auto-released payment: {transaction_id}")
            except Exception as e:
                failed_count += 1
                logger.error(f"Failed to auto-release {transaction_id}: {e}")

        # Update statistics
        self.stats['auto_releases'] += released_count
        self.stats['auto_release_failures'] += failed_count
        self.stats['last_run']['auto_release'] = self.clock()

        duration = (self.clock() - start_time).total_seconds()
        logger.info(
            f"Auto-release task completed: {released_count} released, "
            f"{skipped_count} skipped, {failed_count} failed in {duration:.2f}s"
        )
        return {'released': released_count, 'skipped': skipped_count, 'failed': failed_count}

    async def purge_audit_log(self) -> int:
        """Delete audit records older than the retention window."""
        cutoff = self.clock() - timedelta(days=self.audit_retention_days)

        try:
            purged = await self.service.store.purge_audit(cutoff)
        except Exception as e:
            logger.error(f"Audit purge task failed: {e}", exc_info=True)
            return 0

        self.stats['audit_purged'] += purged
        self.stats['last_run']['audit_purge'] = self.clock()
        logger.info(f"Purged {purged} audit records older than {cutoff:%Y-%m-%d}")
        return purged

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
            'uptime': (self.clock() - self.stats.get('start_time', self.clock())).total_seconds()
        }


# Singleton instance
_automation_instance: Optional[EscrowAutomation] = None


def get_escrow_automation(service: EscrowService, **kwargs) -> EscrowAutomation:
    """Get or create escrow automation instance."""
    global _automation_instance

    if _automation_instance is None:
        _automation_instance = EscrowAutomation(service, **kwargs)

    return _automation_instance


async def start_automation(service: EscrowService, **kwargs) -> EscrowAutomation:
    """Start escrow automation service."""
    automation = get_escrow_automation(service, **kwargs)
    await automation.start()
    return automation


async def stop_automation() -> None:
    """Stop escrow automation service."""
    global _automation_instance

    if _automation_instance:
        await _automation_instance.stop()
        _automation_instance = None
