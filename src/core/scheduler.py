"""APScheduler-based scheduler for backups, expiry and DNS sync."""
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.config.settings import BackupSettings
from src.core.state_machine import RetentionType

logger = logging.getLogger(__name__)

DAILY_BACKUP_JOB = "backup-daily"
WEEKLY_BACKUP_JOB = "backup-weekly"
MONTHLY_BACKUP_JOB = "backup-monthly"
CLEANUP_JOB = "backup-cleanup"
DNS_SYNC_JOB = "dns-sync"


class MaintenanceScheduler:
    """Manages the recurring control plane jobs using APScheduler.

    All times are UTC. A job still running when its next fire time arrives
    is not started twice.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={"coalesce": True, "max_instances": 1},
        )

    def configure(
        self,
        backups,
        dns_sync,
        config: BackupSettings,
    ) -> None:
        """Register every job against the given backup orchestrator and DNS job."""
        self.add_job(
            DAILY_BACKUP_JOB,
            CronTrigger(hour=config.daily_hour, minute=0),
            backups.run_scheduled_backups,
            RetentionType.DAILY,
        )
        self.add_job(
            WEEKLY_BACKUP_JOB,
            CronTrigger(day_of_week="sun", hour=config.weekly_hour, minute=0),
            backups.run_scheduled_backups,
            RetentionType.WEEKLY,
        )
        self.add_job(
            MONTHLY_BACKUP_JOB,
            CronTrigger(day=1, hour=config.monthly_hour, minute=0),
            backups.run_scheduled_backups,
            RetentionType.MONTHLY,
        )
        self.add_job(
            CLEANUP_JOB,
            CronTrigger(hour=config.cleanup_hour, minute=0),
            backups.cleanup_expired_backups,
        )
        self.add_job(
            DNS_SYNC_JOB,
            IntervalTrigger(minutes=config.dns_sync_interval_minutes),
            dns_sync.run,
        )

    def add_job(self, job_id: str, trigger, func: Callable[..., Awaitable], *args) -> Optional[datetime]:
        """Add or replace a job. Returns its next run time when the scheduler is running."""
        job = self.scheduler.add_job(
            self._execute_job,
            trigger=trigger,
            id=job_id,
            args=[job_id, func, *args],
            replace_existing=True,
        )
        logger.info(f"Scheduled job {job_id} ({trigger})")
        return getattr(job, "next_run_time", None)

    async def _execute_job(self, job_id: str, func: Callable[..., Awaitable], *args) -> None:
        """Run a job, keeping its failure out of the scheduler."""
        logger.info(f"Scheduler triggering job {job_id}")
        try:
            await func(*args)
        except Exception:
            logger.exception(f"Scheduled job {job_id} failed")

    def remove_job(self, job_id: str) -> None:
        """Remove job from scheduler."""
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Removed job {job_id} from scheduler")
        except JobLookupError:
            pass  # Job doesn't exist

    def job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def get_next_run_time(self, job_id: str) -> Optional[datetime]:
        """Get next scheduled run time for a job."""
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None

    def start(self) -> None:
        """Start scheduler."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self.scheduler.running


# Global instance
maintenance_scheduler = MaintenanceScheduler()
