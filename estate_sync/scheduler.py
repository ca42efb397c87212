"""Orchestration of sync passes with APScheduler.

The orchestrator owns two cron jobs (a daily full pass and a periodic
re-validation sweep) plus a synchronous manual trigger. At most one pass runs
at a time: an in-process lock guards the orchestrator instance and, when
enabled, a lease row in storage guards against other processes.

Example usage:
    from estate_sync.scheduler import SyncOrchestrator

    orchestrator = SyncOrchestrator()
    orchestrator.start()  # Starts background scheduler

    # Or run a pass right now
    summary = orchestrator.trigger_manual_sync()
"""

import logging
import os
import socket
import threading
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from estate_sync.config import settings
from estate_sync.db.lease import acquire_lease, release_lease
from estate_sync.db.models import SyncRun, utcnow
from estate_sync.db.session import get_session_factory
from estate_sync.errors import ConcurrentRunError, PersistenceError
from estate_sync.feed.base import ListingSource
from estate_sync.feed.client import FeedClient
from estate_sync.sync import SyncPipeline, SyncSummary

logger = logging.getLogger(__name__)

FULL_PASS_JOB_ID = "estate_full_pass"
SWEEP_JOB_ID = "estate_sweep"


class SchedulerConfig:
    """Scheduler and sync options from config.yaml, falling back to settings."""

    def __init__(self, config_path: Path = Path("config.yaml")):
        self.config_path = config_path
        self._config = self._load_config()

    def _load_config(self) -> dict:
        if not self.config_path.exists():
            logger.warning(f"Config file {self.config_path} not found, using defaults")
            return {}

        with open(self.config_path) as f:
            return yaml.safe_load(f) or {}

    @property
    def _sync(self) -> dict:
        return self._config.get("sync", {}) or {}

    @property
    def _scheduling(self) -> dict:
        return self._config.get("scheduling", {}) or {}

    @property
    def cities(self) -> List[str]:
        """Regions to import and keep."""
        return self._sync.get("cities", settings.allowed_city_list)

    @property
    def rate_limit(self) -> float:
        return self._sync.get("rate_limit", settings.rate_limit)

    @property
    def resync_mode(self) -> str:
        return self._sync.get("resync_mode", settings.resync_mode)

    @property
    def pass_budget_seconds(self) -> Optional[float]:
        return self._sync.get("pass_budget_seconds", settings.pass_budget_seconds)

    @property
    def use_storage_lease(self) -> bool:
        return self._sync.get("use_storage_lease", settings.use_storage_lease)

    @property
    def schedule_enabled(self) -> bool:
        return self._scheduling.get("enabled", False) or settings.schedule_enabled

    @property
    def cron_expression(self) -> str:
        return self._scheduling.get("cron", settings.schedule_cron)

    @property
    def sweep_cron_expression(self) -> str:
        return self._scheduling.get("sweep_cron", settings.sweep_cron)

    @property
    def timezone(self) -> str:
        return self._scheduling.get("timezone", settings.schedule_timezone)


def cron_trigger(expression: str, timezone: str) -> CronTrigger:
    """Build a CronTrigger from a five-field cron expression."""
    cron_parts = expression.split()
    if len(cron_parts) != 5:
        raise ValueError(
            f"Invalid cron expression: {expression}. "
            "Expected format: 'minute hour day month day_of_week'"
        )

    minute, hour, day, month, day_of_week = cron_parts
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=timezone,
    )


class SyncOrchestrator:
    """Single-flight runner for sync passes, scheduled or manual.

    A trigger that arrives while a pass is running is not queued: scheduled
    jobs log and return, the manual trigger raises ``ConcurrentRunError``.

    Example:
        >>> orchestrator = SyncOrchestrator()
        >>> orchestrator.start()
        >>> orchestrator.get_status()["is_running"]
        False
        >>> orchestrator.shutdown()
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        session_factory: Optional[sessionmaker] = None,
        source_factory: Optional[Callable[[], ListingSource]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            config_path: Path to config.yaml (uses default if None)
            session_factory: Session factory for each pass (default engine if None)
            source_factory: Builds the feed source for each pass (FeedClient if None)
            clock: Monotonic clock used for the per-pass budget
        """
        self.config = SchedulerConfig(config_path or Path("config.yaml"))
        self._session_factory = session_factory
        self._source_factory = source_factory or self._default_source
        self._clock = clock

        self.scheduler = BackgroundScheduler(timezone=self.config.timezone)
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.last_run: Optional[SyncSummary] = None

    def _default_source(self) -> ListingSource:
        return FeedClient(rate_limit_seconds=self.config.rate_limit)

    def _new_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> None:
        """Ask the running pass to stop at the next item boundary."""
        if self.is_running:
            logger.info("Cancellation requested for running sync pass")
            self._cancel.set()

    def _stop_check(self) -> Callable[[], bool]:
        budget = self.config.pass_budget_seconds
        deadline = self._clock() + budget if budget else None

        def should_stop() -> bool:
            if self._cancel.is_set():
                return True
            if deadline is not None and self._clock() >= deadline:
                logger.warning(f"Sync pass exceeded its budget of {budget}s")
                return True
            return False

        return should_stop

    def _execute(
        self, kind: str, work: Callable[[SyncPipeline], SyncSummary], raise_if_busy: bool
    ) -> Optional[SyncSummary]:
        if not self._lock.acquire(blocking=False):
            logger.warning(f"Sync pass ({kind}) requested while another is running, skipping")
            if raise_if_busy:
                raise ConcurrentRunError()
            return None

        session = None
        leased = False
        try:
            self._cancel.clear()
            session = self._new_session()

            if self.config.use_storage_lease:
                ttl = timedelta(seconds=settings.lease_ttl_seconds)
                leased = acquire_lease(session, self._holder, ttl)
                if not leased:
                    logger.warning(f"Sync pass ({kind}) skipped: lease held by another process")
                    if raise_if_busy:
                        raise ConcurrentRunError()
                    return None

            return self._run_pass(session, kind, work)
        except (SQLAlchemyError, PersistenceError) as e:
            logger.error(f"Sync pass ({kind}) aborted by storage error: {e}")
            if session is not None:
                session.rollback()
            summary = SyncSummary(kind=kind, finished_at=utcnow())
            summary.errors.append(f"Storage error: {e}")
            self.last_run = summary
            return summary
        finally:
            if session is not None:
                if leased:
                    try:
                        release_lease(session, self._holder)
                    except PersistenceError as e:
                        logger.error(f"Failed to release sync lease: {e}")
                session.close()
            self._lock.release()

    def _run_pass(
        self, session: Session, kind: str, work: Callable[[SyncPipeline], SyncSummary]
    ) -> SyncSummary:
        run = SyncRun(run_id=uuid.uuid4().hex, kind=kind, started_at=utcnow())
        session.add(run)
        session.commit()
        logger.info(f"Sync run {run.run_id} ({kind}) started")

        source = None
        try:
            source = self._source_factory()
            pipeline = SyncPipeline(
                session,
                source,
                resync_mode=self.config.resync_mode,
                allowed_cities=self.config.cities,
                should_stop=self._stop_check(),
            )
            summary = work(pipeline)
            summary.kind = kind
        except Exception as e:
            logger.exception(f"Sync run {run.run_id} failed with unexpected error")
            session.rollback()
            summary = SyncSummary(kind=kind, started_at=run.started_at)
            summary.errors.append(f"Unexpected error: {e}")
        finally:
            close = getattr(source, "close", None)
            if callable(close):
                close()

        summary.finished_at = summary.finished_at or utcnow()
        run.finished_at = summary.finished_at
        run.imported = summary.imported
        run.updated = summary.updated
        run.removed = summary.removed
        run.analytics_computed = summary.analytics_computed
        run.errors = list(summary.errors)
        session.commit()

        self.last_run = summary
        logger.info(
            f"Sync run {run.run_id} ({kind}) completed: {summary.imported} imported, "
            f"{summary.updated} updated, {summary.removed} removed, {len(summary.errors)} errors"
        )
        return summary

    def run_full_pass(self) -> Optional[SyncSummary]:
        """Scheduled full pass. Returns None if another pass is running."""
        return self._execute("full", lambda p: p.run_full_pass("full"), raise_if_busy=False)

    def run_sweep(self) -> Optional[SyncSummary]:
        """Scheduled re-validation sweep. Returns None if another pass is running."""
        return self._execute("sweep", lambda p: p.run_sweep_pass(), raise_if_busy=False)

    def trigger_manual_sync(self) -> SyncSummary:
        """Run a full pass now, synchronously.

        Raises:
            ConcurrentRunError: If a pass is already running
        """
        logger.info("Running full sync pass immediately (manual trigger)")
        return self._execute("manual", lambda p: p.run_full_pass("manual"), raise_if_busy=True)

    def add_jobs(self) -> None:
        """Register the full-pass and sweep jobs with their cron triggers."""
        self.scheduler.add_job(
            func=self.run_full_pass,
            trigger=cron_trigger(self.config.cron_expression, self.config.timezone),
            id=FULL_PASS_JOB_ID,
            name="Estate full sync pass",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            func=self.run_sweep,
            trigger=cron_trigger(self.config.sweep_cron_expression, self.config.timezone),
            id=SWEEP_JOB_ID,
            name="Estate re-validation sweep",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            f"Scheduled full pass with cron: {self.config.cron_expression}, "
            f"sweep with cron: {self.config.sweep_cron_expression} "
            f"(timezone: {self.config.timezone})"
        )

    def start(self) -> None:
        """Start the background scheduler if scheduling is enabled."""
        if not self.config.schedule_enabled:
            logger.warning("Scheduling is disabled in configuration")
            return

        self.add_jobs()
        self.scheduler.start()
        logger.info("Scheduler started successfully")

        next_run = self._next_run(FULL_PASS_JOB_ID)
        if next_run:
            logger.info(f"Next scheduled full pass: {next_run.isoformat()}")

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Shutting down scheduler...")
        self.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler shutdown complete")

    def _next_run(self, job_id: str):
        job = self.scheduler.get_job(job_id)
        return getattr(job, "next_run_time", None) if job else None

    def get_status(self) -> dict:
        """Running flag, next run times and the last pass summary."""
        next_full = self._next_run(FULL_PASS_JOB_ID)
        next_sweep = self._next_run(SWEEP_JOB_ID)
        return {
            "is_running": self.is_running,
            "next_scheduled_run": next_full.isoformat() if next_full else None,
            "next_sweep_run": next_sweep.isoformat() if next_sweep else None,
            "last_run": self.last_run.to_dict() if self.last_run else None,
        }

    get_scheduler_status = get_status


def setup_logging():
    """Configure console and optional file logging from settings."""
    log_level = getattr(logging, settings.log_level.upper())
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(log_format))

    handlers = [console_handler]
    if settings.log_file:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)


def run_scheduler(config_path: Optional[Path] = None):
    """Run the scheduler in the foreground until interrupted (Ctrl+C)."""
    setup_logging()

    path = config_path or Path("config.yaml")
    logger.info("Starting estate-sync scheduler")
    logger.info(f"Configuration: {path.absolute()}")

    orchestrator = SyncOrchestrator(config_path=path)

    if not orchestrator.config.schedule_enabled:
        logger.error("Scheduling is disabled in configuration. Enable it to run scheduler.")
        logger.error("Set 'scheduling.enabled: true' in config.yaml or ESTATE_SCHEDULE_ENABLED=true")
        return

    orchestrator.start()

    try:
        logger.info("Scheduler is running. Press Ctrl+C to stop.")
        while True:
            time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        logger.info("Received shutdown signal")
        orchestrator.shutdown()


if __name__ == "__main__":
    run_scheduler()
