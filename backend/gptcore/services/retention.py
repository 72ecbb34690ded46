from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Callable, Optional

from ..core.celery_app import celery_app
from ..core.config import Settings, get_settings
from ..schemas.jobs import Job
from .job_store import JobStore, build_job_store

logger = logging.getLogger(__name__)


def sweep_expired_jobs(
    store: JobStore,
    max_age: timedelta,
    now: Optional[datetime] = None,
    terminal_only: bool = False,
) -> int:
    """
    Delete every job whose start_time is older than `max_age`.

    By default the age is the only criterion, so a job still in progress is
    removed too and a later poll for it reports not found. With
    `terminal_only=True` only completed/failed/cancelled jobs are swept.

    The age check is re-evaluated inside the store's atomic `delete_if`, so a
    concurrent poll either lands before the delete or sees the job gone.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - max_age

    def _expired(job: Job) -> bool:
        if job.start_time >= cutoff:
            return False
        return job.is_terminal or not terminal_only

    deleted = 0
    for job in store.list():
        if not _expired(job):
            continue
        if store.delete_if(job.id, _expired):
            deleted += 1
            if not job.is_terminal:
                logger.warning(
                    "Deleted expired job that was still %s", job.status.value,
                    extra={"job_id": job.id, "step": "retention", "status": job.status.value},
                )
            else:
                logger.info(
                    "Cleaned up old job",
                    extra={"job_id": job.id, "step": "retention", "status": job.status.value},
                )

    if deleted:
        logger.info(
            "Deleted %d expired research jobs", deleted,
            extra={"step": "retention"},
        )
    else:
        logger.info(
            "No expired research jobs found for cleanup",
            extra={"step": "retention"},
        )
    return deleted


class CleanupScheduler:
    """
    Background thread sweeping a store on a fixed period.

    Started and stopped by the API lifespan; `run_once` performs a single
    sweep synchronously.
    """

    def __init__(
        self,
        store: JobStore,
        interval_seconds: float,
        max_age: timedelta,
        terminal_only: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._interval = interval_seconds
        self._max_age = max_age
        self._terminal_only = terminal_only
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, store: JobStore, settings: Settings) -> "CleanupScheduler":
        return cls(
            store,
            interval_seconds=settings.JOB_CLEANUP_INTERVAL_SECONDS,
            max_age=timedelta(hours=settings.JOB_MAX_AGE_HOURS),
            terminal_only=settings.JOB_CLEANUP_TERMINAL_ONLY,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        return sweep_expired_jobs(
            self._store,
            self._max_age,
            now=self._clock(),
            terminal_only=self._terminal_only,
        )

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Error during job cleanup sweep", extra={"step": "retention"})

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="job-cleanup", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


@celery_app.task(name="gptcore.services.retention.cleanup_expired_jobs")
def cleanup_expired_jobs() -> int:
    """
    Periodic task for deployments sharing a Redis job registry.

    The in-memory registry lives inside each API process and is swept by
    that process's CleanupScheduler instead.
    """
    settings = get_settings()
    if settings.JOB_STORE_BACKEND != "redis":
        logger.info(
            "Skipping Celery cleanup; job store backend is %s", settings.JOB_STORE_BACKEND,
            extra={"step": "retention"},
        )
        return 0

    try:
        return sweep_expired_jobs(
            build_job_store(settings),
            timedelta(hours=settings.JOB_MAX_AGE_HOURS),
            terminal_only=settings.JOB_CLEANUP_TERMINAL_ONLY,
        )
    except Exception:
        logger.exception(
            "Error during cleanup_expired_jobs",
            extra={"step": "retention"},
        )
        raise
