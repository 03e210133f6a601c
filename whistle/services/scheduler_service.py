"""
Whistle Core
Scheduler Service: interval jobs on a single background thread.

Architecture:
    - Job functions register themselves with ``@register_job``
    - ScheduledJob rows hold the interval config and run history
    - ``start()`` launches one daemon thread that runs due jobs every
      SCHEDULER_POLL_SECONDS; ``stop()`` signals and joins it
    - ``run_job()`` is also the manual trigger (API, CLI, tests)

A job never overlaps itself: each has a lock, and a run that finds its lock
held is recorded as ``skipped``.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable

from flask import Flask

from whistle.models import db
from whistle.models.scheduling import ScheduledJob
from whistle.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("escalation_sweep")
        def run_escalation_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence and execution.
    Jobs are executed within a Flask app context.
    """

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None
    _poll_seconds: float = 30
    _job_locks: dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        cls._poll_seconds = float(app.config.get("SCHEDULER_POLL_SECONDS", 30))
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_type="interval",
                        schedule_config=_get_default_schedule(name, cls._app.config),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Execution ────────────────────────────────────────────────────────

    @classmethod
    def _lock_for(cls, job_name: str) -> threading.Lock:
        with cls._locks_guard:
            return cls._job_locks.setdefault(job_name, threading.Lock())

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status (success, failed, skipped), duration_ms,
            result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        lock = cls._lock_for(job_name)
        if not lock.acquire(blocking=False):
            logger.info("Job %s already running, skipped", job_name, extra={"job_name": job_name})
            cls._record(job_name, status="skipped", duration_ms=0, result={"reason": "overlap"})
            return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                    "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"
        try:
            with cls._app.app_context():
                result = fn(cls._app)
            if isinstance(result, dict) and result.get("skipped"):
                status = "skipped"
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})
        finally:
            lock.release()

        duration_ms = int((time.monotonic() - start) * 1000)
        cls._record(
            job_name,
            status=status,
            duration_ms=duration_ms,
            result=result if isinstance(result, dict) else {"output": str(result)},
            error=error,
        )
        logger.info("Job %s finished: %s", job_name, status,
                    extra={"job_name": job_name, "duration_ms": duration_ms})

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def _record(cls, job_name: str, **run) -> None:
        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(**run)
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        """Names of enabled interval jobs whose interval has elapsed."""
        now = now or utcnow()
        due = []
        with cls._app.app_context():
            jobs = ScheduledJob.query.filter_by(is_enabled=True, schedule_type="interval").all()
            for job in jobs:
                minutes = job.interval_minutes
                if not minutes or job.job_name not in _job_registry:
                    continue
                if job.last_run_at is None or now - as_utc(job.last_run_at) >= timedelta(minutes=minutes):
                    due.append(job.job_name)
        return due

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        return [cls.run_job(name) for name in cls.due_jobs(now)]

    # ── Background thread ────────────────────────────────────────────────

    @classmethod
    def start(cls, poll_seconds: float | None = None) -> bool:
        """Start the background loop; returns False if already running."""
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() must be called first")
        if cls._running:
            return False
        if poll_seconds is not None:
            cls._poll_seconds = poll_seconds
        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, name="whistle-scheduler", daemon=True)
        cls._running = True
        cls._thread.start()
        logger.info("Scheduler started (poll every %ss)", cls._poll_seconds)
        return True

    @classmethod
    def stop(cls, timeout: float = 10) -> None:
        if not cls._running:
            return
        cls._stop_event.set()
        if cls._thread is not None and cls._thread is not threading.current_thread():
            cls._thread.join(timeout)
        cls._running = False
        cls._thread = None
        logger.info("Scheduler stopped")

    @classmethod
    def is_running(cls) -> bool:
        return cls._running and cls._thread is not None and cls._thread.is_alive()

    @classmethod
    def _loop(cls) -> None:
        stop = cls._stop_event
        while not stop.is_set():
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop.wait(cls._poll_seconds)

    # ── Queries ──────────────────────────────────────────────────────────

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str, config) -> dict:
    """Return default interval config for known jobs."""
    defaults = {
        "escalation_sweep": {
            "minutes": float(config.get("ESCALATION_SWEEP_INTERVAL_MINUTES", 30)),
        },
        "stale_dispatch_cleanup": {"minutes": 24 * 60},
    }
    return defaults.get(job_name, {"minutes": 60})
