"""
Whistle Core
Tests: SchedulerService and the scheduled jobs.

Covers:
    1. Job registry and DB records
    2. run_job outcomes (success, failed, skipped on overlap)
    3. Interval due-job selection
    4. Background thread start/stop
    5. Jobs: escalation_sweep, stale_dispatch_cleanup

Jobs run in their own app context (and so their own DB session); test data
is committed before a job runs and re-queried afterwards.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from whistle.models import db
from whistle.models.notification import NotificationDelivery, NotificationDispatch
from whistle.models.scheduling import ScheduledJob
from whistle.services import scheduler_service
from whistle.services.report_service import submit_report
from whistle.services.scheduler_service import SchedulerService, get_registered_jobs
from whistle.utils.helpers import utcnow


def _job(name):
    db.session.expire_all()
    return ScheduledJob.query.filter_by(job_name=name).one()


# ═══════════════════════════════════════════════════════════════════════════
#  1. Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistry:

    def test_jobs_registered(self):
        jobs = get_registered_jobs()
        assert {"escalation_sweep", "stale_dispatch_cleanup"} <= set(jobs)

    def test_ensure_jobs_registered_creates_interval_records(self, app):
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == len(get_registered_jobs())

        sweep = _job("escalation_sweep")
        assert sweep.schedule_type == "interval"
        assert sweep.interval_minutes == app.config["ESCALATION_SWEEP_INTERVAL_MINUTES"]
        assert sweep.is_enabled
        assert _job("stale_dispatch_cleanup").interval_minutes == 24 * 60

        # second call is a no-op
        assert SchedulerService.ensure_jobs_registered() == []

    def test_list_and_toggle(self):
        SchedulerService.ensure_jobs_registered()
        names = {j["job_name"] for j in SchedulerService.list_jobs()}
        assert "escalation_sweep" in names

        paused = SchedulerService.toggle_job("escalation_sweep", False)
        assert paused["is_enabled"] is False
        assert paused["status"] == "paused"
        assert SchedulerService.toggle_job("no_such_job", True) is None


# ═══════════════════════════════════════════════════════════════════════════
#  2. run_job
# ═══════════════════════════════════════════════════════════════════════════

class TestRunJob:

    def test_unknown_job(self):
        result = SchedulerService.run_job("no_such_job")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_success_is_recorded(self):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("escalation_sweep")
        assert result["status"] == "success"
        assert result["result"]["skipped"] is False

        job = _job("escalation_sweep")
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert job.last_run_at is not None

    def test_failure_is_recorded(self, monkeypatch):
        def _broken(app):
            raise RuntimeError("disk full")

        monkeypatch.setitem(scheduler_service._job_registry, "broken_job", _broken)
        db.session.add(ScheduledJob(job_name="broken_job", schedule_config={"minutes": 5}))
        db.session.commit()

        result = SchedulerService.run_job("broken_job")
        assert result["status"] == "failed"
        assert result["error"] == "disk full"
        job = _job("broken_job")
        assert job.error_count == 1
        assert job.last_error == "disk full"

    def test_overlapping_run_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        lock = SchedulerService._lock_for("escalation_sweep")
        lock.acquire()
        try:
            result = SchedulerService.run_job("escalation_sweep")
        finally:
            lock.release()

        assert result["status"] == "skipped"
        assert _job("escalation_sweep").last_run_status == "skipped"

    def test_sweep_already_running_is_skipped(self, app):
        SchedulerService.ensure_jobs_registered()
        monitor = app.extensions["escalation_monitor"]
        monitor._lock.acquire()
        try:
            result = SchedulerService.run_job("escalation_sweep")
        finally:
            monitor._lock.release()
        assert result["status"] == "skipped"
        assert result["result"]["skipped"] is True


# ═══════════════════════════════════════════════════════════════════════════
#  3. Due jobs
# ═══════════════════════════════════════════════════════════════════════════

class TestDueJobs:

    def test_never_run_jobs_are_due(self):
        SchedulerService.ensure_jobs_registered()
        assert set(SchedulerService.due_jobs()) == {"escalation_sweep", "stale_dispatch_cleanup"}

    def test_interval_respected(self, app):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.run_job("escalation_sweep")

        now = utcnow()
        assert "escalation_sweep" not in SchedulerService.due_jobs(now)
        interval = app.config["ESCALATION_SWEEP_INTERVAL_MINUTES"]
        later = now + timedelta(minutes=interval + 1)
        assert "escalation_sweep" in SchedulerService.due_jobs(later)

    def test_disabled_jobs_are_not_due(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("escalation_sweep", False)
        assert "escalation_sweep" not in SchedulerService.due_jobs()

    def test_run_due_jobs(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("stale_dispatch_cleanup", False)
        results = SchedulerService.run_due_jobs()
        assert [r["job_name"] for r in results] == ["escalation_sweep"]


# ═══════════════════════════════════════════════════════════════════════════
#  4. Background thread
# ═══════════════════════════════════════════════════════════════════════════

class TestStartStop:

    def test_start_and_stop(self, monkeypatch):
        ticked = threading.Event()
        monkeypatch.setattr(
            SchedulerService, "run_due_jobs",
            classmethod(lambda cls, now=None: ticked.set() or []),
        )
        try:
            assert SchedulerService.start(poll_seconds=0.05) is True
            assert SchedulerService.start() is False
            assert ticked.wait(2)
            assert SchedulerService.is_running()
        finally:
            SchedulerService.stop(timeout=2)
        assert not SchedulerService.is_running()
        # stop is idempotent
        SchedulerService.stop()

    def test_start_requires_init(self, monkeypatch):
        monkeypatch.setattr(SchedulerService, "_app", None)
        with pytest.raises(RuntimeError):
            SchedulerService.start()


# ═══════════════════════════════════════════════════════════════════════════
#  5. Jobs
# ═══════════════════════════════════════════════════════════════════════════

class TestJobs:

    def test_escalation_sweep_job_escalates(self, store, cipher):
        created = utcnow() - timedelta(hours=3)
        report = submit_report(store, cipher, None,
                               {"message": "Lift stuck", "priority": "low"}, now=created)

        result = SchedulerService.run_job("escalation_sweep")
        assert result["status"] == "success"
        assert result["result"]["escalated"] == [report.short_id]

        db.session.expire_all()
        assert store.get_escalation_record(report.short_id).escalation_count == 1

    def test_stale_dispatch_cleanup(self, app):
        old = datetime.now(timezone.utc) - timedelta(days=app.config["NOTIFICATION_RETENTION_DAYS"] + 1)
        stale = NotificationDispatch(dedupe_key="OLD00001:new_report:1", report_short_id="OLD00001",
                                     kind="new_report", priority="low", status="sent", created_at=old)
        stale.deliveries.append(NotificationDelivery(channel="dashboard", status="sent"))
        recent = NotificationDispatch(dedupe_key="NEW00001:new_report:2", report_short_id="NEW00001",
                                      kind="new_report", priority="low", status="sent")
        db.session.add_all([stale, recent])
        db.session.commit()

        result = SchedulerService.run_job("stale_dispatch_cleanup")
        assert result["result"] == {
            "deleted": 1, "retention_days": app.config["NOTIFICATION_RETENTION_DAYS"],
        }

        db.session.expire_all()
        assert [d.report_short_id for d in NotificationDispatch.query.all()] == ["NEW00001"]
        assert NotificationDelivery.query.count() == 0
