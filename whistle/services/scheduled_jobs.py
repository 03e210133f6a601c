"""
Whistle Core
Scheduled Jobs: concrete job implementations.

Jobs:
    - escalation_sweep: escalates unresolved reports past their thresholds
    - stale_dispatch_cleanup: deletes notification dispatch log rows past retention
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete

from whistle.models import db
from whistle.models.notification import NotificationDelivery, NotificationDispatch
from whistle.services.scheduler_service import register_job
from whistle.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Escalation Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("escalation_sweep")
def run_escalation_sweep(app) -> dict[str, Any]:
    """Escalate unresolved reports that crossed an age threshold."""
    monitor = app.extensions["escalation_monitor"]
    return monitor.run_sweep().to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Stale Dispatch Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stale_dispatch_cleanup")
def cleanup_stale_dispatches(app) -> dict[str, Any]:
    """Delete notification dispatch records older than the retention period."""
    days = int(app.config.get("NOTIFICATION_RETENTION_DAYS", 30))
    cutoff = utcnow() - timedelta(days=days)

    stale_ids = db.session.execute(
        db.select(NotificationDispatch.id).where(NotificationDispatch.created_at < cutoff)
    ).scalars().all()
    if stale_ids:
        db.session.execute(
            delete(NotificationDelivery).where(NotificationDelivery.dispatch_id.in_(stale_ids))
        )
        db.session.execute(
            delete(NotificationDispatch).where(NotificationDispatch.id.in_(stale_ids))
        )
    db.session.commit()

    results = {"deleted": len(stale_ids), "retention_days": days}
    logger.info("Stale dispatch cleanup: %s", results)
    return results
