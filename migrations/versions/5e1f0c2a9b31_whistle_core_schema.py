"""whistle_core_schema

Creates the report, encryption, escalation and notification tables:
  - reports                   - report identity, status, priority
  - report_fields             - AEAD envelopes of sensitive fields
  - report_files              - encrypted attachment references
  - encrypted_blobs           - attachment ciphertext
  - report_status_events      - status history
  - escalation_records        - durable escalation history per short_id
  - notification_dispatches   - dedupe claims + dispatch outcome
  - notification_deliveries   - per-channel outcome
  - scheduled_jobs            - job registry and run history

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: 5e1f0c2a9b31
Revises:
Create Date: 2026-10-19 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1f0c2a9b31'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Reports ───────────────────────────────────────────────────────────
    if "reports" not in existing:
        op.create_table(
            "reports",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("short_id", sa.String(length=16), nullable=False,
                      comment="Public, immutable tracking token"),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="pending, in_progress, resolved, escalated"),
            sa.Column("priority", sa.String(length=20), nullable=False,
                      comment="low, medium, high, urgent"),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_reports_short_id", "reports", ["short_id"], unique=True)
        op.create_index("ix_reports_status", "reports", ["status"])
        op.create_index("ix_reports_created_at", "reports", ["created_at"])

    if "report_fields" not in existing:
        op.create_table(
            "report_fields",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.Integer(), nullable=False),
            sa.Column("field_name", sa.String(length=50), nullable=False),
            sa.Column("ciphertext", sa.LargeBinary(), nullable=False),
            sa.Column("nonce", sa.LargeBinary(length=12), nullable=False),
            sa.Column("auth_tag", sa.LargeBinary(length=16), nullable=False),
            sa.Column("algorithm_id", sa.String(length=32), nullable=False),
            sa.ForeignKeyConstraint(["report_id"], ["reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("report_id", "field_name", name="uq_report_field_name"),
        )
        op.create_index("ix_report_fields_report_id", "report_fields", ["report_id"])

    if "report_files" not in existing:
        op.create_table(
            "report_files",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.Integer(), nullable=False),
            sa.Column("storage_id", sa.String(length=64), nullable=False),
            sa.Column("original_filename", sa.String(length=255), nullable=False),
            sa.Column("mime_type", sa.String(length=100), nullable=False),
            sa.Column("size", sa.Integer(), nullable=False, comment="Plaintext size in bytes"),
            sa.Column("nonce", sa.LargeBinary(length=12), nullable=False),
            sa.Column("auth_tag", sa.LargeBinary(length=16), nullable=False),
            sa.Column("algorithm_id", sa.String(length=32), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["report_id"], ["reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("storage_id"),
        )
        op.create_index("ix_report_files_report_id", "report_files", ["report_id"])

    if "encrypted_blobs" not in existing:
        op.create_table(
            "encrypted_blobs",
            sa.Column("storage_id", sa.String(length=64), nullable=False),
            sa.Column("data", sa.LargeBinary(), nullable=False),
            sa.Column("length", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("storage_id"),
        )

    if "report_status_events" not in existing:
        op.create_table(
            "report_status_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=20), nullable=True),
            sa.Column("to_status", sa.String(length=20), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=True),
            sa.Column("note", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["report_id"], ["reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_report_status_events_report_id", "report_status_events", ["report_id"])

    # ── Escalation ────────────────────────────────────────────────────────
    if "escalation_records" not in existing:
        op.create_table(
            "escalation_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("short_id", sa.String(length=16), nullable=False),
            sa.Column("escalation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("first_escalated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["short_id"], ["reports.short_id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("short_id"),
        )

    # ── Notifications ─────────────────────────────────────────────────────
    if "notification_dispatches" not in existing:
        op.create_table(
            "notification_dispatches",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("dedupe_key", sa.String(length=120), nullable=False,
                      comment="{short_id}:{kind}:{window bucket}"),
            sa.Column("report_short_id", sa.String(length=16), nullable=False),
            sa.Column("kind", sa.String(length=30), nullable=False),
            sa.Column("priority", sa.String(length=20), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dedupe_key"),
        )
        op.create_index("ix_notification_dispatches_report_short_id",
                        "notification_dispatches", ["report_short_id"])
        op.create_index("ix_notification_dispatches_created_at",
                        "notification_dispatches", ["created_at"])

    if "notification_deliveries" not in existing:
        op.create_table(
            "notification_deliveries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("dispatch_id", sa.Integer(), nullable=False),
            sa.Column("channel", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("error", sa.String(length=500), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["dispatch_id"], ["notification_dispatches.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notification_deliveries_dispatch_id",
                        "notification_deliveries", ["dispatch_id"])

    # ── Scheduler ─────────────────────────────────────────────────────────
    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "notification_deliveries",
        "notification_dispatches",
        "escalation_records",
        "report_status_events",
        "encrypted_blobs",
        "report_files",
        "report_fields",
        "reports",
    ):
        op.drop_table(table)
