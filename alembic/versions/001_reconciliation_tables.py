"""Create reconciliation tables.

Revision ID: 001_reconciliation
Revises:
Create Date: 2026-10-18

Creates four tables:
- sync_mappings: one row per linked project, unique id column per system
- reconciliation_runs: bulk-match run progress and summary
- audit_logs: append-only audit trail
- mirrored_records: local mirror of CRM / PM / photo records
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, UUID

# revision identifiers, used by Alembic.
revision: str = "001_reconciliation"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── sync_mappings table ─────────────────────────────────────────────

    op.create_table(
        "sync_mappings",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("crm_deal_id", sa.String(100), nullable=True),
        sa.Column("pm_project_id", sa.String(100), nullable=True),
        sa.Column("photo_project_id", sa.String(100), nullable=True),
        sa.Column("crm_deal_name", sa.String(500), nullable=True),
        sa.Column("pm_project_name", sa.String(500), nullable=True),
        sa.Column("pm_project_number", sa.String(100), nullable=True),
        sa.Column("photo_project_name", sa.String(500), nullable=True),
        sa.Column("match_type", sa.String(20), nullable=True),
        sa.Column("match_score", sa.Integer, nullable=True),
        sa.Column("conflicts", JSON, server_default=sa.text("'[]'::json")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(20), nullable=True),
        sa.Column("last_sync_direction", sa.String(40), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("crm_deal_id", name="uq_sync_mappings_crm_deal_id"),
        sa.UniqueConstraint("pm_project_id", name="uq_sync_mappings_pm_project_id"),
        sa.UniqueConstraint("photo_project_id", name="uq_sync_mappings_photo_project_id"),
    )

    # ── reconciliation_runs table ───────────────────────────────────────

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("source_system", sa.String(20), nullable=False),
        sa.Column("target_systems", JSON, server_default=sa.text("'[]'::json")),
        sa.Column("dry_run", sa.Boolean, server_default=sa.text("false")),
        sa.Column("processed", sa.Integer, server_default=sa.text("0")),
        sa.Column("total", sa.Integer, server_default=sa.text("0")),
        sa.Column("summary", JSON, server_default=sa.text("'{}'::json")),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_reconciliation_runs_status", "reconciliation_runs", ["status"])

    # ── audit_logs table ────────────────────────────────────────────────

    op.create_table(
        "audit_logs",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("details", JSON, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])

    # ── mirrored_records table ──────────────────────────────────────────

    op.create_table(
        "mirrored_records",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("system", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(500), nullable=False, server_default=""),
        sa.Column("street_address", sa.String(500), nullable=True),
        sa.Column("city", sa.String(200), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("project_number", sa.String(100), nullable=True),
        sa.Column("stage", sa.String(200), nullable=True),
        sa.Column("estimated_value", sa.Float, nullable=True),
        sa.Column("embedded_cross_refs", JSON, nullable=True),
        sa.Column("properties", JSON, server_default=sa.text("'{}'::json")),
        sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("system", "external_id", name="uq_mirrored_records_system_external_id"),
    )
    op.create_index("ix_mirrored_records_system", "mirrored_records", ["system"])


def downgrade() -> None:
    op.drop_index("ix_mirrored_records_system", table_name="mirrored_records")
    op.drop_table("mirrored_records")
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_reconciliation_runs_status", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")
    op.drop_table("sync_mappings")
