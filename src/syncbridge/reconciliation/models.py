"""Reconciliation persistence models.

Four SQLAlchemy models:
- MappingModel: one row per real-world project, one unique nullable column per system
- ReconciliationRunModel: progress and summary of a bulk-match run
- AuditEventModel: append-only audit log
- MirroredRecordModel: local mirror of external records, read by MirroredRecordProvider
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.syncbridge.core.database import Base


class MappingModel(Base):
    """Cross-system mapping row.

    Each system's id column is unique on its own, so a record can belong to
    at most one mapping. NULLs do not collide, which lets a mapping link any
    subset of the systems.
    """

    __tablename__ = "sync_mappings"
    __table_args__ = (
        UniqueConstraint("crm_deal_id", name="uq_sync_mappings_crm_deal_id"),
        UniqueConstraint("pm_project_id", name="uq_sync_mappings_pm_project_id"),
        UniqueConstraint("photo_project_id", name="uq_sync_mappings_photo_project_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    crm_deal_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pm_project_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    photo_project_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    crm_deal_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    pm_project_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    pm_project_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    photo_project_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    match_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    match_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    conflicts: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_sync_direction: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ReconciliationRunModel(Base):
    """A bulk-match run. Status moves pending -> running -> completed | failed."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    source_system: Mapped[str] = mapped_column(String(20), nullable=False)
    target_systems: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    processed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    summary: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditEventModel(Base):
    """Append-only audit entry for matches, manual links and unlinks."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class MirroredRecordModel(Base):
    """Local copy of an external record, refreshed by the provider sync jobs."""

    __tablename__ = "mirrored_records"
    __table_args__ = (
        UniqueConstraint("system", "external_id", name="uq_mirrored_records_system_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    system: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    street_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    city: Mapped[str | None] = mapped_column(String(200), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    project_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    estimated_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    embedded_cross_refs: Mapped[Any] = mapped_column(JSON, nullable=True)
    properties: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
