"""Pydantic schemas for cross-system reconciliation.

Defines the structured types shared by the matcher, the engine and the API:
- Enums: SourceSystem, MatchType, MatchStatus, ConflictResolution, RunStatus, TrackedField
- External records: CrmRecord / PmRecord / PhotoRecord tagged on ``system``
- Mappings: ConflictEntry, MappingRead/Create/Update/Filter, MappingPage
- Run output: MatchDetail, BulkMatchResult, RunRead
- Reports: OverviewRead, UnmatchedReport, DuplicateGroup, MatchPreview
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class SourceSystem(str, Enum):
    """External systems that hold a copy of a project."""

    CRM = "crm"
    PM = "pm"
    PHOTO = "photo"


class MatchType(str, Enum):
    """How a mapping side was linked."""

    INTEGRATION = "integration"
    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


class MatchStatus(str, Enum):
    """Per-record outcome of a bulk-match pass."""

    MATCHED = "matched"
    ALREADY_MATCHED = "already_matched"
    NO_MATCH = "no_match"
    ERROR = "error"


class ConflictResolution(str, Enum):
    SOURCE_WINS = "source_wins"
    BOTH_KEPT = "both_kept"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TrackedField(str, Enum):
    """Fields compared between linked records for conflict detection."""

    PROJECT_NUMBER = "project_number"
    STAGE = "stage"
    LOCATION = "location"
    ESTIMATED_VALUE = "estimated_value"


# Mapping columns per system, shared by the ORM model and the schemas.
SIDE_ID_FIELDS: dict[SourceSystem, str] = {
    SourceSystem.CRM: "crm_deal_id",
    SourceSystem.PM: "pm_project_id",
    SourceSystem.PHOTO: "photo_project_id",
}

SIDE_NAME_FIELDS: dict[SourceSystem, str] = {
    SourceSystem.CRM: "crm_deal_name",
    SourceSystem.PM: "pm_project_name",
    SourceSystem.PHOTO: "photo_project_name",
}


# ── External Records ────────────────────────────────────────────────────────


class _ExternalRecordBase(BaseModel):
    """Fields common to every mirrored record, whatever its system.

    ``embedded_cross_refs`` holds the raw integration payload exactly as the
    provider returned it (a list of tagged entries, an object keyed by
    system, or nothing). ``properties`` holds the remaining raw properties.
    """

    external_id: str
    name: str = ""
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    project_number: str | None = None
    stage: str | None = None
    estimated_value: float | None = None
    embedded_cross_refs: Any = None
    properties: dict[str, Any] = Field(default_factory=dict)

    tracked_fields: ClassVar[frozenset[TrackedField]] = frozenset(TrackedField)

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_external_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def location(self) -> str:
        """City and state joined the way the CRM stores project_location."""
        return ", ".join(part.strip() for part in (self.city, self.state) if part and part.strip())


class CrmRecord(_ExternalRecordBase):
    """A CRM deal."""

    system: Literal[SourceSystem.CRM] = SourceSystem.CRM
    pipeline: str | None = None


class PmRecord(_ExternalRecordBase):
    """A project-management project. The PM system is the default master."""

    system: Literal[SourceSystem.PM] = SourceSystem.PM
    company_id: str | None = None


class PhotoRecord(_ExternalRecordBase):
    """A photo-documentation project. Carries no stage or value."""

    system: Literal[SourceSystem.PHOTO] = SourceSystem.PHOTO

    tracked_fields: ClassVar[frozenset[TrackedField]] = frozenset(
        {TrackedField.LOCATION, TrackedField.PROJECT_NUMBER}
    )


ExternalRecord = Annotated[CrmRecord | PmRecord | PhotoRecord, Field(discriminator="system")]

_record_adapter: TypeAdapter[Any] = TypeAdapter(ExternalRecord)


def parse_record(data: dict[str, Any]) -> CrmRecord | PmRecord | PhotoRecord:
    """Validate a raw dict into the record variant named by its ``system`` key."""
    return _record_adapter.validate_python(data)


class RejectedRecord(BaseModel):
    """A stored row that could not be read as a typed record."""

    system: SourceSystem
    external_id: str | None = None
    error: str


class RecordPage(BaseModel):
    """One page of records from a RecordProvider.

    ``total`` counts stored rows, including the ``rejected`` ones.
    """

    data: list[ExternalRecord] = Field(default_factory=list)
    rejected: list[RejectedRecord] = Field(default_factory=list)
    total: int = 0


# ── Mappings ────────────────────────────────────────────────────────────────


class ConflictEntry(BaseModel):
    """A tracked field whose values disagree between two linked records.

    ``value_a`` belongs to ``system_a`` (the master side when one is present).
    """

    field: TrackedField
    system_a: SourceSystem
    system_b: SourceSystem
    value_a: str | None = None
    value_b: str | None = None
    resolution: ConflictResolution


class MappingRead(BaseModel):
    """A persisted mapping linking up to one record per system."""

    id: str
    crm_deal_id: str | None = None
    pm_project_id: str | None = None
    photo_project_id: str | None = None
    crm_deal_name: str | None = None
    pm_project_name: str | None = None
    pm_project_number: str | None = None
    photo_project_name: str | None = None
    match_type: MatchType | None = None
    match_score: int | None = None
    conflicts: list[ConflictEntry] = Field(default_factory=list)
    last_sync_at: datetime | None = None
    last_sync_status: str | None = None
    last_sync_direction: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def external_id_for(self, system: SourceSystem) -> str | None:
        return getattr(self, SIDE_ID_FIELDS[system])

    def linked_systems(self) -> list[SourceSystem]:
        """Systems whose side of this mapping is populated, in enum order."""
        return [system for system in SourceSystem if self.external_id_for(system)]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class MappingCreate(BaseModel):
    """Schema for creating a mapping row."""

    crm_deal_id: str | None = None
    pm_project_id: str | None = None
    photo_project_id: str | None = None
    crm_deal_name: str | None = None
    pm_project_name: str | None = None
    pm_project_number: str | None = None
    photo_project_name: str | None = None
    match_type: MatchType | None = None
    match_score: int | None = None
    conflicts: list[ConflictEntry] = Field(default_factory=list)
    last_sync_status: str | None = "success"
    last_sync_direction: str | None = None


class MappingUpdate(BaseModel):
    """Partial mapping update. Only fields explicitly set are written.

    Setting a side id to ``None`` clears that side.
    """

    crm_deal_id: str | None = None
    pm_project_id: str | None = None
    photo_project_id: str | None = None
    crm_deal_name: str | None = None
    pm_project_name: str | None = None
    pm_project_number: str | None = None
    photo_project_name: str | None = None
    match_type: MatchType | None = None
    match_score: int | None = None
    conflicts: list[ConflictEntry] | None = None
    last_sync_status: str | None = None
    last_sync_direction: str | None = None


class MappingFilter(BaseModel):
    """Filters for listing mappings. ``limit=None`` returns every row."""

    system: SourceSystem | None = None
    match_type: MatchType | None = None
    has_conflicts: bool | None = None
    limit: int | None = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)


class MappingPage(BaseModel):
    items: list[MappingRead] = Field(default_factory=list)
    total: int = 0
    limit: int | None = None
    offset: int = 0


# ── Run Output ──────────────────────────────────────────────────────────────


class MatchDetail(BaseModel):
    """Outcome for one source record in a bulk-match pass."""

    source_system: SourceSystem
    source_id: str
    source_name: str = ""
    target_system: SourceSystem | None = None
    target_id: str | None = None
    target_name: str | None = None
    match_type: MatchType | None = None
    match_score: int | None = None
    status: MatchStatus
    mapping_id: str | None = None
    reason: str | None = None
    error: str | None = None
    conflict_fields: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BulkMatchResult(BaseModel):
    """Summary of a bulk-match pass. Returned even when the pass fails."""

    run_id: str
    source_system: SourceSystem
    target_systems: list[SourceSystem] = Field(default_factory=list)
    success: bool = True
    message: str | None = None
    dry_run: bool = False
    total_source: int = 0
    total_candidates: int = 0
    matched: int = 0
    matched_via_integration: int = 0
    matched_via_exact: int = 0
    matched_via_fuzzy: int = 0
    already_matched: int = 0
    no_match: int = 0
    errors: int = 0
    conflicts: int = 0
    duration_ms: int = 0
    details: list[MatchDetail] = Field(default_factory=list)


class RunRead(BaseModel):
    """Persisted progress of a bulk-match run."""

    run_id: str
    status: RunStatus
    source_system: SourceSystem
    target_systems: list[SourceSystem] = Field(default_factory=list)
    dry_run: bool = False
    processed: int = 0
    total: int = 0
    summary: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ── Reports ─────────────────────────────────────────────────────────────────


class OverviewRead(BaseModel):
    """Mapping coverage across all systems."""

    total_mappings: int = 0
    mapped: dict[SourceSystem, int] = Field(default_factory=dict)
    totals: dict[SourceSystem, int | None] = Field(default_factory=dict)
    with_conflicts: int = 0


class UnmatchedRecord(BaseModel):
    external_id: str
    name: str = ""
    project_number: str | None = None
    city: str | None = None


class UnmatchedReport(BaseModel):
    system: SourceSystem
    total: int = 0
    records: list[UnmatchedRecord] = Field(default_factory=list)


class DuplicateGroup(BaseModel):
    """Records of one system that look like the same project."""

    system: SourceSystem
    primary_id: str
    primary_name: str = ""
    duplicates: list[UnmatchedRecord] = Field(default_factory=list)
    scores: dict[str, int] = Field(default_factory=dict)


class MatchPreview(BaseModel):
    """What the pipeline would decide for one record, without writing."""

    source_system: SourceSystem
    source_id: str
    target_system: SourceSystem
    status: MatchStatus
    target_id: str | None = None
    target_name: str | None = None
    match_type: MatchType | None = None
    match_score: int | None = None
    best_fuzzy_score: int | None = None
    reason: str | None = None
