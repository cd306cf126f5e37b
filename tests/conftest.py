"""Shared test doubles and fixtures for reconciliation tests.

Provides in-memory implementations of every engine collaborator:
- InMemoryMappingStore: enforces one mapping per (system, external_id)
- InMemoryRecordProvider: serves records in the order given (not sorted)
- InMemoryAuditSink, InMemoryRunStore, RecordingWriteBack
- Racing/Flaky/InterleavedAttach/BrokenListing stores and FailingRunStore
  for failure-path tests
- make_engine: factory fixture wiring the doubles into a ReconciliationEngine
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import pytest

from src.syncbridge.reconciliation.engine import EngineConfig, ReconciliationEngine
from src.syncbridge.reconciliation.errors import (
    ConfigurationError,
    ConstraintViolation,
    MappingNotFoundError,
)
from src.syncbridge.reconciliation.interfaces import (
    AuditSink,
    IdentifierWriteBack,
    MappingStore,
    RecordProvider,
    RunStore,
)
from src.syncbridge.reconciliation.schemas import (
    SIDE_ID_FIELDS,
    MappingCreate,
    MappingFilter,
    MappingPage,
    MappingRead,
    MappingUpdate,
    RecordPage,
    RejectedRecord,
    RunRead,
    RunStatus,
    SourceSystem,
)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryMappingStore(MappingStore):
    """In-memory MappingStore with the same uniqueness rule as the SQL table."""

    def __init__(self) -> None:
        self.rows: dict[str, MappingRead] = {}
        self.writes = 0

    def _check_unique(self, values: dict[str, Any], exclude_id: str | None = None) -> None:
        for system, column in SIDE_ID_FIELDS.items():
            external_id = values.get(column)
            if not external_id:
                continue
            for row in self.rows.values():
                if row.id != exclude_id and row.external_id_for(system) == external_id:
                    raise ConstraintViolation(
                        f"Mapping already exists for {system.value} {external_id}",
                        system=system.value,
                        external_id=external_id,
                    )

    async def find_by_external_id(self, system: SourceSystem, external_id: str) -> MappingRead | None:
        for row in self.rows.values():
            if row.external_id_for(system) == external_id:
                return row
        return None

    async def get(self, mapping_id: str) -> MappingRead | None:
        return self.rows.get(mapping_id)

    async def create(self, data: MappingCreate) -> MappingRead:
        values = data.model_dump()
        self._check_unique(values)
        now = datetime.now(timezone.utc)
        row = MappingRead(id=str(uuid.uuid4()), **values, last_sync_at=now, created_at=now)
        self.rows[row.id] = row
        self.writes += 1
        return row

    async def update(self, mapping_id: str, data: MappingUpdate) -> MappingRead:
        current = self.rows.get(mapping_id)
        if current is None:
            raise MappingNotFoundError(mapping_id)
        changes = data.model_dump(exclude_unset=True)
        if "conflicts" in changes and changes["conflicts"] is None:
            changes["conflicts"] = []
        for system, column in SIDE_ID_FIELDS.items():
            existing, new = getattr(current, column), changes.get(column)
            if new and existing and existing != new:
                raise ConstraintViolation(
                    f"Mapping {mapping_id} is already linked to {system.value} {existing}",
                    system=system.value,
                    external_id=new,
                )
        merged = {**current.model_dump(), **changes}
        self._check_unique(merged, exclude_id=mapping_id)
        now = datetime.now(timezone.utc)
        row = MappingRead.model_validate({**merged, "last_sync_at": now, "updated_at": now})
        self.rows[mapping_id] = row
        self.writes += 1
        return row

    async def list_mappings(self, filters: MappingFilter) -> MappingPage:
        rows = list(self.rows.values())
        if filters.system is not None:
            rows = [r for r in rows if r.external_id_for(filters.system)]
        if filters.match_type is not None:
            rows = [r for r in rows if r.match_type == filters.match_type]
        if filters.has_conflicts is not None:
            rows = [r for r in rows if r.has_conflicts == filters.has_conflicts]
        total = len(rows)
        end = None if filters.limit is None else filters.offset + filters.limit
        return MappingPage(
            items=rows[filters.offset:end],
            total=total,
            limit=filters.limit,
            offset=filters.offset,
        )


class RacingMappingStore(InMemoryMappingStore):
    """Another worker links the same photo record between lookup and create."""

    async def create(self, data: MappingCreate) -> MappingRead:
        await super().create(MappingCreate(photo_project_id=data.photo_project_id))
        return await super().create(data)


class FlakyMappingStore(InMemoryMappingStore):
    """Fails to create any mapping for the photo ids in ``failing``."""

    def __init__(self, failing: Iterable[str] = ()) -> None:
        super().__init__()
        self.failing = set(failing)

    async def create(self, data: MappingCreate) -> MappingRead:
        if data.photo_project_id in self.failing:
            raise RuntimeError("connection reset")
        return await super().create(data)


class InterleavedAttachStore(InMemoryMappingStore):
    """Another writer attaches photo ``p-B`` to a mapping just before each photo attach."""

    async def update(self, mapping_id: str, data: MappingUpdate) -> MappingRead:
        if data.photo_project_id and not self.rows[mapping_id].photo_project_id:
            await super().update(mapping_id, MappingUpdate(photo_project_id="p-B"))
        return await super().update(mapping_id, data)


class BrokenListingStore(InMemoryMappingStore):
    async def list_mappings(self, filters: MappingFilter) -> MappingPage:
        raise RuntimeError("database unavailable")


class InMemoryRecordProvider(RecordProvider):
    """Serves a fixed list of records. Raises ConfigurationError when unconfigured."""

    def __init__(
        self,
        system: SourceSystem,
        records: Iterable[Any] = (),
        configured: bool = True,
        rejected: Iterable[RejectedRecord] = (),
    ) -> None:
        self.system = system
        self.records = list(records)
        self.configured = configured
        self.rejected = list(rejected)

    def _require(self) -> None:
        if not self.configured:
            raise ConfigurationError(f"No access token configured for {self.system.value}", system=self.system.value)

    async def list_records(self, limit: int, offset: int) -> RecordPage:
        self._require()
        return RecordPage(
            data=self.records[offset:offset + limit],
            rejected=self.rejected if offset == 0 else [],
            total=len(self.records) + len(self.rejected),
        )

    async def get_record(self, external_id: str) -> Any | None:
        self._require()
        for record in self.records:
            if record.external_id == external_id:
                return record
        return None


class InMemoryAuditSink(AuditSink):
    def __init__(self, fail: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self.fail = fail

    async def record_event(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        status: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("audit backend unavailable")
        self.events.append(
            {
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "status": status,
                "details": details or {},
            }
        )

    def actions(self) -> list[str]:
        return [e["action"] for e in self.events]


class InMemoryRunStore(RunStore):
    def __init__(self) -> None:
        self.runs: dict[str, RunRead] = {}
        self.progress_updates: list[tuple[str, int, int]] = []

    async def start(self, run: RunRead) -> None:
        self.runs[run.run_id] = run.model_copy(update={"status": RunStatus.RUNNING})

    async def update_progress(self, run_id: str, processed: int, total: int) -> None:
        self.progress_updates.append((run_id, processed, total))
        run = self.runs[run_id]
        self.runs[run_id] = run.model_copy(update={"processed": processed, "total": total})

    async def finish(
        self,
        run_id: str,
        status: RunStatus,
        summary: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        run = self.runs[run_id]
        self.runs[run_id] = run.model_copy(
            update={
                "status": status,
                "summary": summary,
                "error_message": error_message,
                "completed_at": datetime.now(timezone.utc),
            }
        )

    async def get(self, run_id: str) -> RunRead | None:
        return self.runs.get(run_id)


class FailingRunStore(RunStore):
    async def start(self, run: RunRead) -> None:
        raise RuntimeError("run table locked")

    async def update_progress(self, run_id: str, processed: int, total: int) -> None:
        raise RuntimeError("run table locked")

    async def finish(
        self,
        run_id: str,
        status: RunStatus,
        summary: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        raise RuntimeError("run table locked")

    async def get(self, run_id: str) -> RunRead | None:
        return None


class RecordingWriteBack(IdentifierWriteBack):
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail = fail

    async def write_identifier(
        self,
        master_system: SourceSystem,
        master_id: str,
        counterpart_system: SourceSystem,
        counterpart_id: str,
        project_number: str | None = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("master system rejected the update")
        self.calls.append(
            {
                "master_system": master_system,
                "master_id": master_id,
                "counterpart_system": counterpart_system,
                "counterpart_id": counterpart_id,
                "project_number": project_number,
            }
        )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def mapping_store() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def write_back() -> RecordingWriteBack:
    return RecordingWriteBack()


@pytest.fixture
def racing_store() -> RacingMappingStore:
    return RacingMappingStore()


@pytest.fixture
def flaky_store() -> FlakyMappingStore:
    return FlakyMappingStore(failing={"p-2"})


@pytest.fixture
def broken_listing_store() -> BrokenListingStore:
    return BrokenListingStore()


@pytest.fixture
def interleaved_store() -> InterleavedAttachStore:
    return InterleavedAttachStore()


@pytest.fixture
def failing_run_store() -> FailingRunStore:
    return FailingRunStore()


@pytest.fixture
def failing_audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink(fail=True)


@pytest.fixture
def failing_write_back() -> RecordingWriteBack:
    return RecordingWriteBack(fail=True)


@pytest.fixture
def make_engine(
    mapping_store: InMemoryMappingStore,
    audit_sink: InMemoryAuditSink,
    run_store: InMemoryRunStore,
    write_back: RecordingWriteBack,
) -> Callable[..., ReconciliationEngine]:
    """Factory: make_engine(photo=[...], pm=[...], crm=[...], unconfigured={...}, **config).

    ``store``, ``audit``, ``runs`` and ``writer`` replace the default doubles.
    ``rejected`` maps a system to rows its provider could not read.
    """

    def _make(
        photo: Iterable[Any] = (),
        pm: Iterable[Any] = (),
        crm: Iterable[Any] = (),
        unconfigured: Iterable[SourceSystem] = (),
        store: MappingStore | None = None,
        audit: AuditSink | None = None,
        runs: RunStore | None = None,
        writer: IdentifierWriteBack | None = None,
        rejected: Mapping[SourceSystem, Iterable[RejectedRecord]] | None = None,
        **config: Any,
    ) -> ReconciliationEngine:
        disabled = set(unconfigured)
        bad_rows = rejected or {}
        records = {SourceSystem.PHOTO: photo, SourceSystem.PM: pm, SourceSystem.CRM: crm}
        providers = {
            system: InMemoryRecordProvider(
                system,
                records[system],
                configured=system not in disabled,
                rejected=bad_rows.get(system, ()),
            )
            for system in SourceSystem
        }
        return ReconciliationEngine(
            mapping_store=store or mapping_store,
            providers=providers,
            audit_sink=audit or audit_sink,
            run_store=runs or run_store,
            write_back=writer or write_back,
            config=EngineConfig(**config),
        )

    return _make
