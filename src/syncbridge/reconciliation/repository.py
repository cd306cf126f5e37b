"""SQL implementations of the reconciliation collaborators.

All classes take a ``session_factory`` callable returning an async
generator of AsyncSession (``core.database.get_session`` in production),
and open one session per call with ``async for session in ...``.

Uniqueness of each mapping side is enforced by the database; an
IntegrityError is rolled back and re-raised as ConstraintViolation so the
engine can report the record as already matched.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.syncbridge.reconciliation.errors import (
    ConfigurationError,
    ConstraintViolation,
    MappingNotFoundError,
    RecordError,
    RecordNotFoundError,
)
from src.syncbridge.reconciliation.interfaces import (
    AuditSink,
    IdentifierWriteBack,
    MappingStore,
    RecordProvider,
    RunStore,
)
from src.syncbridge.reconciliation.models import (
    AuditEventModel,
    MappingModel,
    MirroredRecordModel,
    ReconciliationRunModel,
)
from src.syncbridge.reconciliation.schemas import (
    SIDE_ID_FIELDS,
    ConflictEntry,
    MappingCreate,
    MappingFilter,
    MappingPage,
    MappingRead,
    MappingUpdate,
    MatchType,
    RecordPage,
    RejectedRecord,
    RunRead,
    RunStatus,
    SourceSystem,
    parse_record,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

_db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_mapping(model: MappingModel) -> MappingRead:
    """Convert MappingModel to MappingRead schema."""
    return MappingRead(
        id=str(model.id),
        crm_deal_id=model.crm_deal_id,
        pm_project_id=model.pm_project_id,
        photo_project_id=model.photo_project_id,
        crm_deal_name=model.crm_deal_name,
        pm_project_name=model.pm_project_name,
        pm_project_number=model.pm_project_number,
        photo_project_name=model.photo_project_name,
        match_type=MatchType(model.match_type) if model.match_type else None,
        match_score=model.match_score,
        conflicts=[ConflictEntry.model_validate(c) for c in (model.conflicts or [])],
        last_sync_at=model.last_sync_at,
        last_sync_status=model.last_sync_status,
        last_sync_direction=model.last_sync_direction,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _mapping_values(data: dict[str, Any]) -> dict[str, Any]:
    """Turn a dumped MappingCreate/Update into column values."""
    values = dict(data)
    if "conflicts" in values:
        values["conflicts"] = [
            ConflictEntry.model_validate(c).model_dump(mode="json") for c in (values["conflicts"] or [])
        ]
    if values.get("match_type") is not None:
        values["match_type"] = MatchType(values["match_type"]).value
    return values


def _violated_side(exc: IntegrityError, values: dict[str, Any]) -> tuple[str | None, str | None]:
    """Best-effort (system, external_id) of the unique column that was hit."""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    for system, column in SIDE_ID_FIELDS.items():
        if column in message:
            return system.value, values.get(column)
    return None, None


def _occupied_side(model: MappingModel, values: dict[str, Any]) -> tuple[SourceSystem, str] | None:
    """The first side ``values`` would overwrite with a different id."""
    for system, column in SIDE_ID_FIELDS.items():
        new = values.get(column)
        current = getattr(model, column)
        if new and current and current != new:
            return system, current
    return None


def _model_to_run(model: ReconciliationRunModel) -> RunRead:
    return RunRead(
        run_id=str(model.id),
        status=RunStatus(model.status),
        source_system=SourceSystem(model.source_system),
        target_systems=[SourceSystem(s) for s in (model.target_systems or [])],
        dry_run=bool(model.dry_run),
        processed=model.processed or 0,
        total=model.total or 0,
        summary=model.summary or {},
        error_message=model.error_message,
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


# ── Mapping Store ───────────────────────────────────────────────────────────


class SqlMappingStore(MappingStore):
    """MappingStore backed by the ``sync_mappings`` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def find_by_external_id(self, system: SourceSystem, external_id: str) -> MappingRead | None:
        column = getattr(MappingModel, SIDE_ID_FIELDS[system])
        async for session in self._session_factory():
            result = await session.execute(select(MappingModel).where(column == external_id))
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None
        return None

    async def get(self, mapping_id: str) -> MappingRead | None:
        parsed = _parse_uuid(mapping_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(select(MappingModel).where(MappingModel.id == parsed))
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None
        return None

    async def create(self, data: MappingCreate) -> MappingRead:
        """Insert a mapping.

        Raises:
            ConstraintViolation: A linked id already belongs to another mapping.
        """
        values = _mapping_values(data.model_dump(mode="json"))
        async for session in self._session_factory():
            model = MappingModel(**values, last_sync_at=_now())
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                system, external_id = _violated_side(exc, values)
                logger.warning(
                    "mapping_store.constraint_violation",
                    operation="create",
                    system=system,
                    external_id=external_id,
                )
                raise ConstraintViolation(
                    f"Mapping already exists for {system or 'a linked record'} {external_id or ''}".strip(),
                    system=system,
                    external_id=external_id,
                ) from exc
            await session.refresh(model)
            return _model_to_mapping(model)
        raise RuntimeError("session factory yielded no session")

    async def update(self, mapping_id: str, data: MappingUpdate) -> MappingRead:
        """Update a mapping under a row lock.

        Raises:
            MappingNotFoundError: Unknown mapping id.
            ConstraintViolation: A linked id belongs to another mapping, or a
                side is already filled with a different id.
        """
        parsed = _parse_uuid(mapping_id)
        if parsed is None:
            raise MappingNotFoundError(mapping_id)
        values = _mapping_values(data.model_dump(mode="json", exclude_unset=True))
        async for session in self._session_factory():
            result = await session.execute(
                select(MappingModel).where(MappingModel.id == parsed).with_for_update()
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise MappingNotFoundError(mapping_id)

            occupied = _occupied_side(model, values)
            if occupied is not None:
                system, current = occupied
                await session.rollback()
                logger.warning(
                    "mapping_store.side_occupied",
                    mapping_id=mapping_id,
                    system=system.value,
                    current=current,
                    requested=values[SIDE_ID_FIELDS[system]],
                )
                raise ConstraintViolation(
                    f"Mapping {mapping_id} is already linked to {system.value} {current}",
                    system=system.value,
                    external_id=values[SIDE_ID_FIELDS[system]],
                )

            for key, value in values.items():
                setattr(model, key, value)
            model.last_sync_at = _now()
            model.updated_at = _now()
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                system, external_id = _violated_side(exc, values)
                logger.warning(
                    "mapping_store.constraint_violation",
                    operation="update",
                    mapping_id=mapping_id,
                    system=system,
                    external_id=external_id,
                )
                raise ConstraintViolation(
                    f"Mapping already exists for {system or 'a linked record'} {external_id or ''}".strip(),
                    system=system,
                    external_id=external_id,
                ) from exc
            await session.refresh(model)
            return _model_to_mapping(model)
        raise RuntimeError("session factory yielded no session")

    async def list_mappings(self, filters: MappingFilter) -> MappingPage:
        stmt = select(MappingModel)
        if filters.system is not None:
            stmt = stmt.where(getattr(MappingModel, SIDE_ID_FIELDS[filters.system]).is_not(None))
        if filters.match_type is not None:
            stmt = stmt.where(MappingModel.match_type == filters.match_type.value)
        if filters.has_conflicts is True:
            stmt = stmt.where(func.json_array_length(MappingModel.conflicts) > 0)
        elif filters.has_conflicts is False:
            stmt = stmt.where(
                or_(
                    MappingModel.conflicts.is_(None),
                    func.json_array_length(MappingModel.conflicts) == 0,
                )
            )

        async for session in self._session_factory():
            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            page_stmt = stmt.order_by(MappingModel.created_at, MappingModel.id).offset(filters.offset)
            if filters.limit is not None:
                page_stmt = page_stmt.limit(filters.limit)
            result = await session.execute(page_stmt)
            return MappingPage(
                items=[_model_to_mapping(m) for m in result.scalars().all()],
                total=total or 0,
                limit=filters.limit,
                offset=filters.offset,
            )
        return MappingPage(limit=filters.limit, offset=filters.offset)


# ── Audit Sink ──────────────────────────────────────────────────────────────


class SqlAuditSink(AuditSink):
    """AuditSink writing to ``audit_logs``."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def record_event(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        status: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        async for session in self._session_factory():
            session.add(
                AuditEventModel(
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=status,
                    details=details or {},
                )
            )
            await session.commit()


# ── Run Store ───────────────────────────────────────────────────────────────


class SqlRunStore(RunStore):
    """RunStore backed by ``reconciliation_runs``."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def start(self, run: RunRead) -> None:
        async for session in self._session_factory():
            session.add(
                ReconciliationRunModel(
                    id=uuid.UUID(run.run_id),
                    status=RunStatus.RUNNING.value,
                    source_system=run.source_system.value,
                    target_systems=[s.value for s in run.target_systems],
                    dry_run=run.dry_run,
                    processed=0,
                    total=run.total,
                    summary={},
                )
            )
            await session.commit()

    async def update_progress(self, run_id: str, processed: int, total: int) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ReconciliationRunModel)
                .where(ReconciliationRunModel.id == uuid.UUID(run_id))
                .values(processed=processed, total=total)
            )
            await session.commit()

    async def finish(
        self,
        run_id: str,
        status: RunStatus,
        summary: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": status.value,
            "summary": summary,
            "error_message": error_message,
            "completed_at": _now(),
        }
        if "total_source" in summary:
            values["processed"] = summary["total_source"]
            values["total"] = summary["total_source"]
        async for session in self._session_factory():
            await session.execute(
                update(ReconciliationRunModel)
                .where(ReconciliationRunModel.id == uuid.UUID(run_id))
                .values(**values)
            )
            await session.commit()

    async def get(self, run_id: str) -> RunRead | None:
        parsed = _parse_uuid(run_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(ReconciliationRunModel).where(ReconciliationRunModel.id == parsed)
            )
            model = result.scalar_one_or_none()
            return _model_to_run(model) if model else None
        return None


# ── Record Provider ─────────────────────────────────────────────────────────


def _model_to_record(model: MirroredRecordModel) -> Any:
    """Convert a mirrored row to its typed record, RecordError if malformed."""
    try:
        return parse_record(
            {
                "system": model.system,
                "external_id": model.external_id,
                "name": model.name,
                "street_address": model.street_address,
                "city": model.city,
                "state": model.state,
                "project_number": model.project_number,
                "stage": model.stage,
                "estimated_value": model.estimated_value,
                "embedded_cross_refs": model.embedded_cross_refs,
                "properties": model.properties or {},
            }
        )
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise RecordError(
            f"Malformed {model.system} record: {problems}",
            system=model.system,
            external_id=model.external_id,
        ) from exc


class MirroredRecordProvider(RecordProvider):
    """RecordProvider over the locally mirrored copy of one system.

    A system without an access token is considered disconnected: its mirror
    may be stale, so reads raise ConfigurationError instead of returning it.

    Args:
        system: Which system's mirror to read.
        session_factory: Async session generator factory.
        credential: Access token configured for the system.
    """

    def __init__(self, system: SourceSystem, session_factory: SessionFactory, credential: str) -> None:
        self.system = system
        self._session_factory = session_factory
        self._credential = credential

    def _require_credential(self) -> None:
        if not self._credential:
            raise ConfigurationError(
                f"No access token configured for {self.system.value}", system=self.system.value
            )

    def _log_malformed(self, model: MirroredRecordModel, exc: RecordError) -> None:
        logger.warning(
            "record_provider.malformed_record",
            system=self.system.value,
            external_id=model.external_id,
            error=str(exc),
        )

    @_db_retry
    async def list_records(self, limit: int, offset: int) -> RecordPage:
        self._require_credential()
        base = select(MirroredRecordModel).where(MirroredRecordModel.system == self.system.value)
        async for session in self._session_factory():
            total = await session.scalar(select(func.count()).select_from(base.subquery()))
            result = await session.execute(
                base.order_by(MirroredRecordModel.external_id).offset(offset).limit(limit)
            )
            page = RecordPage(total=total or 0)
            for model in result.scalars().all():
                try:
                    page.data.append(_model_to_record(model))
                except RecordError as exc:
                    self._log_malformed(model, exc)
                    page.rejected.append(
                        RejectedRecord(system=self.system, external_id=model.external_id, error=str(exc))
                    )
            return page
        return RecordPage()

    @_db_retry
    async def get_record(self, external_id: str) -> Any | None:
        self._require_credential()
        async for session in self._session_factory():
            result = await session.execute(
                select(MirroredRecordModel).where(
                    MirroredRecordModel.system == self.system.value,
                    MirroredRecordModel.external_id == external_id,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            try:
                return _model_to_record(model)
            except RecordError as exc:
                self._log_malformed(model, exc)
                return None
        return None


# ── Identifier Write-Back ───────────────────────────────────────────────────


class MirroredIdentifierWriteBack(IdentifierWriteBack):
    """Stores a linked counterpart id on the master's mirrored record.

    The id is written under the counterpart's mapping column name (for
    example ``crm_deal_id``), which the integration extractor recognises
    on later passes. A missing project number is filled in as well.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def write_identifier(
        self,
        master_system: SourceSystem,
        master_id: str,
        counterpart_system: SourceSystem,
        counterpart_id: str,
        project_number: str | None = None,
    ) -> None:
        async for session in self._session_factory():
            result = await session.execute(
                select(MirroredRecordModel).where(
                    MirroredRecordModel.system == master_system.value,
                    MirroredRecordModel.external_id == master_id,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise RecordNotFoundError(master_system.value, master_id)

            model.properties = {
                **(model.properties or {}),
                SIDE_ID_FIELDS[counterpart_system]: counterpart_id,
            }
            if project_number and not model.project_number:
                model.project_number = project_number
            await session.commit()
            logger.info(
                "write_back.identifier_written",
                master_system=master_system.value,
                master_id=master_id,
                counterpart_system=counterpart_system.value,
                counterpart_id=counterpart_id,
            )
