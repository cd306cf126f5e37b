"""Tests for the SQL-backed reconciliation collaborators.

The AsyncSession is replaced with AsyncMock/MagicMock doubles so these run
without a database. They cover model <-> schema conversion, the
IntegrityError -> ConstraintViolation translation, partial and guarded updates,
credential handling and rejected rows in MirroredRecordProvider, and
identifier write-back.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from src.syncbridge.reconciliation.errors import (
    ConfigurationError,
    ConstraintViolation,
    MappingNotFoundError,
    RecordError,
    RecordNotFoundError,
)
from src.syncbridge.reconciliation.models import (
    MappingModel,
    MirroredRecordModel,
    ReconciliationRunModel,
)
from src.syncbridge.reconciliation.repository import (
    MirroredIdentifierWriteBack,
    MirroredRecordProvider,
    SqlMappingStore,
    _mapping_values,
    _model_to_mapping,
    _model_to_record,
    _model_to_run,
)
from src.syncbridge.reconciliation.schemas import (
    ConflictResolution,
    MappingCreate,
    MappingUpdate,
    MatchType,
    PhotoRecord,
    RunStatus,
    SourceSystem,
    TrackedField,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _session() -> MagicMock:
    session = MagicMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.refresh = AsyncMock()
    session.execute = AsyncMock()
    session.scalar = AsyncMock()
    return session


def _factory(session: MagicMock):
    async def _gen():
        yield session

    return _gen


def _result(one=None, many=None) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = one
    result.scalars.return_value.all.return_value = many or []
    return result


_CONFLICT = {
    "field": "stage",
    "system_a": "pm",
    "system_b": "crm",
    "value_a": "Closed Won",
    "value_b": "Estimating",
    "resolution": "source_wins",
}


# ── Conversion ───────────────────────────────────────────────────────────────


class TestConversion:
    def test_model_to_mapping(self):
        mapping_id = uuid.uuid4()
        model = MappingModel(
            id=mapping_id,
            pm_project_id="pm-1",
            photo_project_id="p-1",
            match_type="fuzzy",
            match_score=90,
            conflicts=[_CONFLICT],
        )

        mapping = _model_to_mapping(model)

        assert mapping.id == str(mapping_id)
        assert mapping.match_type == MatchType.FUZZY
        assert mapping.linked_systems() == [SourceSystem.PM, SourceSystem.PHOTO]
        [conflict] = mapping.conflicts
        assert conflict.field == TrackedField.STAGE
        assert conflict.resolution == ConflictResolution.SOURCE_WINS

    def test_mapping_values_serializes_conflicts(self):
        values = _mapping_values(
            MappingCreate(match_type=MatchType.MANUAL, conflicts=[_CONFLICT]).model_dump()
        )
        assert values["match_type"] == "manual"
        assert values["conflicts"] == [_CONFLICT]

    def test_model_to_run(self):
        run_id = uuid.uuid4()
        model = ReconciliationRunModel(
            id=run_id,
            status="completed",
            source_system="photo",
            target_systems=["pm", "crm"],
            dry_run=False,
            processed=3,
            total=3,
            summary={"matched": 1},
        )
        run = _model_to_run(model)
        assert run.run_id == str(run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.target_systems == [SourceSystem.PM, SourceSystem.CRM]
        assert run.summary == {"matched": 1}

    def test_model_to_record_rejects_missing_id(self):
        model = MirroredRecordModel(system="pm", external_id=None, name="Barn", properties={})
        with pytest.raises(RecordError) as exc_info:
            _model_to_record(model)
        assert exc_info.value.system == "pm"


# ── Mapping Store ────────────────────────────────────────────────────────────


class TestSqlMappingStore:
    async def test_create_translates_unique_violation(self):
        session = _session()
        session.commit.side_effect = IntegrityError(
            "INSERT INTO sync_mappings",
            {},
            Exception('duplicate key value violates unique constraint "uq_sync_mappings_photo_project_id"'),
        )
        store = SqlMappingStore(_factory(session))

        with pytest.raises(ConstraintViolation) as exc_info:
            await store.create(MappingCreate(photo_project_id="p-1", pm_project_id="pm-1"))

        assert exc_info.value.system == "photo"
        assert exc_info.value.external_id == "p-1"
        session.rollback.assert_awaited_once()
        session.refresh.assert_not_awaited()

    async def test_create_returns_refreshed_row(self):
        session = _session()
        mapping_id = uuid.uuid4()

        async def _refresh(model):
            model.id = mapping_id

        session.refresh.side_effect = _refresh
        store = SqlMappingStore(_factory(session))

        mapping = await store.create(
            MappingCreate(photo_project_id="p-1", pm_project_id="pm-1", match_type=MatchType.EXACT)
        )

        assert mapping.id == str(mapping_id)
        assert mapping.match_type == MatchType.EXACT
        added = session.add.call_args.args[0]
        assert added.match_type == "exact"
        assert added.last_sync_at is not None

    async def test_update_writes_only_set_fields(self):
        model = MappingModel(id=uuid.uuid4(), pm_project_id="pm-1", pm_project_name="Barn", conflicts=[])
        session = _session()
        session.execute.return_value = _result(one=model)
        store = SqlMappingStore(_factory(session))

        mapping = await store.update(str(model.id), MappingUpdate(photo_project_id="p-1"))

        assert mapping.photo_project_id == "p-1"
        assert mapping.pm_project_id == "pm-1"
        assert mapping.pm_project_name == "Barn"
        session.commit.assert_awaited_once()

    async def test_update_refuses_to_replace_a_filled_side(self):
        model = MappingModel(id=uuid.uuid4(), pm_project_id="pm-1", photo_project_id="p-B", conflicts=[])
        session = _session()
        session.execute.return_value = _result(one=model)
        store = SqlMappingStore(_factory(session))

        with pytest.raises(ConstraintViolation) as exc_info:
            await store.update(str(model.id), MappingUpdate(photo_project_id="p-A"))

        assert exc_info.value.system == "photo"
        assert exc_info.value.external_id == "p-A"
        assert model.photo_project_id == "p-B"
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    async def test_update_may_clear_a_side(self):
        model = MappingModel(id=uuid.uuid4(), pm_project_id="pm-1", photo_project_id="p-B", conflicts=[])
        session = _session()
        session.execute.return_value = _result(one=model)
        store = SqlMappingStore(_factory(session))

        mapping = await store.update(str(model.id), MappingUpdate(photo_project_id=None))

        assert mapping.photo_project_id is None
        session.commit.assert_awaited_once()

    async def test_update_unknown_mapping(self):
        session = _session()
        session.execute.return_value = _result(one=None)
        store = SqlMappingStore(_factory(session))
        with pytest.raises(MappingNotFoundError):
            await store.update(str(uuid.uuid4()), MappingUpdate(photo_project_id="p-1"))

    async def test_malformed_id_is_not_found(self):
        session = _session()
        store = SqlMappingStore(_factory(session))
        assert await store.get("not-a-uuid") is None
        with pytest.raises(MappingNotFoundError):
            await store.update("not-a-uuid", MappingUpdate())
        session.execute.assert_not_awaited()


# ── Record Provider ──────────────────────────────────────────────────────────


class TestMirroredRecordProvider:
    async def test_missing_credential_raises(self):
        session = _session()
        provider = MirroredRecordProvider(SourceSystem.CRM, _factory(session), credential="")
        with pytest.raises(ConfigurationError) as exc_info:
            await provider.list_records(limit=10, offset=0)
        assert exc_info.value.system == "crm"
        session.execute.assert_not_awaited()

    async def test_malformed_rows_are_rejected(self):
        good = MirroredRecordModel(system="photo", external_id="p-1", name="Shed", properties={})
        bad = MirroredRecordModel(system="photo", external_id=None, name="Broken", properties={})
        session = _session()
        session.scalar.return_value = 2
        session.execute.return_value = _result(many=[good, bad])
        provider = MirroredRecordProvider(SourceSystem.PHOTO, _factory(session), credential="token")

        page = await provider.list_records(limit=10, offset=0)

        assert page.total == 2
        [record] = page.data
        assert isinstance(record, PhotoRecord)
        assert record.external_id == "p-1"
        [rejected] = page.rejected
        assert rejected.system == SourceSystem.PHOTO
        assert rejected.external_id is None
        assert rejected.error.startswith("Malformed photo record:")
        assert "external_id" in rejected.error

    async def test_get_record_missing(self):
        session = _session()
        session.execute.return_value = _result(one=None)
        provider = MirroredRecordProvider(SourceSystem.PM, _factory(session), credential="token")
        assert await provider.get_record("pm-404") is None

    async def test_list_all_reads_past_a_page_with_rejected_rows(self):
        rows = [
            MirroredRecordModel(system="pm", external_id="pm-1", name="Barn", properties={}),
            MirroredRecordModel(system="pm", external_id=None, name="Broken", properties={}),
            MirroredRecordModel(system="pm", external_id="pm-3", name="Shed", properties={}),
        ]
        session = _session()
        session.scalar.return_value = 3
        session.execute.side_effect = [_result(many=rows[:2]), _result(many=rows[2:])]
        provider = MirroredRecordProvider(SourceSystem.PM, _factory(session), credential="token")

        page = await provider.list_all(page_size=2)

        assert [r.external_id for r in page.data] == ["pm-1", "pm-3"]
        assert len(page.rejected) == 1
        assert page.total == 3
        assert session.execute.await_count == 2


# ── Identifier Write-Back ────────────────────────────────────────────────────


class TestMirroredIdentifierWriteBack:
    async def test_writes_counterpart_id_and_project_number(self):
        model = MirroredRecordModel(system="pm", external_id="pm-1", properties={"company": "7"})
        session = _session()
        session.execute.return_value = _result(one=model)
        writer = MirroredIdentifierWriteBack(_factory(session))

        await writer.write_identifier(SourceSystem.PM, "pm-1", SourceSystem.PHOTO, "p-1", project_number="24-3")

        assert model.properties == {"company": "7", "photo_project_id": "p-1"}
        assert model.project_number == "24-3"
        session.commit.assert_awaited_once()

    async def test_existing_project_number_kept(self):
        model = MirroredRecordModel(system="pm", external_id="pm-1", project_number="24-1", properties={})
        session = _session()
        session.execute.return_value = _result(one=model)
        writer = MirroredIdentifierWriteBack(_factory(session))

        await writer.write_identifier(SourceSystem.PM, "pm-1", SourceSystem.CRM, "d-1", project_number="24-3")

        assert model.properties == {"crm_deal_id": "d-1"}
        assert model.project_number == "24-1"

    async def test_missing_master_record(self):
        session = _session()
        session.execute.return_value = _result(one=None)
        writer = MirroredIdentifierWriteBack(_factory(session))
        with pytest.raises(RecordNotFoundError):
            await writer.write_identifier(SourceSystem.PM, "pm-9", SourceSystem.CRM, "d-1")
