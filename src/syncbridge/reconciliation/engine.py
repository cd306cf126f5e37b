"""Reconciliation engine -- bulk matching, manual links and mapping reports.

Orchestrates one pass over a source system's records:

1. Load the source records and every configured target pool.
2. Skip records that already belong to a mapping (refreshing their conflicts).
3. Run the match pipeline against each target pool in order; first match wins.
4. Compute conflicts for the records the mapping will join, then write the
   mapping (create, or attach to the target's existing mapping) atomically.
5. Record per-record details, progress and audit events.

Per-record failures never abort a pass. Only a ConfigurationError for the
source provider (or for every target) fails the run, and even then a
structured BulkMatchResult is returned.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.syncbridge.core.monitoring import (
    record_conflicts,
    record_match_outcome,
    track_reconciliation_run,
)
from src.syncbridge.reconciliation.conflicts import ConflictDetector
from src.syncbridge.reconciliation.duplicates import DEFAULT_DUPLICATE_THRESHOLD, find_duplicate_groups
from src.syncbridge.reconciliation.errors import (
    ConfigurationError,
    ConstraintViolation,
    LinkConflictError,
    MappingNotFoundError,
    RecordNotFoundError,
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
    SIDE_NAME_FIELDS,
    BulkMatchResult,
    ConflictEntry,
    DuplicateGroup,
    MappingCreate,
    MappingFilter,
    MappingPage,
    MappingRead,
    MappingUpdate,
    MatchDetail,
    MatchPreview,
    MatchStatus,
    MatchType,
    OverviewRead,
    RecordPage,
    RejectedRecord,
    RunRead,
    RunStatus,
    SourceSystem,
    UnmatchedRecord,
    UnmatchedReport,
)
from src.syncbridge.reconciliation.scorer import DEFAULT_FUZZY_THRESHOLD
from src.syncbridge.reconciliation.strategies import CandidatePool, MatchPipeline

logger = structlog.get_logger(__name__)

LinkKey = tuple[SourceSystem, str]


class EngineConfig(BaseModel):
    """Engine settings, built from application Settings in production."""

    master_system: SourceSystem = SourceSystem.PM
    fuzzy_threshold: int = DEFAULT_FUZZY_THRESHOLD
    default_source: SourceSystem = SourceSystem.PHOTO
    default_targets: list[SourceSystem] = Field(
        default_factory=lambda: [SourceSystem.PM, SourceSystem.CRM]
    )
    page_size: int = Field(default=500, ge=1)
    progress_interval: int = Field(default=50, ge=1)
    duplicate_threshold: int = DEFAULT_DUPLICATE_THRESHOLD

    @classmethod
    def from_settings(cls, settings: Any) -> EngineConfig:
        return cls(
            master_system=SourceSystem(settings.MASTER_SYSTEM.lower()),
            fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
            default_source=SourceSystem(settings.BULK_MATCH_SOURCE.lower()),
            default_targets=[SourceSystem(t) for t in settings.get_bulk_match_targets()],
            page_size=settings.RECORD_PAGE_SIZE,
            progress_interval=settings.RUN_PROGRESS_INTERVAL,
            duplicate_threshold=settings.DUPLICATE_THRESHOLD,
        )


# ── Helpers ─────────────────────────────────────────────────────────────────


def _index_mappings(mappings: Iterable[MappingRead]) -> dict[LinkKey, MappingRead]:
    index: dict[LinkKey, MappingRead] = {}
    for mapping in mappings:
        for system in mapping.linked_systems():
            index[(system, mapping.external_id_for(system))] = mapping
    return index


def _claimed(
    linked: Mapping[LinkKey, MappingRead],
    system: SourceSystem,
    external_id: str,
    by: SourceSystem,
) -> bool:
    """True when the record's mapping already has a ``by`` side."""
    mapping = linked.get((system, external_id))
    return mapping is not None and bool(mapping.external_id_for(by))


def _dedupe_sorted(records: Iterable[Any]) -> list[Any]:
    """Records in ascending external id order, first occurrence of an id kept."""
    seen: set[str] = set()
    ordered: list[Any] = []
    for record in sorted(records, key=lambda r: r.external_id):
        if record.external_id in seen:
            continue
        seen.add(record.external_id)
        ordered.append(record)
    return ordered


def _rejected_detail(rejected: RejectedRecord) -> MatchDetail:
    return MatchDetail(
        source_system=rejected.system,
        source_id=rejected.external_id or "",
        status=MatchStatus.ERROR,
        reason="malformed_record",
        error=rejected.error,
    )


def _side_values(system: SourceSystem, external_id: str | None, record: Any | None) -> dict[str, Any]:
    values: dict[str, Any] = {
        SIDE_ID_FIELDS[system]: external_id,
        SIDE_NAME_FIELDS[system]: record.name if record is not None else None,
    }
    if system == SourceSystem.PM:
        values["pm_project_number"] = record.project_number if record is not None else None
    return values


class ReconciliationEngine:
    """Links records across systems and maintains the mapping store.

    Args:
        mapping_store: Persistence for mappings (uniqueness enforced there).
        providers: Record provider per system.
        audit_sink: Optional audit log; failures are logged and ignored.
        run_store: Optional durable run progress.
        write_back: Optional identifier write-back used by manual links.
        config: Engine configuration.
        pipeline: Match pipeline; defaults to the standard strategy order.
        detector: Conflict detector; defaults to one using config.master_system.
    """

    def __init__(
        self,
        mapping_store: MappingStore,
        providers: Mapping[SourceSystem, RecordProvider],
        audit_sink: AuditSink | None = None,
        run_store: RunStore | None = None,
        write_back: IdentifierWriteBack | None = None,
        config: EngineConfig | None = None,
        pipeline: MatchPipeline | None = None,
        detector: ConflictDetector | None = None,
    ) -> None:
        self._store = mapping_store
        self._providers = dict(providers)
        self._audit = audit_sink
        self._runs = run_store
        self._write_back = write_back
        self.config = config or EngineConfig()
        self._pipeline = pipeline or MatchPipeline(threshold=self.config.fuzzy_threshold)
        self._detector = detector or ConflictDetector(master_system=self.config.master_system)

    # ── Collaborator access ─────────────────────────────────────────────────

    def _provider(self, system: SourceSystem) -> RecordProvider:
        provider = self._providers.get(system)
        if provider is None:
            raise ConfigurationError(f"No record provider registered for {system.value}", system=system.value)
        return provider

    async def _load_page(self, system: SourceSystem) -> RecordPage:
        return await self._provider(system).list_all(page_size=self.config.page_size)

    async def _load(self, system: SourceSystem) -> list[Any]:
        return _dedupe_sorted((await self._load_page(system)).data)

    async def _all_mappings(self) -> list[MappingRead]:
        page = await self._store.list_mappings(MappingFilter(limit=None))
        return page.items

    async def _emit(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        status: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit event. Audit failures never affect the operation."""
        if self._audit is None:
            return
        try:
            await self._audit.record_event(action, entity_type, entity_id, status, details or {})
        except Exception as exc:
            logger.warning("reconciliation.audit_failed", action=action, entity_id=entity_id, error=str(exc))

    async def _track_run(self, operation: str, *args: Any, **kwargs: Any) -> None:
        """Forward to the run store. Run-store failures never affect the pass."""
        if self._runs is None:
            return
        try:
            await getattr(self._runs, operation)(*args, **kwargs)
        except Exception as exc:
            logger.warning("reconciliation.run_store_failed", operation=operation, error=str(exc))

    # ── Bulk match ──────────────────────────────────────────────────────────

    async def run_bulk_match(
        self,
        source: SourceSystem | None = None,
        targets: Sequence[SourceSystem] | None = None,
        dry_run: bool = False,
    ) -> BulkMatchResult:
        """Match every unlinked source record against the target systems.

        Args:
            source: System whose records are matched. Defaults to config.
            targets: Target systems in priority order. Defaults to config.
            dry_run: Evaluate and count decisions without writing mappings.

        Returns:
            BulkMatchResult with counts and one MatchDetail per source record.
        """
        source = source or self.config.default_source
        requested = targets if targets is not None else self.config.default_targets
        target_list: list[SourceSystem] = []
        for target in requested:
            if target != source and target not in target_list:
                target_list.append(target)

        result = BulkMatchResult(
            run_id=str(uuid.uuid4()),
            source_system=source,
            target_systems=target_list,
            dry_run=dry_run,
        )
        log = logger.bind(run_id=result.run_id, source=source.value, dry_run=dry_run)
        log.info("reconciliation.bulk_match_started", targets=[t.value for t in target_list])
        started = time.perf_counter()

        async with track_reconciliation_run(source.value) as tracker:
            await self._track_run(
                "start",
                RunRead(
                    run_id=result.run_id,
                    status=RunStatus.RUNNING,
                    source_system=source,
                    target_systems=target_list,
                    dry_run=dry_run,
                ),
            )
            await self._emit(
                "bulk_match_started",
                "reconciliation_run",
                result.run_id,
                "started",
                {"source": source.value, "targets": [t.value for t in target_list], "dry_run": dry_run},
            )

            try:
                await self._run_pass(result, source, target_list, dry_run, log)
            except ConfigurationError as exc:
                result.success = False
                result.message = str(exc)
                log.error("reconciliation.bulk_match_aborted", error=str(exc))
            except Exception as exc:
                result.success = False
                result.message = f"Bulk match failed: {exc}"
                log.exception("reconciliation.bulk_match_failed")

            result.duration_ms = int((time.perf_counter() - started) * 1000)
            status = RunStatus.COMPLETED if result.success else RunStatus.FAILED
            tracker["status"] = status.value

            summary = result.model_dump(mode="json", exclude={"details"})
            await self._track_run(
                "finish",
                result.run_id,
                status,
                summary,
                error_message=None if result.success else result.message,
            )
            await self._emit(
                "bulk_match_completed",
                "reconciliation_run",
                result.run_id,
                "success" if result.success else "failure",
                summary,
            )

        log.info(
            "reconciliation.bulk_match_completed",
            success=result.success,
            matched=result.matched,
            already_matched=result.already_matched,
            no_match=result.no_match,
            errors=result.errors,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run_pass(
        self,
        result: BulkMatchResult,
        source: SourceSystem,
        targets: list[SourceSystem],
        dry_run: bool,
        log: Any,
    ) -> None:
        source_page = await self._load_page(source)
        source_records = _dedupe_sorted(source_page.data)
        known: dict[SourceSystem, dict[str, Any]] = {
            source: {r.external_id: r for r in source_records}
        }

        loaded: dict[SourceSystem, list[Any]] = {}
        unavailable: list[str] = []
        for target in targets:
            try:
                loaded[target] = await self._load(target)
            except ConfigurationError as exc:
                log.warning("reconciliation.target_unavailable", target=target.value, error=str(exc))
                unavailable.append(target.value)
                continue
            known[target] = {r.external_id: r for r in loaded[target]}

        if targets and not loaded:
            raise ConfigurationError(f"No target system available ({', '.join(unavailable)})")
        if unavailable:
            result.message = f"Skipped unavailable targets: {', '.join(unavailable)}"

        linked = _index_mappings(await self._all_mappings())
        pools: dict[SourceSystem, CandidatePool] = {}
        for target, records in loaded.items():
            pools[target] = CandidatePool(
                target,
                [r for r in records if not _claimed(linked, target, r.external_id, source)],
            )

        result.total_source = len(source_records) + len(source_page.rejected)
        result.total_candidates = sum(len(pool) for pool in pools.values())

        for rejected in source_page.rejected:
            detail = _rejected_detail(rejected)
            result.details.append(detail)
            self._tally(result, detail)
            record_match_outcome(source.value, None, detail.status.value)
            log.warning("reconciliation.record_rejected", source_id=rejected.external_id, error=rejected.error)

        if not source_records:
            if not source_page.rejected:
                result.message = f"No {source.value} records to match"
            return

        await self._track_run("update_progress", result.run_id, 0, result.total_source)

        for index, record in enumerate(source_records, start=1):
            detail = await self._process_record(record, source, pools, known, linked, dry_run, log)
            result.details.append(detail)
            self._tally(result, detail)
            record_match_outcome(
                source.value,
                detail.target_system.value if detail.target_system else None,
                detail.status.value,
            )
            if index % self.config.progress_interval == 0:
                await self._track_run("update_progress", result.run_id, index, result.total_source)

    @staticmethod
    def _tally(result: BulkMatchResult, detail: MatchDetail) -> None:
        if detail.status == MatchStatus.MATCHED:
            result.matched += 1
            if detail.match_type == MatchType.INTEGRATION:
                result.matched_via_integration += 1
            elif detail.match_type == MatchType.EXACT:
                result.matched_via_exact += 1
            elif detail.match_type == MatchType.FUZZY:
                result.matched_via_fuzzy += 1
        elif detail.status == MatchStatus.ALREADY_MATCHED:
            result.already_matched += 1
        elif detail.status == MatchStatus.NO_MATCH:
            result.no_match += 1
        else:
            result.errors += 1
        if detail.conflict_fields:
            result.conflicts += 1

    def _mapping_records(
        self,
        mapping: MappingRead | None,
        known: Mapping[SourceSystem, Mapping[str, Any]],
    ) -> dict[SourceSystem, Any]:
        """Loaded records for every populated side of ``mapping``."""
        records: dict[SourceSystem, Any] = {}
        if mapping is None:
            return records
        for system in mapping.linked_systems():
            record = known.get(system, {}).get(mapping.external_id_for(system))
            if record is not None:
                records[system] = record
        return records

    async def _process_record(
        self,
        record: Any,
        source: SourceSystem,
        pools: dict[SourceSystem, CandidatePool],
        known: dict[SourceSystem, dict[str, Any]],
        linked: dict[LinkKey, MappingRead],
        dry_run: bool,
        log: Any,
    ) -> MatchDetail:
        detail = MatchDetail(
            source_system=source,
            source_id=record.external_id,
            source_name=record.name,
            status=MatchStatus.NO_MATCH,
        )
        try:
            existing = linked.get((source, record.external_id))
            if existing is None and not dry_run:
                existing = await self._store.find_by_external_id(source, record.external_id)
            if existing is not None:
                await self._refresh_existing(existing, source, known, linked, dry_run, detail)
                return detail

            decision = None
            best_score: int | None = None
            for target, pool in pools.items():
                outcome = self._pipeline.evaluate(record, pool, known.get(target))
                if outcome.decision is not None:
                    decision = outcome.decision
                    break
                if outcome.best_fuzzy_score is not None and (
                    best_score is None or outcome.best_fuzzy_score > best_score
                ):
                    best_score = outcome.best_fuzzy_score

            if decision is None:
                detail.match_score = best_score
                detail.reason = "below_threshold" if best_score else "no_candidates"
                return detail

            target = decision.target_system
            target_record = decision.target or known.get(target, {}).get(decision.target_id)
            detail.target_system = target
            detail.target_id = decision.target_id
            detail.target_name = target_record.name if target_record is not None else None
            detail.match_type = decision.match_type
            detail.match_score = decision.score
            pools[target].discard(decision.target_id)

            target_mapping = linked.get((target, decision.target_id))
            if not dry_run:
                target_mapping = await self._store.find_by_external_id(target, decision.target_id)
            claimed_by = target_mapping.external_id_for(source) if target_mapping else None
            if claimed_by and claimed_by != record.external_id:
                detail.status = MatchStatus.NO_MATCH
                detail.reason = "target_linked_elsewhere"
                detail.mapping_id = target_mapping.id
                return detail

            sides = self._mapping_records(target_mapping, known)
            sides[source] = record
            if target_record is not None:
                sides[target] = target_record
            detection = self._detector.detect(sides)
            detail.warnings.extend(detection.skipped)
            detail.conflict_fields = [c.field.value for c in detection.conflicts]

            if dry_run:
                detail.status = MatchStatus.MATCHED
                detail.mapping_id = target_mapping.id if target_mapping else None
                return detail

            mapping = await self._write_link(
                source, record, target, decision.target_id, target_record,
                decision.match_type, decision.score, detection.conflicts, target_mapping,
            )
            for system in mapping.linked_systems():
                linked[(system, mapping.external_id_for(system))] = mapping

            detail.status = MatchStatus.MATCHED
            detail.mapping_id = mapping.id
            record_conflicts(detail.conflict_fields)
            log.info(
                "reconciliation.record_matched",
                source_id=record.external_id,
                target=target.value,
                target_id=decision.target_id,
                match_type=decision.match_type.value,
                score=decision.score,
            )
            await self._emit(
                "record_matched",
                "sync_mapping",
                mapping.id,
                "success",
                {
                    "source": source.value,
                    "source_id": record.external_id,
                    "target": target.value,
                    "target_id": decision.target_id,
                    "match_type": decision.match_type.value,
                    "score": decision.score,
                },
            )
        except ConstraintViolation as exc:
            detail.status = MatchStatus.ALREADY_MATCHED
            detail.reason = "constraint_violation"
            log.info("reconciliation.concurrent_link", source_id=record.external_id, error=str(exc))
        except Exception as exc:
            detail.status = MatchStatus.ERROR
            detail.error = str(exc)
            log.warning(
                "reconciliation.record_error",
                source_id=record.external_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return detail

    async def _refresh_existing(
        self,
        mapping: MappingRead,
        source: SourceSystem,
        known: Mapping[SourceSystem, Mapping[str, Any]],
        linked: dict[LinkKey, MappingRead],
        dry_run: bool,
        detail: MatchDetail,
    ) -> None:
        """Report an already-linked record and refresh its stored conflicts."""
        detail.status = MatchStatus.ALREADY_MATCHED
        detail.mapping_id = mapping.id
        detail.match_type = mapping.match_type
        detail.match_score = mapping.match_score
        for system in mapping.linked_systems():
            if system != source:
                detail.target_system = system
                detail.target_id = mapping.external_id_for(system)
                detail.target_name = getattr(mapping, SIDE_NAME_FIELDS[system])
                break

        sides = self._mapping_records(mapping, known)
        if len(sides) < 2:
            return
        detection = self._detector.detect(sides)
        detail.warnings.extend(detection.skipped)
        detail.conflict_fields = [c.field.value for c in detection.conflicts]
        if dry_run or detection.conflicts == mapping.conflicts:
            return

        updated = await self._store.update(mapping.id, MappingUpdate(conflicts=detection.conflicts))
        for system in updated.linked_systems():
            linked[(system, updated.external_id_for(system))] = updated
        record_conflicts(detail.conflict_fields)

    async def _write_link(
        self,
        source: SourceSystem,
        record: Any,
        target: SourceSystem,
        target_id: str,
        target_record: Any | None,
        match_type: MatchType,
        score: int | None,
        conflicts: list[ConflictEntry],
        target_mapping: MappingRead | None,
    ) -> MappingRead:
        direction = f"{source.value}_to_{target.value}"
        if target_mapping is None:
            return await self._store.create(
                MappingCreate(
                    **_side_values(source, record.external_id, record),
                    **_side_values(target, target_id, target_record),
                    match_type=match_type,
                    match_score=score,
                    conflicts=conflicts,
                    last_sync_direction=direction,
                )
            )
        values = _side_values(source, record.external_id, record)
        if target_record is not None:
            values.update(_side_values(target, target_id, target_record))
        # The existing link's match type and score survive an attach
        if target_mapping.match_type is None:
            values.update(match_type=match_type, match_score=score)
        return await self._store.update(
            target_mapping.id,
            MappingUpdate(
                **values,
                conflicts=conflicts,
                last_sync_status="success",
                last_sync_direction=direction,
            ),
        )

    # ── Manual link / unlink ────────────────────────────────────────────────

    async def manual_link(
        self,
        source_system: SourceSystem,
        source_id: str,
        target_system: SourceSystem,
        target_id: str,
        write_back: bool = True,
    ) -> MappingRead:
        """Link two records chosen by an operator.

        Attaches to whichever side already has a mapping, otherwise creates
        one. The resulting mapping has match_type ``manual``.

        Raises:
            RecordNotFoundError: Either record is not in its provider.
            LinkConflictError: A record is already linked to something else.
        """
        if source_system == target_system:
            raise LinkConflictError("Cannot link two records of the same system")

        source_record = await self._provider(source_system).get_record(source_id)
        if source_record is None:
            raise RecordNotFoundError(source_system.value, source_id)
        target_record = await self._provider(target_system).get_record(target_id)
        if target_record is None:
            raise RecordNotFoundError(target_system.value, target_id)

        source_mapping = await self._store.find_by_external_id(source_system, source_id)
        target_mapping = await self._store.find_by_external_id(target_system, target_id)
        if source_mapping and target_mapping and source_mapping.id != target_mapping.id:
            raise LinkConflictError(
                f"{source_system.value} {source_id} and {target_system.value} {target_id} "
                "belong to different mappings; unlink one first"
            )

        existing = source_mapping or target_mapping
        if existing is not None:
            for system, external_id in ((target_system, target_id), (source_system, source_id)):
                current = existing.external_id_for(system)
                if current and current != external_id:
                    raise LinkConflictError(
                        f"Mapping {existing.id} is already linked to {system.value} {current}; unlink it first"
                    )

        sides = await self._fetch_mapping_records(existing)
        sides[source_system] = source_record
        sides[target_system] = target_record
        conflicts = self._detector.detect(sides).conflicts

        values = {
            **_side_values(source_system, source_id, source_record),
            **_side_values(target_system, target_id, target_record),
        }
        try:
            if existing is None:
                mapping = await self._store.create(
                    MappingCreate(
                        **values,
                        match_type=MatchType.MANUAL,
                        conflicts=conflicts,
                        last_sync_direction="manual",
                    )
                )
            else:
                mapping = await self._store.update(
                    existing.id,
                    MappingUpdate(
                        **values,
                        match_type=MatchType.MANUAL,
                        match_score=None,
                        conflicts=conflicts,
                        last_sync_status="success",
                        last_sync_direction="manual",
                    ),
                )
        except ConstraintViolation as exc:
            raise LinkConflictError(str(exc)) from exc

        logger.info(
            "reconciliation.manual_link",
            mapping_id=mapping.id,
            source=source_system.value,
            source_id=source_id,
            target=target_system.value,
            target_id=target_id,
        )
        if write_back:
            await self._propagate_identifier(source_system, source_record, target_system, target_record)
        await self._emit(
            "manual_link",
            "sync_mapping",
            mapping.id,
            "success",
            {
                "source": source_system.value,
                "source_id": source_id,
                "target": target_system.value,
                "target_id": target_id,
                "conflicts": len(conflicts),
            },
        )
        return mapping

    async def _fetch_mapping_records(self, mapping: MappingRead | None) -> dict[SourceSystem, Any]:
        records: dict[SourceSystem, Any] = {}
        if mapping is None:
            return records
        for system in mapping.linked_systems():
            provider = self._providers.get(system)
            if provider is None:
                continue
            try:
                record = await provider.get_record(mapping.external_id_for(system))
            except ConfigurationError:
                continue
            if record is not None:
                records[system] = record
        return records

    async def _propagate_identifier(
        self,
        source_system: SourceSystem,
        source_record: Any,
        target_system: SourceSystem,
        target_record: Any,
    ) -> None:
        """Write the counterpart id into the master record. Failures only log."""
        master = self.config.master_system
        if self._write_back is None or master not in (source_system, target_system):
            return
        if master == source_system:
            master_record, counterpart = source_record, target_record
        else:
            master_record, counterpart = target_record, source_record
        try:
            await self._write_back.write_identifier(
                master,
                master_record.external_id,
                counterpart.system,
                counterpart.external_id,
                project_number=counterpart.project_number,
            )
        except Exception as exc:
            logger.warning(
                "reconciliation.write_back_failed",
                master=master.value,
                master_id=master_record.external_id,
                error=str(exc),
            )

    async def unlink(self, mapping_id: str, system: SourceSystem | None = None) -> MappingRead:
        """Detach records from a mapping. The row and audit history remain.

        With ``system`` only that side is cleared. Without it every side but
        the anchor (the master side when present, else the first linked side)
        is cleared.

        Raises:
            MappingNotFoundError: Unknown mapping id.
        """
        mapping = await self._store.get(mapping_id)
        if mapping is None:
            raise MappingNotFoundError(mapping_id)

        linked = mapping.linked_systems()
        if system is not None:
            detach = [system] if system in linked else []
        elif linked:
            anchor = self.config.master_system if self.config.master_system in linked else linked[0]
            detach = [s for s in linked if s != anchor]
        else:
            detach = []

        if not detach:
            logger.info("reconciliation.unlink_noop", mapping_id=mapping_id)
            return mapping

        values: dict[str, Any] = {}
        for side in detach:
            values.update(_side_values(side, None, None))
        remaining = [s for s in linked if s not in detach]
        mapping = await self._store.update(
            mapping_id,
            MappingUpdate(
                **values,
                conflicts=[],
                match_score=None,
                match_type=mapping.match_type if len(remaining) > 1 else None,
                last_sync_status="unlinked",
            ),
        )
        detached = sorted(side.value for side in detach)
        logger.info("reconciliation.unlinked", mapping_id=mapping_id, detached=detached)
        await self._emit("unlink", "sync_mapping", mapping_id, "success", {"detached": detached})
        return mapping

    # ── Queries and reports ─────────────────────────────────────────────────

    async def list_mappings(self, filters: MappingFilter) -> MappingPage:
        return await self._store.list_mappings(filters)

    async def get_mapping(self, mapping_id: str) -> MappingRead:
        mapping = await self._store.get(mapping_id)
        if mapping is None:
            raise MappingNotFoundError(mapping_id)
        return mapping

    async def get_run(self, run_id: str) -> RunRead | None:
        if self._runs is None:
            return None
        return await self._runs.get(run_id)

    async def overview(self) -> OverviewRead:
        """Mapping coverage per system. Unconfigured providers report total None."""
        mappings = await self._all_mappings()
        overview = OverviewRead(total_mappings=len(mappings))
        for system in SourceSystem:
            overview.mapped[system] = sum(1 for m in mappings if m.external_id_for(system))
            provider = self._providers.get(system)
            if provider is None:
                overview.totals[system] = None
                continue
            try:
                overview.totals[system] = (await provider.list_records(limit=1, offset=0)).total
            except ConfigurationError:
                overview.totals[system] = None
        overview.with_conflicts = sum(1 for m in mappings if m.has_conflicts)
        return overview

    async def unmatched(self, system: SourceSystem) -> UnmatchedReport:
        """Records of ``system`` that no mapping references."""
        records = await self._load(system)
        linked_ids = {
            m.external_id_for(system) for m in await self._all_mappings() if m.external_id_for(system)
        }
        rows = [
            UnmatchedRecord(
                external_id=r.external_id,
                name=r.name,
                project_number=r.project_number,
                city=r.city,
            )
            for r in records
            if r.external_id not in linked_ids
        ]
        return UnmatchedReport(system=system, total=len(rows), records=rows)

    async def find_duplicates(self, system: SourceSystem) -> list[DuplicateGroup]:
        records = await self._load(system)
        return find_duplicate_groups(system, records, threshold=self.config.duplicate_threshold)

    async def preview_match(
        self,
        source_system: SourceSystem,
        external_id: str,
        target_system: SourceSystem,
    ) -> MatchPreview:
        """Evaluate the pipeline for one record without writing anything.

        Raises:
            LinkConflictError: Source and target are the same system.
            RecordNotFoundError: The record is not in its provider.
        """
        if source_system == target_system:
            raise LinkConflictError("Cannot preview a match within one system")

        record = await self._provider(source_system).get_record(external_id)
        if record is None:
            raise RecordNotFoundError(source_system.value, external_id)

        preview = MatchPreview(
            source_system=source_system,
            source_id=external_id,
            target_system=target_system,
            status=MatchStatus.NO_MATCH,
        )
        existing = await self._store.find_by_external_id(source_system, external_id)
        if existing is not None:
            preview.status = MatchStatus.ALREADY_MATCHED
            preview.target_id = existing.external_id_for(target_system)
            preview.match_type = existing.match_type
            preview.match_score = existing.match_score
            return preview

        targets = await self._load(target_system)
        linked = _index_mappings(await self._all_mappings())
        pool = CandidatePool(
            target_system,
            [r for r in targets if not _claimed(linked, target_system, r.external_id, source_system)],
        )
        outcome = self._pipeline.evaluate(record, pool, {r.external_id: r for r in targets})
        preview.best_fuzzy_score = outcome.best_fuzzy_score
        if outcome.decision is None:
            preview.reason = "below_threshold" if outcome.best_fuzzy_score else "no_candidates"
            return preview

        preview.status = MatchStatus.MATCHED
        preview.target_id = outcome.decision.target_id
        preview.target_name = outcome.decision.target_name
        preview.match_type = outcome.decision.match_type
        preview.match_score = outcome.decision.score
        return preview
