"""Field-level conflict detection between linked records.

Compares a fixed set of tracked fields on every pair of records joined by a
mapping. The master system's record is always side A when it is present;
any disagreement involving the master resolves ``source_wins``, all others
``both_kept``. Only fields tracked by both record variants are compared
(photo records carry no stage or value).

PM lifecycle stages are translated into CRM stage labels before the stage
field is compared, so "Sent to production" and "Closed Won" agree.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.syncbridge.reconciliation.errors import ConflictDetectionError
from src.syncbridge.reconciliation.normalizer import normalize_value
from src.syncbridge.reconciliation.schemas import (
    ConflictEntry,
    ConflictResolution,
    SourceSystem,
    TrackedField,
)

logger = structlog.get_logger(__name__)


PM_TO_CRM_STAGE: dict[str, str] = {
    "Estimate in Progress": "Estimating",
    "Service – Estimating": "Service – Estimating",
    "Service - Estimating": "Service – Estimating",
    "Estimate under review": "Internal Review",
    "Estimate sent to Client": "Proposal Sent",
    "Service – sent to production": "Service – Won",
    "Service - sent to production": "Service – Won",
    "Sent to production": "Closed Won",
    "Service – lost": "Service – Lost",
    "Service - lost": "Service – Lost",
    "Production – lost": "Closed Lost",
    "Production - lost": "Closed Lost",
}


def translate_stage(stage: str | None, source: SourceSystem, target: SourceSystem) -> str | None:
    """Translate a PM stage into CRM vocabulary. Other pairs pass through.

    Raises:
        ConflictDetectionError: The PM stage is not a string.
    """
    if stage is None or source != SourceSystem.PM or target != SourceSystem.CRM:
        return stage
    if not isinstance(stage, str):
        raise ConflictDetectionError(
            f"Cannot translate stage of type {type(stage).__name__}", field=TrackedField.STAGE.value
        )
    return PM_TO_CRM_STAGE.get(stage.strip(), stage)


@dataclass(frozen=True)
class FieldSpec:
    """How to read one tracked field from a record."""

    field: TrackedField
    read: Callable[[Any], Any]


DEFAULT_FIELD_SPECS: tuple[FieldSpec, ...] = (
    FieldSpec(TrackedField.PROJECT_NUMBER, lambda r: r.project_number),
    FieldSpec(TrackedField.STAGE, lambda r: r.stage),
    FieldSpec(TrackedField.LOCATION, lambda r: r.location or None),
    FieldSpec(TrackedField.ESTIMATED_VALUE, lambda r: r.estimated_value),
)


@dataclass
class DetectionResult:
    conflicts: list[ConflictEntry] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _display(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


class ConflictDetector:
    """Computes ConflictEntry lists for the records behind one mapping.

    Args:
        master_system: Designated source of truth.
        field_specs: Tracked fields, in the order conflicts are reported.
    """

    def __init__(
        self,
        master_system: SourceSystem = SourceSystem.PM,
        field_specs: Sequence[FieldSpec] = DEFAULT_FIELD_SPECS,
    ) -> None:
        self.master_system = master_system
        self._specs = tuple(field_specs)

    def _pairs(self, systems: list[SourceSystem]) -> list[tuple[SourceSystem, SourceSystem]]:
        if len(systems) < 2:
            return []
        anchor = self.master_system if self.master_system in systems else systems[0]
        return [(anchor, other) for other in systems if other != anchor]

    def detect(self, records: Mapping[SourceSystem, Any]) -> DetectionResult:
        """Compare every linked pair; fields that cannot be compared are skipped."""
        result = DetectionResult()
        systems = [system for system in SourceSystem if records.get(system) is not None]
        for system_a, system_b in self._pairs(systems):
            self._compare_pair(system_a, records[system_a], system_b, records[system_b], result)
        return result

    def detect_pair(self, record_a: Any, record_b: Any) -> list[ConflictEntry]:
        return self.detect({record_a.system: record_a, record_b.system: record_b}).conflicts

    def _compare_pair(
        self,
        system_a: SourceSystem,
        record_a: Any,
        system_b: SourceSystem,
        record_b: Any,
        result: DetectionResult,
    ) -> None:
        shared = record_a.tracked_fields & record_b.tracked_fields
        resolution = (
            ConflictResolution.SOURCE_WINS
            if self.master_system in (system_a, system_b)
            else ConflictResolution.BOTH_KEPT
        )
        for tracked in self._specs:
            if tracked.field not in shared:
                continue
            try:
                raw_a = tracked.read(record_a)
                raw_b = tracked.read(record_b)
                if tracked.field == TrackedField.STAGE:
                    raw_a = translate_stage(raw_a, system_a, system_b)
                    raw_b = translate_stage(raw_b, system_b, system_a)
                if normalize_value(raw_a, tracked.field.value) == normalize_value(raw_b, tracked.field.value):
                    continue
            except Exception as exc:
                # A field that cannot be compared never hides the other fields
                logger.warning(
                    "conflicts.field_skipped",
                    field=tracked.field.value,
                    system_a=system_a.value,
                    system_b=system_b.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                result.skipped.append(f"{tracked.field.value}: {exc}")
                continue

            result.conflicts.append(
                ConflictEntry(
                    field=tracked.field,
                    system_a=system_a,
                    system_b=system_b,
                    value_a=_display(raw_a),
                    value_b=_display(raw_b),
                    resolution=resolution,
                )
            )
