"""Duplicate detection within a single system.

Two records of the same system are likely duplicates when their names
and/or addresses agree: name exact +80, name containment +40, address
exact +80, address containment +40. Pairs reaching the threshold are
grouped under the first record (in external id order) that claims them.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from src.syncbridge.reconciliation.normalizer import NormalizedFields, normalize_record
from src.syncbridge.reconciliation.schemas import DuplicateGroup, SourceSystem, UnmatchedRecord

DEFAULT_DUPLICATE_THRESHOLD = 80


def duplicate_score(a: NormalizedFields, b: NormalizedFields) -> int:
    total = 0
    if a.name and b.name:
        if a.name == b.name:
            total += 80
        elif a.name in b.name or b.name in a.name:
            total += 40
    if a.address and b.address:
        if a.address == b.address:
            total += 80
        elif a.address in b.address or b.address in a.address:
            total += 40
    return total


def _summary(record: Any) -> UnmatchedRecord:
    return UnmatchedRecord(
        external_id=record.external_id,
        name=record.name,
        project_number=record.project_number,
        city=record.city,
    )


def find_duplicate_groups(
    system: SourceSystem,
    records: Iterable[Any],
    threshold: int = DEFAULT_DUPLICATE_THRESHOLD,
) -> list[DuplicateGroup]:
    """Group likely duplicates. Each record appears in at most one group."""
    ordered = sorted(records, key=lambda r: r.external_id)
    fields = [normalize_record(r) for r in ordered]
    grouped: set[str] = set()
    groups: list[DuplicateGroup] = []

    for i, primary in enumerate(ordered):
        if primary.external_id in grouped:
            continue
        group = DuplicateGroup(system=system, primary_id=primary.external_id, primary_name=primary.name)
        for j in range(i + 1, len(ordered)):
            other = ordered[j]
            if other.external_id in grouped or other.external_id == primary.external_id:
                continue
            pair_score = duplicate_score(fields[i], fields[j])
            if pair_score >= threshold:
                group.duplicates.append(_summary(other))
                group.scores[other.external_id] = pair_score
                grouped.add(other.external_id)
        if group.duplicates:
            grouped.add(primary.external_id)
            groups.append(group)
    return groups
