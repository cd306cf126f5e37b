"""Unit tests for duplicate detection within one system."""

from __future__ import annotations

from src.syncbridge.reconciliation.duplicates import duplicate_score, find_duplicate_groups
from src.syncbridge.reconciliation.normalizer import normalize_record
from src.syncbridge.reconciliation.schemas import CrmRecord, SourceSystem


def _score(a: CrmRecord, b: CrmRecord) -> int:
    return duplicate_score(normalize_record(a), normalize_record(b))


class TestDuplicateScore:
    def test_name_and_address_exact(self):
        a = CrmRecord(external_id="d-1", name="Lake House", street_address="4 Shore Dr")
        b = CrmRecord(external_id="d-2", name="lake house", street_address="4 Shore Drive")
        assert _score(a, b) == 160

    def test_containment_scores_half(self):
        a = CrmRecord(external_id="d-1", name="Lake House", street_address="4 Shore")
        b = CrmRecord(external_id="d-2", name="Lake House Deck", street_address="4 Shore Unit 2")
        assert _score(a, b) == 80

    def test_missing_fields_score_nothing(self):
        a = CrmRecord(external_id="d-1", name="Lake House")
        b = CrmRecord(external_id="d-2", street_address="4 Shore Dr")
        assert _score(a, b) == 0


class TestFindDuplicateGroups:
    def test_groups_under_lowest_id(self):
        records = [
            CrmRecord(external_id="d-3", name="Lake House"),
            CrmRecord(external_id="d-1", name="Lake House"),
            CrmRecord(external_id="d-2", name="Lake House"),
            CrmRecord(external_id="d-4", name="Barn"),
        ]
        [group] = find_duplicate_groups(SourceSystem.CRM, records)
        assert group.system == SourceSystem.CRM
        assert group.primary_id == "d-1"
        assert [d.external_id for d in group.duplicates] == ["d-2", "d-3"]
        assert group.scores == {"d-2": 80, "d-3": 80}

    def test_below_threshold_not_grouped(self):
        records = [
            CrmRecord(external_id="d-1", name="Lake House"),
            CrmRecord(external_id="d-2", name="Lake House Deck"),
        ]
        assert find_duplicate_groups(SourceSystem.CRM, records) == []
        assert len(find_duplicate_groups(SourceSystem.CRM, records, threshold=40)) == 1

    def test_each_record_in_one_group(self):
        records = [
            CrmRecord(external_id="d-1", name="Lake House", street_address="4 Shore Dr"),
            CrmRecord(external_id="d-2", name="Lake House", street_address="9 Hill Rd"),
            CrmRecord(external_id="d-3", name="Hill Cabin", street_address="9 Hill Rd"),
        ]
        groups = find_duplicate_groups(SourceSystem.CRM, records)
        seen = [g.primary_id for g in groups] + [d.external_id for g in groups for d in g.duplicates]
        assert len(seen) == len(set(seen))
