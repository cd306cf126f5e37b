"""Ordered match strategy pipeline.

Strategies run in a fixed order and the first one that returns a decision
wins; later strategies are not consulted:

1. IntegrationStrategy  -- an id embedded in the record's integration payload
2. IdentifierStrategy   -- equal project numbers
3. ExactNameStrategy    -- equal normalized names
4. FuzzyStrategy        -- best score over the pool, accepted at >= threshold

Candidates are visited in ascending ``external_id`` order so ties always
resolve to the same record regardless of provider ordering.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.syncbridge.reconciliation.extractor import extract_cross_ref_id
from src.syncbridge.reconciliation.normalizer import NormalizedFields, normalize_record
from src.syncbridge.reconciliation.schemas import MatchType, SourceSystem
from src.syncbridge.reconciliation.scorer import DEFAULT_FUZZY_THRESHOLD, score

logger = structlog.get_logger(__name__)


# ── Candidate Pool ──────────────────────────────────────────────────────────


class CandidatePool:
    """Unmatched target records with their normalized fields precomputed.

    Records are kept in ascending ``external_id`` order; the first record
    seen for a duplicated id wins. ``discard`` removes a target once it has
    been consumed in the current pass.
    """

    def __init__(self, system: SourceSystem, records: Iterable[Any]) -> None:
        self.system = system
        self._records: dict[str, Any] = {}
        self._fields: dict[str, NormalizedFields] = {}
        for record in sorted(records, key=lambda r: r.external_id):
            if record.external_id in self._records:
                continue
            self._records[record.external_id] = record
            self._fields[record.external_id] = normalize_record(record)

    def __iter__(self) -> Iterator[tuple[Any, NormalizedFields]]:
        for external_id, record in self._records.items():
            yield record, self._fields[external_id]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, external_id: object) -> bool:
        return external_id in self._records

    def get(self, external_id: str) -> Any | None:
        return self._records.get(external_id)

    def discard(self, external_id: str) -> None:
        self._records.pop(external_id, None)
        self._fields.pop(external_id, None)


# ── Decisions ───────────────────────────────────────────────────────────────


@dataclass
class MatchDecision:
    """An accepted link from a source record to a target-system id."""

    target_system: SourceSystem
    target_id: str
    match_type: MatchType
    strategy: str
    score: int | None = None
    target: Any | None = None

    @property
    def target_name(self) -> str | None:
        return self.target.name if self.target is not None else None


@dataclass
class MatchContext:
    """Per-record state handed to each strategy."""

    record: Any
    fields: NormalizedFields
    pool: CandidatePool
    known_targets: Mapping[str, Any] = field(default_factory=dict)
    best_fuzzy_score: int | None = None
    best_fuzzy_id: str | None = None

    @property
    def target_system(self) -> SourceSystem:
        return self.pool.system

    def lookup(self, external_id: str) -> Any | None:
        return self.pool.get(external_id) or self.known_targets.get(external_id)


@dataclass
class PipelineResult:
    decision: MatchDecision | None = None
    best_fuzzy_score: int | None = None
    best_fuzzy_id: str | None = None

    @property
    def matched(self) -> bool:
        return self.decision is not None


# ── Strategies ──────────────────────────────────────────────────────────────


class MatchStrategy(ABC):
    """One way of finding a record's counterpart in a target system."""

    name: str = "strategy"
    match_type: MatchType

    @abstractmethod
    def attempt(self, ctx: MatchContext) -> MatchDecision | None:
        """Return a decision, or None to let the next strategy try."""
        ...

    def _decide(self, ctx: MatchContext, target_id: str, score: int | None = None) -> MatchDecision:
        return MatchDecision(
            target_system=ctx.target_system,
            target_id=target_id,
            match_type=self.match_type,
            strategy=self.name,
            score=score,
            target=ctx.lookup(target_id),
        )


class IntegrationStrategy(MatchStrategy):
    """Accept any id the source record already carries for the target system."""

    name = "integration"
    match_type = MatchType.INTEGRATION

    def __init__(self, extractor: Callable[[Any, SourceSystem], str | None] = extract_cross_ref_id) -> None:
        self._extract = extractor

    def attempt(self, ctx: MatchContext) -> MatchDecision | None:
        target_id = self._extract(ctx.record, ctx.target_system)
        if not target_id:
            return None
        return self._decide(ctx, target_id)


class IdentifierStrategy(MatchStrategy):
    """Equal, non-empty project numbers."""

    name = "identifier"
    match_type = MatchType.EXACT

    def attempt(self, ctx: MatchContext) -> MatchDecision | None:
        if not ctx.fields.project_number:
            return None
        for candidate, fields in ctx.pool:
            if fields.project_number == ctx.fields.project_number:
                return self._decide(ctx, candidate.external_id)
        return None


class ExactNameStrategy(MatchStrategy):
    """Equal, non-empty normalized names."""

    name = "exact_name"
    match_type = MatchType.EXACT

    def attempt(self, ctx: MatchContext) -> MatchDecision | None:
        if not ctx.fields.name:
            return None
        for candidate, fields in ctx.pool:
            if fields.name == ctx.fields.name:
                return self._decide(ctx, candidate.external_id)
        return None


class FuzzyStrategy(MatchStrategy):
    """Highest-scoring candidate, accepted when its score reaches the threshold.

    A later candidate replaces the best only with a strictly greater score,
    so the first candidate in pool order wins ties.
    """

    name = "fuzzy"
    match_type = MatchType.FUZZY

    def __init__(
        self,
        threshold: int = DEFAULT_FUZZY_THRESHOLD,
        scorer: Callable[[NormalizedFields, NormalizedFields], int] = score,
    ) -> None:
        self.threshold = threshold
        self._score = scorer

    def attempt(self, ctx: MatchContext) -> MatchDecision | None:
        best_id: str | None = None
        best_score = 0
        for candidate, fields in ctx.pool:
            candidate_score = self._score(ctx.fields, fields)
            if candidate_score > best_score:
                best_score = candidate_score
                best_id = candidate.external_id

        if best_id is None:
            return None
        ctx.best_fuzzy_score = best_score
        ctx.best_fuzzy_id = best_id
        if best_score < self.threshold:
            return None
        return self._decide(ctx, best_id, score=best_score)


def build_default_strategies(threshold: int = DEFAULT_FUZZY_THRESHOLD) -> list[MatchStrategy]:
    return [
        IntegrationStrategy(),
        IdentifierStrategy(),
        ExactNameStrategy(),
        FuzzyStrategy(threshold=threshold),
    ]


# ── Pipeline ────────────────────────────────────────────────────────────────


class MatchPipeline:
    """Runs strategies in order against one target pool.

    Args:
        strategies: Ordered strategies. Defaults to integration, identifier,
            exact name, fuzzy.
        threshold: Fuzzy threshold used when building the default strategies.
    """

    def __init__(
        self,
        strategies: Sequence[MatchStrategy] | None = None,
        threshold: int = DEFAULT_FUZZY_THRESHOLD,
    ) -> None:
        self._strategies = list(strategies) if strategies is not None else build_default_strategies(threshold)

    @property
    def strategies(self) -> list[MatchStrategy]:
        return list(self._strategies)

    def evaluate(
        self,
        record: Any,
        pool: CandidatePool,
        known_targets: Mapping[str, Any] | None = None,
    ) -> PipelineResult:
        """Decide a counterpart for ``record`` in ``pool``'s system. Pure; no writes."""
        ctx = MatchContext(
            record=record,
            fields=normalize_record(record),
            pool=pool,
            known_targets=known_targets or {},
        )
        for strategy in self._strategies:
            decision = strategy.attempt(ctx)
            if decision is not None:
                logger.debug(
                    "pipeline.match_decided",
                    source_id=record.external_id,
                    target_system=pool.system.value,
                    target_id=decision.target_id,
                    strategy=decision.strategy,
                    score=decision.score,
                )
                return PipelineResult(
                    decision=decision,
                    best_fuzzy_score=ctx.best_fuzzy_score,
                    best_fuzzy_id=ctx.best_fuzzy_id,
                )
        return PipelineResult(best_fuzzy_score=ctx.best_fuzzy_score, best_fuzzy_id=ctx.best_fuzzy_id)
