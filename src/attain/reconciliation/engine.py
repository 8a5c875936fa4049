"""Reconciliation engine — layered comparison of two payout sets.

Layers, in order, each entered only when both sides carry the data:

    AGGREGATE  sums of ok totals
    SEGMENT    subtotals per grouping key (skipped without a key)
    ENTITY     join by normalized identity
    COMPONENT  join component payouts by name for discrepant entities

False greens are checked whenever entity data exists on both sides:

- aggregate (or segment) within tolerance, while entities beneath it are
  out of tolerance and their absolute deltas sum past the false-green
  threshold
- an entity whose total is within tolerance while one or more of its
  components are not

Every delta is actual − expected. Percentages are taken against the
larger magnitude of the two sides, so comparing B against A flags the
same identities as A against B with the signs reversed.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from attain.models.reconciliation import (
    DEPTH_TRANSITIONS,
    AggregateComparison,
    ComparisonDepth,
    ComparisonReport,
    Discrepancy,
    DiscrepancyKind,
    FalseGreenFlag,
    Severity,
)
from attain.policy.resolver import ReconciliationTolerance
from attain.reconciliation.result_sets import EntityPayout, ResultSet

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PCT_QUANTUM = Decimal("0.0001")


def delta_pct(expected: Decimal, actual: Decimal) -> Optional[Decimal]:
    """Percentage delta relative to the larger magnitude. None when both are zero."""
    scale = max(abs(expected), abs(actual))
    if scale == 0:
        return None
    return ((actual - expected) / scale * HUNDRED).quantize(PCT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class _EntityOutcome:
    """Result of joining one identity across both sides."""
    identity: str
    delta: Decimal
    discrepancy: Optional[Discrepancy]
    components: Tuple[Discrepancy, ...]
    false_green: Optional[FalseGreenFlag]


class ReconciliationEngine:
    """Compares an expected result set against an actual one.

    Usage:
        engine = ReconciliationEngine(resolver.tolerance())
        report = engine.compare(expected, actual)
        if report.false_green: ...
    """

    def __init__(self, tolerance: Optional[ReconciliationTolerance] = None) -> None:
        self._tolerance = tolerance or ReconciliationTolerance()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def within_tolerance(self, delta: Decimal, pct: Optional[Decimal]) -> bool:
        if abs(delta) <= self._tolerance.absolute:
            return True
        return pct is not None and abs(pct) <= self._tolerance.percent

    def severity(self, delta: Decimal, pct: Optional[Decimal]) -> Severity:
        if delta == 0:
            return Severity.EXACT
        magnitude = abs(pct) if pct is not None else HUNDRED
        if magnitude <= self._tolerance.severity_tolerance_pct:
            return Severity.TOLERANCE
        if magnitude <= self._tolerance.severity_amber_pct:
            return Severity.AMBER
        return Severity.RED

    def hides_offsets(self, outcomes: Sequence[_EntityOutcome]) -> bool:
        """True when a matched total covers entities that are out of tolerance.

        The threshold is absolute and independent of population size.
        """
        if not any(o.discrepancy is not None for o in outcomes):
            return False
        gross = sum((abs(o.delta) for o in outcomes), ZERO)
        return gross > self._tolerance.false_green_absolute

    def _discrepancy(
        self,
        level: ComparisonDepth,
        kind: DiscrepancyKind,
        identity: str,
        expected: Decimal,
        actual: Decimal,
        expected_details=None,
        actual_details=None,
    ) -> Discrepancy:
        delta = actual - expected
        pct = delta_pct(expected, actual)
        return Discrepancy(
            level=level,
            kind=kind,
            identity=identity,
            expected=expected,
            actual=actual,
            delta=delta,
            delta_pct=pct,
            severity=self.severity(delta, pct),
            expected_details=expected_details,
            actual_details=actual_details,
        )

    # ------------------------------------------------------------------
    # Entity and component joins
    # ------------------------------------------------------------------

    def _compare_components(
        self,
        expected: EntityPayout,
        actual: EntityPayout,
    ) -> List[Discrepancy]:
        found: List[Discrepancy] = []
        for name in sorted(set(expected.components) | set(actual.components)):
            exp_value = expected.components.get(name, ZERO)
            act_value = actual.components.get(name, ZERO)
            delta = act_value - exp_value
            if self.within_tolerance(delta, delta_pct(exp_value, act_value)):
                continue
            found.append(self._discrepancy(
                ComparisonDepth.COMPONENT,
                DiscrepancyKind.COMPONENT_DISCREPANCY,
                f"{expected.identity}/{name}",
                exp_value,
                act_value,
                expected_details=expected.component_details.get(name),
                actual_details=actual.component_details.get(name),
            ))
        return found

    def _join_entity(
        self,
        identity: str,
        expected: Optional[EntityPayout],
        actual: Optional[EntityPayout],
        with_components: bool,
    ) -> _EntityOutcome:
        if actual is None:
            return _EntityOutcome(
                identity, -expected.total,
                self._discrepancy(
                    ComparisonDepth.ENTITY, DiscrepancyKind.MISSING_ENTITY,
                    identity, expected.total, ZERO,
                ),
                (), None,
            )
        if expected is None:
            return _EntityOutcome(
                identity, actual.total,
                self._discrepancy(
                    ComparisonDepth.ENTITY, DiscrepancyKind.EXTRA_ENTITY,
                    identity, ZERO, actual.total,
                ),
                (), None,
            )

        delta = actual.total - expected.total
        matched = self.within_tolerance(delta, delta_pct(expected.total, actual.total))
        components: List[Discrepancy] = []
        if with_components:
            components = self._compare_components(expected, actual)

        if not matched:
            return _EntityOutcome(
                identity, delta,
                self._discrepancy(
                    ComparisonDepth.ENTITY, DiscrepancyKind.ENTITY_DISCREPANCY,
                    identity, expected.total, actual.total,
                ),
                tuple(components), None,
            )

        if components:
            gross = sum((abs(c.delta) for c in components), ZERO)
            flag = FalseGreenFlag(
                level=ComparisonDepth.ENTITY,
                identity=identity,
                net_delta=delta,
                gross_delta=gross,
                reason=(
                    f"total within tolerance but {len(components)} component(s) differ; "
                    f"offsetting component errors"
                ),
            )
            return _EntityOutcome(identity, delta, None, tuple(components), flag)
        return _EntityOutcome(identity, delta, None, (), None)

    def _join_shard(
        self,
        identities: Sequence[str],
        expected: Dict[str, EntityPayout],
        actual: Dict[str, EntityPayout],
        with_components: bool,
    ) -> List[_EntityOutcome]:
        return [
            self._join_entity(i, expected.get(i), actual.get(i), with_components)
            for i in identities
        ]

    def _join_entities(
        self,
        expected: Dict[str, EntityPayout],
        actual: Dict[str, EntityPayout],
        with_components: bool,
    ) -> List[_EntityOutcome]:
        identities = sorted(set(expected) | set(actual))
        shard_count = max(1, min(self._tolerance.shard_count, len(identities)))
        if shard_count == 1:
            return self._join_shard(identities, expected, actual, with_components)

        size = -(-len(identities) // shard_count)
        shards = [identities[i:i + size] for i in range(0, len(identities), size)]
        with ThreadPoolExecutor(max_workers=len(shards)) as executor:
            parts = executor.map(
                lambda shard: self._join_shard(shard, expected, actual, with_components),
                shards,
            )
            return [outcome for part in parts for outcome in part]

    # ------------------------------------------------------------------
    # Compare
    # ------------------------------------------------------------------

    def compare(self, expected: ResultSet, actual: ResultSet) -> ComparisonReport:
        """Produce the layered comparison report. Never raises on mismatches."""
        depth = ComparisonDepth.NOT_STARTED
        layers: List[ComparisonDepth] = []
        notes: List[str] = []
        discrepancies: List[Discrepancy] = []
        false_greens: List[FalseGreenFlag] = []

        def advance(target: ComparisonDepth) -> None:
            nonlocal depth
            if target not in DEPTH_TRANSITIONS[depth]:
                raise ValueError(f"Illegal depth transition: {depth.value} → {target.value}")
            depth = target
            layers.append(target)

        # L0 aggregate
        advance(ComparisonDepth.AGGREGATE)
        exp_total, act_total = expected.total, actual.total
        agg_delta = act_total - exp_total
        agg_pct = delta_pct(exp_total, act_total)
        aggregate = AggregateComparison(
            expected_total=exp_total,
            actual_total=act_total,
            delta=agg_delta,
            delta_pct=agg_pct,
            matched=self.within_tolerance(agg_delta, agg_pct),
            expected_count=expected.count,
            actual_count=actual.count,
        )
        if not aggregate.matched:
            discrepancies.append(self._discrepancy(
                ComparisonDepth.AGGREGATE, DiscrepancyKind.AGGREGATE_DISCREPANCY,
                "*", exp_total, act_total,
            ))

        if not (expected.has_entities and actual.has_entities):
            notes.append("entity-level data unavailable on one side; stopped at aggregate")
            return self._report(expected, actual, depth, layers, aggregate,
                                false_greens, discrepancies, notes)

        with_components = expected.has_components and actual.has_components
        outcomes = self._join_entities(expected.entities, actual.entities, with_components)
        by_identity = {o.identity: o for o in outcomes}
        gross = sum((abs(o.delta) for o in outcomes), ZERO)

        if aggregate.matched and self.hides_offsets(outcomes):
            false_greens.append(FalseGreenFlag(
                level=ComparisonDepth.AGGREGATE,
                identity="*",
                net_delta=agg_delta,
                gross_delta=gross,
                reason="aggregate within tolerance but entity deltas offset each other",
            ))

        # Segment layer
        if expected.has_segments and actual.has_segments:
            advance(ComparisonDepth.SEGMENT)
            discrepancies.extend(self._compare_segments(expected, actual, by_identity, false_greens))
        else:
            notes.append("segment layer skipped: no grouping key on one side")

        # Entity layer
        advance(ComparisonDepth.ENTITY)
        discrepancies.extend(o.discrepancy for o in outcomes if o.discrepancy is not None)
        false_greens.extend(o.false_green for o in outcomes if o.false_green is not None)

        # Component layer
        if with_components:
            advance(ComparisonDepth.COMPONENT)
            for outcome in outcomes:
                discrepancies.extend(outcome.components)
        else:
            notes.append("component layer skipped: no component results on one side")

        return self._report(expected, actual, depth, layers, aggregate,
                            false_greens, discrepancies, notes)

    def _compare_segments(
        self,
        expected: ResultSet,
        actual: ResultSet,
        by_identity: Dict[str, _EntityOutcome],
        false_greens: List[FalseGreenFlag],
    ) -> List[Discrepancy]:
        exp_totals: Dict[str, Decimal] = {}
        act_totals: Dict[str, Decimal] = {}
        members: Dict[str, List[_EntityOutcome]] = {}
        for side, totals in ((expected, exp_totals), (actual, act_totals)):
            for entity in side.entities.values():
                totals[entity.segment] = totals.get(entity.segment, ZERO) + entity.total

        # An identity present on both sides counts toward the expected side's segment
        for identity, outcome in by_identity.items():
            entity = expected.entities.get(identity) or actual.entities.get(identity)
            members.setdefault(entity.segment, []).append(outcome)

        found: List[Discrepancy] = []
        for segment in sorted(set(exp_totals) | set(act_totals)):
            exp_value = exp_totals.get(segment, ZERO)
            act_value = act_totals.get(segment, ZERO)
            delta = act_value - exp_value
            if not self.within_tolerance(delta, delta_pct(exp_value, act_value)):
                found.append(self._discrepancy(
                    ComparisonDepth.SEGMENT, DiscrepancyKind.SEGMENT_DISCREPANCY,
                    segment, exp_value, act_value,
                ))
            elif self.hides_offsets(members.get(segment, [])):
                false_greens.append(FalseGreenFlag(
                    level=ComparisonDepth.SEGMENT,
                    identity=segment,
                    net_delta=delta,
                    gross_delta=sum((abs(o.delta) for o in members[segment]), ZERO),
                    reason="segment within tolerance but entity deltas offset each other",
                ))
        return found

    def _report(
        self,
        expected: ResultSet,
        actual: ResultSet,
        depth: ComparisonDepth,
        layers: List[ComparisonDepth],
        aggregate: AggregateComparison,
        false_greens: List[FalseGreenFlag],
        discrepancies: List[Discrepancy],
        notes: List[str],
    ) -> ComparisonReport:
        report = ComparisonReport(
            expected_name=expected.name,
            actual_name=actual.name,
            depth_reached=depth,
            layers_compared=tuple(layers),
            aggregate=aggregate,
            false_greens=tuple(false_greens),
            discrepancies=tuple(discrepancies),
            notes=tuple(notes),
        )
        logger.info(
            "reconciled %s vs %s: %s, depth=%s, discrepancies=%d, false_green=%s",
            expected.name, actual.name, aggregate.status, depth.value,
            len(discrepancies), report.false_green,
        )
        return report
