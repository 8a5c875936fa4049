"""Reconciliation models — comparison depth, discrepancies and reports.

Comparison depth state machine:
    NOT_STARTED → AGGREGATE
    AGGREGATE → SEGMENT | ENTITY
    SEGMENT → ENTITY
    ENTITY → COMPONENT

AGGREGATE → ENTITY is taken when either side lacks a segment grouping key.
A report always states how deep the comparison actually got.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from attain.models.serialization import canonical_json, jsonable


class ComparisonDepth(str, enum.Enum):
    NOT_STARTED = "not_started"
    AGGREGATE = "aggregate"
    SEGMENT = "segment"
    ENTITY = "entity"
    COMPONENT = "component"


DEPTH_TRANSITIONS: Dict[ComparisonDepth, FrozenSet[ComparisonDepth]] = {
    ComparisonDepth.NOT_STARTED: frozenset({ComparisonDepth.AGGREGATE}),
    ComparisonDepth.AGGREGATE: frozenset({ComparisonDepth.SEGMENT, ComparisonDepth.ENTITY}),
    ComparisonDepth.SEGMENT: frozenset({ComparisonDepth.ENTITY}),
    ComparisonDepth.ENTITY: frozenset({ComparisonDepth.COMPONENT}),
    ComparisonDepth.COMPONENT: frozenset(),
}


class DiscrepancyKind(str, enum.Enum):
    AGGREGATE_DISCREPANCY = "AggregateDiscrepancy"
    SEGMENT_DISCREPANCY = "SegmentDiscrepancy"
    MISSING_ENTITY = "MissingEntity"
    EXTRA_ENTITY = "ExtraEntity"
    ENTITY_DISCREPANCY = "EntityDiscrepancy"
    COMPONENT_DISCREPANCY = "ComponentDiscrepancy"


class Severity(str, enum.Enum):
    EXACT = "exact"
    TOLERANCE = "tolerance"
    AMBER = "amber"
    RED = "red"


@dataclass(frozen=True)
class Discrepancy:
    """One mismatch between the expected and actual side.

    ``delta`` is actual − expected. ``delta_pct`` is relative to the larger
    magnitude of the two sides, so swapping sides reverses only the sign.
    """
    level: ComparisonDepth
    kind: DiscrepancyKind
    identity: str
    expected: Decimal
    actual: Decimal
    delta: Decimal
    delta_pct: Optional[Decimal]
    severity: Severity
    expected_details: Optional[Dict[str, Any]] = None
    actual_details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "level": self.level.value,
            "kind": self.kind.value,
            "identity": self.identity,
            "expected": str(self.expected),
            "actual": str(self.actual),
            "delta": str(self.delta),
            "deltaPct": None if self.delta_pct is None else str(self.delta_pct),
            "severity": self.severity.value,
        }
        if self.expected_details is not None or self.actual_details is not None:
            record["expectedDetails"] = jsonable(self.expected_details)
            record["actualDetails"] = jsonable(self.actual_details)
        return record


@dataclass(frozen=True)
class AggregateComparison:
    expected_total: Decimal
    actual_total: Decimal
    delta: Decimal
    delta_pct: Optional[Decimal]
    matched: bool
    expected_count: int
    actual_count: int

    @property
    def status(self) -> str:
        return "AggregateMatch" if self.matched else "AggregateDiscrepancy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "expected": str(self.expected_total),
            "actual": str(self.actual_total),
            "delta": str(self.delta),
            "deltaPct": None if self.delta_pct is None else str(self.delta_pct),
            "expectedCount": self.expected_count,
            "actualCount": self.actual_count,
        }


@dataclass(frozen=True)
class FalseGreenFlag:
    """A passing comparison that conceals offsetting discrepancies beneath it.

    ``net_delta`` is the delta at the flagged level; ``gross_delta`` is the
    sum of absolute deltas one level down.
    """
    level: ComparisonDepth
    identity: str
    net_delta: Decimal
    gross_delta: Decimal
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "identity": self.identity,
            "netDelta": str(self.net_delta),
            "grossDelta": str(self.gross_delta),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ComparisonReport:
    """Layered comparison of two payout sets.

    A deterministic function of its inputs: no timestamps or run ids live in
    the report body.
    """
    expected_name: str
    actual_name: str
    depth_reached: ComparisonDepth
    layers_compared: Tuple[ComparisonDepth, ...]
    aggregate: Optional[AggregateComparison]
    false_greens: Tuple[FalseGreenFlag, ...] = ()
    discrepancies: Tuple[Discrepancy, ...] = ()
    notes: Tuple[str, ...] = ()

    @property
    def aggregate_match(self) -> bool:
        return self.aggregate is not None and self.aggregate.matched

    @property
    def false_green(self) -> bool:
        return any(f.level == ComparisonDepth.AGGREGATE for f in self.false_greens)

    def discrepancies_of(self, kind: DiscrepancyKind) -> List[Discrepancy]:
        return [d for d in self.discrepancies if d.kind == kind]

    def flagged_identities(self) -> FrozenSet[str]:
        return frozenset(d.identity for d in self.discrepancies)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for d in self.discrepancies:
            counts[d.kind.value] = counts.get(d.kind.value, 0) + 1
        return dict(sorted(counts.items()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expected": self.expected_name,
            "actual": self.actual_name,
            "depthReached": self.depth_reached.value,
            "layersCompared": [layer.value for layer in self.layers_compared],
            "aggregate": None if self.aggregate is None else self.aggregate.to_dict(),
            "falseGreen": self.false_green,
            "falseGreens": [f.to_dict() for f in self.false_greens],
            "counts": self.counts(),
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "notes": list(self.notes),
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())


@dataclass(frozen=True)
class ReconciliationSession:
    """One reconciliation run between two explicitly named snapshots."""
    session_id: str
    tenant_id: str
    expected_ref: str
    actual_ref: str
    created_utc: datetime
    report: ComparisonReport
    metadata: Dict[str, Any] = field(default_factory=dict)
