"""Rule set (plan) models — variants, components and their configurations.

All thresholds, rates and amounts use Decimal. No floats in payout math.

A rule set is a strict tree of frozen value objects:

    RuleSet
      ├── InputBindings (direct bindings + ordered metric derivations)
      └── Variant[] (ordered by ordinal)
            └── Component[] (ordered by ordinal)
                  └── TierConfig | MatrixConfig | LookupConfig | FormulaConfig

Ordering is an explicit persisted property (``ordinal``), never inferred
from storage order. Documents are validated into these objects by
attain.plans.loader before any entity is calculated.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, Optional, Tuple


class RuleSetStatus(str, enum.Enum):
    """Lifecycle status of a rule set version."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


RULE_SET_TRANSITIONS: Dict[RuleSetStatus, FrozenSet[RuleSetStatus]] = {
    RuleSetStatus.DRAFT: frozenset({RuleSetStatus.ACTIVE, RuleSetStatus.ARCHIVED}),
    RuleSetStatus.ACTIVE: frozenset({RuleSetStatus.ARCHIVED}),
    RuleSetStatus.ARCHIVED: frozenset(),
}


class ComponentType(str, enum.Enum):
    """Closed set of calculable rule shapes."""
    TIERED = "tiered"
    MATRIX = "matrix"
    ADDITIVE_LOOKUP = "additive_lookup"
    FORMULA = "formula"


class TierMode(str, enum.Enum):
    """How a tier schedule applies to the driving metric.

    MARGINAL: each tier's rate applies only to the slice of value inside it.
    CLIFF: the single matched tier applies to the whole value.
    """
    MARGINAL = "marginal"
    CLIFF = "cliff"


class Interpretation(str, enum.Enum):
    """How a looked-up value turns into a payout."""
    RATE = "rate"              # value × (base metric or driving metric)
    FLAT = "flat"              # value is the payout
    MULTIPLIER = "multiplier"  # value × base metric


class Aggregation(str, enum.Enum):
    """How a direct binding folds multiple raw rows into one metric."""
    SUM = "sum"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    AVERAGE = "average"


class DerivationOp(str, enum.Enum):
    SUM = "sum"
    DIFFERENCE = "difference"
    RATIO = "ratio"
    PRODUCT = "product"


class FilterOperator(str, enum.Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


@dataclass(frozen=True)
class RowFilter:
    """Restricts which raw rows feed a direct binding."""
    field: str
    operator: FilterOperator
    value: object


@dataclass(frozen=True)
class DirectBinding:
    """Copies (aggregates) a raw field into a named metric."""
    metric: str
    field: str
    required: bool = False
    aggregation: Aggregation = Aggregation.SUM
    filters: Tuple[RowFilter, ...] = ()


@dataclass(frozen=True)
class MetricDerivation:
    """Computes a metric from already-resolved metrics.

    ``difference`` subtracts the remaining inputs from the first;
    ``ratio`` divides the first input by the second.
    """
    metric: str
    operation: DerivationOp
    inputs: Tuple[str, ...]


@dataclass(frozen=True)
class InputBindings:
    direct: Tuple[DirectBinding, ...] = ()
    metric_derivations: Tuple[MetricDerivation, ...] = ()

    def metric_names(self) -> Tuple[str, ...]:
        """All metric names this binding set can produce, in resolution order."""
        return tuple(b.metric for b in self.direct) + tuple(
            d.metric for d in self.metric_derivations
        )


@dataclass(frozen=True)
class CalculationIntent:
    """Declares which metric feeds a component and how its result reads.

    ``metric`` is the driving metric for tiered components. ``base_metric``
    is what rates and multipliers are applied to; when absent, rates apply
    to the driving metric.
    """
    interpretation: Interpretation
    metric: Optional[str] = None
    base_metric: Optional[str] = None


@dataclass(frozen=True)
class Tier:
    threshold: Decimal
    value: Decimal
    label: str = ""


@dataclass(frozen=True)
class TierConfig:
    mode: TierMode
    tiers: Tuple[Tier, ...]


@dataclass(frozen=True)
class Band:
    """A half-open range [minimum, maximum). ``maximum=None`` is open-ended."""
    label: str
    minimum: Decimal
    maximum: Optional[Decimal] = None

    def contains(self, value: Decimal) -> bool:
        if value < self.minimum:
            return False
        return self.maximum is None or value < self.maximum


@dataclass(frozen=True)
class MatrixConfig:
    row_metric: str
    column_metric: str
    row_bands: Tuple[Band, ...]
    column_bands: Tuple[Band, ...]
    values: Tuple[Tuple[Decimal, ...], ...]


@dataclass(frozen=True)
class LookupRule:
    """One independent bonus condition inside an additive lookup.

    Matches either a metric band [minimum, maximum) or a predicate
    expression. ``interpretation`` overrides the component intent when set.
    """
    name: str
    value: Decimal
    metric: Optional[str] = None
    minimum: Optional[Decimal] = None
    maximum: Optional[Decimal] = None
    condition: Optional[str] = None
    interpretation: Optional[Interpretation] = None


@dataclass(frozen=True)
class LookupConfig:
    rules: Tuple[LookupRule, ...]


@dataclass(frozen=True)
class FormulaConfig:
    expression: str


@dataclass(frozen=True)
class Component:
    """One calculable payout unit.

    Exactly one of the type-specific configurations is set, matching
    ``component_type``. The loader enforces this.
    """
    name: str
    ordinal: int
    component_type: ComponentType
    intent: CalculationIntent
    tier_config: Optional[TierConfig] = None
    matrix_config: Optional[MatrixConfig] = None
    lookup_config: Optional[LookupConfig] = None
    formula_config: Optional[FormulaConfig] = None
    enabled: bool = True
    floor: Optional[Decimal] = None
    cap: Optional[Decimal] = None


@dataclass(frozen=True)
class Variant:
    """An eligibility-gated alternative configuration within a rule set."""
    name: str
    ordinal: int
    components: Tuple[Component, ...]
    eligibility: Optional[str] = None


@dataclass(frozen=True)
class RuleSet:
    """A tenant's versioned compensation plan."""
    rule_set_id: str
    tenant_id: str
    name: str
    version: int
    status: RuleSetStatus
    variants: Tuple[Variant, ...]
    input_bindings: InputBindings = field(default_factory=InputBindings)
    metadata: Dict[str, str] = field(default_factory=dict)

    def ordered_variants(self) -> Tuple[Variant, ...]:
        return tuple(sorted(self.variants, key=lambda v: v.ordinal))

    def variant(self, name: str) -> Optional[Variant]:
        for v in self.variants:
            if v.name == name:
                return v
        return None
