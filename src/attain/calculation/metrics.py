"""Metric resolver — turns committed raw rows into named numeric metrics.

Resolution happens in two passes, both in declaration order:

    1. Direct bindings fold a raw field across the entity's rows for the
       period (sum by default). Empty and non-numeric values count as 0.
    2. Metric derivations compute new metrics from metrics already resolved.

Resolution is pure: same rows and bindings in, same metrics out.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from attain.errors import MissingMetric, UnresolvedDependency
from attain.models.entity import Entity, Period
from attain.models.plan import (
    Aggregation,
    DerivationOp,
    DirectBinding,
    FilterOperator,
    InputBindings,
    MetricDerivation,
    RowFilter,
)

ZERO = Decimal("0")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a raw cell to Decimal. Returns None for empty or non-numeric cells."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        result = Decimal(str(value))
        return result if result.is_finite() else None
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            result = Decimal(text)
        except InvalidOperation:
            return None
        return result if result.is_finite() else None
    return None


def _row_passes(row: Mapping[str, Any], filters: Sequence[RowFilter]) -> bool:
    for f in filters:
        cell = row.get(f.field)
        if f.operator == FilterOperator.EQ:
            if not _equal(cell, f.value):
                return False
        elif f.operator == FilterOperator.NE:
            if _equal(cell, f.value):
                return False
        else:
            left = to_decimal(cell)
            right = to_decimal(f.value)
            if left is None or right is None:
                return False
            if f.operator == FilterOperator.GT and not left > right:
                return False
            if f.operator == FilterOperator.GTE and not left >= right:
                return False
            if f.operator == FilterOperator.LT and not left < right:
                return False
            if f.operator == FilterOperator.LTE and not left <= right:
                return False
    return True


def _equal(cell: Any, expected: Any) -> bool:
    left, right = to_decimal(cell), to_decimal(expected)
    if left is not None and right is not None:
        return left == right
    if cell is None or expected is None:
        return cell is None and expected is None
    return str(cell).strip() == str(expected).strip()


def _resolve_direct(
    binding: DirectBinding,
    rows: Sequence[Mapping[str, Any]],
    entity_id: str,
) -> Decimal:
    matching = [row for row in rows if _row_passes(row, binding.filters)]
    if binding.aggregation == Aggregation.COUNT:
        if binding.required and not matching:
            raise MissingMetric(binding.metric, entity_id)
        return Decimal(len(matching))

    present: List[Decimal] = []
    for row in matching:
        value = to_decimal(row.get(binding.field))
        if value is not None:
            present.append(value)

    if not present:
        if binding.required:
            raise MissingMetric(binding.metric, entity_id)
        return ZERO

    if binding.aggregation == Aggregation.MIN:
        return min(present)
    if binding.aggregation == Aggregation.MAX:
        return max(present)
    total = sum(present, ZERO)
    if binding.aggregation == Aggregation.AVERAGE:
        return total / Decimal(len(present))
    return total


def _resolve_derivation(
    derivation: MetricDerivation,
    metrics: Mapping[str, Decimal],
    entity_id: str,
) -> Decimal:
    values: List[Decimal] = []
    for name in derivation.inputs:
        if name not in metrics:
            raise UnresolvedDependency(derivation.metric, name, entity_id)
        values.append(metrics[name])

    op = derivation.operation
    if op == DerivationOp.SUM:
        return sum(values, ZERO)
    if op == DerivationOp.DIFFERENCE:
        return values[0] - sum(values[1:], ZERO)
    if op == DerivationOp.PRODUCT:
        result = Decimal("1")
        for value in values:
            result *= value
        return result
    # Ratio: a zero denominator yields 0
    numerator, denominator = values[0], values[1]
    if denominator == 0:
        return ZERO
    return numerator / denominator


def resolve(
    raw_rows: Iterable[Mapping[str, Any]],
    bindings: InputBindings,
    entity: Entity,
    period: Optional[Period] = None,
) -> Dict[str, Decimal]:
    """Resolve all bound metrics for one entity in one period.

    Args:
        raw_rows: The ``row_data`` of the entity's committed rows for the period.
        bindings: The rule set's input bindings.
        entity: The entity being resolved (used for error attribution).
        period: The period (rows are expected to be pre-scoped to it).

    Returns:
        Metric name to Decimal value, in binding declaration order.

    Raises:
        MissingMetric: A required direct binding has no numeric value.
        UnresolvedDependency: A derivation cites an unresolved metric.
    """
    rows = list(raw_rows)
    metrics: Dict[str, Decimal] = {}
    for binding in bindings.direct:
        metrics[binding.metric] = _resolve_direct(binding, rows, entity.entity_id)
    for derivation in bindings.metric_derivations:
        metrics[derivation.metric] = _resolve_derivation(
            derivation, metrics, entity.entity_id,
        )
    return metrics
