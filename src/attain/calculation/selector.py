"""Variant selector — first eligible variant by ordinal wins.

Selection never raises for "nothing matched": the result is a NoMatch
value, and the caller decides whether that means excluded or misconfigured.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional, Sequence, Tuple, Union

from attain.calculation.expressions import ExpressionContext, compiled
from attain.models.entity import Entity, Period
from attain.models.plan import Variant


@dataclass(frozen=True)
class NoMatch:
    """No variant's eligibility predicate held for the entity."""
    evaluated: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return False


Selection = Union[Variant, NoMatch]


def predicate_context(
    entity: Entity,
    period: Optional[Period],
    metrics: Mapping[str, Decimal],
) -> ExpressionContext:
    extra = {"period_key": period.canonical_key if period is not None else None}
    return ExpressionContext(dict(metrics), entity.attributes, extra)


def select(
    variants: Sequence[Variant],
    entity: Entity,
    period: Optional[Period],
    metrics: Mapping[str, Decimal],
) -> Selection:
    """Return the first variant (ascending ordinal) whose eligibility holds.

    A variant without an eligibility predicate always matches.
    """
    context = predicate_context(entity, period, metrics)
    evaluated = []
    for variant in sorted(variants, key=lambda v: v.ordinal):
        evaluated.append(variant.name)
        if variant.eligibility is None:
            return variant
        if compiled(variant.eligibility).test(context):
            return variant
    return NoMatch(evaluated=tuple(evaluated))
