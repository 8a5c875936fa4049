"""Component calculators — one pure function per component type.

Dispatch is a closed mapping from ComponentType to calculator. Every
calculator returns the raw (unrounded) payout and an explainable trace;
``calculate`` then applies the floor/cap modifiers and rounds exactly once.

Calculators never mutate their inputs and never raise for "no payout":
a value below the first tier, or outside the matrix bands, pays 0 with a
trace that says why.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from attain.calculation.expressions import ExpressionContext, compiled
from attain.errors import ConfigurationError, UnresolvedReference
from attain.models.plan import (
    Band,
    Component,
    ComponentType,
    Interpretation,
    LookupRule,
    TierMode,
)
from attain.policy.resolver import RoundingPolicy

ZERO = Decimal("0")


@dataclass(frozen=True)
class ComponentInputs:
    """Everything a component may read: resolved metrics, the payouts of
    earlier components in the same variant, and entity attributes."""
    metrics: Mapping[str, Decimal]
    prior_payouts: Mapping[str, Decimal] = field(default_factory=dict)
    attributes: Mapping[str, Any] = field(default_factory=dict)
    period_key: Optional[str] = None

    def metric(self, name: str, component: str = "") -> Decimal:
        if name not in self.metrics:
            raise UnresolvedReference(name, context=component)
        return self.metrics[name]

    def expression_context(self) -> ExpressionContext:
        values: Dict[str, Decimal] = dict(self.metrics)
        values.update(self.prior_payouts)
        return ExpressionContext(values, self.attributes, {"period_key": self.period_key})


@dataclass(frozen=True)
class ComponentOutcome:
    payout: Decimal
    trace: Dict[str, Any]


Calculator = Callable[[Component, ComponentInputs], Tuple[Decimal, Dict[str, Any]]]


def _base_value(component: Component, inputs: ComponentInputs, fallback: Optional[Decimal]) -> Decimal:
    base_metric = component.intent.base_metric
    if base_metric:
        return inputs.metric(base_metric, component.name)
    if fallback is None:
        raise ConfigurationError(
            f"component '{component.name}' needs a base_metric for "
            f"{component.intent.interpretation.value} interpretation"
        )
    return fallback


def _interpret(
    interpretation: Interpretation,
    value: Decimal,
    component: Component,
    inputs: ComponentInputs,
    driving: Optional[Decimal],
) -> Tuple[Decimal, Dict[str, Any]]:
    if interpretation == Interpretation.FLAT:
        return value, {"interpretation": "flat"}
    if interpretation == Interpretation.RATE:
        base = _base_value(component, inputs, driving)
        return value * base, {"interpretation": "rate", "base": base}
    base = _base_value(component, inputs, None)
    return value * base, {"interpretation": "multiplier", "base": base}


# ----------------------------------------------------------------------
# Tiered
# ----------------------------------------------------------------------

def calculate_tiered(component: Component, inputs: ComponentInputs) -> Tuple[Decimal, Dict[str, Any]]:
    config = component.tier_config
    driving = inputs.metric(component.intent.metric, component.name)
    tiers = config.tiers
    trace: Dict[str, Any] = {"mode": config.mode.value, "metric": component.intent.metric, "value": driving}

    if not tiers or driving < tiers[0].threshold:
        trace["status"] = "below_threshold"
        return ZERO, trace

    if config.mode == TierMode.MARGINAL:
        slices: List[Dict[str, Any]] = []
        total = ZERO
        for index, tier in enumerate(tiers):
            if driving < tier.threshold:
                break
            upper = tiers[index + 1].threshold if index + 1 < len(tiers) else None
            top = driving if upper is None else min(driving, upper)
            amount = top - tier.threshold
            contribution = amount * tier.value
            total += contribution
            slices.append({
                "threshold": tier.threshold,
                "upper": upper,
                "rate": tier.value,
                "slice": amount,
                "contribution": contribution,
            })
        trace["status"] = "matched"
        trace["slices"] = slices
        return total, trace

    matched_index = 0
    for index, tier in enumerate(tiers):
        if driving >= tier.threshold:
            matched_index = index
    tier = tiers[matched_index]
    payout, applied = _interpret(
        component.intent.interpretation, tier.value, component, inputs, driving,
    )
    trace.update(applied)
    trace["status"] = "matched"
    trace["tier"] = {"index": matched_index, "threshold": tier.threshold, "value": tier.value, "label": tier.label}
    return payout, trace


# ----------------------------------------------------------------------
# Matrix
# ----------------------------------------------------------------------

def _match_band(bands: Tuple[Band, ...], value: Decimal) -> Optional[int]:
    for index, band in enumerate(bands):
        if band.contains(value):
            return index
    return None


def calculate_matrix(component: Component, inputs: ComponentInputs) -> Tuple[Decimal, Dict[str, Any]]:
    config = component.matrix_config
    row_value = inputs.metric(config.row_metric, component.name)
    column_value = inputs.metric(config.column_metric, component.name)
    row_index = _match_band(config.row_bands, row_value)
    column_index = _match_band(config.column_bands, column_value)

    trace: Dict[str, Any] = {
        "row_metric": config.row_metric,
        "row_value": row_value,
        "column_metric": config.column_metric,
        "column_value": column_value,
    }
    missing_axes = []
    if row_index is None:
        missing_axes.append("row")
    if column_index is None:
        missing_axes.append("column")
    if missing_axes:
        trace["coverage"] = "out_of_bands"
        trace["missing_axes"] = missing_axes
        return ZERO, trace

    cell = config.values[row_index][column_index]
    trace["coverage"] = "matched"
    trace["row_band"] = config.row_bands[row_index].label
    trace["column_band"] = config.column_bands[column_index].label
    trace["cell"] = cell
    payout, applied = _interpret(
        component.intent.interpretation, cell, component, inputs, None,
    )
    trace.update(applied)
    return payout, trace


# ----------------------------------------------------------------------
# Additive lookup
# ----------------------------------------------------------------------

def _rule_matches(rule: LookupRule, inputs: ComponentInputs, component: str) -> Tuple[bool, Optional[Decimal]]:
    if rule.condition is not None:
        return compiled(rule.condition).test(inputs.expression_context()), None
    value = inputs.metric(rule.metric, component)
    if rule.minimum is not None and value < rule.minimum:
        return False, value
    if rule.maximum is not None and value >= rule.maximum:
        return False, value
    return True, value


def calculate_additive_lookup(component: Component, inputs: ComponentInputs) -> Tuple[Decimal, Dict[str, Any]]:
    total = ZERO
    rules: List[Dict[str, Any]] = []
    for rule in component.lookup_config.rules:
        matched, metric_value = _rule_matches(rule, inputs, component.name)
        entry: Dict[str, Any] = {"rule": rule.name, "matched": matched, "contribution": ZERO}
        if metric_value is not None:
            entry["metric_value"] = metric_value
        if matched:
            interpretation = rule.interpretation or component.intent.interpretation
            contribution, applied = _interpret(
                interpretation, rule.value, component, inputs, metric_value,
            )
            entry["contribution"] = contribution
            entry.update(applied)
            total += contribution
        rules.append(entry)
    return total, {"rules": rules, "matched_count": sum(1 for r in rules if r["matched"])}


# ----------------------------------------------------------------------
# Formula
# ----------------------------------------------------------------------

def calculate_formula(component: Component, inputs: ComponentInputs) -> Tuple[Decimal, Dict[str, Any]]:
    expression = compiled(component.formula_config.expression)
    try:
        result = expression.evaluate_number(inputs.expression_context())
    except UnresolvedReference as exc:
        raise UnresolvedReference(exc.name, context=f"formula '{component.name}'") from exc
    trace: Dict[str, Any] = {
        "expression": expression.source,
        "inputs": {
            name: inputs.prior_payouts.get(name, inputs.metrics.get(name))
            for name in sorted(expression.references)
            if name in inputs.prior_payouts or name in inputs.metrics
        },
        "value": result.value,
    }
    if result.division_by_zero:
        trace["division_by_zero"] = True
    return result.value, trace


CALCULATORS: Dict[ComponentType, Calculator] = {
    ComponentType.TIERED: calculate_tiered,
    ComponentType.MATRIX: calculate_matrix,
    ComponentType.ADDITIVE_LOOKUP: calculate_additive_lookup,
    ComponentType.FORMULA: calculate_formula,
}


def calculate(
    component: Component,
    inputs: ComponentInputs,
    rounding: Optional[RoundingPolicy] = None,
) -> ComponentOutcome:
    """Calculate one component's final, rounded payout.

    Order: type calculator (raw) → floor → cap → round once.
    """
    if rounding is None:
        rounding = RoundingPolicy()
    if not component.enabled:
        return ComponentOutcome(payout=rounding.apply(ZERO), trace={"status": "skipped"})

    calculator = CALCULATORS.get(component.component_type)
    if calculator is None:
        raise ConfigurationError(f"no calculator for component type {component.component_type!r}")

    raw, trace = calculator(component, inputs)
    adjusted = raw
    if component.floor is not None and adjusted < component.floor:
        adjusted = component.floor
        trace["floor_applied"] = component.floor
    if component.cap is not None and adjusted > component.cap:
        adjusted = component.cap
        trace["cap_applied"] = component.cap
    trace["raw_payout"] = raw
    return ComponentOutcome(payout=rounding.apply(adjusted), trace=trace)
