"""Rule set loader — validates nested plan documents into frozen models.

Every structural defect is reported as a ConfigurationError here, before
any entity is calculated:

- unknown component types, interpretations or tier modes
- missing tier mode (there is no default)
- tier thresholds that are not strictly increasing
- ragged matrix grids or inverted bands
- expressions that do not parse or use unsupported syntax
- duplicate variant/component names or ordinals
- formulas that reference a component evaluated at or after themselves

Names a formula cites that are neither metrics nor components are left to
fail per entity as UnresolvedReference.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Type, TypeVar

from attain.calculation.expressions import compiled
from attain.errors import ConfigurationError
from attain.models.plan import (
    Aggregation,
    Band,
    CalculationIntent,
    Component,
    ComponentType,
    DerivationOp,
    DirectBinding,
    FilterOperator,
    FormulaConfig,
    InputBindings,
    Interpretation,
    LookupConfig,
    LookupRule,
    MatrixConfig,
    MetricDerivation,
    RowFilter,
    RuleSet,
    RuleSetStatus,
    Tier,
    TierConfig,
    TierMode,
    Variant,
)

E = TypeVar("E")

_CONFIG_KEYS = {
    ComponentType.TIERED: "tier_config",
    ComponentType.MATRIX: "matrix_config",
    ComponentType.ADDITIVE_LOOKUP: "lookup_config",
    ComponentType.FORMULA: "formula_config",
}


def _require(raw: Mapping[str, Any], key: str, where: str) -> Any:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where}: expected an object")
    value = raw.get(key)
    if value is None or value == "":
        raise ConfigurationError(f"{where}: '{key}' is required")
    return value


def _decimal(value: Any, where: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigurationError(f"{where}: expected a number, got {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"{where}: expected a number, got {value!r}") from exc
    if not result.is_finite():
        raise ConfigurationError(f"{where}: expected a finite number, got {value!r}")
    return result


def _optional_decimal(value: Any, where: str) -> Optional[Decimal]:
    return None if value is None else _decimal(value, where)


def _enum(enum_type: Type[E], value: Any, where: str) -> E:
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"{where}: unknown value {value!r} (allowed: {allowed})") from exc


def _ordinal(raw: Mapping[str, Any], where: str) -> int:
    value = raw.get("ordinal")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{where}: 'ordinal' must be an integer")
    return value


def _list(raw: Mapping[str, Any], key: str, where: str, required: bool = True) -> List[Any]:
    value = raw.get(key)
    if value is None:
        if required:
            raise ConfigurationError(f"{where}: '{key}' is required")
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"{where}: '{key}' must be a list")
    if required and not value:
        raise ConfigurationError(f"{where}: '{key}' must not be empty")
    return value


def _check_expression(source: Any, where: str) -> str:
    if not isinstance(source, str):
        raise ConfigurationError(f"{where}: expression must be a string")
    try:
        compiled(source)
    except ConfigurationError as exc:
        raise ConfigurationError(f"{where}: {exc}") from exc
    return source


# ----------------------------------------------------------------------
# Input bindings
# ----------------------------------------------------------------------

def _load_filter(raw: Mapping[str, Any], where: str) -> RowFilter:
    return RowFilter(
        field=str(_require(raw, "field", where)),
        operator=_enum(FilterOperator, raw.get("operator", "eq"), f"{where}.operator"),
        value=raw.get("value"),
    )


def _load_bindings(raw: Optional[Mapping[str, Any]]) -> InputBindings:
    if raw is None:
        return InputBindings()
    if not isinstance(raw, Mapping):
        raise ConfigurationError("input_bindings: expected an object")

    seen: Set[str] = set()
    direct: List[DirectBinding] = []
    for index, item in enumerate(_list(raw, "direct", "input_bindings", required=False)):
        where = f"input_bindings.direct[{index}]"
        metric = str(_require(item, "metric", where))
        if metric in seen:
            raise ConfigurationError(f"{where}: duplicate metric '{metric}'")
        seen.add(metric)
        aggregation = _enum(Aggregation, item.get("aggregation", "sum"), f"{where}.aggregation")
        field_name = item.get("field")
        if not field_name and aggregation != Aggregation.COUNT:
            raise ConfigurationError(f"{where}: 'field' is required")
        direct.append(DirectBinding(
            metric=metric,
            field=str(field_name or ""),
            required=bool(item.get("required", False)),
            aggregation=aggregation,
            filters=tuple(
                _load_filter(f, f"{where}.filters[{i}]")
                for i, f in enumerate(_list(item, "filters", where, required=False))
            ),
        ))

    derivations: List[MetricDerivation] = []
    for index, item in enumerate(_list(raw, "metric_derivations", "input_bindings", required=False)):
        where = f"input_bindings.metric_derivations[{index}]"
        metric = str(_require(item, "metric", where))
        if metric in seen:
            raise ConfigurationError(f"{where}: duplicate metric '{metric}'")
        seen.add(metric)
        operation = _enum(DerivationOp, _require(item, "operation", where), f"{where}.operation")
        inputs = tuple(str(name) for name in _list(item, "inputs", where))
        if operation == DerivationOp.RATIO and len(inputs) != 2:
            raise ConfigurationError(f"{where}: ratio takes exactly two inputs")
        derivations.append(MetricDerivation(metric=metric, operation=operation, inputs=inputs))

    return InputBindings(direct=tuple(direct), metric_derivations=tuple(derivations))


# ----------------------------------------------------------------------
# Component configurations
# ----------------------------------------------------------------------

def _load_intent(raw: Any, where: str) -> CalculationIntent:
    raw = raw or {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where}.intent: expected an object")
    return CalculationIntent(
        interpretation=_enum(
            Interpretation, raw.get("interpretation", "flat"), f"{where}.intent.interpretation",
        ),
        metric=raw.get("metric"),
        base_metric=raw.get("base_metric"),
    )


def _load_tiers(raw: Mapping[str, Any], intent: CalculationIntent, where: str) -> TierConfig:
    if raw.get("mode") is None:
        raise ConfigurationError(f"{where}: tier mode is required (marginal or cliff)")
    mode = _enum(TierMode, raw["mode"], f"{where}.mode")
    tiers: List[Tier] = []
    for index, item in enumerate(_list(raw, "tiers", where)):
        tier_where = f"{where}.tiers[{index}]"
        tier = Tier(
            threshold=_decimal(_require(item, "threshold", tier_where), f"{tier_where}.threshold"),
            value=_decimal(_require(item, "value", tier_where), f"{tier_where}.value"),
            label=str(item.get("label", "")),
        )
        if tiers and tier.threshold <= tiers[-1].threshold:
            raise ConfigurationError(f"{tier_where}: thresholds must be strictly increasing")
        tiers.append(tier)
    if not intent.metric:
        raise ConfigurationError(f"{where}: tiered components need intent.metric")
    if mode == TierMode.MARGINAL and intent.interpretation != Interpretation.RATE:
        raise ConfigurationError(f"{where}: marginal tiers require the rate interpretation")
    return TierConfig(mode=mode, tiers=tuple(tiers))


def _load_bands(items: Sequence[Any], where: str) -> Tuple[Band, ...]:
    bands: List[Band] = []
    for index, item in enumerate(items):
        band_where = f"{where}[{index}]"
        minimum = _decimal(_require(item, "min", band_where), f"{band_where}.min")
        maximum = _optional_decimal(item.get("max"), f"{band_where}.max")
        if maximum is not None and maximum <= minimum:
            raise ConfigurationError(f"{band_where}: max must be greater than min")
        bands.append(Band(label=str(item.get("label", index)), minimum=minimum, maximum=maximum))
    return tuple(bands)


def _load_matrix(raw: Mapping[str, Any], where: str) -> MatrixConfig:
    row_bands = _load_bands(_list(raw, "row_bands", where), f"{where}.row_bands")
    column_bands = _load_bands(_list(raw, "column_bands", where), f"{where}.column_bands")
    grid = _list(raw, "values", where)
    if len(grid) != len(row_bands):
        raise ConfigurationError(
            f"{where}: values has {len(grid)} rows, expected {len(row_bands)}"
        )
    values: List[Tuple[Decimal, ...]] = []
    for r, row in enumerate(grid):
        if not isinstance(row, list) or len(row) != len(column_bands):
            raise ConfigurationError(
                f"{where}.values[{r}]: expected {len(column_bands)} cells"
            )
        values.append(tuple(_decimal(cell, f"{where}.values[{r}]") for cell in row))
    return MatrixConfig(
        row_metric=str(_require(raw, "row_metric", where)),
        column_metric=str(_require(raw, "column_metric", where)),
        row_bands=row_bands,
        column_bands=column_bands,
        values=tuple(values),
    )


def _load_lookup(raw: Mapping[str, Any], intent: CalculationIntent, where: str) -> LookupConfig:
    rules: List[LookupRule] = []
    for index, item in enumerate(_list(raw, "rules", where)):
        rule_where = f"{where}.rules[{index}]"
        condition = item.get("condition")
        metric = item.get("metric")
        if condition is None and not metric:
            raise ConfigurationError(f"{rule_where}: needs a metric band or a condition")
        if condition is not None and metric:
            raise ConfigurationError(f"{rule_where}: use a metric band or a condition, not both")
        if condition is not None:
            _check_expression(condition, rule_where)
        interpretation = None
        if item.get("interpretation") is not None:
            interpretation = _enum(Interpretation, item["interpretation"], f"{rule_where}.interpretation")
        effective = interpretation or intent.interpretation
        needs_base = effective == Interpretation.MULTIPLIER or (
            effective == Interpretation.RATE and condition is not None
        )
        if needs_base and not intent.base_metric:
            raise ConfigurationError(
                f"{rule_where}: {effective.value} interpretation needs intent.base_metric"
            )
        minimum = _optional_decimal(item.get("min"), f"{rule_where}.min")
        maximum = _optional_decimal(item.get("max"), f"{rule_where}.max")
        if minimum is not None and maximum is not None and maximum <= minimum:
            raise ConfigurationError(f"{rule_where}: max must be greater than min")
        rules.append(LookupRule(
            name=str(item.get("name", f"rule_{index}")),
            value=_decimal(_require(item, "value", rule_where), f"{rule_where}.value"),
            metric=metric,
            minimum=minimum,
            maximum=maximum,
            condition=condition,
            interpretation=interpretation,
        ))
    return LookupConfig(rules=tuple(rules))


def _load_component(raw: Mapping[str, Any], where: str) -> Component:
    name = str(_require(raw, "name", where))
    where = f"{where} '{name}'"
    component_type = _enum(
        ComponentType, raw.get("component_type", raw.get("type")), f"{where}.type",
    )
    intent = _load_intent(raw.get("intent"), where)

    for other_type, key in _CONFIG_KEYS.items():
        if other_type != component_type and raw.get(key) is not None:
            raise ConfigurationError(f"{where}: {key} is not valid for a {component_type.value} component")
    config_key = _CONFIG_KEYS[component_type]
    config = raw.get(config_key)
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"{where}: {config_key} is required")

    kwargs: Dict[str, Any] = {}
    if component_type == ComponentType.TIERED:
        kwargs["tier_config"] = _load_tiers(config, intent, f"{where}.tier_config")
        if intent.interpretation == Interpretation.MULTIPLIER and not intent.base_metric:
            raise ConfigurationError(f"{where}: multiplier interpretation needs intent.base_metric")
    elif component_type == ComponentType.MATRIX:
        kwargs["matrix_config"] = _load_matrix(config, f"{where}.matrix_config")
        if intent.interpretation != Interpretation.FLAT and not intent.base_metric:
            raise ConfigurationError(
                f"{where}: {intent.interpretation.value} matrix cells need intent.base_metric"
            )
    elif component_type == ComponentType.ADDITIVE_LOOKUP:
        kwargs["lookup_config"] = _load_lookup(config, intent, f"{where}.lookup_config")
    else:
        expression = _check_expression(
            _require(config, "expression", f"{where}.formula_config"), where,
        )
        kwargs["formula_config"] = FormulaConfig(expression=expression)

    floor = _optional_decimal(raw.get("floor"), f"{where}.floor")
    cap = _optional_decimal(raw.get("cap"), f"{where}.cap")
    if floor is not None and cap is not None and floor > cap:
        raise ConfigurationError(f"{where}: floor {floor} exceeds cap {cap}")

    return Component(
        name=name,
        ordinal=_ordinal(raw, where),
        component_type=component_type,
        intent=intent,
        enabled=bool(raw.get("enabled", True)),
        floor=floor,
        cap=cap,
        **kwargs,
    )


def _check_formula_order(components: Sequence[Component], where: str) -> None:
    ordinals = {c.name: c.ordinal for c in components}
    for component in components:
        if component.formula_config is None:
            continue
        for name in compiled(component.formula_config.expression).references:
            if name in ordinals and ordinals[name] >= component.ordinal:
                raise ConfigurationError(
                    f"{where}: formula '{component.name}' references '{name}', "
                    f"which is not evaluated before it"
                )


def _load_variant(raw: Mapping[str, Any], where: str) -> Variant:
    name = str(_require(raw, "name", where))
    where = f"{where} '{name}'"
    eligibility = raw.get("eligibility")
    if eligibility is not None:
        _check_expression(eligibility, f"{where}.eligibility")

    components: List[Component] = []
    names: Set[str] = set()
    ordinals: Set[int] = set()
    for index, item in enumerate(_list(raw, "components", where)):
        component = _load_component(item, f"{where}.components[{index}]")
        if component.name in names:
            raise ConfigurationError(f"{where}: duplicate component name '{component.name}'")
        if component.ordinal in ordinals:
            raise ConfigurationError(f"{where}: duplicate component ordinal {component.ordinal}")
        names.add(component.name)
        ordinals.add(component.ordinal)
        components.append(component)
    _check_formula_order(components, where)

    return Variant(
        name=name,
        ordinal=_ordinal(raw, where),
        components=tuple(sorted(components, key=lambda c: c.ordinal)),
        eligibility=eligibility,
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load_rule_set(document: Mapping[str, Any]) -> RuleSet:
    """Validate a nested rule set document into a RuleSet.

    Raises:
        ConfigurationError: on any structural defect.
    """
    if not isinstance(document, Mapping):
        raise ConfigurationError("rule set document must be an object")

    version = document.get("version", 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ConfigurationError(f"rule set: version must be an integer >= 1, got {version!r}")

    variants: List[Variant] = []
    names: Set[str] = set()
    ordinals: Set[int] = set()
    for index, item in enumerate(_list(document, "variants", "rule set")):
        variant = _load_variant(item, f"variants[{index}]")
        if variant.name in names:
            raise ConfigurationError(f"rule set: duplicate variant name '{variant.name}'")
        if variant.ordinal in ordinals:
            raise ConfigurationError(f"rule set: duplicate variant ordinal {variant.ordinal}")
        names.add(variant.name)
        ordinals.add(variant.ordinal)
        variants.append(variant)

    metadata = document.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise ConfigurationError("rule set: metadata must be an object")

    return RuleSet(
        rule_set_id=str(_require(document, "rule_set_id", "rule set")),
        tenant_id=str(_require(document, "tenant_id", "rule set")),
        name=str(document.get("name", "")),
        version=version,
        status=_enum(RuleSetStatus, document.get("status", "draft"), "rule set.status"),
        variants=tuple(sorted(variants, key=lambda v: v.ordinal)),
        input_bindings=_load_bindings(document.get("input_bindings")),
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


def load_rule_set_file(path: Path) -> RuleSet:
    """Read and validate a JSON rule set document from disk."""
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read rule set {path}: {exc}") from exc
    return load_rule_set(document)
