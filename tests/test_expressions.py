"""Tests for the restricted expression language used by formulas and predicates."""

import pytest
from decimal import Decimal

from attain.calculation.expressions import Expression, ExpressionContext, compiled
from attain.errors import ConfigurationError, UnresolvedReference


def _ctx(**values: str) -> ExpressionContext:
    return ExpressionContext.of({k: Decimal(v) for k, v in values.items()})


class TestArithmetic:
    def test_precedence_and_decimal_math(self) -> None:
        result = Expression.compile("a + b * 2 - 1").evaluate_number(_ctx(a="10", b="0.1"))
        assert result.value == Decimal("9.2")
        assert result.division_by_zero is False

    def test_float_literals_stay_exact(self) -> None:
        result = Expression.compile("0.1 + 0.2").evaluate_number(_ctx())
        assert result.value == Decimal("0.3")

    def test_unary_minus(self) -> None:
        assert Expression.compile("-a").evaluate_number(_ctx(a="4")).value == Decimal("-4")

    def test_functions(self) -> None:
        ctx = _ctx(a="3", b="-7")
        assert Expression.compile("min(a, 10)").evaluate_number(ctx).value == Decimal("3")
        assert Expression.compile("max(a, b, 1)").evaluate_number(ctx).value == Decimal("3")
        assert Expression.compile("abs(b)").evaluate_number(ctx).value == Decimal("7")


class TestDivisionByZero:
    def test_yields_zero_and_reports(self) -> None:
        result = Expression.compile("a / b").evaluate_number(_ctx(a="5", b="0"))
        assert result.value == Decimal("0")
        assert result.division_by_zero is True

    def test_nonzero_division_not_flagged(self) -> None:
        result = Expression.compile("a / b").evaluate_number(_ctx(a="5", b="2"))
        assert result.value == Decimal("2.5")
        assert result.division_by_zero is False


class TestPredicates:
    def test_comparisons_and_boolean_logic(self) -> None:
        ctx = _ctx(a="5", b="10")
        assert Expression.compile("a < b and b <= 10").test(ctx) is True
        assert Expression.compile("a > b or not a == 5").test(ctx) is False

    def test_symbolic_boolean_aliases(self) -> None:
        assert Expression.compile("a > 1 && a < 10").test(_ctx(a="5")) is True
        assert Expression.compile("a > 100 || a == 5").test(_ctx(a="5")) is True

    def test_chained_comparison(self) -> None:
        assert Expression.compile("1 < a < 10").test(_ctx(a="5")) is True
        assert Expression.compile("1 < a < 3").test(_ctx(a="5")) is False

    def test_attribute_lookup(self) -> None:
        ctx = ExpressionContext.of({}, {"role": "manager", "tenure": 4})
        assert Expression.compile("attr('role') == 'manager'").test(ctx) is True
        assert Expression.compile("attr('tenure') >= 3").test(ctx) is True

    def test_missing_attribute_never_orders(self) -> None:
        ctx = ExpressionContext.of({}, {})
        assert Expression.compile("attr('tenure') > 3").test(ctx) is False
        assert Expression.compile("attr('tenure') < 3").test(ctx) is False

    def test_period_key_visible(self) -> None:
        ctx = ExpressionContext.of({}, {}, period_key="2024-01")
        assert Expression.compile("period_key == '2024-01'").test(ctx) is True


class TestReferences:
    def test_bare_names_and_ref_literals(self) -> None:
        expr = Expression.compile("net_sales * 0.1 + ref('Store Bonus') + min(a, 2)")
        assert expr.references == frozenset({"net_sales", "Store Bonus", "a"})

    def test_ref_reads_names_with_spaces(self) -> None:
        ctx = ExpressionContext.of({"Store Bonus": Decimal("40")})
        assert Expression.compile("ref('Store Bonus') / 2").evaluate_number(ctx).value == Decimal("20")

    def test_unknown_name_is_unresolved_reference(self) -> None:
        with pytest.raises(UnresolvedReference) as info:
            Expression.compile("missing + 1").evaluate(_ctx())
        assert info.value.name == "missing"
        assert info.value.reason == "UnresolvedReference"


class TestValidation:
    @pytest.mark.parametrize("source", [
        "__import__('os')",
        "a.b",
        "a[0]",
        "lambda: 1",
        "round(a)",
        "a ** 2",
        "a % 2",
        "[1, 2]",
        "min(a, key=b)",
        "ref(a)",
        "attr('x', 'y')",
        "abs(1, 2)",
        "max()",
        "a if b else c",
        "None",
    ])
    def test_rejected_at_compile_time(self, source: str) -> None:
        with pytest.raises(ConfigurationError):
            Expression.compile(source)

    def test_syntax_error(self) -> None:
        with pytest.raises(ConfigurationError, match="syntax"):
            Expression.compile("a +")

    def test_empty_source(self) -> None:
        with pytest.raises(ConfigurationError):
            Expression.compile("   ")

    def test_string_arithmetic_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="non-numeric"):
            Expression.compile("'abc' + 1").evaluate(_ctx())


class TestCompiledCache:
    def test_same_source_reuses_expression(self) -> None:
        assert compiled("a + 1") is compiled("a + 1")
