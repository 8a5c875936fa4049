"""Restricted expression language for formulas, lookup conditions and
variant eligibility predicates.

Expressions are parsed with Python's ``ast`` module in ``eval`` mode and
walked by a whitelist visitor. Anything not explicitly supported is
rejected when the expression is compiled, which happens at plan load time.

Supported:
    numbers, strings, True/False
    + - * /, unary minus/plus, parentheses
    == != < <= > >=, and, or, not
    min(...), max(...), abs(x)
    ref("Component Name")  a value whose name is not a Python identifier
    attr("name")           an entity attribute
    bare names             metrics, prior component payouts, period_key

All arithmetic is Decimal. Division by zero yields 0 and is reported on the
evaluation result rather than raised.
"""

from __future__ import annotations

import ast
import functools
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, FrozenSet, Mapping, Optional

from attain.errors import ConfigurationError, UnresolvedReference


_FUNCTIONS: FrozenSet[str] = frozenset({"min", "max", "abs", "ref", "attr"})

_ALLOWED_NODES = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.Call,
    ast.Name,
    ast.Constant,
    ast.Load,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.USub,
    ast.UAdd,
    ast.Not,
    ast.And,
    ast.Or,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
)


def _to_decimal(value: Any) -> Any:
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    return value


@dataclass(frozen=True)
class EvaluationResult:
    value: Any
    division_by_zero: bool = False


@dataclass(frozen=True)
class ExpressionContext:
    """Names visible to an expression during evaluation."""
    values: Mapping[str, Decimal]
    attributes: Mapping[str, Any]
    extra: Mapping[str, Any]

    @staticmethod
    def of(
        values: Optional[Mapping[str, Decimal]] = None,
        attributes: Optional[Mapping[str, Any]] = None,
        **extra: Any,
    ) -> ExpressionContext:
        return ExpressionContext(values or {}, attributes or {}, extra)


def _as_number(value: Any, source: str) -> Decimal:
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    raise ConfigurationError(f"non-numeric operand {value!r} in {source!r}")


class _Evaluator:
    def __init__(self, context: ExpressionContext, source: str) -> None:
        self._context = context
        self._source = source
        self.division_by_zero = False

    def visit(self, node: ast.AST) -> Any:
        visitor: Optional[Callable[[Any], Any]] = getattr(
            self, "visit_" + node.__class__.__name__, None,
        )
        if visitor is None:
            raise ConfigurationError(
                f"unsupported expression element '{node.__class__.__name__}' in {self._source!r}"
            )
        return visitor(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return _to_decimal(node.value)

    def visit_Name(self, node: ast.Name) -> Any:
        return self._lookup(node.id)

    def _lookup(self, name: str) -> Any:
        if name in self._context.values:
            return _to_decimal(self._context.values[name])
        if name in self._context.extra:
            return _to_decimal(self._context.extra[name])
        raise UnresolvedReference(name, context=self._source)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        number = self._number(operand)
        return -number if isinstance(node.op, ast.USub) else number

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self._number(self.visit(node.left))
        right = self._number(self.visit(node.right))
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if right == 0:
            self.division_by_zero = True
            return Decimal("0")
        return left / right

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            for value in node.values:
                if not bool(self.visit(value)):
                    return False
            return True
        for value in node.values:
            if bool(self.visit(value)):
                return True
        return False

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return left == right
        if isinstance(op, ast.NotEq):
            return left != right
        if left is None or right is None:
            return False
        try:
            if isinstance(op, ast.Lt):
                return left < right
            if isinstance(op, ast.LtE):
                return left <= right
            if isinstance(op, ast.Gt):
                return left > right
            return left >= right
        except TypeError:
            return False

    def visit_Call(self, node: ast.Call) -> Any:
        name = node.func.id  # validated at compile time
        if name in ("ref", "attr"):
            key = node.args[0].value
            if name == "ref":
                return self._lookup(key)
            return _to_decimal(self._context.attributes.get(key))
        args = [self._number(self.visit(arg)) for arg in node.args]
        if name == "abs":
            return abs(args[0])
        if name == "min":
            return min(args)
        return max(args)

    def _number(self, value: Any) -> Decimal:
        return _as_number(value, self._source)


class Expression:
    """A compiled, validated expression.

    Usage:
        expr = Expression.compile("base * 0.1 + ref('Store Bonus')")
        expr.references          # frozenset({'base', 'Store Bonus'})
        expr.evaluate(ExpressionContext.of(values))
    """

    def __init__(self, source: str, tree: ast.Expression) -> None:
        self.source = source
        self._tree = tree
        self.references = self._collect_references(tree)

    @classmethod
    def compile(cls, source: str) -> Expression:
        if not isinstance(source, str) or not source.strip():
            raise ConfigurationError("expression must be a non-empty string")
        normalised = source.replace("&&", " and ").replace("||", " or ")
        try:
            tree = ast.parse(normalised.strip(), mode="eval")
        except SyntaxError as exc:
            raise ConfigurationError(f"invalid expression syntax {source!r}: {exc.msg}") from exc
        cls._validate(tree, source)
        return cls(source, tree)

    @staticmethod
    def _validate(tree: ast.AST, source: str) -> None:
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise ConfigurationError(
                    f"unsupported expression element '{node.__class__.__name__}' in {source!r}"
                )
            if isinstance(node, ast.Constant) and not isinstance(
                node.value, (int, float, str, bool)
            ):
                raise ConfigurationError(f"unsupported constant {node.value!r} in {source!r}")
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                    raise ConfigurationError(f"unsupported function call in {source!r}")
                if node.keywords:
                    raise ConfigurationError(f"keyword arguments not allowed in {source!r}")
                name = node.func.id
                if name in ("ref", "attr"):
                    if len(node.args) != 1 or not (
                        isinstance(node.args[0], ast.Constant)
                        and isinstance(node.args[0].value, str)
                    ):
                        raise ConfigurationError(
                            f"{name}() takes one string literal in {source!r}"
                        )
                elif name == "abs" and len(node.args) != 1:
                    raise ConfigurationError(f"abs() takes one argument in {source!r}")
                elif not node.args:
                    raise ConfigurationError(f"{name}() needs arguments in {source!r}")

    @staticmethod
    def _collect_references(tree: ast.AST) -> FrozenSet[str]:
        names = set()
        call_funcs = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Call):
                call_funcs.add(id(node.func))
                if node.func.id == "ref":
                    names.add(node.args[0].value)
        for node in ast.walk(tree):
            if isinstance(node, ast.Name) and id(node) not in call_funcs:
                names.add(node.id)
        return frozenset(names)

    def evaluate(self, context: ExpressionContext) -> EvaluationResult:
        evaluator = _Evaluator(context, self.source)
        value = evaluator.visit(self._tree)
        return EvaluationResult(value=value, division_by_zero=evaluator.division_by_zero)

    def evaluate_number(self, context: ExpressionContext) -> EvaluationResult:
        result = self.evaluate(context)
        return EvaluationResult(
            value=_as_number(result.value, self.source),
            division_by_zero=result.division_by_zero,
        )

    def test(self, context: ExpressionContext) -> bool:
        return bool(self.evaluate(context).value)

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


@functools.lru_cache(maxsize=1024)
def compiled(source: str) -> Expression:
    """Compile ``source`` once and reuse it across entities and threads."""
    return Expression.compile(source)
