"""Error taxonomy for the calculation and reconciliation core.

Two propagation scopes exist:

- Entity-scoped errors (EntityCalculationError subclasses) are caught by the
  batch runner and recorded against the failing entity's result. The batch
  continues.
- Configuration-scoped errors (ConfigurationError) affect every entity
  identically and abort the batch immediately.

"No eligible variant" is not an error at all; see
attain.calculation.selector.NoMatch.
"""

from __future__ import annotations


class AttainError(Exception):
    """Base class for all Attain errors."""


class EntityCalculationError(AttainError):
    """A failure isolated to one entity's calculation.

    The ``reason`` code is what the batch manifest records as
    ``failed:<reason>``.
    """

    reason = "EntityCalculationError"

    def __init__(self, message: str, entity_id: str = "") -> None:
        super().__init__(message)
        self.entity_id = entity_id


class MissingMetric(EntityCalculationError):
    """A required input metric is absent from the committed data."""

    reason = "MissingMetric"

    def __init__(self, metric: str, entity_id: str = "") -> None:
        super().__init__(f"required metric '{metric}' has no committed value", entity_id)
        self.metric = metric


class UnresolvedDependency(EntityCalculationError):
    """A metric derivation cites a metric that has not been resolved."""

    reason = "UnresolvedDependency"

    def __init__(self, metric: str, dependency: str, entity_id: str = "") -> None:
        super().__init__(
            f"derivation '{metric}' depends on unresolved metric '{dependency}'",
            entity_id,
        )
        self.metric = metric
        self.dependency = dependency


class UnresolvedReference(EntityCalculationError):
    """An expression cites a name that is neither a metric nor a prior payout."""

    reason = "UnresolvedReference"

    def __init__(self, name: str, context: str = "", entity_id: str = "") -> None:
        where = f" in {context}" if context else ""
        super().__init__(f"unresolved reference '{name}'{where}", entity_id)
        self.name = name


class ScopeMismatch(EntityCalculationError):
    """An entity does not belong to the tenant the batch runs for."""

    reason = "ScopeMismatch"


class ArithmeticFailure(EntityCalculationError):
    """Decimal arithmetic on the entity's values overflowed or was invalid.

    Typically a committed value too large to quantize at the configured
    precision.
    """

    reason = "ArithmeticFailure"


class ConfigurationError(AttainError):
    """Malformed rule-set configuration. Aborts the whole batch."""


class ResultSetLoadError(AttainError):
    """A result set supplied for reconciliation cannot be parsed."""


class RuleSetImmutableError(AttainError):
    """An in-place edit was attempted on a published rule-set version."""
