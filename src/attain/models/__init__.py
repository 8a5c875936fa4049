"""Core data models for Attain."""

from attain.models.entity import CommittedRow, Entity, Period
from attain.models.lifecycle import BatchLifecycle, LifecycleState
from attain.models.plan import (
    Band,
    CalculationIntent,
    Component,
    ComponentType,
    InputBindings,
    Interpretation,
    RuleSet,
    RuleSetStatus,
    Tier,
    TierConfig,
    TierMode,
    Variant,
)
from attain.models.results import (
    BatchManifest,
    BatchStatus,
    CalculationBatch,
    CalculationResult,
    ComponentResult,
    EntityOutcome,
)

__all__ = [
    "Band",
    "BatchLifecycle",
    "BatchManifest",
    "BatchStatus",
    "CalculationBatch",
    "CalculationIntent",
    "CalculationResult",
    "CommittedRow",
    "Component",
    "ComponentResult",
    "ComponentType",
    "Entity",
    "EntityOutcome",
    "InputBindings",
    "Interpretation",
    "LifecycleState",
    "Period",
    "RuleSet",
    "RuleSetStatus",
    "Tier",
    "TierConfig",
    "TierMode",
    "Variant",
]
