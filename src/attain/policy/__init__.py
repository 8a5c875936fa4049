"""Runtime settings resolution."""

from attain.policy.resolver import (
    BatchSettings,
    ReconciliationTolerance,
    RoundingPolicy,
    SettingsResolver,
)

__all__ = [
    "BatchSettings",
    "ReconciliationTolerance",
    "RoundingPolicy",
    "SettingsResolver",
]
