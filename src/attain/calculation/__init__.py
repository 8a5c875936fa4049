"""Calculation pipeline: metrics, variant selection, components, batches."""

from attain.calculation.components import (
    CALCULATORS,
    ComponentInputs,
    ComponentOutcome,
    calculate,
)
from attain.calculation.lifecycle import LifecycleManager, TransitionError
from attain.calculation.metrics import resolve
from attain.calculation.runner import BatchRunner, group_rows
from attain.calculation.selector import NoMatch, select

__all__ = [
    "BatchRunner",
    "CALCULATORS",
    "ComponentInputs",
    "ComponentOutcome",
    "LifecycleManager",
    "NoMatch",
    "TransitionError",
    "calculate",
    "group_rows",
    "resolve",
    "select",
]
