"""Layered reconciliation of payout result sets."""

from attain.reconciliation.engine import ReconciliationEngine, delta_pct
from attain.reconciliation.result_sets import EntityPayout, ResultSet, normalize_id

__all__ = [
    "EntityPayout",
    "ReconciliationEngine",
    "ResultSet",
    "delta_pct",
    "normalize_id",
]
