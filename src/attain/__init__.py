"""Attain — incentive compensation calculation and reconciliation core.

Computes per-entity payouts from versioned rule sets and verifies computed
results against independent reference data, layer by layer.
"""

__version__ = "0.4.0"
