"""Payout subjects, calculation periods and committed metric-fact rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Entity:
    """A payout subject (employee, store, rep) scoped to a tenant.

    ``external_id`` is the identity key used for cross-period continuity and
    for joining against external reference data. ``attributes`` carries
    free-form descriptors, including grouping keys such as ``store_id``.
    """
    entity_id: str
    tenant_id: str
    external_id: str = ""
    display_name: str = ""
    attributes: Dict[str, Any] = field(default_factory=dict)

    def attribute(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)


@dataclass(frozen=True)
class Period:
    """A tenant-scoped date range. Calculations are always period-scoped."""
    period_id: str
    tenant_id: str
    canonical_key: str
    start_date: date
    end_date: date

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValueError(
                f"Period {self.period_id}: start_date {self.start_date} "
                f"is after end_date {self.end_date}"
            )


@dataclass(frozen=True)
class CommittedRow:
    """One raw committed data row for an entity in a period."""
    tenant_id: str
    period_id: str
    entity_id: Optional[str]
    row_data: Mapping[str, Any]
