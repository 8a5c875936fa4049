"""Calculation result models — component results, entity results, batches.

Invariants enforced here:
- An ``ok`` CalculationResult's total_payout equals the exact sum of its
  component payouts. Any divergence is a defect, not rounding.
- A CalculationBatch is an immutable snapshot. Re-running produces a new
  batch with a new id; nothing is updated in place.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from attain.models.plan import ComponentType
from attain.models.serialization import jsonable, sha256_digest


class EntityOutcome(str, enum.Enum):
    OK = "ok"
    NO_MATCH = "no_match"
    FAILED = "failed"


class BatchStatus(str, enum.Enum):
    """COMPLETED: every entity was processed. PARTIAL: the batch was cancelled."""
    COMPLETED = "completed"
    PARTIAL = "partial"


@dataclass(frozen=True)
class ComponentResult:
    component_name: str
    component_type: ComponentType
    payout: Decimal
    details: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            "componentName": self.component_name,
            "componentType": self.component_type.value,
            "payout": str(self.payout),
            "details": jsonable(self.details),
        }


@dataclass(frozen=True)
class CalculationResult:
    """The payout for one entity under one rule set for one period."""
    entity_id: str
    rule_set_id: str
    period_id: str
    total_payout: Decimal
    components: Tuple[ComponentResult, ...] = ()
    outcome: EntityOutcome = EntityOutcome.OK
    failure_reason: Optional[str] = None
    variant_name: Optional[str] = None
    metrics: Dict[str, Decimal] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    external_id: str = ""

    def __post_init__(self) -> None:
        if self.outcome == EntityOutcome.OK:
            component_sum = sum((c.payout for c in self.components), Decimal("0"))
            if component_sum != self.total_payout:
                raise ValueError(
                    f"{self.entity_id}: total_payout {self.total_payout} != "
                    f"component sum {component_sum}"
                )

    @property
    def manifest_label(self) -> str:
        if self.outcome == EntityOutcome.FAILED:
            return f"failed:{self.failure_reason}"
        return self.outcome.value

    def to_record(self) -> Dict[str, Any]:
        """Persisted logical shape of a result."""
        record: Dict[str, Any] = {
            "entityId": self.entity_id,
            "ruleSetId": self.rule_set_id,
            "periodId": self.period_id,
            "totalPayout": str(self.total_payout),
            "components": [c.to_record() for c in self.components],
            "outcome": self.outcome.value,
        }
        if self.external_id:
            record["externalId"] = self.external_id
        if self.failure_reason:
            record["failureReason"] = self.failure_reason
        if self.variant_name:
            record["variant"] = self.variant_name
        if self.metrics:
            record["metrics"] = jsonable(self.metrics)
        if self.metadata:
            record["metadata"] = jsonable(self.metadata)
        return record


@dataclass(frozen=True)
class BatchManifest:
    """Per-entity outcomes of a batch plus summary counts."""
    outcomes: Dict[str, str]
    failure_reasons: Dict[str, str] = field(default_factory=dict)
    not_dispatched: Tuple[str, ...] = ()

    @property
    def ok_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o == EntityOutcome.OK.value)

    @property
    def no_match_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o == EntityOutcome.NO_MATCH.value)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.startswith("failed"))

    def reason_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes.values():
            if outcome.startswith("failed:"):
                reason = outcome.split(":", 1)[1]
                counts[reason] = counts.get(reason, 0) + 1
        return dict(sorted(counts.items()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok_count,
            "no_match": self.no_match_count,
            "failed": self.failed_count,
            "reasons": self.reason_counts(),
            "outcomes": dict(sorted(self.outcomes.items())),
            "failure_messages": dict(sorted(self.failure_reasons.items())),
            "not_dispatched": list(self.not_dispatched),
        }


@dataclass(frozen=True)
class CalculationBatch:
    """One immutable execution of the batch runner.

    Results are ordered by entity id, never by completion order.
    ``fingerprint`` is the SHA-256 of the canonical result records: two
    batches over identical inputs carry identical fingerprints.
    """
    batch_id: str
    tenant_id: str
    rule_set_id: str
    rule_set_version: int
    period_id: str
    created_utc: datetime
    status: BatchStatus
    results: Tuple[CalculationResult, ...]
    manifest: BatchManifest
    fingerprint: str = ""

    @staticmethod
    def create(
        batch_id: str,
        tenant_id: str,
        rule_set_id: str,
        rule_set_version: int,
        period_id: str,
        created_utc: datetime,
        status: BatchStatus,
        results: List[CalculationResult],
        manifest: BatchManifest,
    ) -> CalculationBatch:
        """Create a batch with its results sorted and fingerprinted."""
        ordered = tuple(sorted(results, key=lambda r: r.entity_id))
        return CalculationBatch(
            batch_id=batch_id,
            tenant_id=tenant_id,
            rule_set_id=rule_set_id,
            rule_set_version=rule_set_version,
            period_id=period_id,
            created_utc=created_utc,
            status=status,
            results=ordered,
            manifest=manifest,
            fingerprint=sha256_digest([r.to_record() for r in ordered]),
        )

    @property
    def total_payout(self) -> Decimal:
        """Sum over ``ok`` results only. Failed entities are excluded."""
        return sum(
            (r.total_payout for r in self.results if r.outcome == EntityOutcome.OK),
            Decimal("0"),
        )

    def result_for(self, entity_id: str) -> Optional[CalculationResult]:
        for r in self.results:
            if r.entity_id == entity_id:
                return r
        return None

    def ok_results(self) -> Tuple[CalculationResult, ...]:
        return tuple(r for r in self.results if r.outcome == EntityOutcome.OK)

    def to_records(self) -> List[Dict[str, Any]]:
        return [r.to_record() for r in self.results]

    def summary(self) -> Mapping[str, Any]:
        return {
            "batch_id": self.batch_id,
            "tenant_id": self.tenant_id,
            "rule_set_id": self.rule_set_id,
            "rule_set_version": self.rule_set_version,
            "period_id": self.period_id,
            "status": self.status.value,
            "created_utc": self.created_utc.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "entity_count": len(self.manifest.outcomes),
            "total_payout": str(self.total_payout),
            "fingerprint": self.fingerprint,
            "manifest": self.manifest.to_dict(),
        }
