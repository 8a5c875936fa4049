"""Batch lifecycle models — the approval state a computed batch is in.

The batch content itself is immutable (see CalculationBatch). The lifecycle
record tracks what has been done with it.

State machine:
    DRAFT → PREVIEW
    PREVIEW → DRAFT | RECONCILE | OFFICIAL
    RECONCILE → PREVIEW | OFFICIAL
    OFFICIAL → PENDING_APPROVAL | SUPERSEDED
    PENDING_APPROVAL → APPROVED | REJECTED
    REJECTED → OFFICIAL
    APPROVED → POSTED → CLOSED → PAID → PUBLISHED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional


class LifecycleState(str, enum.Enum):
    DRAFT = "draft"
    PREVIEW = "preview"
    RECONCILE = "reconcile"
    OFFICIAL = "official"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    POSTED = "posted"
    CLOSED = "closed"
    PAID = "paid"
    PUBLISHED = "published"
    SUPERSEDED = "superseded"


LIFECYCLE_TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    LifecycleState.DRAFT: frozenset({LifecycleState.PREVIEW}),
    LifecycleState.PREVIEW: frozenset({
        LifecycleState.DRAFT,
        LifecycleState.RECONCILE,
        LifecycleState.OFFICIAL,
    }),
    LifecycleState.RECONCILE: frozenset({
        LifecycleState.PREVIEW,
        LifecycleState.OFFICIAL,
    }),
    LifecycleState.OFFICIAL: frozenset({
        LifecycleState.PENDING_APPROVAL,
        LifecycleState.SUPERSEDED,
    }),
    LifecycleState.PENDING_APPROVAL: frozenset({
        LifecycleState.APPROVED,
        LifecycleState.REJECTED,
    }),
    LifecycleState.REJECTED: frozenset({LifecycleState.OFFICIAL}),
    LifecycleState.APPROVED: frozenset({LifecycleState.POSTED}),
    LifecycleState.POSTED: frozenset({LifecycleState.CLOSED}),
    LifecycleState.CLOSED: frozenset({LifecycleState.PAID}),
    LifecycleState.PAID: frozenset({LifecycleState.PUBLISHED}),
    LifecycleState.PUBLISHED: frozenset(),
    LifecycleState.SUPERSEDED: frozenset(),
}

# Entering any of these states means the batch results are published:
# the rule set version it ran against becomes immutable.
PUBLISHED_STATES: FrozenSet[LifecycleState] = frozenset({
    LifecycleState.OFFICIAL,
    LifecycleState.PENDING_APPROVAL,
    LifecycleState.APPROVED,
    LifecycleState.POSTED,
    LifecycleState.CLOSED,
    LifecycleState.PAID,
    LifecycleState.PUBLISHED,
})


@dataclass(frozen=True)
class AuditEntry:
    from_state: LifecycleState
    to_state: LifecycleState
    actor_id: str
    timestamp_utc: datetime
    details: str = ""


@dataclass
class BatchLifecycle:
    """Mutable lifecycle record for one batch.

    All transitions are validated against LIFECYCLE_TRANSITIONS.
    """
    batch_id: str
    state: LifecycleState = LifecycleState.DRAFT
    audit_trail: List[AuditEntry] = field(default_factory=list)
    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    supersedes: Optional[str] = None
    superseded_by: Optional[str] = None

    def can_transition(self, target: LifecycleState) -> bool:
        return target in LIFECYCLE_TRANSITIONS.get(self.state, frozenset())

    @property
    def is_published(self) -> bool:
        return self.state in PUBLISHED_STATES
