"""Batch lifecycle manager — enforces the approval transition rules.

Transitions are fail-closed: any transition not listed in
LIFECYCLE_TRANSITIONS is rejected. The actor who submitted a batch for
approval cannot approve it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from attain.models.lifecycle import (
    AuditEntry,
    BatchLifecycle,
    LifecycleState,
    PUBLISHED_STATES,
)

logger = logging.getLogger(__name__)


class TransitionError(Exception):
    """Raised when a lifecycle transition is not allowed."""


class LifecycleManager:
    """Validates and applies batch lifecycle transitions.

    ``on_publish`` is called once, the first time a batch enters a
    published state (OFFICIAL). The service uses it to freeze the rule
    set version the batch ran against.
    """

    def __init__(
        self,
        on_publish: Optional[Callable[[BatchLifecycle], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._on_publish = on_publish
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def validate(
        self,
        lifecycle: BatchLifecycle,
        target: LifecycleState,
        actor_id: str,
        reason: str = "",
    ) -> List[str]:
        """Return validation errors for a proposed transition. Empty means allowed."""
        errors: List[str] = []
        if not lifecycle.can_transition(target):
            errors.append(
                f"Illegal transition: {lifecycle.state.value} → {target.value}"
            )
            return errors

        if not actor_id:
            errors.append(f"{lifecycle.batch_id}: actor_id is required")

        if target == LifecycleState.APPROVED and actor_id == lifecycle.submitted_by:
            errors.append(
                f"{lifecycle.batch_id}: {actor_id} submitted this batch "
                f"and cannot approve it (separation of duties)"
            )
        if target == LifecycleState.REJECTED and not reason:
            errors.append(f"{lifecycle.batch_id}: rejection requires a reason")
        return errors

    def transition(
        self,
        lifecycle: BatchLifecycle,
        target: LifecycleState,
        actor_id: str,
        reason: str = "",
    ) -> AuditEntry:
        """Apply a transition, appending an audit entry.

        Raises:
            TransitionError: the transition is illegal or violates a rule.
        """
        errors = self.validate(lifecycle, target, actor_id, reason)
        if errors:
            raise TransitionError("; ".join(errors))

        first_publish = target in PUBLISHED_STATES and not any(
            e.to_state in PUBLISHED_STATES for e in lifecycle.audit_trail
        )
        entry = AuditEntry(
            from_state=lifecycle.state,
            to_state=target,
            actor_id=actor_id,
            timestamp_utc=self._clock(),
            details=reason,
        )
        lifecycle.state = target
        lifecycle.audit_trail.append(entry)

        if target == LifecycleState.PENDING_APPROVAL:
            lifecycle.submitted_by = actor_id
        elif target == LifecycleState.APPROVED:
            lifecycle.approved_by = actor_id
        elif target == LifecycleState.REJECTED:
            lifecycle.rejection_reason = reason
        elif target == LifecycleState.OFFICIAL:
            lifecycle.rejection_reason = None

        logger.info(
            "batch %s: %s → %s by %s",
            lifecycle.batch_id, entry.from_state.value, target.value, actor_id,
        )
        if first_publish and self._on_publish:
            self._on_publish(lifecycle)
        return entry

    def supersede(
        self,
        old: BatchLifecycle,
        new: BatchLifecycle,
        actor_id: str,
    ) -> AuditEntry:
        """Mark ``old`` as superseded by ``new``. Only OFFICIAL batches can be superseded."""
        entry = self.transition(
            old, LifecycleState.SUPERSEDED, actor_id, reason=f"superseded by {new.batch_id}",
        )
        old.superseded_by = new.batch_id
        new.supersedes = old.batch_id
        return entry
