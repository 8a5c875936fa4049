"""Tests for the batch lifecycle state machine and separation of duties."""

import pytest

from attain.calculation.lifecycle import LifecycleManager, TransitionError
from attain.models.lifecycle import BatchLifecycle, LifecycleState


def _walk(manager: LifecycleManager, lifecycle: BatchLifecycle, *steps) -> None:
    for target, actor in steps:
        manager.transition(lifecycle, target, actor)


def _official(manager: LifecycleManager, batch_id: str = "batch_1") -> BatchLifecycle:
    lifecycle = BatchLifecycle(batch_id=batch_id)
    _walk(
        manager, lifecycle,
        (LifecycleState.PREVIEW, "analyst"),
        (LifecycleState.RECONCILE, "analyst"),
        (LifecycleState.OFFICIAL, "analyst"),
    )
    return lifecycle


class TestLegalPath:
    def test_full_path_to_published(self) -> None:
        manager = LifecycleManager()
        lifecycle = _official(manager)
        _walk(
            manager, lifecycle,
            (LifecycleState.PENDING_APPROVAL, "analyst"),
            (LifecycleState.APPROVED, "controller"),
            (LifecycleState.POSTED, "controller"),
            (LifecycleState.CLOSED, "controller"),
            (LifecycleState.PAID, "payroll"),
            (LifecycleState.PUBLISHED, "payroll"),
        )
        assert lifecycle.state == LifecycleState.PUBLISHED
        assert lifecycle.submitted_by == "analyst"
        assert lifecycle.approved_by == "controller"
        assert len(lifecycle.audit_trail) == 9
        assert lifecycle.audit_trail[0].from_state == LifecycleState.DRAFT

    def test_preview_can_return_to_draft(self) -> None:
        manager = LifecycleManager()
        lifecycle = BatchLifecycle(batch_id="b")
        _walk(manager, lifecycle, (LifecycleState.PREVIEW, "a"), (LifecycleState.DRAFT, "a"))
        assert lifecycle.state == LifecycleState.DRAFT


class TestRejections:
    def test_illegal_transition(self) -> None:
        manager = LifecycleManager()
        lifecycle = BatchLifecycle(batch_id="b")
        errors = manager.validate(lifecycle, LifecycleState.OFFICIAL, "analyst")
        assert errors == ["Illegal transition: draft → official"]
        with pytest.raises(TransitionError):
            manager.transition(lifecycle, LifecycleState.OFFICIAL, "analyst")
        assert lifecycle.state == LifecycleState.DRAFT
        assert lifecycle.audit_trail == []

    def test_submitter_cannot_approve(self) -> None:
        manager = LifecycleManager()
        lifecycle = _official(manager)
        manager.transition(lifecycle, LifecycleState.PENDING_APPROVAL, "analyst")
        with pytest.raises(TransitionError, match="separation of duties"):
            manager.transition(lifecycle, LifecycleState.APPROVED, "analyst")
        assert lifecycle.state == LifecycleState.PENDING_APPROVAL

    def test_rejection_needs_reason_and_returns_to_official(self) -> None:
        manager = LifecycleManager()
        lifecycle = _official(manager)
        manager.transition(lifecycle, LifecycleState.PENDING_APPROVAL, "analyst")
        with pytest.raises(TransitionError, match="reason"):
            manager.transition(lifecycle, LifecycleState.REJECTED, "controller")
        manager.transition(lifecycle, LifecycleState.REJECTED, "controller", reason="E002 quota wrong")
        assert lifecycle.rejection_reason == "E002 quota wrong"
        manager.transition(lifecycle, LifecycleState.OFFICIAL, "analyst")
        assert lifecycle.rejection_reason is None

    def test_actor_required(self) -> None:
        manager = LifecycleManager()
        errors = manager.validate(BatchLifecycle(batch_id="b"), LifecycleState.PREVIEW, "")
        assert errors == ["b: actor_id is required"]

    def test_terminal_states(self) -> None:
        manager = LifecycleManager()
        old = _official(manager, "old")
        manager.supersede(old, _official(manager, "new"), "analyst")
        for target in LifecycleState:
            assert manager.validate(old, target, "analyst") != []


class TestSupersede:
    def test_links_both_batches(self) -> None:
        manager = LifecycleManager()
        old = _official(manager, "old")
        new = _official(manager, "new")
        entry = manager.supersede(old, new, "analyst")
        assert old.state == LifecycleState.SUPERSEDED
        assert old.superseded_by == "new"
        assert new.supersedes == "old"
        assert entry.details == "superseded by new"

    def test_only_official_batches(self) -> None:
        manager = LifecycleManager()
        with pytest.raises(TransitionError):
            manager.supersede(BatchLifecycle(batch_id="a"), BatchLifecycle(batch_id="b"), "analyst")


class TestPublishHook:
    def test_called_once_on_first_publish(self) -> None:
        published = []
        manager = LifecycleManager(on_publish=lambda lc: published.append(lc.batch_id))
        lifecycle = _official(manager)
        manager.transition(lifecycle, LifecycleState.PENDING_APPROVAL, "analyst")
        manager.transition(lifecycle, LifecycleState.REJECTED, "controller", reason="recheck")
        manager.transition(lifecycle, LifecycleState.OFFICIAL, "analyst")
        assert published == ["batch_1"]

    def test_not_called_before_official(self) -> None:
        published = []
        manager = LifecycleManager(on_publish=lambda lc: published.append(lc.batch_id))
        lifecycle = BatchLifecycle(batch_id="b")
        _walk(manager, lifecycle, (LifecycleState.PREVIEW, "a"), (LifecycleState.RECONCILE, "a"))
        assert published == []
