"""Attain service — unified facade for calculation and reconciliation.

This is the primary interface for programmatic access to Attain. It wires
together:
- Rule set registration, revision and activation (plans registry)
- Directory and committed-row intake (store)
- Batch calculation (runner) and the batch approval lifecycle
- Reconciliation between two explicitly named snapshots
- The audit event log

Every operation returns a ServiceResult. Expected failures (bad plans,
unknown ids, illegal transitions, unparseable result sets) come back as
``success=False`` with error strings; they are never raised.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from attain.calculation.lifecycle import LifecycleManager, TransitionError
from attain.calculation.runner import BatchRunner, group_rows
from attain.errors import ConfigurationError, ResultSetLoadError, RuleSetImmutableError
from attain.models.entity import CommittedRow, Entity, Period
from attain.models.lifecycle import BatchLifecycle, LifecycleState
from attain.models.plan import RuleSet
from attain.models.reconciliation import ReconciliationSession
from attain.persistence.event_log import EventKind, EventLog, EventRecord
from attain.persistence.store import InMemoryStore
from attain.plans.loader import load_rule_set
from attain.policy.resolver import SettingsResolver
from attain.reconciliation.engine import ReconciliationEngine
from attain.reconciliation.result_sets import ResultSet

logger = logging.getLogger(__name__)

RuleSetInput = Union[RuleSet, Mapping[str, Any]]


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)


class AttainService:
    """Unified calculation and reconciliation facade.

    Usage:
        settings = SettingsResolver.from_config_dir(config_dir)
        service = AttainService(settings)

        service.register_rule_set(plan_document)
        service.register_entities(entities)
        service.register_period(period)
        service.commit_rows(rows)

        result = service.run_calculation("tenant-1", "plan-1", "2024-01")
        service.transition_batch(result.data["batch_id"], LifecycleState.PREVIEW, "analyst")
    """

    def __init__(
        self,
        settings: Optional[SettingsResolver] = None,
        store: Optional[InMemoryStore] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or SettingsResolver.defaults()
        self._store = store or InMemoryStore()
        self._event_log = event_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._runner = BatchRunner(self._settings, clock=self._clock)
        self._lifecycle = LifecycleManager(on_publish=self._publish_rule_set, clock=self._clock)
        self._reconciler = ReconciliationEngine(self._settings.tolerance())
        # Continue numbering from a recovered log so ids never collide
        self._event_counter = event_log.count if event_log is not None else 0

    @property
    def store(self) -> InMemoryStore:
        return self._store

    # ------------------------------------------------------------------
    # Rule sets
    # ------------------------------------------------------------------

    def register_rule_set(self, plan: RuleSetInput, actor_id: str = "system") -> ServiceResult:
        """Validate and register a new rule set version."""
        try:
            rule_set = plan if isinstance(plan, RuleSet) else load_rule_set(plan)
            self._store.registry.register(rule_set)
        except (ConfigurationError, RuleSetImmutableError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {"rule_set_id": rule_set.rule_set_id, "version": rule_set.version}
        err = self._record_event(EventKind.RULE_SET_REGISTERED, actor_id, data)
        if err:
            return ServiceResult(success=False, errors=[err])
        return ServiceResult(success=True, data=data)

    def revise_rule_set(self, plan: RuleSetInput, actor_id: str = "system") -> ServiceResult:
        """Store an edit. Published versions are never changed; the edit becomes a new version."""
        try:
            rule_set = plan if isinstance(plan, RuleSet) else load_rule_set(plan)
            stored = self._store.registry.revise(rule_set)
        except (ConfigurationError, RuleSetImmutableError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {"rule_set_id": stored.rule_set_id, "version": stored.version}
        err = self._record_event(EventKind.RULE_SET_REVISED, actor_id, data)
        if err:
            return ServiceResult(success=False, errors=[err])
        return ServiceResult(success=True, data=data)

    def activate_rule_set(self, rule_set_id: str, version: int, actor_id: str = "system") -> ServiceResult:
        return self._change_rule_set_status(rule_set_id, version, actor_id, activate=True)

    def archive_rule_set(self, rule_set_id: str, version: int, actor_id: str = "system") -> ServiceResult:
        return self._change_rule_set_status(rule_set_id, version, actor_id, activate=False)

    def _change_rule_set_status(
        self, rule_set_id: str, version: int, actor_id: str, activate: bool,
    ) -> ServiceResult:
        registry = self._store.registry
        try:
            if activate:
                updated = registry.activate(rule_set_id, version)
            else:
                updated = registry.archive(rule_set_id, version)
        except ConfigurationError as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {
            "rule_set_id": rule_set_id,
            "version": version,
            "status": updated.status.value,
        }
        err = self._record_event(EventKind.RULE_SET_STATUS_CHANGED, actor_id, data)
        if err:
            return ServiceResult(success=False, errors=[err])
        return ServiceResult(success=True, data=data)

    def get_rule_set(self, rule_set_id: str, version: Optional[int] = None) -> Optional[RuleSet]:
        return self._store.registry.get(rule_set_id, version)

    # ------------------------------------------------------------------
    # Directory and committed data
    # ------------------------------------------------------------------

    def register_entities(self, entities: Iterable[Entity]) -> ServiceResult:
        entities = list(entities)
        self._store.put_entities(entities)
        return ServiceResult(success=True, data={"count": len(entities)})

    def register_period(self, period: Period) -> ServiceResult:
        self._store.put_period(period)
        return ServiceResult(success=True, data={"period_id": period.period_id})

    def commit_rows(self, rows: Iterable[CommittedRow]) -> ServiceResult:
        return ServiceResult(success=True, data={"count": self._store.add_rows(rows)})

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def run_calculation(
        self,
        tenant_id: str,
        rule_set_id: str,
        period_id: str,
        version: Optional[int] = None,
        entity_ids: Optional[Sequence[str]] = None,
        actor_id: str = "system",
        cancel_event: Optional[threading.Event] = None,
    ) -> ServiceResult:
        """Calculate a period and store the resulting batch in DRAFT."""
        rule_set = self._store.registry.get(rule_set_id, version)
        if rule_set is None:
            return ServiceResult(success=False, errors=[f"Rule set not found: {rule_set_id}"])
        period = self._store.period(tenant_id, period_id)
        if period is None:
            return ServiceResult(success=False, errors=[f"Period not found: {period_id}"])

        entities = self._store.entities(tenant_id)
        if entity_ids is not None:
            wanted = set(entity_ids)
            unknown = sorted(wanted - {e.entity_id for e in entities})
            if unknown:
                return ServiceResult(success=False, errors=[f"Unknown entities: {', '.join(unknown)}"])
            entities = [e for e in entities if e.entity_id in wanted]

        page_size = self._settings.batch_settings().page_size
        rows: List[CommittedRow] = []
        for page in self._store.iter_committed_rows(tenant_id, period_id, page_size):
            rows.extend(page)

        try:
            batch = self._runner.run_batch(
                tenant_id,
                rule_set,
                period,
                entities,
                group_rows(rows, tenant_id, period_id),
                cancel_event=cancel_event,
            )
        except ConfigurationError as e:
            return ServiceResult(success=False, errors=[str(e)])

        self._store.save_batch(batch)
        self._store.save_lifecycle(BatchLifecycle(batch_id=batch.batch_id))

        summary = dict(batch.summary())
        err = self._record_event(EventKind.BATCH_CREATED, actor_id, {
            "batch_id": batch.batch_id,
            "rule_set_id": batch.rule_set_id,
            "rule_set_version": batch.rule_set_version,
            "period_id": batch.period_id,
            "status": batch.status.value,
            "fingerprint": batch.fingerprint,
        })
        if err:
            summary["warning"] = err
        return ServiceResult(success=True, data=summary)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def transition_batch(
        self,
        batch_id: str,
        target: LifecycleState,
        actor_id: str,
        reason: str = "",
    ) -> ServiceResult:
        lifecycle = self._store.get_lifecycle(batch_id)
        if lifecycle is None:
            return ServiceResult(success=False, errors=[f"Batch not found: {batch_id}"])
        previous = lifecycle.state
        try:
            self._lifecycle.transition(lifecycle, target, actor_id, reason)
        except TransitionError as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {"batch_id": batch_id, "from": previous.value, "state": lifecycle.state.value}
        err = self._record_event(EventKind.BATCH_TRANSITION, actor_id, data)
        if err:
            data["warning"] = err
        return ServiceResult(success=True, data=data)

    def supersede_batch(self, old_batch_id: str, new_batch_id: str, actor_id: str) -> ServiceResult:
        old = self._store.get_lifecycle(old_batch_id)
        new = self._store.get_lifecycle(new_batch_id)
        if old is None or new is None:
            missing = old_batch_id if old is None else new_batch_id
            return ServiceResult(success=False, errors=[f"Batch not found: {missing}"])
        try:
            self._lifecycle.supersede(old, new, actor_id)
        except TransitionError as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {
            "batch_id": old_batch_id,
            "state": old.state.value,
            "superseded_by": new_batch_id,
        }
        err = self._record_event(EventKind.BATCH_TRANSITION, actor_id, data)
        if err:
            data["warning"] = err
        return ServiceResult(success=True, data=data)

    def get_lifecycle(self, batch_id: str) -> Optional[BatchLifecycle]:
        return self._store.get_lifecycle(batch_id)

    def _publish_rule_set(self, lifecycle: BatchLifecycle) -> None:
        batch = self._store.get_batch(lifecycle.batch_id)
        if batch is None:
            return
        registry = self._store.registry
        if registry.is_published(batch.rule_set_id, batch.rule_set_version):
            return
        registry.mark_published(batch.rule_set_id, batch.rule_set_version)
        err = self._record_event(EventKind.RULE_SET_PUBLISHED, lifecycle.audit_trail[-1].actor_id, {
            "rule_set_id": batch.rule_set_id,
            "version": batch.rule_set_version,
            "batch_id": batch.batch_id,
        })
        if err:
            logger.error("rule set publication not audited: %s", err)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_batches(
        self,
        expected_batch_id: str,
        actual_batch_id: str,
        segment_key: Optional[str] = None,
        actor_id: str = "system",
    ) -> ServiceResult:
        """Compare two stored batches (e.g. before/after a plan revision)."""
        expected = self._store.get_batch(expected_batch_id)
        actual = self._store.get_batch(actual_batch_id)
        if expected is None or actual is None:
            missing = expected_batch_id if expected is None else actual_batch_id
            return ServiceResult(success=False, errors=[f"Batch not found: {missing}"])
        if expected.tenant_id != actual.tenant_id:
            return ServiceResult(success=False, errors=["Batches belong to different tenants"])

        directory = self._store.entity_directory(expected.tenant_id)
        try:
            expected_set = ResultSet.from_batch(expected, segment_key=segment_key, directory=directory)
            actual_set = ResultSet.from_batch(actual, segment_key=segment_key, directory=directory)
        except ResultSetLoadError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._reconcile(expected.tenant_id, expected_set, actual_set, actor_id)

    def reconcile_records(
        self,
        tenant_id: str,
        expected_records: Any,
        actual_records: Any,
        expected_name: str = "expected",
        actual_name: str = "actual",
        segment_key: Optional[str] = None,
        actor_id: str = "system",
    ) -> ServiceResult:
        """Compare two sets of persisted result records, such as a batch export and a reference file."""
        try:
            expected = ResultSet.from_records(expected_records, expected_name, segment_key)
            actual = ResultSet.from_records(actual_records, actual_name, segment_key)
        except ResultSetLoadError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._reconcile(tenant_id, expected, actual, actor_id)

    def _reconcile(
        self,
        tenant_id: str,
        expected: ResultSet,
        actual: ResultSet,
        actor_id: str,
    ) -> ServiceResult:
        report = self._reconciler.compare(expected, actual)
        session = ReconciliationSession(
            session_id=f"recon_{uuid.uuid4().hex[:16]}",
            tenant_id=tenant_id,
            expected_ref=expected.name,
            actual_ref=actual.name,
            created_utc=self._clock(),
            report=report,
        )
        self._store.save_session(session)

        data: Dict[str, Any] = {
            "session_id": session.session_id,
            "aggregate": report.aggregate.status,
            "depth_reached": report.depth_reached.value,
            "false_green": report.false_green,
            "counts": report.counts(),
        }
        err = self._record_event(EventKind.RECONCILIATION_COMPLETED, actor_id, {
            "session_id": session.session_id,
            "expected": expected.name,
            "actual": actual.name,
            "aggregate": report.aggregate.status,
            "false_green": report.false_green,
        })
        if err:
            data["warning"] = err
        return ServiceResult(success=True, data=data)

    def get_session(self, session_id: str) -> Optional[ReconciliationSession]:
        return self._store.get_session(session_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            "settings": self._settings.as_dict(),
            "events_recorded": self._event_log.count if self._event_log is not None else 0,
        }

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self, kind: EventKind, actor_id: str, payload: Dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event. Returns an error string or None."""
        if self._event_log is None:
            return None
        try:
            self._event_log.append(EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=self._clock(),
            ))
        except (ValueError, OSError) as e:
            return f"Event log failure: {e}"
        return None
