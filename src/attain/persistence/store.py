"""In-memory store — the durable-store and directory contracts, held in dicts.

Collaborators outside the core (databases, object stores) implement the
same methods. Batches and reconciliation sessions are write-once: saving a
second object under an existing id is rejected.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from attain.models.entity import CommittedRow, Entity, Period
from attain.models.lifecycle import BatchLifecycle
from attain.models.reconciliation import ReconciliationSession
from attain.models.results import CalculationBatch
from attain.plans.registry import RuleSetRegistry


class InMemoryStore:
    """Rule sets, directory records, committed rows, batches and sessions.

    Usage:
        store = InMemoryStore()
        store.put_entities([entity])
        store.add_rows(rows)
        for page in store.iter_committed_rows("t1", "p1", page_size=500):
            ...
    """

    def __init__(self, registry: Optional[RuleSetRegistry] = None) -> None:
        self.registry = registry or RuleSetRegistry()
        self._entities: Dict[str, Dict[str, Entity]] = {}
        self._periods: Dict[str, Dict[str, Period]] = {}
        self._rows: Dict[Tuple[str, str], List[CommittedRow]] = {}
        self._batches: Dict[str, CalculationBatch] = {}
        self._lifecycles: Dict[str, BatchLifecycle] = {}
        self._sessions: Dict[str, ReconciliationSession] = {}

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    def put_entities(self, entities: Iterable[Entity]) -> None:
        for entity in entities:
            self._entities.setdefault(entity.tenant_id, {})[entity.entity_id] = entity

    def entities(self, tenant_id: str) -> List[Entity]:
        tenant = self._entities.get(tenant_id, {})
        return [tenant[k] for k in sorted(tenant)]

    def entity(self, tenant_id: str, entity_id: str) -> Optional[Entity]:
        return self._entities.get(tenant_id, {}).get(entity_id)

    def entity_directory(self, tenant_id: str) -> Dict[str, Entity]:
        return dict(self._entities.get(tenant_id, {}))

    def put_period(self, period: Period) -> None:
        self._periods.setdefault(period.tenant_id, {})[period.period_id] = period

    def period(self, tenant_id: str, period_id: str) -> Optional[Period]:
        return self._periods.get(tenant_id, {}).get(period_id)

    # ------------------------------------------------------------------
    # Committed rows
    # ------------------------------------------------------------------

    def add_rows(self, rows: Iterable[CommittedRow]) -> int:
        added = 0
        for row in rows:
            self._rows.setdefault((row.tenant_id, row.period_id), []).append(row)
            added += 1
        return added

    def iter_committed_rows(
        self,
        tenant_id: str,
        period_id: str,
        page_size: int = 1000,
    ) -> Iterator[List[CommittedRow]]:
        """Yield the period's committed rows in pages of at most ``page_size``."""
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        rows = self._rows.get((tenant_id, period_id), [])
        for start in range(0, len(rows), page_size):
            yield list(rows[start:start + page_size])

    # ------------------------------------------------------------------
    # Batches and lifecycles
    # ------------------------------------------------------------------

    def save_batch(self, batch: CalculationBatch) -> None:
        if batch.batch_id in self._batches:
            raise ValueError(f"Batch {batch.batch_id} already exists; batches are immutable")
        self._batches[batch.batch_id] = batch

    def get_batch(self, batch_id: str) -> Optional[CalculationBatch]:
        return self._batches.get(batch_id)

    def batches(self, tenant_id: str, period_id: Optional[str] = None) -> List[CalculationBatch]:
        found = [
            b for b in self._batches.values()
            if b.tenant_id == tenant_id and (period_id is None or b.period_id == period_id)
        ]
        return sorted(found, key=lambda b: (b.created_utc, b.batch_id))

    def save_lifecycle(self, lifecycle: BatchLifecycle) -> None:
        self._lifecycles[lifecycle.batch_id] = lifecycle

    def get_lifecycle(self, batch_id: str) -> Optional[BatchLifecycle]:
        return self._lifecycles.get(batch_id)

    # ------------------------------------------------------------------
    # Reconciliation sessions
    # ------------------------------------------------------------------

    def save_session(self, session: ReconciliationSession) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} already exists")
        self._sessions[session.session_id] = session

    def get_session(self, session_id: str) -> Optional[ReconciliationSession]:
        return self._sessions.get(session_id)
