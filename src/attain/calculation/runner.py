"""Batch runner — calculates every entity of a period against one rule set.

Per entity:
    resolve metrics → select variant → calculate components in ordinal
    order → sum → one CalculationResult

Entities fan out across a bounded thread pool. Dispatch is windowed (never
more submitted futures than workers), so a cancelled batch stops handing
out new entities, lets in-flight ones finish, and is recorded PARTIAL.

Failure scopes:
- EntityCalculationError fails that entity only; the batch continues.
  Decimal arithmetic failures are recorded as ArithmeticFailure.
- ConfigurationError aborts the whole batch.
- NoMatch is an outcome, recorded in the manifest without a result.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from decimal import Decimal, DecimalException
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from attain.calculation.components import ComponentInputs, calculate
from attain.calculation.metrics import resolve
from attain.calculation.selector import NoMatch, select
from attain.errors import (
    ArithmeticFailure,
    ConfigurationError,
    EntityCalculationError,
    ScopeMismatch,
)
from attain.models.entity import CommittedRow, Entity, Period
from attain.models.plan import RuleSet, RuleSetStatus
from attain.models.results import (
    BatchManifest,
    BatchStatus,
    CalculationBatch,
    CalculationResult,
    ComponentResult,
    EntityOutcome,
)
from attain.policy.resolver import BatchSettings, RoundingPolicy, SettingsResolver

logger = logging.getLogger(__name__)

RowData = Mapping[str, Any]


def group_rows(
    rows: Iterable[CommittedRow],
    tenant_id: str,
    period_id: str,
) -> Dict[str, List[RowData]]:
    """Group committed rows by entity, keeping only the tenant's period rows.

    Rows without an entity id cannot be attributed and are skipped.
    """
    grouped: Dict[str, List[RowData]] = {}
    for row in rows:
        if row.tenant_id != tenant_id or row.period_id != period_id:
            continue
        if not row.entity_id:
            continue
        grouped.setdefault(row.entity_id, []).append(row.row_data)
    return grouped


class BatchRunner:
    """Orchestrates one batch calculation.

    Usage:
        runner = BatchRunner(SettingsResolver.from_config_dir(config_dir))
        batch = runner.run_batch(tenant_id, rule_set, period, entities, rows)
    """

    def __init__(
        self,
        settings: Optional[SettingsResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        settings = settings or SettingsResolver.defaults()
        self._rounding: RoundingPolicy = settings.rounding()
        self._batch_settings: BatchSettings = settings.batch_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: f"batch_{uuid.uuid4().hex[:16]}")

    @property
    def rounding(self) -> RoundingPolicy:
        return self._rounding

    # ------------------------------------------------------------------
    # Single entity
    # ------------------------------------------------------------------

    def calculate_entity(
        self,
        tenant_id: str,
        rule_set: RuleSet,
        period: Period,
        entity: Entity,
        rows: Sequence[RowData],
    ) -> Tuple[Optional[CalculationResult], str]:
        """Calculate one entity.

        Returns:
            (result, manifest label). The result is None for no_match.

        Raises:
            ConfigurationError: the rule set cannot be applied at all.
        """
        try:
            return self._evaluate(tenant_id, rule_set, period, entity, rows)
        except DecimalException as exc:
            failure = ArithmeticFailure(
                f"decimal arithmetic failed: {type(exc).__name__}", entity.entity_id,
            )
            return self._failed(rule_set, period, entity, failure)
        except EntityCalculationError as exc:
            return self._failed(rule_set, period, entity, exc)

    def _evaluate(
        self,
        tenant_id: str,
        rule_set: RuleSet,
        period: Period,
        entity: Entity,
        rows: Sequence[RowData],
    ) -> Tuple[Optional[CalculationResult], str]:
        if entity.tenant_id != tenant_id:
            raise ScopeMismatch(
                f"entity {entity.entity_id} belongs to tenant {entity.tenant_id}, "
                f"not {tenant_id}",
                entity.entity_id,
            )
        metrics = resolve(rows, rule_set.input_bindings, entity, period)
        selection = select(rule_set.variants, entity, period, metrics)
        if isinstance(selection, NoMatch):
            logger.debug(
                "entity %s matched no variant (evaluated %s)",
                entity.entity_id, ", ".join(selection.evaluated),
            )
            return None, EntityOutcome.NO_MATCH.value

        prior: Dict[str, Decimal] = {}
        components: List[ComponentResult] = []
        for component in sorted(selection.components, key=lambda c: c.ordinal):
            inputs = ComponentInputs(
                metrics=metrics,
                prior_payouts=dict(prior),
                attributes=entity.attributes,
                period_key=period.canonical_key,
            )
            outcome = calculate(component, inputs, self._rounding)
            prior[component.name] = outcome.payout
            components.append(ComponentResult(
                component_name=component.name,
                component_type=component.component_type,
                payout=outcome.payout,
                details=outcome.trace,
            ))

        result = CalculationResult(
            entity_id=entity.entity_id,
            rule_set_id=rule_set.rule_set_id,
            period_id=period.period_id,
            total_payout=sum((c.payout for c in components), Decimal("0")),
            components=tuple(components),
            variant_name=selection.name,
            metrics=metrics,
            metadata={"rule_set_version": rule_set.version},
            external_id=entity.external_id,
        )
        return result, result.manifest_label

    def _failed(
        self,
        rule_set: RuleSet,
        period: Period,
        entity: Entity,
        exc: EntityCalculationError,
    ) -> Tuple[Optional[CalculationResult], str]:
        logger.warning("entity %s failed: %s (%s)", entity.entity_id, exc.reason, exc)
        result = CalculationResult(
            entity_id=entity.entity_id,
            rule_set_id=rule_set.rule_set_id,
            period_id=period.period_id,
            total_payout=Decimal("0"),
            outcome=EntityOutcome.FAILED,
            failure_reason=exc.reason,
            metadata={"error": str(exc), "rule_set_version": rule_set.version},
            external_id=entity.external_id,
        )
        return result, result.manifest_label

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def _check_scope(self, tenant_id: str, rule_set: RuleSet, period: Period) -> None:
        if rule_set.tenant_id != tenant_id:
            raise ConfigurationError(
                f"rule set {rule_set.rule_set_id} belongs to tenant {rule_set.tenant_id}"
            )
        if period.tenant_id != tenant_id:
            raise ConfigurationError(f"period {period.period_id} belongs to tenant {period.tenant_id}")
        if rule_set.status == RuleSetStatus.ARCHIVED:
            raise ConfigurationError(
                f"rule set {rule_set.rule_set_id} v{rule_set.version} is archived"
            )
        if not rule_set.variants:
            raise ConfigurationError(f"rule set {rule_set.rule_set_id} has no variants")

    def run_batch(
        self,
        tenant_id: str,
        rule_set: RuleSet,
        period: Period,
        entities: Sequence[Entity],
        rows_by_entity: Mapping[str, Sequence[RowData]],
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> CalculationBatch:
        """Run one batch and return its immutable snapshot.

        Args:
            tenant_id: The tenant the batch runs for.
            rule_set: The rule set version to apply.
            period: The period being calculated.
            entities: Entities to calculate.
            rows_by_entity: Committed ``row_data`` per entity id for the period.
            cancel_event: When set, dispatch stops and the batch is PARTIAL.
            progress_callback: Called with (completed, total) after each entity.

        Raises:
            ConfigurationError: the rule set cannot run (aborts the batch).
        """
        self._check_scope(tenant_id, rule_set, period)
        cancel_event = cancel_event or threading.Event()
        ordered = sorted(entities, key=lambda e: e.entity_id)
        total = len(ordered)
        workers = self._batch_settings.effective_workers()
        batch_id = self._id_factory()

        logger.info(
            "batch %s started: %d entities, rule set %s v%d, period %s, %d workers",
            batch_id, total, rule_set.rule_set_id, rule_set.version,
            period.canonical_key, workers,
        )

        results: List[CalculationResult] = []
        outcomes: Dict[str, str] = {}
        failure_messages: Dict[str, str] = {}
        completed = 0

        def collect(done: Iterable[Future]) -> None:
            nonlocal completed
            for future in done:
                entity_id = futures[future]
                result, label = future.result()
                outcomes[entity_id] = label
                if result is not None:
                    results.append(result)
                    if result.outcome == EntityOutcome.FAILED:
                        failure_messages[entity_id] = result.metadata.get("error", "")
                completed += 1
                if progress_callback:
                    progress_callback(completed, total)

        futures: Dict[Future, str] = {}
        pending: Set[Future] = set()
        dispatched = 0
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                while dispatched < total and not cancel_event.is_set():
                    if len(pending) >= workers:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        collect(done)
                        continue
                    entity = ordered[dispatched]
                    future = executor.submit(
                        self.calculate_entity,
                        tenant_id,
                        rule_set,
                        period,
                        entity,
                        rows_by_entity.get(entity.entity_id, ()),
                    )
                    futures[future] = entity.entity_id
                    pending.add(future)
                    dispatched += 1
                done, _ = wait(pending)
                collect(done)
        except ConfigurationError:
            cancel_event.set()
            logger.error("batch %s aborted: configuration error", batch_id, exc_info=True)
            raise

        not_dispatched = tuple(e.entity_id for e in ordered[dispatched:])
        status = BatchStatus.PARTIAL if not_dispatched else BatchStatus.COMPLETED
        if not_dispatched:
            logger.info(
                "batch %s cancelled: %d of %d entities not dispatched",
                batch_id, len(not_dispatched), total,
            )

        manifest = BatchManifest(
            outcomes=outcomes,
            failure_reasons=failure_messages,
            not_dispatched=not_dispatched,
        )
        batch = CalculationBatch.create(
            batch_id=batch_id,
            tenant_id=tenant_id,
            rule_set_id=rule_set.rule_set_id,
            rule_set_version=rule_set.version,
            period_id=period.period_id,
            created_utc=self._clock(),
            status=status,
            results=results,
            manifest=manifest,
        )
        logger.info(
            "batch %s %s: ok=%d no_match=%d failed=%d total=%s",
            batch_id, status.value, manifest.ok_count, manifest.no_match_count,
            manifest.failed_count, batch.total_payout,
        )
        return batch
