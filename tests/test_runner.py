"""Tests for the batch runner — per-entity isolation, manifests and cancellation."""

import dataclasses
import json
import threading
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

from attain.calculation.runner import BatchRunner, group_rows
from attain.errors import ConfigurationError
from attain.models.entity import CommittedRow, Entity, Period
from attain.models.plan import RuleSet, RuleSetStatus
from attain.models.results import BatchStatus, EntityOutcome
from attain.plans.loader import load_rule_set, load_rule_set_file
from attain.policy.resolver import SettingsResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
EXAMPLES_DIR = Path(__file__).resolve().parents[1] / "examples" / "worked_examples"

PERIOD = Period("2024-01", "acme", "2024-01", date(2024, 1, 1), date(2024, 1, 31))


def _fixed_clock() -> datetime:
    return datetime(2024, 2, 1, 9, 0, 0, tzinfo=timezone.utc)


def _rule_set() -> RuleSet:
    return load_rule_set_file(EXAMPLES_DIR / "retail_plan.json")


def _entities() -> List[Entity]:
    raw = json.loads((EXAMPLES_DIR / "entities.json").read_text(encoding="utf-8"))
    return [
        Entity(entity_id=e["entity_id"], tenant_id="acme", attributes=e["attributes"])
        for e in raw
    ]


def _rows() -> Dict[str, List[dict]]:
    raw = json.loads((EXAMPLES_DIR / "rows.json").read_text(encoding="utf-8"))
    rows = [
        CommittedRow("acme", "2024-01", r["entity_id"], {k: v for k, v in r.items() if k != "entity_id"})
        for r in raw
    ]
    return group_rows(rows, "acme", "2024-01")


def _runner(concurrency: int = 4) -> BatchRunner:
    settings = SettingsResolver.from_config_dir(
        CONFIG_DIR, environ={"ATTAIN_CONCURRENCY_LIMIT": str(concurrency)},
    )
    counter = iter(range(1, 1000))
    return BatchRunner(settings, clock=_fixed_clock, id_factory=lambda: f"batch_{next(counter):04d}")


class TestGroupRows:
    def test_scopes_and_groups(self) -> None:
        rows = [
            CommittedRow("acme", "2024-01", "E1", {"a": 1}),
            CommittedRow("acme", "2024-01", "E1", {"a": 2}),
            CommittedRow("acme", "2024-02", "E1", {"a": 3}),
            CommittedRow("other", "2024-01", "E1", {"a": 4}),
            CommittedRow("acme", "2024-01", None, {"a": 5}),
        ]
        assert group_rows(rows, "acme", "2024-01") == {"E1": [{"a": 1}, {"a": 2}]}


class TestWorkedExample:
    def test_totals_and_manifest(self) -> None:
        batch = _runner().run_batch("acme", _rule_set(), PERIOD, _entities(), _rows())
        assert batch.status == BatchStatus.COMPLETED
        assert batch.total_payout == Decimal("1060.50")
        assert batch.manifest.outcomes == {
            "E001": "ok",
            "E002": "ok",
            "E003": "ok",
            "E004": "failed:MissingMetric",
        }
        e001 = batch.result_for("E001")
        assert e001.variant_name == "Sales Associate"
        assert [c.payout for c in e001.components] == [
            Decimal("470.00"), Decimal("250.00"), Decimal("75.00"), Decimal("47.00"),
        ]
        assert batch.result_for("E003").variant_name == "Store Manager"

    def test_failed_entity_excluded_from_total(self) -> None:
        batch = _runner().run_batch("acme", _rule_set(), PERIOD, _entities(), _rows())
        failed = batch.result_for("E004")
        assert failed.outcome == EntityOutcome.FAILED
        assert failed.failure_reason == "MissingMetric"
        assert failed.total_payout == Decimal("0")
        assert failed.components == ()
        assert "gross_sales" in batch.manifest.failure_reasons["E004"]
        assert batch.manifest.reason_counts() == {"MissingMetric": 1}
        assert batch.total_payout == sum(r.total_payout for r in batch.ok_results())

    def test_component_sum_equals_total(self) -> None:
        batch = _runner().run_batch("acme", _rule_set(), PERIOD, _entities(), _rows())
        for result in batch.ok_results():
            assert result.total_payout == sum(c.payout for c in result.components)

    def test_fingerprint_is_stable_across_runs_and_concurrency(self) -> None:
        first = _runner(1).run_batch("acme", _rule_set(), PERIOD, _entities(), _rows())
        second = _runner(8).run_batch("acme", _rule_set(), PERIOD, list(reversed(_entities())), _rows())
        assert first.fingerprint == second.fingerprint
        assert first.fingerprint.startswith("sha256:")
        assert [r.entity_id for r in second.results] == ["E001", "E002", "E003", "E004"]


class TestOutcomes:
    def test_no_match_has_manifest_entry_but_no_result(self) -> None:
        rule_set = _rule_set()
        associates = rule_set.variant("Sales Associate")
        restricted = dataclasses.replace(
            rule_set,
            variants=(
                rule_set.variant("Store Manager"),
                dataclasses.replace(associates, eligibility="attr('role') == 'associate'"),
            ),
        )
        entities = _entities() + [Entity("E005", "acme", attributes={"role": "contractor"})]
        rows = _rows()
        rows["E005"] = [{"type": "sale", "amount": "10"}]
        batch = _runner().run_batch("acme", restricted, PERIOD, entities, rows)
        assert batch.manifest.outcomes["E005"] == "no_match"
        assert batch.result_for("E005") is None
        assert batch.manifest.no_match_count == 1

    def test_entity_from_other_tenant_fails_alone(self) -> None:
        entities = _entities() + [Entity("E900", "globex")]
        batch = _runner().run_batch("acme", _rule_set(), PERIOD, entities, _rows())
        assert batch.manifest.outcomes["E900"] == "failed:ScopeMismatch"
        assert batch.manifest.ok_count == 3

    def test_unresolved_formula_reference_fails_entity(self) -> None:
        rule_set = _rule_set()
        manager = rule_set.variant("Store Manager")
        override, bonus = manager.components
        broken_bonus = dataclasses.replace(
            bonus,
            formula_config=dataclasses.replace(bonus.formula_config, expression="ghost * 2"),
        )
        broken = dataclasses.replace(
            rule_set,
            variants=(
                dataclasses.replace(manager, components=(override, broken_bonus)),
                rule_set.variant("Sales Associate"),
            ),
        )
        batch = _runner().run_batch("acme", broken, PERIOD, _entities(), _rows())
        assert batch.manifest.outcomes["E003"] == "failed:UnresolvedReference"
        assert batch.manifest.outcomes["E001"] == "ok"


    def test_decimal_overflow_fails_entity_alone(self) -> None:
        rule_set = load_rule_set({
            "rule_set_id": "flat-rate",
            "tenant_id": "acme",
            "name": "Flat Rate",
            "version": 1,
            "status": "active",
            "input_bindings": {"direct": [{"metric": "sales", "field": "sales", "required": True}]},
            "variants": [{
                "name": "All",
                "ordinal": 0,
                "components": [{
                    "name": "Commission",
                    "ordinal": 0,
                    "type": "tiered",
                    "intent": {"interpretation": "rate", "metric": "sales"},
                    "tier_config": {"mode": "cliff", "tiers": [{"threshold": "0", "value": "0.1"}]},
                }],
            }],
        })
        entities = [Entity("good", "acme"), Entity("huge", "acme")]
        rows = {"good": [{"sales": "1000"}], "huge": [{"sales": "1e30"}]}

        batch = _runner().run_batch("acme", rule_set, PERIOD, entities, rows)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.manifest.outcomes == {"good": "ok", "huge": "failed:ArithmeticFailure"}
        assert batch.result_for("good").total_payout == Decimal("100.00")
        assert batch.total_payout == Decimal("100.00")
        assert "InvalidOperation" in batch.manifest.failure_reasons["huge"]

class TestConfigurationErrors:
    def test_archived_rule_set_aborts(self) -> None:
        archived = dataclasses.replace(_rule_set(), status=RuleSetStatus.ARCHIVED)
        with pytest.raises(ConfigurationError, match="archived"):
            _runner().run_batch("acme", archived, PERIOD, _entities(), _rows())

    def test_tenant_mismatch_aborts(self) -> None:
        with pytest.raises(ConfigurationError):
            _runner().run_batch("globex", _rule_set(), PERIOD, _entities(), _rows())

    def test_empty_rule_set_aborts(self) -> None:
        empty = dataclasses.replace(_rule_set(), variants=())
        with pytest.raises(ConfigurationError, match="no variants"):
            _runner().run_batch("acme", empty, PERIOD, _entities(), _rows())


class TestCancellation:
    def test_cancel_marks_batch_partial(self) -> None:
        cancel = threading.Event()
        seen = []

        def progress(completed: int, total: int) -> None:
            seen.append((completed, total))
            cancel.set()

        batch = _runner(1).run_batch(
            "acme", _rule_set(), PERIOD, _entities(), _rows(),
            cancel_event=cancel, progress_callback=progress,
        )
        assert batch.status == BatchStatus.PARTIAL
        assert seen == [(1, 4)]
        assert batch.manifest.not_dispatched == ("E002", "E003", "E004")
        assert list(batch.manifest.outcomes) == ["E001"]

    def test_progress_reports_every_entity(self) -> None:
        seen = []
        batch = _runner(2).run_batch(
            "acme", _rule_set(), PERIOD, _entities(), _rows(),
            progress_callback=lambda done, total: seen.append(done),
        )
        assert batch.status == BatchStatus.COMPLETED
        assert sorted(seen) == [1, 2, 3, 4]
