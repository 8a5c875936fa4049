"""Tests for the layered reconciliation engine — proves offsetting errors never pass silently."""

import json
import pytest
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from attain.errors import ResultSetLoadError
from attain.models.reconciliation import ComparisonDepth, DiscrepancyKind, Severity
from attain.policy.resolver import ReconciliationTolerance
from attain.reconciliation.engine import ReconciliationEngine, delta_pct
from attain.reconciliation.result_sets import ResultSet, normalize_id


def _record(
    entity_id: str,
    total: str,
    components: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "entityId": entity_id,
        "totalPayout": total,
        "outcome": "ok",
        "components": [
            {"componentName": name, "payout": payout}
            for name, payout in (components or {}).items()
        ],
    }
    record.update(extra)
    return record


def _set(name: str, *records: Dict[str, Any], segment_key: Optional[str] = None) -> ResultSet:
    return ResultSet.from_records(list(records), name, segment_key)


@pytest.fixture
def engine() -> ReconciliationEngine:
    return ReconciliationEngine(ReconciliationTolerance())


class TestDeltaPct:
    def test_relative_to_larger_side(self) -> None:
        assert delta_pct(Decimal("1000"), Decimal("1100")) == Decimal("9.0909")
        assert delta_pct(Decimal("1100"), Decimal("1000")) == Decimal("-9.0909")

    def test_both_zero(self) -> None:
        assert delta_pct(Decimal("0"), Decimal("0")) is None

    def test_one_side_zero(self) -> None:
        assert delta_pct(Decimal("0"), Decimal("50")) == Decimal("100.0000")


class TestNormalizeId:
    @pytest.mark.parametrize("raw,expected", [
        ("00123", "123"),
        (" 123 ", "123"),
        (123, "123"),
        ("E-007", "E-007"),
        ("0", "0"),
    ])
    def test_normalize(self, raw, expected) -> None:
        assert normalize_id(raw) == expected


class TestFalseGreen:
    def test_offsetting_entities_flagged(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "1000"), _record("E2", "1000"))
        actual = _set("actual", _record("E1", "1100"), _record("E2", "900"))
        report = engine.compare(expected, actual)

        assert report.aggregate_match is True
        assert report.false_green is True
        flag = report.false_greens[0]
        assert flag.level == ComparisonDepth.AGGREGATE
        assert flag.net_delta == Decimal("0")
        assert flag.gross_delta == Decimal("200")
        entity_flags = report.discrepancies_of(DiscrepancyKind.ENTITY_DISCREPANCY)
        assert [d.identity for d in entity_flags] == ["E1", "E2"]
        assert [d.delta for d in entity_flags] == [Decimal("100"), Decimal("-100")]
        assert all(d.severity == Severity.AMBER for d in entity_flags)

    def test_genuine_match_is_not_false_green(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "1000"), _record("E2", "1000"))
        actual = _set("actual", _record("E1", "1000.01"), _record("E2", "1000"))
        report = engine.compare(expected, actual)
        assert report.aggregate_match is True
        assert report.false_green is False
        assert report.discrepancies == ()

    def test_offsets_flagged_under_large_population(self, engine: ReconciliationEngine) -> None:
        filler = [_record(f"F{i:04d}", "1000") for i in range(1000)]
        expected = _set("expected", *filler, _record("A", "100"), _record("B", "200"))
        actual = _set("actual", *filler, _record("A", "200"), _record("B", "100"))
        report = engine.compare(expected, actual)

        assert report.aggregate_match is True
        assert report.flagged_identities() == {"A", "B"}
        assert report.false_green is True
        assert report.false_greens[0].gross_delta == Decimal("200")

    def test_within_tolerance_drift_is_not_false_green(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "10000"), _record("E2", "10000"))
        actual = _set("actual", _record("E1", "10020"), _record("E2", "9980"))
        report = engine.compare(expected, actual)
        assert report.discrepancies == ()
        assert report.false_green is False

    def test_false_green_absolute_threshold(self) -> None:
        engine = ReconciliationEngine(ReconciliationTolerance(false_green_absolute=Decimal("500")))
        expected = _set("expected", _record("E1", "1000"), _record("E2", "1000"))
        actual = _set("actual", _record("E1", "1100"), _record("E2", "900"))
        assert engine.compare(expected, actual).false_green is False

    def test_entity_false_green_from_components(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "100", {"A": "60", "B": "40"}))
        actual = _set("actual", _record("E1", "100", {"A": "40", "B": "60"}))
        report = engine.compare(expected, actual)
        assert report.depth_reached == ComparisonDepth.COMPONENT
        assert report.discrepancies_of(DiscrepancyKind.ENTITY_DISCREPANCY) == []
        entity_flags = [f for f in report.false_greens if f.level == ComparisonDepth.ENTITY]
        assert [f.identity for f in entity_flags] == ["E1"]
        assert entity_flags[0].gross_delta == Decimal("40")
        components = report.discrepancies_of(DiscrepancyKind.COMPONENT_DISCREPANCY)
        assert [d.identity for d in components] == ["E1/A", "E1/B"]


class TestEntityJoin:
    def test_missing_and_extra(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "100"), _record("E3", "50"))
        actual = _set("actual", _record("E1", "100"), _record("E4", "75"))
        report = engine.compare(expected, actual)
        missing = report.discrepancies_of(DiscrepancyKind.MISSING_ENTITY)
        extra = report.discrepancies_of(DiscrepancyKind.EXTRA_ENTITY)
        assert [(d.identity, d.expected, d.actual) for d in missing] == [("E3", Decimal("50"), Decimal("0"))]
        assert [(d.identity, d.expected, d.actual) for d in extra] == [("E4", Decimal("0"), Decimal("75"))]
        assert extra[0].severity == Severity.RED

    def test_leading_zeros_join(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("00123", "100"))
        actual = _set("actual", _record("123", "100"))
        report = engine.compare(expected, actual)
        assert report.discrepancies == ()

    def test_external_id_preferred_over_entity_id(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "100", externalId="10045"))
        actual = _set("actual", _record("010045", "100"))
        report = engine.compare(expected, actual)
        assert list(expected.entities) == ["10045"]
        assert expected.entities["10045"].source_id == "E1"
        assert report.discrepancies == ()

    def test_failed_records_carry_no_payout(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "100"), _record("E2", "0", outcome="failed"))
        actual = _set("actual", _record("E1", "100"))
        report = engine.compare(expected, actual)
        assert expected.count == 1
        assert report.discrepancies == ()

    def test_symmetry(self, engine: ReconciliationEngine) -> None:
        a = _set("a", _record("E1", "1000"), _record("E2", "1000"), _record("E3", "5"))
        b = _set("b", _record("E1", "1100"), _record("E2", "900"), _record("E4", "5"))
        forward = engine.compare(a, b)
        backward = engine.compare(b, a)
        assert forward.flagged_identities() == backward.flagged_identities()
        fwd = {d.identity: d for d in forward.discrepancies}
        bwd = {d.identity: d for d in backward.discrepancies}
        for identity, d in fwd.items():
            assert bwd[identity].delta == -d.delta
            assert bwd[identity].delta_pct == -d.delta_pct
            assert bwd[identity].severity == d.severity
        assert forward.false_green == backward.false_green


class TestComponents:
    def test_component_details_attached(self, engine: ReconciliationEngine) -> None:
        expected_record = _record("E1", "100", {"A": "100"})
        expected_record["components"][0]["details"] = {"tier": "base"}
        actual_record = _record("E1", "150", {"A": "150"})
        actual_record["components"][0]["details"] = {"tier": "stretch"}
        report = engine.compare(_set("e", expected_record), _set("a", actual_record))
        component = report.discrepancies_of(DiscrepancyKind.COMPONENT_DISCREPANCY)[0]
        assert component.expected_details == {"tier": "base"}
        assert component.actual_details == {"tier": "stretch"}

    def test_component_layer_skipped_without_components(self, engine: ReconciliationEngine) -> None:
        report = engine.compare(_set("e", _record("E1", "1")), _set("a", _record("E1", "2")))
        assert report.depth_reached == ComparisonDepth.ENTITY
        assert any("component layer skipped" in n for n in report.notes)


class TestSegments:
    def test_segment_discrepancy(self, engine: ReconciliationEngine) -> None:
        expected = _set(
            "expected",
            _record("E1", "100", store_id="S1"),
            _record("E2", "100", store_id="S2"),
            segment_key="store_id",
        )
        actual = _set(
            "actual",
            _record("E1", "100", store_id="S1"),
            _record("E2", "300", store_id="S2"),
            segment_key="store_id",
        )
        report = engine.compare(expected, actual)
        assert ComparisonDepth.SEGMENT in report.layers_compared
        segments = report.discrepancies_of(DiscrepancyKind.SEGMENT_DISCREPANCY)
        assert [(d.identity, d.delta) for d in segments] == [("S2", Decimal("200"))]

    def test_segment_false_green(self, engine: ReconciliationEngine) -> None:
        expected = _set(
            "expected",
            _record("E1", "1000", metadata={"store_id": "S1"}),
            _record("E2", "1000", metadata={"store_id": "S1"}),
            segment_key="store_id",
        )
        actual = _set(
            "actual",
            _record("E1", "1100", metadata={"store_id": "S1"}),
            _record("E2", "900", metadata={"store_id": "S1"}),
            segment_key="store_id",
        )
        report = engine.compare(expected, actual)
        levels = [(f.level, f.identity) for f in report.false_greens]
        assert (ComparisonDepth.AGGREGATE, "*") in levels
        assert (ComparisonDepth.SEGMENT, "S1") in levels

    def test_segment_skipped_when_one_side_lacks_key(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "100", store_id="S1"), segment_key="store_id")
        actual = _set("actual", _record("E1", "100"), segment_key="store_id")
        report = engine.compare(expected, actual)
        assert ComparisonDepth.SEGMENT not in report.layers_compared
        assert report.layers_compared == (ComparisonDepth.AGGREGATE, ComparisonDepth.ENTITY)
        assert any("segment layer skipped" in n for n in report.notes)


class TestAggregateOnly:
    def test_stops_at_aggregate(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "600"), _record("E2", "400"))
        actual = ResultSet.aggregate_only("reference", "1100", count=2)
        report = engine.compare(expected, actual)
        assert report.depth_reached == ComparisonDepth.AGGREGATE
        assert report.aggregate.matched is False
        assert [d.kind for d in report.discrepancies] == [DiscrepancyKind.AGGREGATE_DISCREPANCY]
        assert report.false_greens == ()
        assert report.notes

    def test_from_file_total_document(self, tmp_path: Path) -> None:
        path = tmp_path / "reference.json"
        path.write_text(json.dumps({"total": "1060.50", "count": 3}), encoding="utf-8")
        result_set = ResultSet.from_file(path)
        assert result_set.has_entities is False
        assert result_set.total == Decimal("1060.50")
        assert result_set.count == 3


class TestReportDeterminism:
    def test_to_json_is_stable(self, engine: ReconciliationEngine) -> None:
        expected = _set("expected", _record("E1", "1000", {"A": "1000"}), _record("E2", "1000", {"A": "1000"}))
        actual = _set("actual", _record("E1", "1100", {"A": "1100"}), _record("E2", "900", {"A": "900"}))
        assert engine.compare(expected, actual).to_json() == engine.compare(expected, actual).to_json()

    def test_sharded_join_matches_single_shard(self) -> None:
        records_a = [_record(f"E{i:03d}", str(100 + i)) for i in range(25)]
        records_b = [_record(f"E{i:03d}", str(100 + i + (i % 3) * 7)) for i in range(1, 27)]
        single = ReconciliationEngine(ReconciliationTolerance(shard_count=1))
        sharded = ReconciliationEngine(ReconciliationTolerance(shard_count=4))
        a, b = _set("a", *records_a), _set("b", *records_b)
        assert single.compare(a, b).to_json() == sharded.compare(a, b).to_json()


class TestResultSetLoading:
    def test_duplicate_identity_after_normalization(self) -> None:
        with pytest.raises(ResultSetLoadError, match="duplicate"):
            _set("x", _record("007", "1"), _record("7", "2"))

    def test_missing_entity_id(self) -> None:
        with pytest.raises(ResultSetLoadError, match="entityId"):
            _set("x", {"totalPayout": "1"})

    def test_non_numeric_total(self) -> None:
        with pytest.raises(ResultSetLoadError):
            _set("x", _record("E1", "lots"))

    def test_not_a_list(self) -> None:
        with pytest.raises(ResultSetLoadError):
            ResultSet.from_records({"entityId": "E1"}, "x")

    def test_invalid_json_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(ResultSetLoadError):
            ResultSet.from_file(path)
