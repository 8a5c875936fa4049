"""Tests for the audit event log — hashing, replay protection and tamper detection."""

import json
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from attain.persistence.event_log import EventKind, EventLog, EventRecord


def _event(event_id: str = "EVT-00000001", **payload) -> EventRecord:
    return EventRecord.create(
        event_id=event_id,
        event_kind=EventKind.BATCH_CREATED,
        actor_id="analyst",
        payload=payload or {"batch_id": "batch_1", "total": Decimal("1060.50")},
        timestamp_utc=datetime(2024, 2, 1, 9, 0, 0, tzinfo=timezone.utc),
    )


class TestEventRecord:
    def test_payload_is_plain_json(self) -> None:
        event = _event()
        assert event.payload == {"batch_id": "batch_1", "total": "1060.50"}
        assert event.timestamp_utc == "2024-02-01T09:00:00Z"
        assert event.event_hash.startswith("sha256:")

    def test_hash_is_deterministic(self) -> None:
        assert _event().event_hash == _event().event_hash
        assert _event().event_hash != _event(batch_id="batch_2").event_hash


class TestEventLog:
    def test_append_and_query(self) -> None:
        log = EventLog()
        log.append(_event("EVT-00000001", batch_id="b1"))
        log.append(_event("EVT-00000002", batch_id="b2"))
        assert log.count == 2
        assert log.last_event.event_id == "EVT-00000002"
        assert [e.event_id for e in log.events_for("batch_id", "b1")] == ["EVT-00000001"]
        assert log.events(EventKind.RULE_SET_REGISTERED) == []

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        log.append(_event())
        with pytest.raises(ValueError, match="Duplicate"):
            log.append(_event())

    def test_persist_and_recover(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(path)
        log.append(_event("EVT-00000001"))
        log.append(_event("EVT-00000002"))
        recovered = EventLog(path)
        assert recovered.count == 2
        assert recovered.events()[1].event_hash == log.events()[1].event_hash

    def test_tampered_line_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(path).append(_event())
        data = json.loads(path.read_text(encoding="utf-8"))
        data["payload"]["total"] = "9999.00"
        path.write_text(json.dumps(data) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(path)

    def test_replayed_line_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(path).append(_event())
        line = path.read_text(encoding="utf-8")
        path.write_text(line + line, encoding="utf-8")
        with pytest.raises(ValueError, match="Duplicate event ID on recovery"):
            EventLog(path)

    def test_corrupt_line(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        path.write_text("{oops\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Corrupt"):
            EventLog(path)

    def test_missing_fields(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        path.write_text(json.dumps({"event_id": "EVT-1"}) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="missing fields"):
            EventLog(path)
