"""Append-only audit log of calculation and reconciliation events.

Every batch creation, lifecycle transition, rule set change and
reconciliation run is appended as an immutable, hashed record. The log can
be persisted as JSONL (one object per line) and is verified on load:
tampered lines (hash mismatch) and duplicate event ids (replay) are
rejected.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from attain.models.serialization import canonical_json, jsonable, sha256_digest


class EventKind(str, enum.Enum):
    BATCH_CREATED = "batch_created"
    BATCH_TRANSITION = "batch_transition"
    RULE_SET_REGISTERED = "rule_set_registered"
    RULE_SET_REVISED = "rule_set_revised"
    RULE_SET_PUBLISHED = "rule_set_published"
    RULE_SET_STATUS_CHANGED = "rule_set_status_changed"
    RECONCILIATION_COMPLETED = "reconciliation_completed"


def _hash_fields(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: Dict[str, Any],
) -> str:
    return sha256_digest({
        "event_id": event_id,
        "event_kind": event_kind,
        "timestamp_utc": timestamp_utc,
        "actor_id": actor_id,
        "payload": payload,
    })


@dataclass(frozen=True)
class EventRecord:
    """One immutable audit event. ``event_hash`` covers every other field."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: Dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: Dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = (timestamp_utc or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        plain = jsonable(payload)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts,
            actor_id=actor_id,
            payload=plain,
            event_hash=_hash_fields(event_id, event_kind.value, ts, actor_id, plain),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL persistence."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: List[EventRecord] = []
        self._event_ids: Set[str] = set()
        self._storage_path = Path(storage_path) if storage_path else None

        if self._storage_path and self._storage_path.exists():
            self._load_from_file(self._storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        self._events.append(event)
        self._event_ids.add(event.event_id)
        if self._storage_path:
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(canonical_json(event.to_dict()) + "\n")

    def events(self, kind: Optional[EventKind] = None) -> List[EventRecord]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for(self, key: str, value: str) -> List[EventRecord]:
        """Events whose payload carries ``key == value`` (e.g. batch_id)."""
        return [e for e in self._events if e.payload.get(key) == value]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = _parse_line(line, line_num)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _hash_fields(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                self._events.append(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)


def _parse_line(line: str, line_num: int) -> Dict[str, Any]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Corrupt event log line {line_num}: {exc}") from exc
    missing = {"event_id", "event_kind", "timestamp_utc", "actor_id", "payload", "event_hash"} - set(data)
    if missing:
        raise ValueError(f"Event log line {line_num} missing fields: {sorted(missing)}")
    return data
