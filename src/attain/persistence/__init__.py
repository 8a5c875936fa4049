"""Storage adapters and the audit event log."""

from attain.persistence.event_log import EventKind, EventLog, EventRecord
from attain.persistence.store import InMemoryStore

__all__ = ["EventKind", "EventLog", "EventRecord", "InMemoryStore"]
