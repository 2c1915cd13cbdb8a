"""Persistence layer — document store and audit event log."""

from peertest.persistence.event_log import EventLog, EventRecord, EventKind
from peertest.persistence.state_store import StateStore, Transaction

__all__ = ["EventLog", "EventRecord", "EventKind", "StateStore", "Transaction"]
