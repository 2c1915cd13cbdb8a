"""Audit log for peer-test operations.

One record per committed operation: proposals created or confirmed,
manual writes, completions and link-report transitions. The log lives
in memory and, when given a path, in a JSONL file with one record per
line. Each record carries a sha256 digest of its own fields, checked
again whenever the file is read back.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

logger = structlog.get_logger()

_HASHED_FIELDS = ("event_id", "event_kind", "timestamp_utc", "actor_id", "payload")


class EventKind(str, enum.Enum):
    """What kind of operation an audit record describes."""
    PROPOSALS_CREATED = "proposals_created"
    PROPOSAL_REROLLED = "proposal_rerolled"
    PROPOSAL_EDITED = "proposal_edited"
    PROPOSALS_CONFIRMED = "proposals_confirmed"
    PROPOSALS_CANCELLED = "proposals_cancelled"
    MANUAL_ASSIGNMENT = "manual_assignment"
    PROJECT_REASSIGNED = "project_reassigned"
    ASSIGNMENT_COMPLETED = "assignment_completed"
    LINK_REPORTED = "link_reported"
    REPLACEMENT_LINK_SUBMITTED = "replacement_link_submitted"
    LINK_APPROVED = "link_approved"
    LINK_DECLINED = "link_declined"


def _digest(fields: dict[str, Any]) -> str:
    body = json.dumps(
        {name: fields[name] for name in _HASHED_FIELDS},
        sort_keys=True,
        ensure_ascii=False,
    )
    return "sha256:" + hashlib.sha256(body.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        stamp = (timestamp_utc or datetime.now(timezone.utc)).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        fields = {
            "event_id": event_id,
            "event_kind": event_kind.value,
            "timestamp_utc": stamp,
            "actor_id": actor_id,
            "payload": payload,
        }
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=stamp,
            actor_id=actor_id,
            payload=payload,
            event_hash=_digest(fields),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record. Raises ValueError if its digest is wrong."""
        expected = _digest(data)
        if data["event_hash"] != expected:
            raise ValueError(
                f"Integrity check failed: event {data['event_id']} "
                f"stored hash {data['event_hash']} != computed {expected}"
            )
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
        )


class EventLog:
    """Append-only audit log, optionally mirrored to a JSONL file.

    Records are written to the file before they become visible in
    memory, so a failed write leaves both views unchanged.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path
        self._events: list[EventRecord] = []
        self._seen: set[str] = set()
        if storage_path is not None and storage_path.exists():
            self._replay(storage_path)

    def append(self, event: EventRecord) -> None:
        """Raises ValueError on a reused event_id."""
        if event.event_id in self._seen:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if self._storage_path is not None:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False))
                f.write("\n")
        self._events.append(event)
        self._seen.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return [e for e in self._events if kind is None or e.event_kind == kind]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _replay(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    event = EventRecord.from_dict(json.loads(line))
                except ValueError as e:
                    raise ValueError(f"{path} line {line_num}: {e}") from e
                if event.event_id in self._seen:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): "
                        f"{event.event_id}"
                    )
                self._events.append(event)
                self._seen.add(event.event_id)
        logger.debug("Event log replayed", path=str(path), events=len(self._events))
