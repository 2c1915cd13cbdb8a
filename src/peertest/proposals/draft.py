"""Proposal drafts and the global proposal lease.

A draft is an explicit value holding the proposed assignments of one
matcher batch. Confirm and cancel act on the draft, not on ambient
state. While a draft is outstanding the lease is held, and operations
that would change durable assignments outside the draft (manual
assignment, reassignment, a second batch) are refused, keeping the load
index the draft was computed from consistent.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from peertest.errors import ConflictError
from peertest.models.assignment import ProposedAssignment


@dataclass
class ProposalDraft:
    """Proposed assignments for a batch, keyed by project id."""
    draft_id: str
    created_utc: datetime
    proposals: dict[str, list[ProposedAssignment]] = field(default_factory=dict)
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def project_ids(self) -> list[str]:
        return list(self.proposals.keys())

    @property
    def is_empty(self) -> bool:
        return not self.proposals

    def team_ids(self, project_id: str) -> list[str]:
        return [p.testing_team_id for p in self.proposals.get(project_id, [])]

    def all_proposals(self, exclude_project_id: Optional[str] = None) -> list[ProposedAssignment]:
        return [
            p
            for pid, items in self.proposals.items()
            if pid != exclude_project_id
            for p in items
        ]


class ProposalLease:
    """Global lease held by the outstanding draft, if any."""

    def __init__(self) -> None:
        self._holder: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def acquire(self, draft_id: str) -> None:
        with self._lock:
            if self._holder is not None:
                raise ConflictError(
                    f"Proposals {self._holder} are still pending; "
                    f"confirm or cancel them before generating new ones"
                )
            self._holder = draft_id

    def release(self, draft_id: str) -> bool:
        """Release if held by draft_id. Returns whether it was released."""
        with self._lock:
            if self._holder != draft_id:
                return False
            self._holder = None
            return True

    def ensure_free(self, operation: str) -> None:
        """Raise ConflictError if any draft holds the lease."""
        holder = self._holder
        if holder is not None:
            raise ConflictError(
                f"Cannot {operation} while proposals {holder} are pending; "
                f"confirm or cancel them first"
            )
