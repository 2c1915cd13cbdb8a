"""Error taxonomy for assignment and link-report operations.

All errors derive from ValueError so callers that only care about
"the operation was rejected" can catch one type. The facade converts
them into failed ServiceResults; nothing here is retried automatically.
"""

from __future__ import annotations

from typing import Optional


class AssignmentError(ValueError):
    """Base class for every rejected operation."""
    kind = "error"


class ValidationError(AssignmentError):
    """Input is invalid; rejected before any write."""
    kind = "validation"


class CapacityError(AssignmentError):
    """A selected team is at or above the load cap in live state.

    team_id and slot identify which side failed; both are None when no
    team at all has capacity.
    """
    kind = "capacity"

    def __init__(
        self,
        message: str,
        team_id: Optional[str] = None,
        slot: Optional[int] = None,
    ) -> None:
        self.team_id = team_id
        self.slot = slot
        super().__init__(message)

    @classmethod
    def at_cap(cls, team_id: str, slot: int, load: int, cap: int) -> CapacityError:
        return cls(
            f"Team {slot} ({team_id}) is already at its {cap}-project limit "
            f"(current load {load})",
            team_id=team_id,
            slot=slot,
        )


class ConflictError(AssignmentError):
    """Another operation or state blocks this one; resolve it first."""
    kind = "conflict"


class BatchWriteError(AssignmentError):
    """The atomic write batch failed; no part of it was applied."""
    kind = "atomicity"
