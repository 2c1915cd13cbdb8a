"""Team load index — how many active testing obligations each team holds.

Pure read-side aggregation over assignments (durable or proposed).
Completed assignments do not count. Locked assignments do: a team
blocked by a broken link still owes that testing work.

The index is recomputed for every batch and every validation; it is
never cached, because durable state can change between calls.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

from peertest.models.assignment import Assignment, ProposedAssignment

AnyAssignment = Union[Assignment, ProposedAssignment]


def compute_team_loads(
    assignments: Iterable[AnyAssignment],
    exclude_project_id: Optional[str] = None,
) -> dict[str, int]:
    """Map testing team id → number of active assignments.

    Args:
        assignments: Durable and/or proposed assignments.
        exclude_project_id: Ignore this project's entries, so that
            re-evaluating one project is not inflated by its own
            (possibly stale) assignments.

    Entries without a testing team are ignored rather than rejected.
    """
    loads: dict[str, int] = {}
    for a in assignments:
        if exclude_project_id is not None and a.project_id == exclude_project_id:
            continue
        if not a.testing_team_id:
            continue
        if isinstance(a, Assignment) and not a.is_active:
            continue
        loads[a.testing_team_id] = loads.get(a.testing_team_id, 0) + 1
    return loads


def load_of(loads: dict[str, int], team_id: str) -> int:
    """Load for a single team; unknown teams carry no load."""
    return loads.get(team_id, 0)
