"""Proposals module — draft lifecycle and durable assignment writes."""

from peertest.proposals.draft import ProposalDraft, ProposalLease
from peertest.proposals.manager import (
    NONE,
    AssignmentManager,
    ConfirmationReport,
    ProjectFailure,
)

__all__ = [
    "ProposalDraft",
    "ProposalLease",
    "NONE",
    "AssignmentManager",
    "ConfirmationReport",
    "ProjectFailure",
]
