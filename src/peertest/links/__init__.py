"""Links module — broken-link report state machine and workflow."""

from peertest.links.state_machine import TRANSITIONS, LinkReportStateMachine
from peertest.links.workflow import LinkReportWorkflow, TransitionResult

__all__ = [
    "TRANSITIONS",
    "LinkReportStateMachine",
    "LinkReportWorkflow",
    "TransitionResult",
]
