"""Link report state machine — legal transitions only.

Validates but does not apply: the workflow applies a transition, with
its side effects on assignments and the project, in one write batch.
"""

from __future__ import annotations

from peertest.models.link_report import LinkReport, LinkReportState


TRANSITIONS: dict[LinkReportState, frozenset[LinkReportState]] = {
    LinkReportState.OPEN: frozenset({LinkReportState.PENDING_APPROVAL}),
    LinkReportState.PENDING_APPROVAL: frozenset({
        LinkReportState.CLOSED,
        LinkReportState.DECLINED,
    }),
    LinkReportState.DECLINED: frozenset({LinkReportState.PENDING_APPROVAL}),
    LinkReportState.CLOSED: frozenset(),
}


class LinkReportStateMachine:
    """Checks link report transitions against the transition table."""

    @staticmethod
    def can_transition(current: LinkReportState, target: LinkReportState) -> bool:
        return target in TRANSITIONS[current]

    @staticmethod
    def validate(report: LinkReport, target: LinkReportState) -> list[str]:
        """Return errors for moving report to target (empty = allowed)."""
        if report.state == LinkReportState.CLOSED:
            return [f"Link report {report.report_id} is closed"]
        if target not in TRANSITIONS[report.state]:
            return [
                f"Illegal link report transition for {report.report_id}: "
                f"{report.state.value} -> {target.value}"
            ]
        return []
