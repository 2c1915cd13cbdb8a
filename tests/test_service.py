"""Tests for PeerTestService — proves the facade orchestrates correctly."""

from pathlib import Path

import pytest
import structlog

from peertest.log_config import configure_logging
from peertest.models.assignment import ProjectStatus
from peertest.notify.notifier import Notice, NoticeKind, Notifier
from peertest.persistence.event_log import EventKind, EventLog
from peertest.persistence.state_store import StateStore
from peertest.policy.resolver import PolicyResolver
from peertest.service import PeerTestService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
NEW_LINK = "https://fixed.example.org/app"


class _RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[Notice] = []

    def send(self, notice: Notice) -> None:
        self.sent.append(notice)


class _BrokenNotifier(Notifier):
    def send(self, notice: Notice) -> None:
        raise ConnectionError("smtp unavailable")


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def notifier() -> _RecordingNotifier:
    return _RecordingNotifier()


@pytest.fixture
def service(resolver: PolicyResolver, notifier: _RecordingNotifier) -> PeerTestService:
    svc = PeerTestService(resolver, event_log=EventLog(), notifier=notifier)
    _populate(svc)
    return svc


def _populate(service: PeerTestService) -> None:
    """Six teams alternating subgroups; P1..P4 owned by T1..T4."""
    for i in range(1, 7):
        service.register_team(
            f"T{i}", f"Team {i}", "1A" if i % 2 else "1B",
            leader_email=f"lead{i}@example.edu",
        )
    for i in range(1, 5):
        service.register_project(
            f"P{i}", f"T{i}", title=f"Project {i}",
            deployed_link=f"https://p{i}.example.org",
        )


def _event_kinds(service: PeerTestService) -> list[EventKind]:
    return [e.event_kind for e in service._event_log.events()]


def _open_report(service: PeerTestService) -> str:
    """Assign T2/T3 to P1 and have T2 report the link; return report id."""
    result = service.manual_assign("P1", "T2", "T3")
    assert result.success
    reported = service.report_link(result.data["assignment_ids"][0], "T2", "404 on every page")
    assert reported.success
    return reported.data["report_id"]


class TestDirectory:
    def test_register_team_requires_id(self, service: PeerTestService) -> None:
        result = service.register_team("", "Nobody", "1A")
        assert not result.success
        assert result.data["error_kind"] == "validation"

    def test_register_project_requires_known_owner(self, service: PeerTestService) -> None:
        result = service.register_project("P9", "T99")
        assert not result.success
        assert "Team not found" in result.errors[0]

    def test_lookups(self, service: PeerTestService) -> None:
        assert service.get_team("T1").leader_email == "lead1@example.edu"
        assert service.get_project("P2").owner_team_id == "T2"
        assert service.project_status("P1") == ProjectStatus.UNASSIGNED

    def test_update_keeps_stored_link(self, service: PeerTestService) -> None:
        result = service.register_project("P1", "T1", title="Renamed")
        assert result.success
        assert result.data["updated"]
        project = service.get_project("P1")
        assert project.title == "Renamed"
        assert project.deployed_link == "https://p1.example.org"

    def test_owner_change_before_assignment(self, service: PeerTestService) -> None:
        assert service.register_project("P1", "T5").success
        assert service.get_project("P1").owner_team_id == "T5"

    def test_tester_cannot_become_owner(self, service: PeerTestService) -> None:
        assert service.manual_assign("P1", "T2", "T3").success
        result = service.register_project("P1", "T2")
        assert not result.success
        assert result.data["error_kind"] == "validation"
        project = service.get_project("P1")
        assert project.owner_team_id == "T1"
        assert project.deployed_link == "https://p1.example.org"
        testers = {a.testing_team_id for a in service.list_assignments("P1")}
        assert project.owner_team_id not in testers

    def test_owner_fixed_once_assigned(self, service: PeerTestService) -> None:
        assert service.manual_assign("P1", "T2", "T3").success
        result = service.register_project("P1", "T5")
        assert not result.success
        assert result.data["error_kind"] == "conflict"
        assert service.get_project("P1").owner_team_id == "T1"

    def test_link_change_blocked_during_report(self, service: PeerTestService) -> None:
        report_id = _open_report(service)
        result = service.register_project("P1", "T1", deployed_link=NEW_LINK)
        assert not result.success
        assert report_id in result.errors[0]
        assert service.get_project("P1").deployed_link == "https://p1.example.org"

    def test_approved_link_survives_update(self, service: PeerTestService) -> None:
        report_id = _open_report(service)
        assert service.submit_replacement_link(report_id, "T1", NEW_LINK).success
        assert service.approve_link(report_id, "faculty-1").success
        assert service.register_project("P1", "T1", title="Shop v2").success
        assert service.get_project("P1").deployed_link == NEW_LINK


class TestBatchProposals:
    def test_generate_and_confirm(self, service: PeerTestService) -> None:
        result = service.generate_proposals(seed="round-1")
        assert result.success
        assert result.data["fully_assigned"] == 4
        assert result.data["partially_assigned"] == 0
        assert result.data["failed"] == 0
        assert set(result.data["proposals"]) == {"P1", "P2", "P3", "P4"}
        assert service.list_assignments() == []

        confirmed = service.confirm_proposals(result.data["draft_id"])
        assert confirmed.success
        assert confirmed.data["succeeded"] == 4
        assert confirmed.data["failed"] == 0
        assert service.pending_proposals is None
        for pid in ("P1", "P2", "P3", "P4"):
            assert service.project_status(pid) == ProjectStatus.ASSIGNED
        assert _event_kinds(service) == [
            EventKind.PROPOSALS_CREATED,
            EventKind.PROPOSALS_CONFIRMED,
        ]

    def test_confirm_reports_which_team_was_full(self, service: PeerTestService) -> None:
        result = service.generate_proposals(seed="round-1")
        second = result.data["proposals"]["P1"][1]
        # Fill P1's second team to the cap after the proposal was made.
        for pid in ("P5", "P6"):
            assert service.register_project(pid, "T1").success
            with service.store.transaction() as txn:
                txn.create_assignment(pid, second, "T1")

        confirmed = service.confirm_proposals(result.data["draft_id"])
        assert confirmed.success
        assert "P1" not in confirmed.data["confirmed_projects"]
        failure = confirmed.data["failures"]["P1"]
        assert failure["error_kind"] == "capacity"
        assert failure["team_id"] == second
        assert failure["slot"] == 2
        assert second in failure["reason"]
        assert service.list_assignments("P1") == []

    def test_second_batch_is_conflict(self, service: PeerTestService) -> None:
        assert service.generate_proposals(seed="a").success
        result = service.generate_proposals(seed="b")
        assert not result.success
        assert result.data["error_kind"] == "conflict"

    def test_nothing_to_assign(self, service: PeerTestService) -> None:
        assert service.confirm_proposals(service.generate_proposals(seed="a").data["draft_id"]).success
        result = service.generate_proposals(seed="b")
        assert not result.success
        assert "No unassigned projects" in result.errors[0]

    def test_no_capacity_anywhere(self, resolver: PolicyResolver) -> None:
        service = PeerTestService(resolver)
        for tid, subgroup in (("T1", "1A"), ("T2", "1B"), ("T3", "1A")):
            service.register_team(tid, tid, subgroup)
        for pid in ("P1", "P2", "P3"):
            service.register_project(pid, "T1")
        assert service.manual_assign("P1", "T2", "T3").success
        assert service.manual_assign("P2", "T2", "T3").success

        result = service.generate_proposals(seed="x")
        assert not result.success
        assert result.data["error_kind"] == "capacity"
        assert result.data["failed_projects"] == ["P3"]
        assert service.pending_proposals is None

    def test_small_roster_warning(self, resolver: PolicyResolver) -> None:
        service = PeerTestService(resolver)
        service.register_team("T1", "One", "1A")
        service.register_team("T2", "Two", "1B")
        service.register_project("P1", "T1")
        result = service.generate_proposals(seed="x")
        assert result.success
        assert result.data["partially_assigned"] == 1
        assert any("recommended" in w for w in result.data["warnings"])

    def test_reroll_and_edit(self, service: PeerTestService) -> None:
        service.generate_proposals(seed="a")
        rerolled = service.reroll_proposal("P1", seed="b")
        assert rerolled.success
        assert "T1" not in rerolled.data["team_ids"]

        edited = service.edit_proposal("P1", "T5", "T6")
        assert edited.success
        assert service.pending_proposals.team_ids("P1") == ["T5", "T6"]

        bad = service.edit_proposal("P1", "T1", "T5")
        assert not bad.success
        assert bad.data["error_kind"] == "validation"

    def test_reroll_without_draft(self, service: PeerTestService) -> None:
        result = service.reroll_proposal("P1")
        assert not result.success
        assert result.data["error_kind"] == "conflict"

    def test_cancel_twice(self, service: PeerTestService) -> None:
        service.generate_proposals(seed="a")
        first = service.cancel_proposals()
        second = service.cancel_proposals()
        assert first.success and first.data["cancelled"] == 4
        assert second.success and second.data["cancelled"] == 0
        assert service.list_assignments() == []
        assert _event_kinds(service).count(EventKind.PROPOSALS_CANCELLED) == 1

    def test_confirm_without_draft(self, service: PeerTestService) -> None:
        result = service.confirm_proposals()
        assert not result.success
        assert result.data["error_kind"] == "conflict"


class TestSingleProjectWrites:
    def test_manual_assign(self, service: PeerTestService) -> None:
        result = service.manual_assign("P1", "T2", "T3")
        assert result.success
        assert result.data["team_ids"] == ["T2", "T3"]
        assert not result.data["locked"]
        assert _event_kinds(service) == [EventKind.MANUAL_ASSIGNMENT]

    def test_manual_assign_blocked_while_pending(self, service: PeerTestService) -> None:
        service.generate_proposals(seed="a")
        result = service.manual_assign("P1", "T2", "T3")
        assert not result.success
        assert result.data["error_kind"] == "conflict"

    def test_capacity_failure_names_team_and_slot(self, service: PeerTestService) -> None:
        service.manual_assign("P2", "T3", "T4")
        service.manual_assign("P4", "T3", "T5")
        result = service.manual_assign("P1", "T2", "T3")
        assert not result.success
        assert result.data["error_kind"] == "capacity"
        assert result.data["team_id"] == "T3"
        assert result.data["slot"] == 2
        assert service.list_assignments(project_id="P1") == []

    def test_reassign(self, service: PeerTestService) -> None:
        service.manual_assign("P1", "T2", "T3")
        result = service.reassign("P1", "T4", "NONE")
        assert result.success
        assert [a.testing_team_id for a in service.list_assignments("P1")] == ["T4"]
        assert EventKind.PROJECT_REASSIGNED in _event_kinds(service)

    def test_mark_complete(self, service: PeerTestService) -> None:
        created = service.manual_assign("P1", "T2", "T3").data["assignment_ids"]
        first = service.mark_assignment_complete(created[0])
        assert first.success
        assert first.data["project_status"] == "ASSIGNED"
        second = service.mark_assignment_complete(created[1])
        assert second.data["project_status"] == "COMPLETED"


class TestLinkReports:
    def test_full_lifecycle(
        self, service: PeerTestService, notifier: _RecordingNotifier,
    ) -> None:
        report_id = _open_report(service)
        assert service.project_status("P1") == ProjectStatus.BLOCKED_LINK

        opened = [n for n in notifier.sent if n.kind == NoticeKind.LINK_REPORTED]
        assert {(n.audience, n.recipient) for n in opened} == {
            ("uploader", "lead1@example.edu"),
            ("faculty", "faculty.1a@example.edu"),
        }
        faculty_notice = next(n for n in opened if n.audience == "faculty")
        assert "404 on every page" in faculty_notice.body
        assert "Team 3" in faculty_notice.body

        submitted = service.submit_replacement_link(report_id, "T1", NEW_LINK)
        assert submitted.success
        assert submitted.data["state"] == "PENDING_APPROVAL"

        approved = service.approve_link(report_id, "faculty-1")
        assert approved.success
        assert approved.data["state"] == "CLOSED"
        assert len(approved.data["affected_assignments"]) == 2
        assert service.get_project("P1").deployed_link == NEW_LINK
        assert service.project_status("P1") == ProjectStatus.ASSIGNED

        restored = [n for n in notifier.sent if n.kind == NoticeKind.LINK_RESTORED]
        assert {n.recipient for n in restored} == {
            "lead1@example.edu",
            "faculty.1a@example.edu",
            "lead2@example.edu",
            "lead3@example.edu",
        }
        assert _event_kinds(service)[-3:] == [
            EventKind.LINK_REPORTED,
            EventKind.REPLACEMENT_LINK_SUBMITTED,
            EventKind.LINK_APPROVED,
        ]

    def test_decline_keeps_project_blocked(self, service: PeerTestService) -> None:
        report_id = _open_report(service)
        service.submit_replacement_link(report_id, "T1", NEW_LINK)
        declined = service.decline_link(report_id, "faculty-1", "Still returns 404")
        assert declined.success
        assert declined.data["state"] == "DECLINED"
        assert service.project_status("P1") == ProjectStatus.BLOCKED_LINK
        assert service.get_project("P1").deployed_link == "https://p1.example.org"

    def test_second_report_rejected(self, service: PeerTestService) -> None:
        _open_report(service)
        other = service.list_assignments("P1")[1].assignment_id
        result = service.report_link(other, "T3", "same problem")
        assert not result.success
        assert result.data["error_kind"] == "conflict"

    def test_completion_blocked_while_locked(self, service: PeerTestService) -> None:
        _open_report(service)
        assignment_id = service.list_assignments("P1")[1].assignment_id
        result = service.mark_assignment_complete(assignment_id)
        assert not result.success
        assert result.data["error_kind"] == "conflict"

    def test_reassign_during_report_is_locked(self, service: PeerTestService) -> None:
        report_id = _open_report(service)
        result = service.reassign("P1", "T2", "T5")
        assert result.success
        assert result.data["locked"]

        service.submit_replacement_link(report_id, "T1", NEW_LINK)
        approved = service.approve_link(report_id, "faculty-1")
        assert len(approved.data["affected_assignments"]) == 2
        assert all(not a.is_locked for a in service.list_assignments("P1"))

    def test_invalid_url(self, service: PeerTestService) -> None:
        report_id = _open_report(service)
        result = service.submit_replacement_link(report_id, "T1", "javascript:alert(1)")
        assert not result.success
        assert result.data["error_kind"] == "validation"

    def test_history_listing(self, service: PeerTestService) -> None:
        report_id = _open_report(service)
        service.submit_replacement_link(report_id, "T1", NEW_LINK)
        service.approve_link(report_id, "faculty-1")
        second = service.report_link(service.list_assignments("P1")[0].assignment_id, "T2", "down again")
        assert second.success

        reports = service.list_link_reports("P1")
        assert [r.report_id for r in reports] == [report_id, second.data["report_id"]]
        assert len(reports[0].log) == 3
        assert service.get_link_report(report_id).is_resolved

    def test_notification_failure_is_a_warning(self, resolver: PolicyResolver) -> None:
        service = PeerTestService(resolver, notifier=_BrokenNotifier())
        _populate(service)
        result = service.manual_assign("P1", "T2", "T3")
        reported = service.report_link(result.data["assignment_ids"][0], "T2", "down")
        assert reported.success
        assert any("Notification failure" in w for w in reported.data["warnings"])
        assert service.project_status("P1") == ProjectStatus.BLOCKED_LINK


class TestAuditTrail:
    def test_failed_operations_not_recorded(self, service: PeerTestService) -> None:
        service.manual_assign("P1", "T1", "T2")
        assert _event_kinds(service) == []

    def test_event_log_failure_is_a_warning(
        self, service: PeerTestService, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def _fail(event: object) -> None:
            raise OSError("log volume full")

        monkeypatch.setattr(service._event_log, "append", _fail)
        result = service.manual_assign("P1", "T2", "T3")
        assert result.success
        assert any("Event log failure" in w for w in result.data["warnings"])
        assert len(service.list_assignments("P1")) == 2


class TestStatus:
    def test_status_counts(self, service: PeerTestService) -> None:
        _open_report(service)
        service.manual_assign("P2", "T4", "T5")
        status = service.status()
        assert status["version"] == "1.0.0"
        assert status["teams"] == 6
        assert status["projects"]["total"] == 4
        assert status["projects"]["by_status"] == {
            "BLOCKED_LINK": 1,
            "ASSIGNED": 1,
            "UNASSIGNED": 2,
        }
        assert status["assignments"]["by_status"] == {"LINK_REPORTED": 2, "ASSIGNED": 2}
        assert status["link_reports"]["by_state"] == {"OPEN": 1}
        assert status["pending_proposals"]["draft_id"] is None
        assert status["events"] == 3


class TestPersistenceWiring:
    def test_state_and_log_survive_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        state_path = tmp_path / "state.json"
        log_path = tmp_path / "events.jsonl"
        first = PeerTestService(
            resolver, store=StateStore(state_path), event_log=EventLog(log_path),
        )
        _populate(first)
        first.manual_assign("P1", "T2", "T3")

        second = PeerTestService(
            resolver, store=StateStore(state_path), event_log=EventLog(log_path),
        )
        assert second.project_status("P1") == ProjectStatus.ASSIGNED
        result = second.manual_assign("P2", "T4", "T5")
        assert result.success
        assert "warnings" not in result.data
        assert EventLog(log_path).count == 2


class TestLogging:
    def test_configure_logging(self) -> None:
        try:
            configure_logging("WARNING")
            logger = structlog.get_logger()
            logger.info("filtered out")
            logger.warning("kept")
        finally:
            structlog.reset_defaults()
