import asyncio
from datetime import date

import pytest

from conftest import leave_payload, seed_directory
from leaveflow.core.exceptions import (
    AuthorizationError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from leaveflow.schemas.attendance import AttendanceMark
from leaveflow.schemas.leave import LeaveStatus, RecommendedAction, ReviewFlag
from leaveflow.services.leave_requests import ALLOWED_TRANSITIONS, can_transition
from leaveflow.services.verification import RoutingThresholds
from leaveflow.store.memory import MemoryStore


class InterleavingStore(MemoryStore):
    """Runs `interleave(request_id)` right before the next transition, like a second reviewer would."""

    interleave = None

    def transition(self, request_id, expected, changes):
        hook, self.interleave = self.interleave, None
        if hook is not None:
            hook(request_id)
        return super().transition(request_id, expected, changes)


async def approved_by_teacher(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    return await machine.decide_as_teacher(request.id, "tch-1", True, "Go ahead")


# ---- submit ----
async def test_scenario_a_high_confidence_approve_stays_pending(machine, notifier):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")

    assert request.status == LeaveStatus.PENDING
    assert request.days == 3
    assert request.verification_result.confidence == 85
    assert request.class_teacher_approval is None
    assert request.review_flags == []
    assert len(notifier.to("tch-1")) == 1
    assert notifier.to("stu-1") == []
    assert [a.event for a in request.audit_anchors] == ["created", "verified"]


async def test_scenario_b_low_confidence_auto_rejects(machine, analyzer, notifier):
    analyzer.confidence = 20
    analyzer.reasoning = "No trace of this event anywhere"

    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")

    assert request.status == LeaveStatus.REJECTED
    assert request.class_teacher_approval.approved is False
    assert request.class_teacher_approval.decided_by is None
    assert "No trace of this event" in request.class_teacher_approval.comments
    assert request.hod_approval is None
    assert len(notifier.to("stu-1")) == 1
    assert "No trace of this event" in notifier.to("stu-1")[0][2]
    assert notifier.to("tch-1") == []
    assert notifier.to("hod-cse") == []
    assert request.audit_anchors[-1].event == "auto_rejected"


async def test_reject_recommendation_auto_rejects_regardless_of_confidence(machine, analyzer):
    analyzer.confidence = 80
    analyzer.action = RecommendedAction.REJECT
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    assert request.status == LeaveStatus.REJECTED


async def test_inconclusive_verification_warns_teacher_and_student(machine, analyzer, notifier):
    analyzer.confidence = 40
    analyzer.action = RecommendedAction.REQUEST_MORE_INFO

    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")

    assert request.status == LeaveStatus.PENDING
    assert ReviewFlag.VERIFICATION_WARNING in request.review_flags
    assert ReviewFlag.MANUAL_REVIEW_REQUIRED in request.review_flags
    assert "Warning" in notifier.to("tch-1")[0][2]
    assert "manual review" in notifier.to("stu-1")[0][2]


async def test_verification_outage_never_blocks_submission(machine, analyzer, notifier):
    analyzer.fail = True

    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")

    assert request.status == LeaveStatus.PENDING
    assert request.verification_result is None
    assert request.review_flags == [ReviewFlag.VERIFICATION_UNAVAILABLE]
    assert [a.event for a in request.audit_anchors] == ["created"]
    assert len(notifier.to("tch-1")) == 1


async def test_fast_track_moves_straight_to_hod(store, make_service, analyzer, notifier):
    analyzer.confidence = 95
    machine = make_service(store, thresholds=RoutingThresholds(fast_track_enabled=True)).machine

    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")

    assert request.status == LeaveStatus.APPROVED_BY_TEACHER
    assert request.class_teacher_approval.decided_by is None
    assert ReviewFlag.FAST_TRACKED in request.review_flags
    assert len(notifier.to("hod-cse")) == 1


async def test_verification_anchor_reference_is_attached(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    assert request.verification_result.anchor_reference == request.audit_anchors[1].hash
    assert request.verification_result.storage_reference.startswith("sim://")


@pytest.mark.parametrize(
    "overrides, missing",
    [
        ({"reason": "  "}, "reason"),
        ({"event_name": ""}, "event_name"),
        ({"document_ref": None}, "document_ref"),
    ],
)
async def test_missing_fields_are_rejected(machine, overrides, missing):
    with pytest.raises(ValidationError) as exc:
        await machine.submit("stu-1", leave_payload(**overrides), caller_id="stu-1")
    assert missing in exc.value.details["missing"]


async def test_end_before_start_is_rejected(machine, store):
    with pytest.raises(ValidationError):
        await machine.submit(
            "stu-1", leave_payload(start_date=date(2024, 3, 5), end_date=date(2024, 3, 4)), caller_id="stu-1"
        )
    assert store.list_requests() == []


async def test_single_day_leave_counts_one_day(machine):
    request = await machine.submit(
        "stu-1", leave_payload(start_date=date(2024, 3, 1), end_date=date(2024, 3, 1)), caller_id="stu-1"
    )
    assert request.days == 1


async def test_course_snapshot_defaults_to_enrollment(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    assert request.course_ids == ["CS301", "CS302"]


async def test_course_snapshot_must_be_enrolled(machine):
    with pytest.raises(ValidationError) as exc:
        await machine.submit("stu-1", leave_payload(course_ids=["CS301", "EC201"]), caller_id="stu-1")
    assert exc.value.details["unknown_courses"] == ["EC201"]


async def test_students_submit_only_for_themselves(machine):
    with pytest.raises(AuthorizationError):
        await machine.submit("stu-1", leave_payload(), caller_id="stu-2")


async def test_unknown_student_is_not_found(machine):
    with pytest.raises(NotFoundError):
        await machine.submit("stu-404", leave_payload(), caller_id="stu-404")


# ---- reviews ----
async def test_teacher_approval_notifies_hod(machine, notifier):
    request = await approved_by_teacher(machine)

    assert request.status == LeaveStatus.APPROVED_BY_TEACHER
    assert request.class_teacher_approval.decided_by == "tch-1"
    assert len(notifier.to("hod-cse")) == 1
    assert request.audit_anchors[-1].event == "teacher_approved"


async def test_teacher_rejection_notifies_student(machine, notifier):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    request = await machine.decide_as_teacher(request.id, "tch-1", False, "Exams that week")

    assert request.status == LeaveStatus.REJECTED
    assert request.class_teacher_approval.approved is False
    assert "Exams that week" in notifier.to("stu-1")[-1][2]
    assert notifier.to("hod-cse") == []


async def test_only_the_class_teacher_of_the_division_decides(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    with pytest.raises(AuthorizationError):
        await machine.decide_as_teacher(request.id, "tch-2", True)
    assert machine.get(request.id).status == LeaveStatus.PENDING


async def test_scenario_c_hod_from_other_department_is_refused(machine):
    request = await approved_by_teacher(machine)

    with pytest.raises(AuthorizationError):
        await machine.decide_as_hod(request.id, "hod-ece", True)

    assert machine.get(request.id).status == LeaveStatus.APPROVED_BY_TEACHER


async def test_hod_cannot_skip_the_class_teacher(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    with pytest.raises(InvalidStateError) as exc:
        await machine.decide_as_hod(request.id, "hod-cse", True)
    assert exc.value.error_code == ErrorCode.INVALID_STATE


async def test_hod_approval_reconciles_and_notifies(machine, notifier):
    request = await approved_by_teacher(machine)
    request = await machine.decide_as_hod(request.id, "hod-cse", True, "Approved")

    assert request.status == LeaveStatus.APPROVED_BY_HOD
    assert request.hod_approval.decided_by == "hod-cse"
    assert request.reconciliation.status == "completed"
    assert [a.event for a in request.audit_anchors][-2:] == ["hod_approved", "reconciliation_completed"]
    assert "Approved" in notifier.to("stu-1")[-1][2]


async def test_hod_rejection_fills_hod_slot(machine):
    request = await approved_by_teacher(machine)
    request = await machine.decide_as_hod(request.id, "hod-cse", False, "Too many absences")

    assert request.status == LeaveStatus.REJECTED
    assert request.hod_approval.approved is False
    assert request.reconciliation is None


async def test_scenario_e_reject_after_final_approval_fails(machine):
    request = await approved_by_teacher(machine)
    request = await machine.decide_as_hod(request.id, "hod-cse", True)

    with pytest.raises(InvalidStateError):
        await machine.reject(request.id, "hod-cse", "Changed my mind")

    after = machine.get(request.id)
    assert after.status == LeaveStatus.APPROVED_BY_HOD
    assert after.hod_approval.approved is True


async def test_rejecting_twice_fails(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    await machine.reject(request.id, "tch-1", "Not eligible")
    with pytest.raises(InvalidStateError):
        await machine.reject(request.id, "tch-1", "Not eligible")


async def test_hod_may_reject_a_pending_request(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    request = await machine.reject(request.id, "hod-cse", "Department event clash")

    assert request.status == LeaveStatus.REJECTED
    assert request.class_teacher_approval.decided_by == "hod-cse"
    assert request.hod_approval is None


async def test_reject_requires_reviewer_scope(machine):
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    with pytest.raises(AuthorizationError):
        await machine.reject(request.id, "hod-ece", "No")


async def test_unknown_request_is_not_found(machine):
    with pytest.raises(NotFoundError):
        await machine.decide_as_teacher("missing", "tch-1", True)


# ---- invariants ----
def test_transition_table_is_monotonic():
    order = [LeaveStatus.PENDING, LeaveStatus.APPROVED_BY_TEACHER, LeaveStatus.APPROVED_BY_HOD]
    for current, targets in ALLOWED_TRANSITIONS.items():
        for target in targets:
            assert target == LeaveStatus.REJECTED or order.index(target) == order.index(current) + 1
    assert not ALLOWED_TRANSITIONS[LeaveStatus.APPROVED_BY_HOD]
    assert not ALLOWED_TRANSITIONS[LeaveStatus.REJECTED]
    assert not can_transition(LeaveStatus.REJECTED, LeaveStatus.PENDING)


async def test_observed_statuses_follow_allowed_paths(machine):
    seen = []
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")
    seen.append(request.status)
    for attempt in (
        machine.decide_as_hod(request.id, "hod-cse", True),
        machine.decide_as_teacher(request.id, "tch-1", True),
        machine.decide_as_teacher(request.id, "tch-1", False),
        machine.decide_as_hod(request.id, "hod-cse", True),
        machine.reject(request.id, "tch-1"),
    ):
        try:
            seen.append((await attempt).status)
        except InvalidStateError:
            pass
    assert seen == [LeaveStatus.PENDING, LeaveStatus.APPROVED_BY_TEACHER, LeaveStatus.APPROVED_BY_HOD]


async def test_concurrent_hod_approvals_exactly_one_wins(machine):
    request = await approved_by_teacher(machine)

    results = await asyncio.gather(
        machine.decide_as_hod(request.id, "hod-cse", True),
        machine.decide_as_hod(request.id, "hod-cse", True),
        return_exceptions=True,
    )

    wins = [r for r in results if not isinstance(r, Exception)]
    losses = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(wins) == 1 and len(losses) == 1
    assert machine.get(request.id).status == LeaveStatus.APPROVED_BY_HOD
    # reconciliation ran once
    assert machine.get(request.id).reconciliation.attempts == 1


async def test_teacher_approval_racing_a_rejection_reports_already_decided(make_service):
    store = seed_directory(InterleavingStore())
    machine = make_service(store).machine
    request = await machine.submit("stu-1", leave_payload(), caller_id="stu-1")

    store.interleave = lambda rid: MemoryStore.transition(
        store, rid, LeaveStatus.PENDING, {"status": LeaveStatus.REJECTED}
    )
    with pytest.raises(InvalidStateError) as exc:
        await machine.decide_as_teacher(request.id, "tch-1", True)

    assert exc.value.error_code == ErrorCode.ALREADY_DECIDED
    assert "already decided by someone else" in exc.value.message
    assert machine.get(request.id).status == LeaveStatus.REJECTED


async def test_scenario_d_final_approval_excuses_absences(machine, service):
    for day, present, absent in (
        (date(2024, 2, 29), [], ["stu-1"]),
        (date(2024, 3, 1), [], ["stu-1"]),
        (date(2024, 3, 2), [], ["stu-1"]),
        (date(2024, 3, 3), ["stu-1"], []),
    ):
        await service.mark_attendance("CS301", "tch-1", AttendanceMark(date=day, present=present, absent=absent))
    store = machine.store
    before = store.get_aggregate("stu-1", "CS301")
    assert (before.present, before.absent, before.excused, before.total) == (1, 3, 0, 4)

    request = await approved_by_teacher(machine)
    request = await machine.decide_as_hod(request.id, "hod-cse", True)

    assert store.get_session("CS301", date(2024, 3, 1)).status_of("stu-1") == "excused"
    assert store.get_session("CS301", date(2024, 3, 2)).status_of("stu-1") == "excused"
    assert store.get_session("CS301", date(2024, 3, 3)).status_of("stu-1") == "present"
    assert store.get_session("CS301", date(2024, 2, 29)).status_of("stu-1") == "absent"
    after = store.get_aggregate("stu-1", "CS301")
    assert (after.present, after.absent, after.excused, after.total) == (1, 1, 2, 4)
    assert sorted(request.reconciliation.excused_sessions) == ["CS301@2024-03-01", "CS301@2024-03-02"]
