"""
LeaveRequestStateMachine: owns LeaveRequest.status.

    pending ──► approved_by_teacher ──► approved_by_hod
       │                │
       └──► rejected ◄──┘

approved_by_hod and rejected are terminal. Every status write is a
compare-and-swap against the status read at the start of the operation, so
of two concurrent decisions on the same request exactly one succeeds; the
other gets InvalidStateError(ALREADY_DECIDED).

Each transition is anchored through AuditAnchor and followed by best-effort
notifications. Neither can fail the transition.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from leaveflow.core.exceptions import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from leaveflow.core.logging import get_logger
from leaveflow.schemas.identity import StaffProfile, StudentProfile
from leaveflow.schemas.leave import (
    AuditAnchorRef,
    DecisionRecord,
    LeaveRequest,
    LeaveRequestCreate,
    LeaveStatus,
    ReconciliationOutcome,
    ReviewFlag,
)
from leaveflow.services.anchor import AuditAnchor
from leaveflow.services.notifications import NotificationDispatcher
from leaveflow.services.reconciler import AttendanceReconciler
from leaveflow.services.verification import (
    EvidenceDocument,
    Route,
    RoutingThresholds,
    StudentContext,
    VerificationPipeline,
    route_verification,
)
from leaveflow.store.base import Directory, LeaveRequestStore

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    LeaveStatus.PENDING: {LeaveStatus.APPROVED_BY_TEACHER, LeaveStatus.REJECTED},
    LeaveStatus.APPROVED_BY_TEACHER: {LeaveStatus.APPROVED_BY_HOD, LeaveStatus.REJECTED},
    LeaveStatus.APPROVED_BY_HOD: set(),
    LeaveStatus.REJECTED: set(),
}

STATUS_LABELS = {
    LeaveStatus.PENDING: "Pending class teacher review",
    LeaveStatus.APPROVED_BY_TEACHER: "Approved by class teacher, awaiting HOD",
    LeaveStatus.APPROVED_BY_HOD: "Approved",
    LeaveStatus.REJECTED: "Rejected",
}


def can_transition(current: LeaveStatus, target: LeaveStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeaveRequestStateMachine:
    def __init__(
        self,
        store: LeaveRequestStore,
        directory: Directory,
        pipeline: VerificationPipeline,
        anchor: AuditAnchor,
        reconciler: AttendanceReconciler,
        notifier: NotificationDispatcher,
        thresholds: Optional[RoutingThresholds] = None,
    ):
        self.store = store
        self.directory = directory
        self.pipeline = pipeline
        self.anchor = anchor
        self.reconciler = reconciler
        self.notifier = notifier
        self.thresholds = thresholds or RoutingThresholds()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def get(self, request_id: str) -> LeaveRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise NotFoundError("Leave request not found", details={"leave_request_id": request_id})
        return request

    def _student(self, student_id: str) -> StudentProfile:
        student = self.directory.get_student(student_id)
        if student is None:
            raise NotFoundError("Student not found", details={"student_id": student_id})
        return student

    def _staff(self, staff_id: str) -> StaffProfile:
        staff = self.directory.get_staff(staff_id)
        if staff is None:
            raise NotFoundError("Staff member not found", details={"staff_id": staff_id})
        return staff

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    @staticmethod
    def _require_status(request: LeaveRequest, expected: LeaveStatus, message: str):
        if request.status != expected:
            raise InvalidStateError(
                message,
                details={
                    "leave_request_id": request.id,
                    "current_status": request.status.value,
                    "expected_status": expected.value,
                },
            )

    def _transition(self, request: LeaveRequest, target: LeaveStatus, changes: Dict[str, Any]) -> LeaveRequest:
        if not can_transition(request.status, target):
            raise InvalidStateError(
                f"Cannot move a leave request from {request.status.value} to {target.value}",
                details={"leave_request_id": request.id, "current_status": request.status.value},
            )
        updated = self.store.transition(
            request.id,
            request.status,
            {"status": target, "updated_at": utcnow(), **changes},
        )
        if updated is None:
            current = self.store.get_request(request.id)
            current_status = current.status.value if current else "unknown"
            logger.info(
                "transition_lost_race",
                leave_request_id=request.id,
                expected_status=request.status.value,
                current_status=current_status,
                target_status=target.value,
            )
            raise InvalidStateError.already_decided(request.id, current_status)
        logger.info(
            "leave_request_transitioned",
            leave_request_id=request.id,
            from_status=request.status.value,
            to_status=target.value,
        )
        return updated

    async def _anchor(
        self,
        request: LeaveRequest,
        event: str,
        subject: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LeaveRequest:
        entry = await self.anchor.anchor(
            subject,
            {"event": event, "leave_request_id": request.id, "status": request.status.value, **(metadata or {})},
            event=event,
        )
        ref = AuditAnchorRef(
            hash=entry.reference,
            event=event,
            external_reference=entry.external_reference,
            status=entry.status,
            created_at=entry.created_at,
        )
        try:
            self.store.append_anchor(request.id, ref)
        except StoreError as exc:
            logger.warning("anchor_trail_append_failed", leave_request_id=request.id, anchor_event=event, error=exc.message)
            return request
        return request.model_copy(update={"audit_anchors": [*request.audit_anchors, ref]})

    @staticmethod
    def _decision_subject(request: LeaveRequest, decision: DecisionRecord) -> Dict[str, Any]:
        return {
            "leave_request_id": request.id,
            "document_ref": request.document_ref,
            "decision": decision.model_dump(mode="json"),
        }

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------
    def _validate_payload(self, student: StudentProfile, payload: LeaveRequestCreate) -> List[str]:
        missing = [
            name for name, value in (
                ("reason", payload.reason),
                ("event_name", payload.event_name),
                ("document_ref", payload.document_ref),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing": missing},
            )
        if payload.end_date < payload.start_date:
            raise ValidationError(
                "End date cannot be before start date",
                details={"start_date": payload.start_date.isoformat(), "end_date": payload.end_date.isoformat()},
            )
        if payload.course_ids is None:
            return list(student.course_ids)
        unknown = [c for c in payload.course_ids if c not in student.course_ids]
        if unknown:
            raise ValidationError(
                "Leave can only cover courses the student is enrolled in",
                details={"unknown_courses": unknown},
            )
        return list(dict.fromkeys(payload.course_ids))

    async def submit(
        self,
        student_id: str,
        payload: LeaveRequestCreate,
        caller_id: Optional[str] = None,
    ) -> LeaveRequest:
        if caller_id is not None and caller_id != student_id:
            raise AuthorizationError("Students can only submit leave requests for themselves")
        student = self._student(student_id)
        course_ids = self._validate_payload(student, payload)

        result = await self.pipeline.run(
            EvidenceDocument(reference=payload.document_ref),
            StudentContext(
                student_id=student.id,
                name=student.name,
                department=student.department,
                division=student.division,
                year=student.year,
                claimed_event_name=payload.event_name,
                start_date=payload.start_date,
                end_date=payload.end_date,
            ),
        )
        routing = route_verification(result, self.thresholds)

        flags: List[ReviewFlag] = []
        if routing.route == Route.MANUAL_REVIEW:
            flags.append(ReviewFlag.VERIFICATION_UNAVAILABLE)
        elif routing.route == Route.FORWARD_WITH_WARNING:
            flags.append(ReviewFlag.VERIFICATION_WARNING)
            if routing.notify_student_manual_review:
                flags.append(ReviewFlag.MANUAL_REVIEW_REQUIRED)
        elif routing.route == Route.FAST_TRACK:
            flags.append(ReviewFlag.FAST_TRACKED)

        now = utcnow()
        request = LeaveRequest(
            id=str(uuid.uuid4()),
            student_id=student.id,
            start_date=payload.start_date,
            end_date=payload.end_date,
            days=(payload.end_date - payload.start_date).days + 1,
            reason=payload.reason.strip(),
            event_name=payload.event_name.strip(),
            leave_type=payload.leave_type,
            document_ref=payload.document_ref.strip(),
            course_ids=course_ids,
            verification_result=result,
            review_flags=flags,
            created_at=now,
            updated_at=now,
        )
        request = self.store.insert_request(request)
        logger.info(
            "leave_request_submitted",
            leave_request_id=request.id,
            student_id=student.id,
            days=request.days,
            route=routing.route.value,
            confidence=result.confidence if result else None,
        )

        request = await self._anchor(
            request,
            "created",
            subject={
                "document_ref": request.document_ref,
                "student_id": request.student_id,
                "event_name": request.event_name,
                "reason": request.reason,
                "leave_type": request.leave_type.value,
                "start_date": request.start_date.isoformat(),
                "end_date": request.end_date.isoformat(),
                "course_ids": request.course_ids,
            },
        )
        if result is not None:
            request = await self._attach_verification_anchor(request)

        return await self._apply_routing(request, student, routing.route)

    async def _attach_verification_anchor(self, request: LeaveRequest) -> LeaveRequest:
        result = request.verification_result
        trail_length = len(request.audit_anchors)
        request = await self._anchor(
            request,
            "verified",
            subject=result.model_dump(mode="json", exclude={"anchor_reference"}),
        )
        if len(request.audit_anchors) == trail_length:
            return request
        try:
            updated = self.store.update_request(
                request.id,
                {"verification_result": result.model_copy(update={"anchor_reference": request.audit_anchors[-1].hash})},
            )
        except StoreError as exc:
            logger.warning("verification_anchor_attach_failed", leave_request_id=request.id, error=exc.message)
            return request
        return updated

    async def _apply_routing(self, request: LeaveRequest, student: StudentProfile, route: Route) -> LeaveRequest:
        result = request.verification_result
        class_teacher = self.directory.find_class_teacher(student.division)

        if route == Route.AUTO_REJECT:
            decision = DecisionRecord(
                approved=False,
                decided_by=None,
                decided_at=utcnow(),
                comments=result.reasoning or "Rejected by automated verification",
            )
            try:
                request = self._transition(request, LeaveStatus.REJECTED, {"class_teacher_approval": decision})
            except InvalidStateError:
                # a reviewer got there first; their decision stands
                return self.get(request.id)
            request = await self._anchor(request, "auto_rejected", self._decision_subject(request, decision))
            await self.notifier.notify(
                student.id,
                f"Your leave request for '{request.event_name}' was rejected by automated verification. "
                f"Reason: {decision.comments}",
                subject="Leave request rejected",
            )
            return request

        if route == Route.FAST_TRACK:
            decision = DecisionRecord(
                approved=True,
                decided_by=None,
                decided_at=utcnow(),
                comments=f"Fast-tracked by automated verification ({result.confidence}% confidence)",
            )
            try:
                request = self._transition(request, LeaveStatus.APPROVED_BY_TEACHER, {"class_teacher_approval": decision})
            except InvalidStateError:
                return self.get(request.id)
            request = await self._anchor(request, "fast_tracked", self._decision_subject(request, decision))
            hod = self.directory.find_hod(student.department)
            await self.notifier.notify(
                hod.id if hod else None,
                f"Leave request from {student.name} for '{request.event_name}' was fast-tracked and needs HOD approval.",
                subject="Leave request needs HOD approval",
            )
            return request

        message = (
            f"New leave request from {student.name} for '{request.event_name}' "
            f"({request.start_date.isoformat()} to {request.end_date.isoformat()})."
        )
        if route == Route.FORWARD_WITH_WARNING:
            message += f" Warning: automated verification was inconclusive ({result.confidence}% confidence): {result.reasoning}"
        elif route == Route.MANUAL_REVIEW:
            message += " Automated verification was unavailable; please review the document manually."
        await self.notifier.notify(
            class_teacher.id if class_teacher else None,
            message,
            subject="Leave request awaiting review",
        )
        if ReviewFlag.MANUAL_REVIEW_REQUIRED in request.review_flags:
            await self.notifier.notify(
                student.id,
                f"Your leave request for '{request.event_name}' needs manual review "
                f"(verification confidence {result.confidence}%). {result.reasoning}",
                subject="Leave request under manual review",
            )
        return request

    # ------------------------------------------------------------------
    # decisions
    # ------------------------------------------------------------------
    async def decide_as_teacher(
        self, request_id: str, teacher_id: str, approved: bool, comments: Optional[str] = None
    ) -> LeaveRequest:
        request = self.get(request_id)
        teacher = self._staff(teacher_id)
        student = self._student(request.student_id)
        if not teacher.is_class_teacher_of(student):
            raise AuthorizationError("You are not the class teacher of this student's division")
        self._require_status(request, LeaveStatus.PENDING, "Leave request is not awaiting class teacher review")

        decision = DecisionRecord(
            approved=approved,
            decided_by=teacher.id,
            decided_at=utcnow(),
            comments=comments or ("Approved" if approved else "Rejected"),
        )
        target = LeaveStatus.APPROVED_BY_TEACHER if approved else LeaveStatus.REJECTED
        request = self._transition(request, target, {"class_teacher_approval": decision})
        request = await self._anchor(
            request,
            "teacher_approved" if approved else "teacher_rejected",
            self._decision_subject(request, decision),
            {"decided_by": teacher.id},
        )

        if approved:
            hod = self.directory.find_hod(student.department)
            await self.notifier.notify(
                hod.id if hod else None,
                f"Leave request from {student.name} for '{request.event_name}' was approved by the class teacher "
                f"and needs HOD approval.",
                subject="Leave request approved by class teacher - needs HOD approval",
            )
        await self.notifier.notify(student.id, self._status_message(request, decision), subject="Leave request update")
        return request

    async def decide_as_hod(
        self, request_id: str, hod_id: str, approved: bool, comments: Optional[str] = None
    ) -> LeaveRequest:
        request = self.get(request_id)
        hod = self._staff(hod_id)
        student = self._student(request.student_id)
        if not hod.is_hod_of(student):
            raise AuthorizationError("Only the HOD of the student's department can decide this leave request")
        self._require_status(
            request, LeaveStatus.APPROVED_BY_TEACHER, "Leave request must be approved by class teacher first"
        )

        decision = DecisionRecord(
            approved=approved,
            decided_by=hod.id,
            decided_at=utcnow(),
            comments=comments or ("Approved" if approved else "Rejected"),
        )
        target = LeaveStatus.APPROVED_BY_HOD if approved else LeaveStatus.REJECTED
        request = self._transition(request, target, {"hod_approval": decision})
        request = await self._anchor(
            request,
            "hod_approved" if approved else "hod_rejected",
            self._decision_subject(request, decision),
            {"decided_by": hod.id},
        )
        if approved:
            request = await self._reconcile(request)

        await self.notifier.notify(student.id, self._status_message(request, decision), subject="Leave request update")
        return request

    async def reject(self, request_id: str, actor_id: str, reason: Optional[str] = None) -> LeaveRequest:
        request = self.get(request_id)
        actor = self._staff(actor_id)
        student = self._student(request.student_id)
        if not (actor.is_class_teacher_of(student) or actor.is_hod_of(student)):
            raise AuthorizationError("You are not authorized to reject this leave request")
        if request.status.is_terminal:
            raise InvalidStateError(
                f"Leave request is already {request.status.value}",
                details={"leave_request_id": request.id, "current_status": request.status.value},
            )

        decision = DecisionRecord(
            approved=False,
            decided_by=actor.id,
            decided_at=utcnow(),
            comments=reason or "Rejected",
        )
        # the decision lands in the slot of the stage being decided
        field = "class_teacher_approval" if request.status == LeaveStatus.PENDING else "hod_approval"
        request = self._transition(request, LeaveStatus.REJECTED, {field: decision})
        request = await self._anchor(
            request, "rejected", self._decision_subject(request, decision), {"decided_by": actor.id}
        )
        await self.notifier.notify(student.id, self._status_message(request, decision), subject="Leave request rejected")
        return request

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    async def _reconcile(self, request: LeaveRequest) -> LeaveRequest:
        attempts = request.reconciliation.attempts + 1 if request.reconciliation is not None else 1
        try:
            outcome = await self.reconciler.reconcile(request)
        except Exception as exc:
            logger.error("reconciliation_failed", leave_request_id=request.id, error=repr(exc), exc_info=True)
            outcome = ReconciliationOutcome(
                status="pending", failed_courses={course_id: repr(exc) for course_id in request.course_ids}
            )
        outcome = outcome.model_copy(update={"attempts": attempts})
        try:
            request = self.store.update_request(request.id, {"reconciliation": outcome, "updated_at": utcnow()})
        except StoreError as exc:
            # the stored outcome is left empty or pending, so the request stays retryable
            logger.error(
                "reconciliation_not_recorded",
                leave_request_id=request.id,
                outcome_status=outcome.status,
                excused_sessions=outcome.excused_sessions,
                error=exc.message,
            )
            outcome = outcome.model_copy(update={
                "status": "pending",
                "failed_courses": {**outcome.failed_courses, "*": f"outcome not recorded: {exc.message}"},
                "completed_at": None,
            })
            request = request.model_copy(update={"reconciliation": outcome})
        event = "reconciliation_completed" if not outcome.is_pending else "reconciliation_pending"
        request = await self._anchor(
            request,
            event,
            subject={"leave_request_id": request.id, "outcome": outcome.model_dump(mode="json", exclude={"completed_at"})},
            metadata={"attempt": outcome.attempts},
        )
        if outcome.is_pending:
            logger.warning(
                "reconciliation_pending",
                leave_request_id=request.id,
                failed_courses=outcome.failed_courses,
                attempt=outcome.attempts,
            )
        return request

    async def retry_reconciliation(self, request_id: str, hod_id: str) -> LeaveRequest:
        request = self.get(request_id)
        hod = self._staff(hod_id)
        student = self._student(request.student_id)
        if not hod.is_hod_of(student):
            raise AuthorizationError("Only the HOD of the student's department can retry reconciliation")
        self._require_status(request, LeaveStatus.APPROVED_BY_HOD, "Only approved leave requests can be reconciled")
        # no recorded outcome on an approved request means the last attempt could not be saved
        if request.reconciliation is not None and not request.reconciliation.is_pending:
            raise InvalidStateError(
                "Attendance reconciliation is not pending for this leave request",
                details={"leave_request_id": request.id},
            )
        request = await self._reconcile(request)
        if not request.reconciliation.is_pending:
            await self.notifier.notify(
                student.id,
                f"Attendance for your approved leave '{request.event_name}' has now been updated.",
                subject="Attendance updated",
            )
        return request

    # ------------------------------------------------------------------
    # queues
    # ------------------------------------------------------------------
    def list_for(self, actor_id: str, role: str, status: Optional[LeaveStatus] = None) -> List[LeaveRequest]:
        if role == "student":
            self._student(actor_id)
            return self.store.list_requests(student_ids=[actor_id], status=status)

        staff = self._staff(actor_id)
        if role == "teacher":
            if not staff.is_class_teacher or not staff.class_division:
                raise AuthorizationError("Only class teachers can access this resource")
            students = self.directory.students_in(division=staff.class_division)
            default = LeaveStatus.PENDING
        elif role == "hod":
            if not staff.is_hod:
                raise AuthorizationError("Only HODs can access this resource")
            students = self.directory.students_in(department=staff.department)
            default = LeaveStatus.APPROVED_BY_TEACHER
        else:
            raise ValidationError(f"Unknown role '{role}'", details={"role": role})
        return self.store.list_requests(student_ids=[s.id for s in students], status=status or default)

    def get_for(self, request_id: str, actor_id: str) -> LeaveRequest:
        request = self.get(request_id)
        if request.student_id == actor_id:
            return request
        staff = self.directory.get_staff(actor_id)
        student = self._student(request.student_id)
        if staff is None or not (staff.is_class_teacher_of(student) or staff.is_hod_of(student)):
            raise AuthorizationError("You are not authorized to view this leave request")
        return request

    @staticmethod
    def _status_message(request: LeaveRequest, decision: DecisionRecord) -> str:
        message = f"Your leave request for '{request.event_name}' is now: {STATUS_LABELS[request.status]}."
        if decision.comments:
            message += f" Comments: {decision.comments}"
        if request.reconciliation is not None and request.reconciliation.is_pending:
            message += " Attendance records will be updated shortly."
        return message
