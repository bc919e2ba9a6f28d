"""
LeaveService: the one interface both channels (HTTP API, chat bot) drive.

Every call returns a LeaveRequestView (never the stored entity) or raises a
LeaveFlowError whose ErrorCode the channel renders.
"""

from typing import List, Optional

from leaveflow.core.exceptions import ValidationError
from leaveflow.schemas.anchor import AnchorEntry
from leaveflow.schemas.attendance import AttendanceMark, CourseAttendanceSession, CourseAttendanceSummary
from leaveflow.schemas.leave import LeaveRequestCreate, LeaveRequestView, LeaveStatus
from leaveflow.services.anchor import AuditAnchor
from leaveflow.services.attendance import AttendanceService
from leaveflow.services.leave_requests import LeaveRequestStateMachine

REVIEW_ROLES = ("teacher", "hod")


class LeaveService:
    def __init__(
        self,
        machine: LeaveRequestStateMachine,
        attendance: AttendanceService,
        anchor: AuditAnchor,
    ):
        self.machine = machine
        self.attendance = attendance
        self.anchor = anchor

    async def create_leave_request(
        self,
        student_id: str,
        payload: LeaveRequestCreate,
        document_ref: Optional[str] = None,
        caller_id: Optional[str] = None,
    ) -> LeaveRequestView:
        if document_ref:
            payload = payload.model_copy(update={"document_ref": document_ref})
        request = await self.machine.submit(student_id, payload, caller_id=caller_id)
        return LeaveRequestView.from_entity(request)

    def list_requests(
        self, actor_id: str, role: str, status: Optional[LeaveStatus] = None
    ) -> List[LeaveRequestView]:
        return [LeaveRequestView.from_entity(r) for r in self.machine.list_for(actor_id, role, status)]

    def get_request(self, request_id: str, actor_id: str) -> LeaveRequestView:
        return LeaveRequestView.from_entity(self.machine.get_for(request_id, actor_id))

    async def decide(
        self,
        request_id: str,
        actor_id: str,
        role: Optional[str],
        approved: bool,
        comments: Optional[str] = None,
    ) -> LeaveRequestView:
        """
        role is "teacher" or "hod". When None, the stage the request is in
        decides it: pending -> teacher, approved_by_teacher -> hod.
        """
        if role is None:
            current = self.machine.get(request_id)
            role = "hod" if current.status == LeaveStatus.APPROVED_BY_TEACHER else "teacher"
        if role not in REVIEW_ROLES:
            raise ValidationError(f"Unknown reviewing role '{role}'", details={"role": role})
        if role == "teacher":
            request = await self.machine.decide_as_teacher(request_id, actor_id, approved, comments)
        else:
            request = await self.machine.decide_as_hod(request_id, actor_id, approved, comments)
        return LeaveRequestView.from_entity(request)

    async def reject(self, request_id: str, actor_id: str, reason: Optional[str] = None) -> LeaveRequestView:
        return LeaveRequestView.from_entity(await self.machine.reject(request_id, actor_id, reason))

    async def retry_reconciliation(self, request_id: str, hod_id: str) -> LeaveRequestView:
        return LeaveRequestView.from_entity(await self.machine.retry_reconciliation(request_id, hod_id))

    def lookup_anchor(self, reference: str) -> AnchorEntry:
        return self.anchor.lookup(reference)

    async def mark_attendance(
        self, course_id: str, teacher_id: str, mark: AttendanceMark
    ) -> CourseAttendanceSession:
        return await self.attendance.mark_session(course_id, teacher_id, mark)

    def attendance_summary(self, student_id: str) -> List[CourseAttendanceSummary]:
        return self.attendance.summary(student_id)
