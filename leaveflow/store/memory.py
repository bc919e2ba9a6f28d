"""
Process-local store. Backs AUTH_MODE=mock demos and the test-suite.

All state sits behind one lock so `transition` is a real compare-and-swap
even when several worker threads share the instance.
"""

import threading
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from leaveflow.core.exceptions import NotFoundError
from leaveflow.schemas.anchor import AnchorEntry
from leaveflow.schemas.attendance import CourseAttendanceSession, StudentAttendanceAggregate
from leaveflow.schemas.identity import StaffProfile, StudentProfile
from leaveflow.schemas.leave import AuditAnchorRef, LeaveRequest, LeaveStatus


class MemoryStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._requests: Dict[str, LeaveRequest] = {}
        self._students: Dict[str, StudentProfile] = {}
        self._staff: Dict[str, StaffProfile] = {}
        self._sessions: Dict[Tuple[str, date], CourseAttendanceSession] = {}
        self._aggregates: Dict[Tuple[str, str], StudentAttendanceAggregate] = {}
        self._anchors: Dict[str, AnchorEntry] = {}
        self._chats: Dict[str, str] = {}

    # ---- seeding ----
    def add_student(self, student: StudentProfile) -> StudentProfile:
        with self._lock:
            self._students[student.id] = student
        return student

    def add_staff(self, staff: StaffProfile) -> StaffProfile:
        with self._lock:
            self._staff[staff.id] = staff
        return staff

    # ---- leave requests ----
    def insert_request(self, request: LeaveRequest) -> LeaveRequest:
        with self._lock:
            if request.id in self._requests:
                raise ValueError(f"duplicate leave request id {request.id}")
            self._requests[request.id] = request.model_copy(deep=True)
            return request.model_copy(deep=True)

    def get_request(self, request_id: str) -> Optional[LeaveRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    def list_requests(
        self,
        student_ids: Optional[Iterable[str]] = None,
        status: Optional[LeaveStatus] = None,
    ) -> List[LeaveRequest]:
        wanted = set(student_ids) if student_ids is not None else None
        with self._lock:
            rows = [
                r.model_copy(deep=True)
                for r in self._requests.values()
                if (wanted is None or r.student_id in wanted) and (status is None or r.status == status)
            ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    def transition(
        self, request_id: str, expected: LeaveStatus, changes: Dict[str, Any]
    ) -> Optional[LeaveRequest]:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise NotFoundError("Leave request not found", details={"leave_request_id": request_id})
            if current.status != expected:
                return None
            updated = current.model_copy(update=changes, deep=True)
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    def update_request(self, request_id: str, changes: Dict[str, Any]) -> LeaveRequest:
        if "status" in changes:
            raise ValueError("status changes must go through transition()")
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise NotFoundError("Leave request not found", details={"leave_request_id": request_id})
            updated = current.model_copy(update=changes, deep=True)
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    def append_anchor(self, request_id: str, anchor: AuditAnchorRef) -> None:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise NotFoundError("Leave request not found", details={"leave_request_id": request_id})
            anchors = [*current.audit_anchors, anchor]
            self._requests[request_id] = current.model_copy(update={"audit_anchors": anchors}, deep=True)

    # ---- directory ----
    def get_student(self, student_id: str) -> Optional[StudentProfile]:
        return self._students.get(student_id)

    def get_staff(self, staff_id: str) -> Optional[StaffProfile]:
        return self._staff.get(staff_id)

    def students_in(
        self, division: Optional[str] = None, department: Optional[str] = None
    ) -> List[StudentProfile]:
        return [
            s for s in self._students.values()
            if (division is None or s.division == division)
            and (department is None or s.department == department)
        ]

    def find_class_teacher(self, division: str) -> Optional[StaffProfile]:
        for staff in self._staff.values():
            if staff.is_class_teacher and staff.class_division == division:
                return staff
        return None

    def find_hod(self, department: str) -> Optional[StaffProfile]:
        for staff in self._staff.values():
            if staff.is_hod and staff.department == department:
                return staff
        return None

    # ---- attendance ----
    def list_sessions(
        self, course_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[CourseAttendanceSession]:
        with self._lock:
            rows = [
                s.model_copy(deep=True)
                for (cid, day), s in self._sessions.items()
                if cid == course_id
                and (start is None or day >= start)
                and (end is None or day <= end)
            ]
        rows.sort(key=lambda s: s.date)
        return rows

    def get_session(self, course_id: str, day: date) -> Optional[CourseAttendanceSession]:
        with self._lock:
            session = self._sessions.get((course_id, day))
            return session.model_copy(deep=True) if session else None

    def save_session(self, session: CourseAttendanceSession) -> None:
        with self._lock:
            self._sessions[(session.course_id, session.date)] = session.model_copy(deep=True)

    def get_aggregate(self, student_id: str, course_id: str) -> Optional[StudentAttendanceAggregate]:
        with self._lock:
            agg = self._aggregates.get((student_id, course_id))
            return agg.model_copy() if agg else None

    def save_aggregate(self, aggregate: StudentAttendanceAggregate) -> None:
        with self._lock:
            self._aggregates[(aggregate.student_id, aggregate.course_id)] = aggregate.model_copy()

    def list_aggregates(self, student_id: str) -> List[StudentAttendanceAggregate]:
        with self._lock:
            return [a.model_copy() for (sid, _), a in self._aggregates.items() if sid == student_id]

    # ---- audit anchors ----
    def save_anchor(self, entry: AnchorEntry) -> None:
        with self._lock:
            # content-addressed; a pending entry may only be completed, never rewritten
            existing = self._anchors.get(entry.reference)
            if existing is None or existing.status == "pending":
                self._anchors[entry.reference] = entry.model_copy(deep=True)

    def get_anchor(self, reference: str) -> Optional[AnchorEntry]:
        with self._lock:
            entry = self._anchors.get(reference)
            return entry.model_copy(deep=True) if entry else None

    # ---- chat registry ----
    def register(self, chat_id: str, person_id: str) -> None:
        with self._lock:
            self._chats[str(chat_id)] = person_id

    def person_for(self, chat_id: str) -> Optional[str]:
        return self._chats.get(str(chat_id))

    def chat_for(self, person_id: str) -> Optional[str]:
        for chat_id, pid in self._chats.items():
            if pid == person_id:
                return chat_id
        return None
