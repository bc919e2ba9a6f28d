"""
Persistence capabilities the core depends on.

The core only needs by-ID lookup, a handful of filtered listings and an
atomic single-record update. `LeaveRequestStore.transition` is the one
compare-and-swap primitive: it writes only if the stored status still equals
the expected prior status, and returns None otherwise.

Implementations raise StoreError when the backing store fails.
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Protocol

from leaveflow.schemas.anchor import AnchorEntry
from leaveflow.schemas.attendance import CourseAttendanceSession, StudentAttendanceAggregate
from leaveflow.schemas.identity import StaffProfile, StudentProfile
from leaveflow.schemas.leave import AuditAnchorRef, LeaveRequest, LeaveStatus


class LeaveRequestStore(Protocol):
    def insert_request(self, request: LeaveRequest) -> LeaveRequest: ...

    def get_request(self, request_id: str) -> Optional[LeaveRequest]: ...

    def list_requests(
        self,
        student_ids: Optional[Iterable[str]] = None,
        status: Optional[LeaveStatus] = None,
    ) -> List[LeaveRequest]: ...

    def transition(
        self, request_id: str, expected: LeaveStatus, changes: Dict[str, Any]
    ) -> Optional[LeaveRequest]: ...

    def update_request(self, request_id: str, changes: Dict[str, Any]) -> LeaveRequest: ...

    def append_anchor(self, request_id: str, anchor: AuditAnchorRef) -> None: ...


class Directory(Protocol):
    def get_student(self, student_id: str) -> Optional[StudentProfile]: ...

    def get_staff(self, staff_id: str) -> Optional[StaffProfile]: ...

    def students_in(
        self, division: Optional[str] = None, department: Optional[str] = None
    ) -> List[StudentProfile]: ...

    def find_class_teacher(self, division: str) -> Optional[StaffProfile]: ...

    def find_hod(self, department: str) -> Optional[StaffProfile]: ...


class AttendanceStore(Protocol):
    def list_sessions(
        self, course_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[CourseAttendanceSession]: ...

    def get_session(self, course_id: str, day: date) -> Optional[CourseAttendanceSession]: ...

    def save_session(self, session: CourseAttendanceSession) -> None: ...

    def get_aggregate(self, student_id: str, course_id: str) -> Optional[StudentAttendanceAggregate]: ...

    def save_aggregate(self, aggregate: StudentAttendanceAggregate) -> None: ...

    def list_aggregates(self, student_id: str) -> List[StudentAttendanceAggregate]: ...


class AnchorStore(Protocol):
    def save_anchor(self, entry: AnchorEntry) -> None: ...

    def get_anchor(self, reference: str) -> Optional[AnchorEntry]: ...


class ChatRegistry(Protocol):
    """Maps a chat identity to a domain identity for the bot adapter."""

    def register(self, chat_id: str, person_id: str) -> None: ...

    def person_for(self, chat_id: str) -> Optional[str]: ...

    def chat_for(self, person_id: str) -> Optional[str]: ...
