"""
Supabase (PostgREST) backed store.

Tables:
    leave_requests          one row per request; decision records, verification
                            result and reconciliation outcome as jsonb
    leave_request_anchors   append-only audit trail, one row per transition
    students, staff         directory
    attendance_sessions     unique (course_id, date); present/absent/excused text[]
    student_attendance      unique (student_id, course_id); cached counters
    audit_anchors           content-addressed anchor entries, pk reference
    chat_registry           chat_id -> person_id
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from pydantic_core import to_jsonable_python

from leaveflow.core.database import get_supabase
from leaveflow.core.exceptions import NotFoundError, StoreError
from leaveflow.schemas.anchor import AnchorEntry
from leaveflow.schemas.attendance import CourseAttendanceSession, StudentAttendanceAggregate
from leaveflow.schemas.identity import StaffProfile, StudentProfile
from leaveflow.schemas.leave import AuditAnchorRef, LeaveRequest, LeaveStatus


def _execute(query, what: str):
    try:
        return query.execute()
    except Exception as exc:
        raise StoreError(f"Supabase {what} failed: {exc}") from exc


def _row(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: to_jsonable_python(v) for k, v in values.items()}


class SupabaseStore:
    def __init__(self, client=None):
        self._client = client

    @property
    def db(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    # ---- leave requests ----
    def _hydrate(self, row: Dict[str, Any]) -> LeaveRequest:
        anchors = _execute(
            self.db.table("leave_request_anchors")
            .select("hash, event, external_reference, status, created_at")
            .eq("leave_request_id", row["id"])
            .order("created_at")
            .order("seq"),
            "anchor trail select",
        )
        return LeaveRequest.model_validate({**row, "audit_anchors": anchors.data or []})

    def insert_request(self, request: LeaveRequest) -> LeaveRequest:
        data = _row(request.model_dump(exclude={"audit_anchors"}))
        _execute(self.db.table("leave_requests").insert(data), "leave request insert")
        return request

    def get_request(self, request_id: str) -> Optional[LeaveRequest]:
        result = _execute(
            self.db.table("leave_requests").select("*").eq("id", request_id).limit(1),
            "leave request select",
        )
        if not result.data:
            return None
        return self._hydrate(result.data[0])

    def list_requests(
        self,
        student_ids: Optional[Iterable[str]] = None,
        status: Optional[LeaveStatus] = None,
    ) -> List[LeaveRequest]:
        query = self.db.table("leave_requests").select("*")
        if student_ids is not None:
            ids = list(student_ids)
            if not ids:
                return []
            query = query.in_("student_id", ids)
        if status is not None:
            query = query.eq("status", status.value)
        result = _execute(query.order("created_at", desc=True), "leave request list")
        return [self._hydrate(row) for row in result.data or []]

    def transition(
        self, request_id: str, expected: LeaveStatus, changes: Dict[str, Any]
    ) -> Optional[LeaveRequest]:
        result = _execute(
            self.db.table("leave_requests")
            .update(_row(changes))
            .eq("id", request_id)
            .eq("status", expected.value),
            "leave request transition",
        )
        if not result.data:
            if self.get_request(request_id) is None:
                raise NotFoundError("Leave request not found", details={"leave_request_id": request_id})
            return None
        return self._hydrate(result.data[0])

    def update_request(self, request_id: str, changes: Dict[str, Any]) -> LeaveRequest:
        if "status" in changes:
            raise ValueError("status changes must go through transition()")
        result = _execute(
            self.db.table("leave_requests").update(_row(changes)).eq("id", request_id),
            "leave request update",
        )
        if not result.data:
            raise NotFoundError("Leave request not found", details={"leave_request_id": request_id})
        return self._hydrate(result.data[0])

    def append_anchor(self, request_id: str, anchor: AuditAnchorRef) -> None:
        _execute(
            self.db.table("leave_request_anchors").insert(
                {"leave_request_id": request_id, **_row(anchor.model_dump())}
            ),
            "anchor trail insert",
        )

    # ---- directory ----
    def get_student(self, student_id: str) -> Optional[StudentProfile]:
        result = _execute(self.db.table("students").select("*").eq("id", student_id).limit(1), "student select")
        return StudentProfile.model_validate(result.data[0]) if result.data else None

    def get_staff(self, staff_id: str) -> Optional[StaffProfile]:
        result = _execute(self.db.table("staff").select("*").eq("id", staff_id).limit(1), "staff select")
        return StaffProfile.model_validate(result.data[0]) if result.data else None

    def students_in(
        self, division: Optional[str] = None, department: Optional[str] = None
    ) -> List[StudentProfile]:
        query = self.db.table("students").select("*")
        if division is not None:
            query = query.eq("division", division)
        if department is not None:
            query = query.eq("department", department)
        result = _execute(query, "student list")
        return [StudentProfile.model_validate(r) for r in result.data or []]

    def find_class_teacher(self, division: str) -> Optional[StaffProfile]:
        result = _execute(
            self.db.table("staff").select("*").eq("is_class_teacher", True).eq("class_division", division).limit(1),
            "class teacher lookup",
        )
        return StaffProfile.model_validate(result.data[0]) if result.data else None

    def find_hod(self, department: str) -> Optional[StaffProfile]:
        result = _execute(
            self.db.table("staff").select("*").eq("is_hod", True).eq("department", department).limit(1),
            "hod lookup",
        )
        return StaffProfile.model_validate(result.data[0]) if result.data else None

    # ---- attendance ----
    def list_sessions(
        self, course_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[CourseAttendanceSession]:
        query = self.db.table("attendance_sessions").select("*").eq("course_id", course_id)
        if start is not None:
            query = query.gte("date", start.isoformat())
        if end is not None:
            query = query.lte("date", end.isoformat())
        result = _execute(query.order("date"), "session list")
        return [CourseAttendanceSession.model_validate(r) for r in result.data or []]

    def get_session(self, course_id: str, day: date) -> Optional[CourseAttendanceSession]:
        result = _execute(
            self.db.table("attendance_sessions").select("*").eq("course_id", course_id).eq("date", day.isoformat()).limit(1),
            "session select",
        )
        return CourseAttendanceSession.model_validate(result.data[0]) if result.data else None

    def save_session(self, session: CourseAttendanceSession) -> None:
        data = {
            "course_id": session.course_id,
            "date": session.date.isoformat(),
            "present": sorted(session.present),
            "absent": sorted(session.absent),
            "excused": sorted(session.excused),
        }
        _execute(
            self.db.table("attendance_sessions").upsert(data, on_conflict="course_id,date"),
            "session upsert",
        )

    def get_aggregate(self, student_id: str, course_id: str) -> Optional[StudentAttendanceAggregate]:
        result = _execute(
            self.db.table("student_attendance").select("*").eq("student_id", student_id).eq("course_id", course_id).limit(1),
            "aggregate select",
        )
        return StudentAttendanceAggregate.model_validate(result.data[0]) if result.data else None

    def save_aggregate(self, aggregate: StudentAttendanceAggregate) -> None:
        _execute(
            self.db.table("student_attendance").upsert(
                aggregate.model_dump(), on_conflict="student_id,course_id"
            ),
            "aggregate upsert",
        )

    def list_aggregates(self, student_id: str) -> List[StudentAttendanceAggregate]:
        result = _execute(
            self.db.table("student_attendance").select("*").eq("student_id", student_id),
            "aggregate list",
        )
        return [StudentAttendanceAggregate.model_validate(r) for r in result.data or []]

    # ---- audit anchors ----
    def save_anchor(self, entry: AnchorEntry) -> None:
        row = _row(entry.model_dump())
        # content-addressed; a pending entry may only be completed, never rewritten
        completed = _execute(
            self.db.table("audit_anchors").update(row).eq("reference", entry.reference).eq("status", "pending"),
            "anchor update",
        )
        if completed.data:
            return
        _execute(
            self.db.table("audit_anchors").upsert(row, on_conflict="reference", ignore_duplicates=True),
            "anchor insert",
        )

    def get_anchor(self, reference: str) -> Optional[AnchorEntry]:
        result = _execute(
            self.db.table("audit_anchors").select("*").eq("reference", reference).limit(1),
            "anchor select",
        )
        return AnchorEntry.model_validate(result.data[0]) if result.data else None

    # ---- chat registry ----
    def register(self, chat_id: str, person_id: str) -> None:
        _execute(
            self.db.table("chat_registry").upsert(
                {"chat_id": str(chat_id), "person_id": person_id}, on_conflict="chat_id"
            ),
            "chat registry upsert",
        )

    def person_for(self, chat_id: str) -> Optional[str]:
        result = _execute(
            self.db.table("chat_registry").select("person_id").eq("chat_id", str(chat_id)).limit(1),
            "chat registry lookup",
        )
        return result.data[0]["person_id"] if result.data else None

    def chat_for(self, person_id: str) -> Optional[str]:
        result = _execute(
            self.db.table("chat_registry").select("chat_id").eq("person_id", person_id).limit(1),
            "chat registry reverse lookup",
        )
        return result.data[0]["chat_id"] if result.data else None
