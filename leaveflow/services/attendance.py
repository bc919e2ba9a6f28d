"""
Attendance marking and per-student summaries.

Marking a brand-new session is a forward-only event, so the affected
aggregates are simply incremented. Re-marking an existing session rewrites
history and therefore recomputes from the sessions instead.
"""

from typing import List

from leaveflow.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from leaveflow.core.logging import get_logger
from leaveflow.schemas.attendance import (
    AttendanceMark,
    CourseAttendanceSession,
    CourseAttendanceSummary,
    StudentAttendanceAggregate,
)
from leaveflow.services.locks import CourseLocks
from leaveflow.services.reconciler import AttendanceReconciler
from leaveflow.store.base import AttendanceStore, Directory

logger = get_logger(__name__)

LOW_ATTENDANCE_PERCENTAGE = 75


class AttendanceService:
    def __init__(
        self,
        store: AttendanceStore,
        directory: Directory,
        locks: CourseLocks,
        reconciler: AttendanceReconciler,
    ):
        self.store = store
        self.directory = directory
        self.locks = locks
        self.reconciler = reconciler

    async def mark_session(self, course_id: str, teacher_id: str, mark: AttendanceMark) -> CourseAttendanceSession:
        teacher = self.directory.get_staff(teacher_id)
        if teacher is None:
            raise NotFoundError("Teacher not found", details={"teacher_id": teacher_id})
        if course_id not in teacher.course_ids:
            raise AuthorizationError("You are not authorized to mark attendance for this course")

        present, absent = set(mark.present), set(mark.absent)
        both = present & absent
        if both:
            raise ValidationError(
                "A student cannot be both present and absent",
                details={"students": sorted(both)},
            )

        async with self.locks.hold(course_id):
            existing = self.store.get_session(course_id, mark.date)
            if existing is None:
                session = CourseAttendanceSession(
                    course_id=course_id, date=mark.date, present=present, absent=absent
                )
                self.store.save_session(session)
                for student_id in present | absent:
                    self._increment(student_id, course_id, "present" if student_id in present else "absent")
            else:
                # excused students keep their status
                session = CourseAttendanceSession(
                    course_id=course_id,
                    date=mark.date,
                    present=present - existing.excused,
                    absent=absent - existing.excused,
                    excused=set(existing.excused),
                )
                self.store.save_session(session)
                touched = present | absent | existing.present | existing.absent
                for student_id in touched:
                    self.reconciler.recompute_aggregate(student_id, course_id)

        logger.info(
            "attendance_marked",
            course_id=course_id,
            date=mark.date.isoformat(),
            present=len(session.present),
            absent=len(session.absent),
            remarked=existing is not None,
        )
        return session

    def _increment(self, student_id: str, course_id: str, field: str) -> None:
        agg = self.store.get_aggregate(student_id, course_id) or StudentAttendanceAggregate(
            student_id=student_id, course_id=course_id
        )
        setattr(agg, field, getattr(agg, field) + 1)
        agg.total += 1
        self.store.save_aggregate(agg)

    def summary(self, student_id: str) -> List[CourseAttendanceSummary]:
        if self.directory.get_student(student_id) is None:
            raise NotFoundError("Student not found", details={"student_id": student_id})
        rows = []
        for agg in sorted(self.store.list_aggregates(student_id), key=lambda a: a.course_id):
            rows.append(CourseAttendanceSummary(
                course_id=agg.course_id,
                present=agg.present,
                absent=agg.absent,
                excused=agg.excused,
                total=agg.total,
                percentage=agg.percentage,
                flagged=agg.percentage < LOW_ATTENDANCE_PERCENTAGE,
            ))
        return rows
