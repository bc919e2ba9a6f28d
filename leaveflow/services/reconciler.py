"""
AttendanceReconciler: retroactive attendance correction on final approval.

For every course in the request's snapshot, each session dated inside the
leave period moves the student from `absent` to `excused`. Afterwards the
student's per-course aggregate is recomputed from the full session history.
Both steps are idempotent, so a retry after a partial failure is safe.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, List

from leaveflow.core.exceptions import StoreError
from leaveflow.core.logging import get_logger
from leaveflow.schemas.attendance import StudentAttendanceAggregate
from leaveflow.schemas.leave import LeaveRequest, ReconciliationOutcome
from leaveflow.services.locks import CourseLocks
from leaveflow.store.base import AttendanceStore

logger = get_logger(__name__)


def leave_dates(start: date, end: date) -> List[date]:
    """Every calendar date in [start, end], inclusive."""
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def compute_aggregate(store: AttendanceStore, student_id: str, course_id: str) -> StudentAttendanceAggregate:
    agg = StudentAttendanceAggregate(student_id=student_id, course_id=course_id)
    for session in store.list_sessions(course_id):
        status = session.status_of(student_id)
        if status == "present":
            agg.present += 1
        elif status == "absent":
            agg.absent += 1
        elif status == "excused":
            agg.excused += 1
    agg.total = agg.present + agg.absent + agg.excused
    return agg


class AttendanceReconciler:
    def __init__(self, store: AttendanceStore, locks: CourseLocks):
        self.store = store
        self.locks = locks

    def recompute_aggregate(self, student_id: str, course_id: str) -> StudentAttendanceAggregate:
        """Caller must hold the course lock."""
        agg = compute_aggregate(self.store, student_id, course_id)
        self.store.save_aggregate(agg)
        return agg

    def _excuse_sessions(self, request: LeaveRequest, course_id: str) -> List[str]:
        period = set(leave_dates(request.start_date, request.end_date))
        excused = []
        for session in self.store.list_sessions(course_id, request.start_date, request.end_date):
            if session.date not in period or request.student_id not in session.absent:
                continue
            session.absent.discard(request.student_id)
            session.excused.add(request.student_id)
            self.store.save_session(session)
            excused.append(f"{course_id}@{session.date.isoformat()}")
        return excused

    async def reconcile(self, request: LeaveRequest) -> ReconciliationOutcome:
        applied: List[str] = []
        failed: Dict[str, str] = {}
        excused: List[str] = []

        # Session rewrites for every course first, aggregates only afterwards.
        for course_id in request.course_ids:
            async with self.locks.hold(course_id):
                try:
                    excused.extend(self._excuse_sessions(request, course_id))
                    applied.append(course_id)
                except StoreError as exc:
                    failed[course_id] = exc.message
                    logger.warning(
                        "reconciliation_sessions_failed",
                        leave_request_id=request.id,
                        course_id=course_id,
                        error=exc.message,
                    )

        for course_id in list(applied):
            async with self.locks.hold(course_id):
                try:
                    self.recompute_aggregate(request.student_id, course_id)
                except StoreError as exc:
                    applied.remove(course_id)
                    failed[course_id] = exc.message
                    logger.warning(
                        "reconciliation_aggregate_failed",
                        leave_request_id=request.id,
                        course_id=course_id,
                        error=exc.message,
                    )

        completed = not failed
        outcome = ReconciliationOutcome(
            status="completed" if completed else "pending",
            applied_courses=applied,
            failed_courses=failed,
            excused_sessions=excused,
            completed_at=datetime.now(timezone.utc) if completed else None,
        )
        logger.info(
            "reconciliation_finished",
            leave_request_id=request.id,
            status=outcome.status,
            excused_sessions=len(excused),
            failed_courses=list(failed),
        )
        return outcome
