"""
Attendance router: course teachers mark sessions, students read their summary.
"""

from fastapi import APIRouter, Depends

from leaveflow.core.security import require_role
from leaveflow.dependencies import get_leave_service
from leaveflow.schemas.attendance import AttendanceMark
from leaveflow.services.service import LeaveService
from leaveflow.utils.response import success_response

router = APIRouter(prefix="/api/attendance", tags=["Attendance"])


@router.post("/{course_id}/sessions")
async def mark_attendance(
    course_id: str,
    body: AttendanceMark,
    user: dict = Depends(require_role(["teacher"])),
    service: LeaveService = Depends(get_leave_service),
):
    session = await service.mark_attendance(course_id, user["user_id"], body)
    return success_response(
        data={
            "course_id": session.course_id,
            "date": session.date.isoformat(),
            "present": sorted(session.present),
            "absent": sorted(session.absent),
            "excused": sorted(session.excused),
        },
        message=f"Attendance marked for {len(session.present) + len(session.absent)} students",
    )


@router.get("/me")
async def my_attendance(
    user: dict = Depends(require_role(["student"])),
    service: LeaveService = Depends(get_leave_service),
):
    rows = service.attendance_summary(user["user_id"])
    return success_response(data=[r.model_dump(mode="json") for r in rows])
