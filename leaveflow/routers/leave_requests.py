"""
Leave requests router: submit, review queues, decisions, reconciliation retry.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from leaveflow.core.exceptions import ReconciliationPending, ValidationError
from leaveflow.core.security import get_current_user, require_role, review_role
from leaveflow.dependencies import get_leave_service
from leaveflow.schemas.leave import DecisionBody, LeaveRequestCreate, LeaveStatus, RejectBody
from leaveflow.services.service import LeaveService
from leaveflow.utils.response import success_response

router = APIRouter(prefix="/api/leave-requests", tags=["Leave Requests"])


def _dump(view):
    return view.model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_leave_request(
    body: LeaveRequestCreate,
    user: dict = Depends(require_role(["student"])),
    service: LeaveService = Depends(get_leave_service),
):
    view = await service.create_leave_request(user["user_id"], body, caller_id=user["user_id"])
    return success_response(data=_dump(view), message="Leave request submitted")


@router.get("")
async def list_leave_requests(
    status_filter: Optional[LeaveStatus] = Query(None, alias="status"),
    queue: Optional[Literal["student", "teacher", "hod"]] = None,
    user: dict = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    """
    Students see their own requests. Class teachers default to the pending
    queue of their division, HODs to the teacher-approved queue of their
    department. A reviewer who is both picks one with ?queue=teacher|hod.
    """
    role = queue or review_role(user)
    if user["role"] == "student" and role != "student":
        raise ValidationError("Students can only list their own leave requests", details={"queue": role})
    views = service.list_requests(user["user_id"], role, status_filter)
    return success_response(data=[_dump(v) for v in views])


@router.get("/{request_id}")
async def get_leave_request(
    request_id: str,
    user: dict = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    return success_response(data=_dump(service.get_request(request_id, user["user_id"])))


@router.patch("/{request_id}/decision")
async def decide_leave_request(
    request_id: str,
    body: DecisionBody,
    user: dict = Depends(require_role(["teacher"])),
    service: LeaveService = Depends(get_leave_service),
):
    view = await service.decide(request_id, user["user_id"], body.role, body.approved, body.comments)
    return success_response(
        data=_dump(view),
        message="Leave request approved" if body.approved else "Leave request rejected",
    )


@router.post("/{request_id}/reject")
async def reject_leave_request(
    request_id: str,
    body: RejectBody,
    user: dict = Depends(require_role(["teacher"])),
    service: LeaveService = Depends(get_leave_service),
):
    view = await service.reject(request_id, user["user_id"], body.reason)
    return success_response(data=_dump(view), message="Leave request rejected")


@router.post("/{request_id}/reconcile")
async def retry_reconciliation(
    request_id: str,
    user: dict = Depends(require_role(["teacher"])),
    service: LeaveService = Depends(get_leave_service),
):
    view = await service.retry_reconciliation(request_id, user["user_id"])
    if view.reconciliation_pending:
        # approval stands; attendance still needs another attempt
        pending = ReconciliationPending(
            "Attendance reconciliation still pending",
            details={"failed_courses": view.reconciliation.failed_courses},
        )
        return JSONResponse(
            status_code=pending.status_code,
            content=success_response(data={**_dump(view), **pending.to_dict()}, message=pending.message),
        )
    return success_response(data=_dump(view), message="Attendance reconciled")
