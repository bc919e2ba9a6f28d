"""
Audit anchor lookup: lets any signed-in user verify a reference from a trail.
"""

from fastapi import APIRouter, Depends

from leaveflow.core.security import get_current_user
from leaveflow.dependencies import get_leave_service
from leaveflow.services.service import LeaveService
from leaveflow.utils.response import success_response

router = APIRouter(prefix="/api/anchors", tags=["Audit Anchors"])


@router.get("/{reference}")
async def get_anchor(
    reference: str,
    user: dict = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    entry = service.lookup_anchor(reference)
    return success_response(data=entry.model_dump(mode="json"))
