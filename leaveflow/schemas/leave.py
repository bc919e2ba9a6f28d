"""
Pydantic schemas for leave requests: entity, request bodies and views.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class LeaveStatus(str, Enum):
    PENDING = "pending"
    APPROVED_BY_TEACHER = "approved_by_teacher"
    APPROVED_BY_HOD = "approved_by_hod"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (LeaveStatus.APPROVED_BY_HOD, LeaveStatus.REJECTED)


class LeaveCategory(str, Enum):
    SICK = "Sick"
    PERSONAL = "Personal"
    ACADEMIC = "Academic"
    FAMILY = "Family"
    OTHER = "Other"


class RecommendedAction(str, Enum):
    APPROVE = "approve"
    REQUEST_MORE_INFO = "request_more_info"
    REJECT = "reject"


class ReviewFlag(str, Enum):
    VERIFICATION_UNAVAILABLE = "verification_unavailable"
    VERIFICATION_WARNING = "verification_warning"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    FAST_TRACKED = "fast_tracked"


# ---- Entity parts ----
class DecisionRecord(BaseModel):
    approved: bool
    decided_by: Optional[str] = None  # None = system
    decided_at: datetime
    comments: str = ""

    @property
    def is_system(self) -> bool:
        return self.decided_by is None


class VerificationResult(BaseModel):
    verified: bool
    confidence: int = Field(ge=0, le=100)
    reasoning: str = ""
    recommended_action: RecommendedAction = RecommendedAction.REQUEST_MORE_INFO
    storage_reference: Optional[str] = None
    anchor_reference: Optional[str] = None


class AuditAnchorRef(BaseModel):
    hash: str
    event: str
    external_reference: Optional[str] = None
    status: str = "anchored"  # anchored | pending
    created_at: datetime


class ReconciliationOutcome(BaseModel):
    status: str  # completed | pending
    applied_courses: List[str] = []
    failed_courses: Dict[str, str] = {}
    excused_sessions: List[str] = []  # "<course_id>@<date>"
    attempts: int = 1
    completed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


class LeaveRequest(BaseModel):
    id: str
    student_id: str
    start_date: date
    end_date: date
    days: int = Field(ge=1)
    reason: str
    event_name: str
    leave_type: LeaveCategory = LeaveCategory.OTHER
    document_ref: str
    course_ids: List[str] = []
    status: LeaveStatus = LeaveStatus.PENDING
    class_teacher_approval: Optional[DecisionRecord] = None
    hod_approval: Optional[DecisionRecord] = None
    verification_result: Optional[VerificationResult] = None
    review_flags: List[ReviewFlag] = []
    audit_anchors: List[AuditAnchorRef] = []
    reconciliation: Optional[ReconciliationOutcome] = None
    created_at: datetime
    updated_at: datetime


# ---- Request bodies ----
class LeaveRequestCreate(BaseModel):
    reason: str
    event_name: str
    start_date: date
    end_date: date
    leave_type: LeaveCategory = LeaveCategory.OTHER
    document_ref: Optional[str] = None
    course_ids: Optional[List[str]] = None


class DecisionBody(BaseModel):
    approved: bool
    comments: Optional[str] = None
    # which review stage the caller acts in; inferred from the request status when omitted
    role: Optional[Literal["teacher", "hod"]] = None


class RejectBody(BaseModel):
    reason: Optional[str] = None


# ---- Views ----
class LeaveRequestView(BaseModel):
    """Stable, serializable projection handed to every channel."""

    id: str
    student_id: str
    status: LeaveStatus
    leave_type: LeaveCategory
    event_name: str
    reason: str
    start_date: date
    end_date: date
    days: int
    document_ref: str
    course_ids: List[str]
    class_teacher_approval: Optional[DecisionRecord] = None
    hod_approval: Optional[DecisionRecord] = None
    verification: Optional[VerificationResult] = None
    review_flags: List[ReviewFlag] = []
    reconciliation_pending: bool = False
    reconciliation: Optional[ReconciliationOutcome] = None
    audit_anchors: List[AuditAnchorRef] = []
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, request: LeaveRequest) -> "LeaveRequestView":
        rejection_reason = None
        if request.status == LeaveStatus.REJECTED:
            decision = request.hod_approval or request.class_teacher_approval
            if decision is not None:
                rejection_reason = decision.comments or None
        return cls(
            id=request.id,
            student_id=request.student_id,
            status=request.status,
            leave_type=request.leave_type,
            event_name=request.event_name,
            reason=request.reason,
            start_date=request.start_date,
            end_date=request.end_date,
            days=request.days,
            document_ref=request.document_ref,
            course_ids=list(request.course_ids),
            class_teacher_approval=request.class_teacher_approval,
            hod_approval=request.hod_approval,
            verification=request.verification_result,
            review_flags=list(request.review_flags),
            reconciliation_pending=bool(request.reconciliation and request.reconciliation.is_pending),
            reconciliation=request.reconciliation,
            audit_anchors=list(request.audit_anchors),
            rejection_reason=rejection_reason,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )
