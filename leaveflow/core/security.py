"""
Security module: Firebase JWT verification + Mock auth + Role guard.

Auth Flow:
1. Client signs in via Firebase → gets JWT
2. Client sends JWT to FastAPI as a Bearer token
3. FastAPI verifies JWT using Firebase Admin SDK
4. The Firebase UID is the person id in the directory (students / staff)
5. Backend injects: user_id, role, name, email and reviewer flags

In mock mode the token is "mock-<person id>" and is resolved straight
against the directory, so demos and tests need no Firebase project.
"""

import os

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from leaveflow.core.config import settings
from leaveflow.core.logging import get_logger
from leaveflow.dependencies import get_store

security_scheme = HTTPBearer()
logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Firebase initialization (lazy)
# ---------------------------------------------------------------------------
_firebase_app = None


def _init_firebase():
    global _firebase_app
    if _firebase_app is not None:
        return
    import firebase_admin
    from firebase_admin import credentials as fb_credentials

    cred_path = settings.FIREBASE_CREDENTIALS_PATH
    if os.path.exists(cred_path):
        cred = fb_credentials.Certificate(cred_path)
        _firebase_app = firebase_admin.initialize_app(cred)
    else:
        # Try default credentials
        _firebase_app = firebase_admin.initialize_app()


def identity_for(person_id: str) -> dict | None:
    """Build the request identity for a directory person, or None if unknown."""
    store = get_store()
    student = store.get_student(person_id)
    if student is not None:
        return {
            "user_id": student.id,
            "role": "student",
            "name": student.name,
            "email": student.email,
            "department": student.department,
            "division": student.division,
        }
    staff = store.get_staff(person_id)
    if staff is not None:
        return {
            "user_id": staff.id,
            "role": "teacher",
            "name": staff.name,
            "email": staff.email,
            "department": staff.department,
            "is_class_teacher": staff.is_class_teacher,
            "class_division": staff.class_division,
            "is_hod": staff.is_hod,
        }
    return None


# ---------------------------------------------------------------------------
# Token verification: the core auth function
# ---------------------------------------------------------------------------
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme),
) -> dict:
    """
    Validate the Bearer token and return the identity dict.
    Only people present in the directory can authenticate.
    """
    token = credentials.credentials

    if settings.AUTH_MODE == "mock":
        return await _mock_auth(token)

    return await _firebase_auth(token)


async def _mock_auth(token: str) -> dict:
    if token.startswith("mock-"):
        user = identity_for(token[5:])
        if user:
            return user

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid token. Use mock-<person id> in mock mode.",
    )


async def _firebase_auth(token: str) -> dict:
    _init_firebase()
    from firebase_admin import auth as fb_auth

    try:
        decoded = fb_auth.verify_id_token(token)
    except Exception:
        logger.info("firebase_token_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired Firebase token",
        )

    user = identity_for(decoded["uid"])
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not registered as a student or staff member.",
        )
    return user


# ---------------------------------------------------------------------------
# Role guard dependency
# ---------------------------------------------------------------------------
def require_role(allowed_roles: list[str]):
    """
    Usage:
        @router.post("/leave-requests")
        async def endpoint(user=Depends(require_role(["student"]))):
    """

    async def role_checker(
        user: dict = Depends(get_current_user),
    ) -> dict:
        if user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{user['role']}' not authorized. Required: {allowed_roles}",
            )
        return user

    return role_checker


def review_role(user: dict) -> str:
    """Default queue for a caller: student, class-teacher ("teacher") or "hod"."""
    if user["role"] == "student":
        return "student"
    if user.get("is_class_teacher"):
        return "teacher"
    return "hod" if user.get("is_hod") else "teacher"
