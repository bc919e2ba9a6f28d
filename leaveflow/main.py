"""
LeaveFlow: student leave requests with two-stage review, automated document
verification, audit anchoring and attendance reconciliation.
FastAPI entry point.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leaveflow.core.config import settings
from leaveflow.core.exceptions import LeaveFlowError
from leaveflow.core.logging import configure_logging, get_logger
from leaveflow.core.middleware import RequestContextMiddleware
from leaveflow.routers import anchors, attendance, leave_requests, telegram
from leaveflow.utils.response import error_from_exception

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="Leave request workflow with verification, audit anchoring and attendance reconciliation",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request id + structured access log
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(LeaveFlowError)
async def leaveflow_error_handler(request: Request, exc: LeaveFlowError):
    if exc.status_code >= 500:
        logger.error("request_failed", error_code=exc.error_code.value, error=exc.message)
    else:
        logger.info("request_rejected", error_code=exc.error_code.value, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_from_exception(exc))


# Include routers
app.include_router(leave_requests.router)
app.include_router(attendance.router)
app.include_router(anchors.router)
app.include_router(telegram.router)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
        "status": "running",
        "auth_mode": settings.AUTH_MODE,
    }


@app.get("/api/health")
async def health():
    return {"status": "healthy", "auth_mode": settings.AUTH_MODE, "store": settings.STORE_BACKEND}
