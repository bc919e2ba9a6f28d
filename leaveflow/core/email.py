import httpx

from leaveflow.core.config import settings
from leaveflow.core.exceptions import CollaboratorUnavailable
from leaveflow.core.logging import get_logger

logger = get_logger(__name__)

EMAILJS_URL = "https://api.emailjs.com/api/v1.0/email/send"


def emailjs_configured() -> bool:
    return bool(
        settings.EMAILJS_SERVICE_ID
        and settings.EMAILJS_PUBLIC_KEY
        and settings.EMAILJS_TEMPLATE_ID
        and settings.EMAILJS_PRIVATE_KEY
    )


async def send_leave_email(to_email: str, name: str, subject: str, message: str):
    """
    Sends a leave request notification using the EmailJS REST API.
    """
    if not emailjs_configured():
        logger.info("emailjs_not_configured", to_email=to_email)
        return

    payload = {
        "service_id": settings.EMAILJS_SERVICE_ID,
        "template_id": settings.EMAILJS_TEMPLATE_ID,
        "user_id": settings.EMAILJS_PUBLIC_KEY,
        "accessToken": settings.EMAILJS_PRIVATE_KEY,
        "template_params": {
            "to_email": to_email,
            "to_name": name,
            "subject": subject,
            "message": message,
        },
    }

    logger.debug("emailjs_send", to_email=to_email, template_id=settings.EMAILJS_TEMPLATE_ID)

    try:
        async with httpx.AsyncClient(timeout=settings.NOTIFY_TIMEOUT_SECONDS) as client:
            response = await client.post(EMAILJS_URL, json=payload)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise CollaboratorUnavailable(
            "email", f"EmailJS returned {e.response.status_code}: {e.response.text}"
        ) from e
    except httpx.HTTPError as e:
        raise CollaboratorUnavailable("email", f"EmailJS request failed: {e}") from e
    logger.info("email_sent", to_email=to_email)
