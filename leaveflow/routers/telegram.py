"""
Telegram webhook. Telegram retries on non-2xx, so the bot's own failures are
logged and acknowledged rather than surfaced.
"""

import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from leaveflow.channels.telegram import LINK_CODE_TTL
from leaveflow.core.config import settings
from leaveflow.core.logging import get_logger
from leaveflow.core.security import require_role
from leaveflow.dependencies import get_telegram_bot
from leaveflow.utils.response import success_response

router = APIRouter(prefix="/api/telegram", tags=["Telegram"])
logger = get_logger(__name__)


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str = Header(default=""),
    bot=Depends(get_telegram_bot),
):
    if settings.TELEGRAM_WEBHOOK_SECRET and not secrets.compare_digest(
        x_telegram_bot_api_secret_token, settings.TELEGRAM_WEBHOOK_SECRET
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret")

    update = await request.json()
    try:
        await bot.handle_update(update)
    except Exception:
        logger.exception("telegram_update_failed", update_id=update.get("update_id"))
    return {"ok": True}


@router.post("/link-code")
async def issue_link_code(
    user: dict = Depends(require_role(["teacher"])),
    bot=Depends(get_telegram_bot),
):
    """Staff chats are bound with a short-lived code, never by typing a staff id."""
    code = bot.issue_link_code(user["user_id"])
    return success_response(
        data={"code": code, "expires_in": int(LINK_CODE_TTL.total_seconds())},
        message=f"Send /link {code} to the LeaveFlow bot",
    )
