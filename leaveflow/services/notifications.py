"""
Fire-and-forget notification dispatch.

notify(recipient_id, message) resolves the person through the directory and
hands the message to every configured channel. A channel that fails or hangs
is logged and skipped; nothing here ever raises into the caller.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Protocol

from leaveflow.core.email import send_leave_email
from leaveflow.core.logging import get_logger
from leaveflow.store.base import Directory

logger = get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    id: str
    name: str
    email: str = ""


class Notifier(Protocol):
    async def send(self, recipient: Recipient, subject: str, message: str) -> None: ...


class EmailNotifier:
    async def send(self, recipient: Recipient, subject: str, message: str) -> None:
        if not recipient.email:
            return
        await send_leave_email(recipient.email, recipient.name, subject, message)


class NotificationDispatcher:
    def __init__(self, directory: Directory, channels: List[Notifier], timeout: float = 10.0):
        self.directory = directory
        self.channels = channels
        self.timeout = timeout

    def _resolve(self, recipient_id: str) -> Optional[Recipient]:
        person = self.directory.get_student(recipient_id) or self.directory.get_staff(recipient_id)
        if person is None:
            return None
        return Recipient(id=person.id, name=person.name, email=person.email)

    async def notify(self, recipient_id: Optional[str], message: str, subject: str = "Leave request update") -> None:
        if not recipient_id:
            return
        try:
            recipient = self._resolve(recipient_id)
        except Exception:
            logger.warning("notification_recipient_lookup_failed", recipient_id=recipient_id, exc_info=True)
            return
        if recipient is None:
            logger.warning("notification_recipient_unknown", recipient_id=recipient_id)
            return
        for channel in self.channels:
            try:
                await asyncio.wait_for(channel.send(recipient, subject, message), self.timeout)
            except Exception:
                logger.warning(
                    "notification_failed",
                    recipient_id=recipient_id,
                    channel=channel.__class__.__name__,
                    exc_info=True,
                )
