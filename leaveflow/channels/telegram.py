"""
Telegram front end for the leave service.

Updates arrive through the webhook router and are translated into the same
LeaveService calls the HTTP API makes; replies are rendered from the same
LeaveRequestView and error codes. Chat-specific state (who is logged in on
which chat, which draft is waiting for its document) stays in this module.

Commands:
    /start, /help
    /login <student id>
    /link <code>                                                 staff, code issued by POST /api/telegram/link-code
    /status
    /request <start> <end> <category> <event name> | <reason>   then send the document
    /pending                                                     reviewers only
Inline buttons: approve_teacher:<id>, approve_hod:<id>, reject:<id>
"""

import secrets
from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from leaveflow.core.config import settings
from leaveflow.core.exceptions import CollaboratorUnavailable, LeaveFlowError
from leaveflow.core.logging import get_logger
from leaveflow.schemas.leave import LeaveCategory, LeaveRequestCreate, LeaveRequestView, LeaveStatus
from leaveflow.services.notifications import Recipient
from leaveflow.services.service import LeaveService
from leaveflow.store.base import ChatRegistry, Directory

logger = get_logger(__name__)

HELP_TEXT = (
    "LeaveFlow Bot Commands:\n\n"
    "/start - Start the bot\n"
    "/login <id> - Link this chat to your student id\n"
    "/link <code> - Link this chat to your staff account with a code from the web app\n"
    "/request <start> <end> <category> <event name> | <reason> - Start a leave request, then send the document\n"
    "/status - Check status of your leave requests\n"
    "/pending - Leave requests waiting for your review\n"
    "/help - Show this help message"
)
REQUEST_USAGE = (
    "Usage: /request 2024-03-01 2024-03-03 Academic Hackathon 2024 | Representing the college\n"
    f"Categories: {', '.join(c.value for c in LeaveCategory)}"
)

STATUS_TEXT = {
    LeaveStatus.PENDING: "Pending (class teacher)",
    LeaveStatus.APPROVED_BY_TEACHER: "Approved by class teacher (awaiting HOD)",
    LeaveStatus.APPROVED_BY_HOD: "Approved",
    LeaveStatus.REJECTED: "Rejected",
}

DRAFT_TTL = timedelta(hours=1)
LINK_CODE_TTL = timedelta(minutes=10)


def render_view(view: LeaveRequestView) -> str:
    lines = [
        f"Leave request {view.id}",
        f"Event: {view.event_name}",
        f"Dates: {view.start_date.isoformat()} - {view.end_date.isoformat()} ({view.days} day(s))",
        f"Status: {STATUS_TEXT[view.status]}",
    ]
    if view.rejection_reason:
        lines.append(f"Reason: {view.rejection_reason}")
    if view.reconciliation_pending:
        lines.append("Attendance update pending.")
    return "\n".join(lines)


def render_error(exc: LeaveFlowError) -> str:
    return f"Error ({exc.error_code.value}): {exc.message}"


def parse_request_command(args: str) -> LeaveRequestCreate:
    """Parse '<start> <end> <category> <event name> | <reason>'."""
    head, sep, reason = args.partition("|")
    parts = head.split()
    if not sep or len(parts) < 4 or not reason.strip():
        raise ValueError("malformed /request command")
    start, end = date.fromisoformat(parts[0]), date.fromisoformat(parts[1])
    category = next((c for c in LeaveCategory if c.value.lower() == parts[2].lower()), None)
    if category is None:
        raise ValueError(f"unknown category {parts[2]!r}")
    return LeaveRequestCreate(
        start_date=start,
        end_date=end,
        leave_type=category,
        event_name=" ".join(parts[3:]),
        reason=reason.strip(),
    )


class ExpiringMap:
    """Process-local map whose entries expire after `ttl`; the oldest go first past `max_size`."""

    def __init__(self, ttl: timedelta, max_size: int = 1000, clock: Optional[Callable[[], datetime]] = None):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._items: "OrderedDict[str, Tuple[datetime, Any]]" = OrderedDict()

    def __len__(self) -> int:
        self._purge()
        return len(self._items)

    def _purge(self) -> None:
        now = self.clock()
        while self._items:
            oldest = next(iter(self._items))
            expires, _ = self._items[oldest]
            if expires > now and len(self._items) <= self.max_size:
                return
            del self._items[oldest]

    def set(self, key: str, value: Any) -> None:
        self._items.pop(key, None)
        self._items[key] = (self.clock() + self.ttl, value)
        self._purge()

    def get(self, key: str) -> Optional[Any]:
        self._purge()
        item = self._items.get(key)
        return item[1] if item else None

    def pop(self, key: str) -> Optional[Any]:
        self._purge()
        item = self._items.pop(key, None)
        return item[1] if item else None


class TelegramClient:
    def __init__(self, token: str, api_url: str = "https://api.telegram.org", timeout: float = 10.0):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "TelegramClient":
        return cls(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_API_URL, settings.NOTIFY_TIMEOUT_SECONDS)

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.token:
            raise CollaboratorUnavailable("telegram", "TELEGRAM_BOT_TOKEN is not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.api_url}/bot{self.token}/{method}", json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("telegram", f"{method} failed: {exc}") from exc
        return response.json()

    async def send_message(self, chat_id: str, text: str, buttons: Optional[List[List[Dict[str, str]]]] = None):
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if buttons:
            payload["reply_markup"] = {"inline_keyboard": buttons}
        return await self._call("sendMessage", payload)

    async def answer_callback(self, callback_id: str, text: str):
        return await self._call("answerCallbackQuery", {"callback_query_id": callback_id, "text": text})


class TelegramNotifier:
    """Notification channel: delivers to the recipient's linked chat, if any."""

    def __init__(self, client: TelegramClient, registry: ChatRegistry):
        self.client = client
        self.registry = registry

    async def send(self, recipient: Recipient, subject: str, message: str) -> None:
        chat_id = self.registry.chat_for(recipient.id)
        if chat_id is None:
            return
        await self.client.send_message(chat_id, f"{subject}\n\n{message}")


class TelegramBot:
    def __init__(
        self,
        service: LeaveService,
        registry: ChatRegistry,
        client: TelegramClient,
        directory: Directory,
    ):
        self.service = service
        self.registry = registry
        self.client = client
        self.directory = directory
        self._drafts = ExpiringMap(DRAFT_TTL)
        self._link_codes = ExpiringMap(LINK_CODE_TTL)

    def issue_link_code(self, staff_id: str) -> str:
        """One-time code a signed-in staff member sends as /link <code> to bind a chat."""
        code = secrets.token_urlsafe(6)
        self._link_codes.set(code, staff_id)
        logger.info("telegram_link_code_issued", person_id=staff_id)
        return code

    async def _reply(self, chat_id: str, text: str, buttons=None) -> None:
        try:
            await self.client.send_message(chat_id, text, buttons)
        except CollaboratorUnavailable as exc:
            logger.warning("telegram_reply_failed", chat_id=chat_id, error=exc.message)

    async def handle_update(self, update: Dict[str, Any]) -> None:
        if "callback_query" in update:
            await self._handle_callback(update["callback_query"])
            return
        message = update.get("message")
        if not message:
            return
        chat_id = str(message["chat"]["id"])
        if message.get("document") or message.get("photo"):
            await self._handle_document(chat_id, message)
            return
        text = (message.get("text") or "").strip()
        if not text.startswith("/"):
            return
        command, _, args = text.partition(" ")
        command = command[1:].split("@", 1)[0].lower()
        handler = getattr(self, f"_cmd_{command}", None)
        if handler is None:
            await self._reply(chat_id, "Unknown command. Use /help.")
            return
        await handler(chat_id, args.strip())

    # ---- commands ----
    async def _cmd_start(self, chat_id: str, args: str):
        await self._reply(
            chat_id,
            "Welcome to LeaveFlow Bot!\n\nSubmit leave requests and get approval updates here.\n"
            "Use /login <id> to connect your account.",
        )

    async def _cmd_help(self, chat_id: str, args: str):
        await self._reply(chat_id, HELP_TEXT)

    async def _cmd_login(self, chat_id: str, args: str):
        person_id = args.strip()
        if not person_id:
            await self._reply(chat_id, "Usage: /login <id>")
            return
        student = self.directory.get_student(person_id)
        if student is None:
            await self._reply(chat_id, "Invalid id. Students log in with their student id; staff use /link <code>.")
            return
        self.registry.register(chat_id, student.id)
        logger.info("telegram_chat_linked", chat_id=chat_id, person_id=student.id)
        await self._reply(chat_id, f"Login successful! Welcome, {student.name}.")

    async def _cmd_link(self, chat_id: str, args: str):
        staff_id = self._link_codes.pop(args.strip()) if args.strip() else None
        staff = self.directory.get_staff(staff_id) if staff_id else None
        if staff is None:
            await self._reply(chat_id, "Invalid or expired link code. Request a new one from the web app.")
            return
        self.registry.register(chat_id, staff.id)
        logger.info("telegram_chat_linked", chat_id=chat_id, person_id=staff.id, via="link_code")
        await self._reply(chat_id, f"Chat linked. Welcome, {staff.name}.")

    async def _cmd_status(self, chat_id: str, args: str):
        person_id = self.registry.person_for(chat_id)
        if person_id is None:
            await self._reply(chat_id, "Please login first using the /login command.")
            return
        try:
            views = self.service.list_requests(person_id, "student")
        except LeaveFlowError as exc:
            await self._reply(chat_id, render_error(exc))
            return
        if not views:
            await self._reply(chat_id, "You have no leave requests.")
            return
        await self._reply(chat_id, "Your leave requests:\n\n" + "\n\n".join(render_view(v) for v in views))

    async def _cmd_request(self, chat_id: str, args: str):
        if self.registry.person_for(chat_id) is None:
            await self._reply(chat_id, "Please login first using the /login command.")
            return
        try:
            draft = parse_request_command(args)
        except ValueError:
            await self._reply(chat_id, REQUEST_USAGE)
            return
        self._drafts.set(chat_id, draft)
        await self._reply(chat_id, "Please upload your event document (PDF or image) for the leave request.")

    async def _cmd_pending(self, chat_id: str, args: str):
        person_id = self.registry.person_for(chat_id)
        staff = self.directory.get_staff(person_id) if person_id else None
        if staff is None:
            await self._reply(chat_id, "Only reviewers can list pending leave requests.")
            return
        roles = [r for r, ok in (("teacher", staff.is_class_teacher), ("hod", staff.is_hod)) if ok]
        if not roles:
            await self._reply(chat_id, "You have no leave requests to review.")
            return
        for role in roles:
            for view in self.service.list_requests(person_id, role):
                approve = "approve_teacher" if role == "teacher" else "approve_hod"
                await self._reply(
                    chat_id,
                    render_view(view),
                    buttons=[[
                        {"text": "Approve", "callback_data": f"{approve}:{view.id}"},
                        {"text": "Reject", "callback_data": f"reject:{view.id}"},
                    ]],
                )

    # ---- uploads ----
    async def _handle_document(self, chat_id: str, message: Dict[str, Any]):
        draft = self._drafts.get(chat_id)
        if draft is None:
            return
        student_id = self.registry.person_for(chat_id)
        if student_id is None:
            await self._reply(chat_id, "Please login first using the /login command.")
            return
        if message.get("document"):
            file_id = message["document"]["file_id"]
        else:
            # highest resolution photo comes last
            file_id = message["photo"][-1]["file_id"]

        await self._reply(chat_id, "Document received. Processing...")
        try:
            view = await self.service.create_leave_request(
                student_id, draft, document_ref=f"telegram:{file_id}", caller_id=student_id
            )
        except LeaveFlowError as exc:
            await self._reply(chat_id, render_error(exc))
            return
        finally:
            self._drafts.pop(chat_id)
        await self._reply(chat_id, "Leave request submitted.\n\n" + render_view(view))

    # ---- inline buttons ----
    async def _handle_callback(self, query: Dict[str, Any]):
        chat_id = str(query["message"]["chat"]["id"])
        action, _, request_id = (query.get("data") or "").partition(":")
        actor_id = self.registry.person_for(chat_id)
        if actor_id is None or not request_id:
            await self._reply(chat_id, "You are not authorized to review requests.")
            return
        try:
            if action == "approve_teacher":
                view = await self.service.decide(request_id, actor_id, "teacher", True)
            elif action == "approve_hod":
                view = await self.service.decide(request_id, actor_id, "hod", True)
            elif action == "reject":
                view = await self.service.reject(request_id, actor_id, "Rejected via Telegram")
            else:
                return
        except LeaveFlowError as exc:
            await self._answer(query, "Failed")
            await self._reply(chat_id, render_error(exc))
            return
        await self._answer(query, "Done")
        await self._reply(chat_id, render_view(view))

    async def _answer(self, query: Dict[str, Any], text: str):
        try:
            await self.client.answer_callback(query["id"], text)
        except CollaboratorUnavailable as exc:
            logger.warning("telegram_callback_answer_failed", error=exc.message)
