"""
Process-wide wiring. Each collaborator is chosen from settings the first time
it is asked for; tests swap them via app.dependency_overrides or by calling
build_service() directly.
"""

from typing import List, Optional

from leaveflow.core.config import settings
from leaveflow.core.logging import get_logger
from leaveflow.services.anchor import (
    AuditAnchor,
    ContentStorage,
    HttpLedger,
    LedgerBackend,
    PinataStorage,
    SimulatedLedger,
    SimulatedStorage,
)
from leaveflow.services.attendance import AttendanceService
from leaveflow.services.leave_requests import LeaveRequestStateMachine
from leaveflow.services.locks import CourseLocks
from leaveflow.services.notifications import EmailNotifier, NotificationDispatcher, Notifier
from leaveflow.services.reconciler import AttendanceReconciler
from leaveflow.services.service import LeaveService
from leaveflow.services.verification import (
    DocumentAnalyzer,
    OpenAIDocumentAnalyzer,
    RoutingThresholds,
    VerificationPipeline,
)

logger = get_logger(__name__)

_store = None
_service: Optional[LeaveService] = None
_telegram_bot = None


def get_store():
    global _store
    if _store is None:
        if settings.STORE_BACKEND == "supabase":
            from leaveflow.store.supabase import SupabaseStore

            _store = SupabaseStore()
        else:
            from leaveflow.store.memory import MemoryStore

            _store = MemoryStore()
        logger.info("store_selected", backend=settings.STORE_BACKEND)
    return _store


def _ledger() -> LedgerBackend:
    if settings.ANCHOR_BACKEND == "http":
        return HttpLedger(settings.LEDGER_URL, settings.LEDGER_API_KEY, timeout=settings.ANCHOR_TIMEOUT_SECONDS)
    return SimulatedLedger()


def _storage() -> ContentStorage:
    if settings.STORAGE_BACKEND == "pinata":
        return PinataStorage(settings.PINATA_API_KEY, settings.PINATA_SECRET_KEY, timeout=settings.ANCHOR_TIMEOUT_SECONDS)
    return SimulatedStorage()


def _analyzer() -> Optional[DocumentAnalyzer]:
    if settings.ANALYZER_BACKEND == "openai":
        return OpenAIDocumentAnalyzer(
            settings.OPENAI_API_KEY,
            settings.OPENAI_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.VERIFICATION_TIMEOUT_SECONDS,
        )
    return None


def _notifiers(store) -> List[Notifier]:
    channels: List[Notifier] = [EmailNotifier()]
    if settings.TELEGRAM_BOT_TOKEN:
        from leaveflow.channels.telegram import TelegramClient, TelegramNotifier

        channels.append(TelegramNotifier(TelegramClient.from_settings(), store))
    return channels


def build_service(
    store,
    *,
    analyzer: Optional[DocumentAnalyzer] = None,
    ledger: Optional[LedgerBackend] = None,
    storage: Optional[ContentStorage] = None,
    notifiers: Optional[List[Notifier]] = None,
    thresholds: Optional[RoutingThresholds] = None,
    verification_timeout: Optional[float] = None,
    anchor_timeout: Optional[float] = None,
) -> LeaveService:
    storage = storage if storage is not None else _storage()
    anchor = AuditAnchor(
        store,
        ledger if ledger is not None else _ledger(),
        storage,
        timeout=anchor_timeout or settings.ANCHOR_TIMEOUT_SECONDS,
    )
    pipeline = VerificationPipeline(
        analyzer,
        storage,
        timeout=verification_timeout or settings.VERIFICATION_TIMEOUT_SECONDS,
    )
    locks = CourseLocks()
    reconciler = AttendanceReconciler(store, locks)
    notifier = NotificationDispatcher(
        store,
        notifiers if notifiers is not None else _notifiers(store),
        timeout=settings.NOTIFY_TIMEOUT_SECONDS,
    )
    machine = LeaveRequestStateMachine(
        store,
        store,
        pipeline,
        anchor,
        reconciler,
        notifier,
        thresholds=thresholds or RoutingThresholds.from_settings(),
    )
    return LeaveService(machine, AttendanceService(store, store, locks, reconciler), anchor)


def get_leave_service() -> LeaveService:
    global _service
    if _service is None:
        _service = build_service(get_store(), analyzer=_analyzer())
    return _service


def get_telegram_bot():
    global _telegram_bot
    if _telegram_bot is None:
        from leaveflow.channels.telegram import TelegramBot, TelegramClient

        store = get_store()
        _telegram_bot = TelegramBot(get_leave_service(), store, TelegramClient.from_settings(), store)
    return _telegram_bot
