import asyncio
from datetime import date

import httpx
import pytest
from fastapi.testclient import TestClient

from leaveflow import dependencies
from leaveflow.core.config import settings
from leaveflow.core.exceptions import CollaboratorUnavailable
from leaveflow.dependencies import build_service
from leaveflow.schemas.identity import StaffProfile, StudentProfile
from leaveflow.schemas.leave import LeaveCategory, LeaveRequestCreate, RecommendedAction, VerificationResult
from leaveflow.services.anchor import SimulatedLedger, SimulatedStorage
from leaveflow.services.verification import RoutingThresholds, StructuredFields
from leaveflow.store.memory import MemoryStore


class FakeAnalyzer:
    """Scripted document analyzer; change the attributes between calls."""

    def __init__(self, confidence=85, action=RecommendedAction.APPROVE, reasoning="Event confirmed on organizer site"):
        self.confidence = confidence
        self.action = action
        self.reasoning = reasoning
        self.fail = False
        self.delay = 0.0
        self.calls = 0

    async def extract_fields(self, document):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise CollaboratorUnavailable("verification", "analyzer is down")
        return StructuredFields(event_name="", organizer="IEEE", dates=["2024-03-01"], document_type="invitation")

    async def score_verification(self, fields, context):
        return VerificationResult(
            verified=self.confidence >= 70,
            confidence=self.confidence,
            reasoning=self.reasoning,
            recommended_action=self.action,
        )


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, recipient, subject, message):
        self.sent.append((recipient.id, subject, message))

    def to(self, person_id):
        return [m for m in self.sent if m[0] == person_id]


def reply_with(monkeypatch, status_code=200, **body):
    """Every httpx.AsyncClient.post answers with this response."""

    async def post(self, url, **kwargs):
        return httpx.Response(status_code, request=httpx.Request("POST", url), **body)

    monkeypatch.setattr(httpx.AsyncClient, "post", post)


def seed_directory(store):
    """Two departments. CSE-A has a class teacher, CSE an HOD, ECE its own HOD."""
    store.add_student(StudentProfile(
        id="stu-1", name="Asha Rao", email="asha@college.edu",
        department="CSE", division="CSE-A", year=3, course_ids=["CS301", "CS302"],
    ))
    store.add_student(StudentProfile(
        id="stu-2", name="Vikram Shah", email="vikram@college.edu",
        department="CSE", division="CSE-A", year=3, course_ids=["CS301"],
    ))
    store.add_student(StudentProfile(
        id="stu-3", name="Meera Iyer", email="meera@college.edu",
        department="ECE", division="ECE-B", year=2, course_ids=["EC201"],
    ))
    store.add_staff(StaffProfile(
        id="tch-1", name="Prof. Kulkarni", email="kulkarni@college.edu", department="CSE",
        is_class_teacher=True, class_division="CSE-A", course_ids=["CS301", "CS302"],
    ))
    store.add_staff(StaffProfile(
        id="tch-2", name="Prof. Nair", email="nair@college.edu", department="CSE",
        course_ids=["CS302"],
    ))
    store.add_staff(StaffProfile(
        id="hod-cse", name="Dr. Menon", email="menon@college.edu", department="CSE", is_hod=True,
    ))
    store.add_staff(StaffProfile(
        id="hod-ece", name="Dr. Pillai", email="pillai@college.edu", department="ECE", is_hod=True,
    ))
    return store


def leave_payload(**overrides):
    data = {
        "reason": "Presenting a paper",
        "event_name": "National Robotics Symposium",
        "start_date": date(2024, 3, 1),
        "end_date": date(2024, 3, 3),
        "leave_type": LeaveCategory.ACADEMIC,
        "document_ref": "sim://invitation-letter",
    }
    data.update(overrides)
    return LeaveRequestCreate(**data)


@pytest.fixture
def store():
    return seed_directory(MemoryStore())


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_service(analyzer, notifier):
    def _make(store, **overrides):
        options = {
            "analyzer": analyzer,
            "ledger": SimulatedLedger(),
            "storage": SimulatedStorage(),
            "notifiers": [notifier],
            "thresholds": RoutingThresholds(),
        }
        options.update(overrides)
        return build_service(store, **options)

    return _make


@pytest.fixture
def service(store, make_service):
    return make_service(store)


@pytest.fixture
def machine(service):
    return service.machine


@pytest.fixture
def client(store, service, monkeypatch):
    from leaveflow.main import app

    monkeypatch.setattr(settings, "AUTH_MODE", "mock")
    monkeypatch.setattr(dependencies, "_store", store)
    app.dependency_overrides[dependencies.get_leave_service] = lambda: service
    app.dependency_overrides[dependencies.get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(person_id):
    return {"Authorization": f"Bearer mock-{person_id}"}
