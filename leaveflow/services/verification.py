"""
VerificationPipeline: adapter over the document-understanding collaborator,
plus the routing policy applied to its verdict.

The analyzer extracts structured fields from the evidence and scores how
plausible the claimed event is. The core never trusts it to be up: any
failure or timeout degrades to "no verification result" and the request
goes to manual review.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Optional, Protocol

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from leaveflow.core.config import settings
from leaveflow.core.exceptions import CollaboratorUnavailable
from leaveflow.core.logging import get_logger
from leaveflow.schemas.leave import RecommendedAction, VerificationResult
from leaveflow.services.anchor import ContentStorage, canonical_json

logger = get_logger(__name__)

SUSPICIOUS_PATTERNS = (
    "fake conference",
    "made up event",
    "non-existent",
    "nonexistent",
    "fictional",
    "diploma mill",
    "unaccredited",
    "imaginary event",
    "false certificate",
    "fraudulent",
    "fake certificate",
)
SUSPICIOUS_CONFIDENCE_CAP = 50


class EvidenceDocument(BaseModel):
    reference: str
    filename: Optional[str] = None
    content_type: Optional[str] = None


class StructuredFields(BaseModel):
    event_name: str = ""
    organizer: str = "Unknown"
    dates: List[str] = []
    document_type: str = ""
    student_name: Optional[str] = None


class StudentContext(BaseModel):
    student_id: str
    name: str
    department: str
    division: str
    year: Optional[int] = None
    claimed_event_name: str
    start_date: date
    end_date: date


class DocumentAnalyzer(Protocol):
    async def extract_fields(self, document: EvidenceDocument) -> StructuredFields: ...

    async def score_verification(
        self, fields: StructuredFields, context: StudentContext
    ) -> VerificationResult: ...


# ---------------------------------------------------------------------------
# Routing policy
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RoutingThresholds:
    auto_reject: int = 30
    manual_review: int = 50
    fast_track: int = 90
    fast_track_enabled: bool = False

    @classmethod
    def from_settings(cls) -> "RoutingThresholds":
        return cls(
            auto_reject=settings.AUTO_REJECT_CONFIDENCE,
            manual_review=settings.MANUAL_REVIEW_CONFIDENCE,
            fast_track=settings.FAST_TRACK_CONFIDENCE,
            fast_track_enabled=settings.FAST_TRACK_ENABLED,
        )


class Route(str, Enum):
    AUTO_REJECT = "auto_reject"
    FAST_TRACK = "fast_track"
    FORWARD = "forward"
    FORWARD_WITH_WARNING = "forward_with_warning"
    MANUAL_REVIEW = "manual_review"  # no verification result at all


@dataclass(frozen=True)
class RoutingDecision:
    route: Route
    notify_student_manual_review: bool = False


def route_verification(
    result: Optional[VerificationResult], thresholds: RoutingThresholds
) -> RoutingDecision:
    if result is None:
        return RoutingDecision(Route.MANUAL_REVIEW)
    if result.confidence < thresholds.auto_reject or result.recommended_action == RecommendedAction.REJECT:
        return RoutingDecision(Route.AUTO_REJECT)
    if result.recommended_action == RecommendedAction.APPROVE:
        if thresholds.fast_track_enabled and result.confidence >= thresholds.fast_track:
            return RoutingDecision(Route.FAST_TRACK)
        return RoutingDecision(Route.FORWARD)
    return RoutingDecision(
        Route.FORWARD_WITH_WARNING,
        notify_student_manual_review=result.confidence < thresholds.manual_review,
    )


def apply_suspicious_pattern_cap(result: VerificationResult, event_name: str) -> VerificationResult:
    lowered = (event_name or "").lower()
    if not any(p in lowered for p in SUSPICIOUS_PATTERNS):
        return result
    if result.confidence <= SUSPICIOUS_CONFIDENCE_CAP and result.recommended_action != RecommendedAction.APPROVE:
        return result
    action = result.recommended_action
    if action == RecommendedAction.APPROVE:
        action = RecommendedAction.REQUEST_MORE_INFO
    return result.model_copy(update={
        "confidence": min(result.confidence, SUSPICIOUS_CONFIDENCE_CAP),
        "recommended_action": action,
        "reasoning": f"{result.reasoning} Note: Suspicious patterns detected in event name.".strip(),
    })


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class VerificationPipeline:
    def __init__(
        self,
        analyzer: Optional[DocumentAnalyzer],
        storage: Optional[ContentStorage] = None,
        timeout: float = 20.0,
    ):
        self.analyzer = analyzer
        self.storage = storage
        self.timeout = timeout

    async def run(self, document: EvidenceDocument, context: StudentContext) -> Optional[VerificationResult]:
        """Returns None whenever verification could not be completed."""
        if self.analyzer is None:
            return None
        try:
            result = await asyncio.wait_for(self._verify(document, context), self.timeout)
        except (CollaboratorUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(
                "verification_unavailable",
                student_id=context.student_id,
                document=document.reference,
                error=str(exc) or exc.__class__.__name__,
            )
            return None
        except Exception as exc:
            logger.error(
                "verification_failed",
                student_id=context.student_id,
                document=document.reference,
                error=repr(exc),
                exc_info=True,
            )
            return None

        if self.storage is not None:
            try:
                ref = await asyncio.wait_for(
                    self.storage.store(
                        canonical_json(result.model_dump(exclude={"storage_reference", "anchor_reference"})).encode("utf-8"),
                        name=f"verification-{context.student_id}.json",
                    ),
                    self.timeout,
                )
                result = result.model_copy(update={"storage_reference": ref})
            except (CollaboratorUnavailable, asyncio.TimeoutError) as exc:
                logger.warning("verification_payload_not_stored", student_id=context.student_id, error=str(exc))
            except Exception as exc:
                logger.error(
                    "verification_payload_not_stored", student_id=context.student_id, error=repr(exc), exc_info=True
                )
        return result

    async def _verify(self, document: EvidenceDocument, context: StudentContext) -> VerificationResult:
        fields = await self.analyzer.extract_fields(document)
        if not fields.event_name:
            fields = fields.model_copy(update={"event_name": context.claimed_event_name})
        result = await self.analyzer.score_verification(fields, context)
        return apply_suspicious_pattern_cap(result, fields.event_name)


# ---------------------------------------------------------------------------
# OpenAI-backed analyzer (chat completions over httpx)
# ---------------------------------------------------------------------------
_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def parse_json_reply(text: str) -> dict:
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise CollaboratorUnavailable("verification", "analyzer reply contained no JSON object")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise CollaboratorUnavailable("verification", f"analyzer reply was not valid JSON: {exc}") from exc


class OpenAIDocumentAnalyzer:
    EXTRACT_PROMPT = (
        "You are an expert document analyzer. From the event/leave document described below, "
        "return ONLY a JSON object with keys: event_name, organizer, dates (list of ISO dates), "
        "document_type, student_name. Use \"Unknown\" for an unknown organizer."
    )
    VERIFY_PROMPT = (
        "You are an event verification expert. Be skeptical of events that cannot be confirmed "
        "and of events that may be fabricated to obtain leave. Return ONLY a JSON object with keys: "
        "verified (true if confidence >= 70), confidence (0-100), reasoning (short), "
        "recommended_action (approve only when 80%+ confident, request_more_info when plausible but "
        "uncertain, reject on strong evidence of fabrication)."
    )

    def __init__(self, api_key: str, model: str, base_url: str = "https://api.openai.com/v1", timeout: float = 20.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _complete(self, system: str, user: str) -> dict:
        if not self.api_key:
            raise CollaboratorUnavailable("verification", "OPENAI_API_KEY is not configured")
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "response_format": {"type": "json_object"},
            "max_tokens": 800,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("verification", f"analyzer request failed: {exc}") from exc
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise CollaboratorUnavailable("verification", f"unexpected analyzer response: {exc!r}") from exc
        return parse_json_reply(content)

    async def extract_fields(self, document: EvidenceDocument) -> StructuredFields:
        data = await self._complete(
            self.EXTRACT_PROMPT,
            f"Document reference: {document.reference}\n"
            f"File name: {document.filename or 'unknown'}\n"
            f"Content type: {document.content_type or 'unknown'}",
        )
        try:
            return StructuredFields.model_validate(data)
        except PydanticValidationError as exc:
            raise CollaboratorUnavailable("verification", f"unexpected extraction shape: {exc}") from exc

    async def score_verification(self, fields: StructuredFields, context: StudentContext) -> VerificationResult:
        data = await self._complete(
            self.VERIFY_PROMPT,
            f"Extracted document fields:\n{fields.model_dump_json()}\n\n"
            f"Student context:\n{context.model_dump_json()}",
        )
        try:
            confidence = max(0, min(100, int(data.get("confidence", 0))))
            return VerificationResult(
                verified=bool(data.get("verified", confidence >= 70)),
                confidence=confidence,
                reasoning=str(data.get("reasoning", "")),
                recommended_action=RecommendedAction(data.get("recommended_action", "request_more_info")),
            )
        except (TypeError, ValueError) as exc:
            raise CollaboratorUnavailable("verification", f"unexpected verification shape: {exc}") from exc
