"""
AuditAnchor: content-addressed, append-only audit records.

anchor(subject, metadata) hashes both deterministically, pushes the entry to
a content store and its digest to a ledger, and records the entry locally so
it can be looked up by reference later. The external calls are best-effort:
if either backend is down the entry is still recorded with status "pending"
and the state transition it accompanies goes ahead.

Backends are selected at startup:
    simulated  deterministic, in-process, no network (demo + tests)
    http       ledger service reached over HTTP (LEDGER_URL)
    pinata     IPFS pinning through the Pinata API
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic_core import to_jsonable_python

from leaveflow.core.exceptions import CollaboratorUnavailable, NotFoundError, StoreError
from leaveflow.core.logging import get_logger
from leaveflow.schemas.anchor import AnchorEntry
from leaveflow.store.base import AnchorStore

logger = get_logger(__name__)


def canonical_json(value: Any) -> str:
    return json.dumps(
        to_jsonable_python(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def content_hash(value: Any) -> str:
    """SHA-256 of raw bytes, or of the canonical JSON form of anything else."""
    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
    else:
        data = canonical_json(value).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def anchor_reference(subject_hash: str, metadata_hash: str) -> str:
    return hashlib.sha256(f"{subject_hash}:{metadata_hash}".encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Content storage: store(bytes) -> reference
# ---------------------------------------------------------------------------
class ContentStorage(Protocol):
    async def store(self, data: bytes, name: str = "payload.json") -> str: ...


class SimulatedStorage:
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def store(self, data: bytes, name: str = "payload.json") -> str:
        ref = f"sim://{hashlib.sha256(data).hexdigest()}"
        self._blobs[ref] = data
        return ref

    def retrieve(self, reference: str) -> Optional[bytes]:
        return self._blobs.get(reference)


class PinataStorage:
    PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"

    def __init__(self, api_key: str, secret_key: str, timeout: float = 10.0):
        self.api_key = api_key
        self.secret_key = secret_key
        self.timeout = timeout

    async def store(self, data: bytes, name: str = "payload.json") -> str:
        if not self.api_key or not self.secret_key:
            raise CollaboratorUnavailable("storage", "Pinata credentials are not configured")
        headers = {
            "pinata_api_key": self.api_key,
            "pinata_secret_api_key": self.secret_key,
        }
        files = {"file": (name, data)}
        form = {
            "pinataMetadata": json.dumps({"name": f"LeaveFlow-{name}"}),
            "pinataOptions": json.dumps({"cidVersion": 0}),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.PIN_FILE_URL, headers=headers, files=files, data=form)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("storage", f"Pinata upload failed: {exc}") from exc
        try:
            return f"ipfs://{response.json()['IpfsHash']}"
        except (KeyError, TypeError, ValueError) as exc:
            raise CollaboratorUnavailable("storage", f"unexpected Pinata response: {exc!r}") from exc


# ---------------------------------------------------------------------------
# Ledger: anchor_hash(hash, metadata) -> external reference
# ---------------------------------------------------------------------------
class LedgerBackend(Protocol):
    async def anchor_hash(self, digest: str, metadata: Dict[str, Any]) -> str: ...


class SimulatedLedger:
    """Deterministic stand-in: same digest + metadata, same reference."""

    async def anchor_hash(self, digest: str, metadata: Dict[str, Any]) -> str:
        base = hashlib.sha256((digest + canonical_json(metadata)).encode("utf-8")).hexdigest()
        return f"sim-tx-{base[:48]}"


class HttpLedger:
    def __init__(self, url: str, api_key: str = "", timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def anchor_hash(self, digest: str, metadata: Dict[str, Any]) -> str:
        if not self.url:
            raise CollaboratorUnavailable("ledger", "LEDGER_URL is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.url}/anchors",
                    json={"hash": digest, "metadata": to_jsonable_python(metadata)},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("ledger", f"Ledger anchor failed: {exc}") from exc
        try:
            body = response.json()
            return body.get("reference") or body["txId"]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CollaboratorUnavailable("ledger", f"unexpected ledger response: {exc!r}") from exc


# ---------------------------------------------------------------------------
# AuditAnchor
# ---------------------------------------------------------------------------
class AuditAnchor:
    def __init__(
        self,
        store: AnchorStore,
        ledger: LedgerBackend,
        storage: ContentStorage,
        timeout: float = 10.0,
    ):
        self.store = store
        self.ledger = ledger
        self.storage = storage
        self.timeout = timeout

    async def anchor(self, subject: Any, metadata: Dict[str, Any], event: str = "transition") -> AnchorEntry:
        subject_hash = content_hash(subject)
        metadata_hash = content_hash(metadata)
        reference = anchor_reference(subject_hash, metadata_hash)

        existing = self._stored(reference)
        if existing is not None and existing.status == "anchored":
            return existing

        storage_reference = None
        external_reference = None
        status = "anchored"
        try:
            payload = canonical_json(
                {"subject_hash": subject_hash, "metadata_hash": metadata_hash, "metadata": metadata}
            ).encode("utf-8")
            storage_reference = await asyncio.wait_for(
                self.storage.store(payload, name=f"anchor-{reference[:16]}.json"), self.timeout
            )
            external_reference = await asyncio.wait_for(
                self.ledger.anchor_hash(reference, metadata), self.timeout
            )
        except (CollaboratorUnavailable, asyncio.TimeoutError) as exc:
            status = "pending"
            logger.warning("anchor_deferred", reference=reference, anchor_event=event, error=str(exc))
        except Exception as exc:
            status = "pending"
            logger.error(
                "anchor_deferred", reference=reference, anchor_event=event, error=repr(exc), exc_info=True
            )

        entry = AnchorEntry(
            reference=reference,
            subject_hash=subject_hash,
            metadata_hash=metadata_hash,
            event=event,
            metadata=to_jsonable_python(metadata),
            external_reference=external_reference,
            storage_reference=storage_reference,
            status=status,
            created_at=existing.created_at if existing else datetime.now(timezone.utc),
        )
        try:
            self.store.save_anchor(entry)
        except StoreError as exc:
            logger.warning("anchor_record_failed", reference=reference, error=exc.message)
        return entry

    def lookup(self, reference: str) -> AnchorEntry:
        entry = self.store.get_anchor(reference)
        if entry is None:
            raise NotFoundError("Audit anchor not found", details={"reference": reference})
        return entry

    def _stored(self, reference: str) -> Optional[AnchorEntry]:
        try:
            return self.store.get_anchor(reference)
        except StoreError as exc:
            logger.warning("anchor_lookup_failed", reference=reference, error=exc.message)
            return None
