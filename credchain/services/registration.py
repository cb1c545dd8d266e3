"""
Credchain - Registration Orchestrator
Takes a document from raw bytes to an anchored custody record.

Steps:
1. Validate size, MIME type, identities and metadata (no side effects yet)
2. Hash the plaintext and claim the hash in the registry
3. Seal the bytes under a fresh data key
4. Store the envelope through the storage router
5. Record the storage location (uploaded)
6. Anchor the hash on the ledger
7. Finalize the record (anchored) and build the QR payload

A storage outcome that is only queued, or a ledger failure, leaves the
record ``failed`` with its diagnostics; registering the same bytes again
resumes from the record instead of starting over. Each registration
holds a claim token on the record; a cancelled registration releases it
by marking the record failed. Stored objects are never deleted.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from credchain.core.errors import (
    AllProvidersUnavailable,
    CredchainError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from credchain.core.identity import normalize_address
from credchain.core.timeout import Deadline
from credchain.models.models import Document, DocumentStatus
from credchain.models.schemas import ALLOWED_MIME_TYPES, parse_metadata
from credchain.services.cipher import EnvelopeCipher
from credchain.services.document_registry import DocumentRegistry, FileInfo
from credchain.services.hasher import hash_bytes
from credchain.services.ledger import AnchorReceipt, LedgerCoordinator
from credchain.services.qr_payload import QRCodec
from credchain.services.storage import PinnedObject, QueueEntry, StorageRouter, is_local_cid
from credchain.services.storage.local import local_cid_for

logger = logging.getLogger(__name__)


# =============================================================================
# Outcomes
# =============================================================================

@dataclass
class Registered:
    document_hash: str
    anchor: AnchorReceipt
    storage: dict[str, Any]
    qr_payload: str
    record: Document
    resumed: bool = False

    status = "registered"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "document_hash": self.document_hash,
            "anchor": self.anchor.to_dict(),
            "storage": self.storage,
            "qr_payload": self.qr_payload,
            "resumed": self.resumed,
            "document": self.record.to_dict(),
        }


@dataclass
class Queued:
    document_hash: str
    queue_position: Optional[int]
    storage: Optional[dict[str, Any]] = None

    status = "queued"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "document_hash": self.document_hash,
            "queue_position": self.queue_position,
            "storage": self.storage,
            "message": "Storage providers unavailable; the upload is queued. Register again once it has been pinned.",
        }


@dataclass
class PartialAnchorFailed:
    document_hash: str
    storage: dict[str, Any]
    reason: str

    status = "partial_anchor"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "document_hash": self.document_hash,
            "storage": self.storage,
            "reason": self.reason,
            "message": "Document stored but not anchored; register again to retry anchoring.",
        }


RegistrationOutcome = Union[Registered, Queued, PartialAnchorFailed]


# =============================================================================
# Orchestrator
# =============================================================================

class RegistrationOrchestrator:
    def __init__(
        self,
        registry: DocumentRegistry,
        cipher: EnvelopeCipher,
        router: StorageRouter,
        ledger: LedgerCoordinator,
        qr_codec: QRCodec,
        max_upload_bytes: int = 10 * 1024 * 1024,
        budget_seconds: float = 300.0,
    ):
        self.registry = registry
        self.cipher = cipher
        self.router = router
        self.ledger = ledger
        self.qr_codec = qr_codec
        self.max_upload_bytes = max_upload_bytes
        self.budget_seconds = budget_seconds

    def _validate_file(self, data: bytes, filename: str, mime_type: str, size: Optional[int]) -> FileInfo:
        if not isinstance(data, (bytes, bytearray)) or len(data) == 0:
            raise ValidationError("File is empty", field="file")
        if size is not None and size != len(data):
            raise ValidationError("Declared size does not match the file", field="size")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(f"File exceeds {self.max_upload_bytes} bytes", field="size")
        if not filename or len(filename) > 255:
            raise ValidationError("Filename must be 1-255 characters", field="filename")
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(f"MIME type '{mime_type}' is not allowed", field="mime_type")
        return FileInfo(original_filename=filename, mime_type=mime_type, size=len(data))

    def _storage_view(self, cid: str, provider: str, **extra) -> dict[str, Any]:
        return {"cid": cid, "provider": provider, "gateway_url": self.router.gateway_url(cid), **extra}

    async def register(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        metadata: Union[Mapping[str, Any], str, None],
        issuer_id: str,
        owner_id: Optional[str] = None,
        size: Optional[int] = None,
        uploader_id: Optional[str] = None,
    ) -> RegistrationOutcome:
        deadline = Deadline(self.budget_seconds)

        # 1. Validate before any side effect
        file_info = self._validate_file(data, filename, mime_type, size)
        issuer = normalize_address(issuer_id, "issuer_id")
        owner = normalize_address(owner_id, "owner_id") if owner_id else issuer
        uploader = normalize_address(uploader_id, "uploader_id") if uploader_id else issuer
        parsed = parse_metadata(metadata)

        # 2. Claim the hash
        document_hash = hash_bytes(bytes(data))
        claim = await self.registry.claim_hash(document_hash, parsed, file_info, owner, issuer, uploader)
        record = claim.record
        token = claim.token
        log_extra = {"document_hash": document_hash, "resumed": claim.resumed}
        logger.info("Registration started", extra=log_extra)

        try:
            # 3-4. Seal and store, unless a resumed record already holds a remote copy
            if claim.resumed and record.sealed_data_key and record.storage_cid and not is_local_cid(record.storage_cid):
                cid, provider, sealed_json = record.storage_cid, record.storage_provider, record.sealed_data_key
                storage = self._storage_view(cid, provider)
            else:
                envelope, sealed_json = await self._envelope_for(record, claim.resumed, bytes(data))
                upload_deadline = self._upload_deadline(deadline)

                try:
                    upload = await self.router.upload(
                        envelope,
                        f"encrypted_{filename}",
                        {
                            "hash": document_hash,
                            "kind": parsed.document_kind.value,
                            "student_id": parsed.student_id,
                            "issuer": issuer,
                            "envelope_cid": local_cid_for(envelope),
                        },
                        deadline=upload_deadline,
                    )
                except AllProvidersUnavailable as exc:
                    await self.registry.mark_failed(document_hash, "storage_unavailable", token=token)
                    logger.error("Registration queued without storage", extra=log_extra)
                    return Queued(document_hash=document_hash, queue_position=exc.queue_position)

                cid, provider = upload.cid, upload.provider
                storage = self._storage_view(cid, provider, size=upload.size)
                if upload.queued:
                    await self.registry.mark_failed(
                        document_hash, "storage_queued", storage=(cid, provider, sealed_json), token=token
                    )
                    logger.warning("Registration queued", extra={**log_extra, "queue_position": upload.queue_position})
                    return Queued(
                        document_hash=document_hash,
                        queue_position=upload.queue_position,
                        storage={**storage, "queued": True},
                    )

            # 5. Storage location
            await self.registry.mark_uploaded(document_hash, cid, provider, sealed_json, token=token)

            # 6. Anchor
            try:
                receipt = await self.ledger.anchor(
                    document_hash,
                    cid,
                    owner,
                    issuer,
                    {"document_kind": parsed.document_kind.value},
                    deadline=deadline,
                )
            except LedgerError as exc:
                await self.registry.mark_failed(document_hash, f"ledger: {exc.message}", token=token)
                logger.error("Anchoring failed", extra={**log_extra, "error": exc.message})
                return PartialAnchorFailed(document_hash=document_hash, storage=storage, reason=exc.message)

            # 7. Finalize
            record = await self.registry.finalize_anchor(
                document_hash,
                receipt.txn_id,
                receipt.block_height,
                receipt.gas,
                receipt.contract_id,
                token=token,
            )
        except asyncio.CancelledError:
            # Release the claim even though this task is going away
            await asyncio.shield(self._fail_quietly(document_hash, "cancelled", token))
            raise
        except Exception as exc:
            await self._fail_quietly(document_hash, f"{type(exc).__name__}: {exc}", token)
            raise

        logger.info("Document registered", extra={**log_extra, "txn_id": receipt.txn_id, "provider": provider})
        return Registered(
            document_hash=document_hash,
            anchor=receipt,
            storage=storage,
            qr_payload=self.qr_codec.encode(document_hash, receipt.txn_id),
            record=record,
            resumed=claim.resumed,
        )

    async def _envelope_for(self, record: Document, resumed: bool, data: bytes) -> tuple[bytes, str]:
        """
        Envelope and sealed key to upload.

        A resumed record whose envelope was kept locally pushes that same
        envelope again, so a queued copy and the new upload stay identical.
        """
        if resumed and record.sealed_data_key and record.storage_cid:
            try:
                return await self.router.download(record.storage_cid), record.sealed_data_key
            except (NotFoundError, StorageError) as exc:
                logger.warning(
                    "Stored envelope unavailable, sealing again: %s",
                    exc.message,
                    extra={"document_hash": record.document_hash},
                )
        envelope, sealed_key = self.cipher.seal(data)
        return envelope, sealed_key.to_json()

    def _upload_deadline(self, deadline: Deadline) -> Deadline:
        """What is left of ``deadline`` once the ledger call has its share set aside."""
        reserve = min(self.ledger.timeout, self.budget_seconds / 2)
        return Deadline(max(0.0, deadline.remaining() - reserve))

    async def _fail_quietly(self, document_hash: str, reason: str, token: str) -> None:
        """Best effort; the original error is what the caller sees."""
        try:
            record = await self.registry.find(document_hash)
            if (
                record is not None
                and record.status in (DocumentStatus.PENDING.value, DocumentStatus.UPLOADED.value)
                and record.claim_token == token
            ):
                await self.registry.mark_failed(document_hash, reason[:500], token=token)
        except (CredchainError, SQLAlchemyError):
            logger.exception("Could not mark %s failed", document_hash)

    async def handle_drained(self, entry: QueueEntry, pinned: PinnedObject) -> None:
        """Queue drain callback: point the record at the remote copy."""
        document_hash = entry.document_hash
        if not document_hash:
            return
        record = await self.registry.find(document_hash)
        if record is None or record.storage_cid != entry.metadata.get("envelope_cid"):
            return
        await self.registry.update_storage(document_hash, pinned.cid, pinned.provider)
        logger.info(
            "Record repointed to pinned copy",
            extra={"document_hash": document_hash, "cid": pinned.cid, "provider": pinned.provider},
        )


__all__ = [
    "RegistrationOrchestrator",
    "Registered",
    "Queued",
    "PartialAnchorFailed",
    "RegistrationOutcome",
]
