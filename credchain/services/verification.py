"""
Credchain - Verification Engine
Decides whether presented evidence matches a registered document.

Evidence is exactly one of:
- upload: the document bytes (optionally with the hash they claim to be)
- qr:     a scanned QR payload (hash + anchoring transaction)
- hash:   a bare content hash

Decision:
- not_found  no active record for the hash
- authentic  hashes agree, the ledger agrees (or could not be asked),
             the stored bytes are intact (when re-checked) and the record
             is anchored or verified
- tampered   anything else

Every attempt is logged and run through the anomaly detector. Tampered
responses carry diagnostics only, never document metadata.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from credchain.core.errors import (
    AuthFailure,
    LedgerError,
    NotFoundError,
    OperationTimeout,
    StorageError,
    ValidationError,
)
from credchain.core.identity import ANONYMOUS
from credchain.core.timeout import Deadline
from credchain.models.models import (
    VERIFIABLE_STATUSES,
    Document,
    VerificationMethod,
    VerificationResult,
    utcnow,
)
from credchain.services.cipher import EnvelopeCipher, SealedKey
from credchain.services.document_registry import DocumentRegistry
from credchain.services.hasher import digests_equal, hash_bytes, normalize_hash
from credchain.services.ledger import LedgerCoordinator
from credchain.services.qr_payload import QRCodec, txn_ids_equal
from credchain.services.storage import StorageRouter
from credchain.services.verification_log import SuspicionReport, VerificationAttempt, VerificationLogService

logger = logging.getLogger(__name__)


# Ledger / byte re-check states
CHECK_VALID = "valid"
CHECK_INVALID = "invalid"
CHECK_UNKNOWN = "unknown"
CHECK_SKIPPED = "skipped"


@dataclass(frozen=True)
class Evidence:
    method: VerificationMethod
    data: Optional[bytes] = None
    claimed_hash: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def upload(cls, data: bytes, claimed_hash: Optional[str] = None) -> "Evidence":
        if not data:
            raise ValidationError("Uploaded file is empty", field="file")
        return cls(method=VerificationMethod.UPLOAD, data=bytes(data), claimed_hash=claimed_hash)

    @classmethod
    def hash(cls, value: str) -> "Evidence":
        return cls(method=VerificationMethod.HASH, value=value)

    @classmethod
    def qr(cls, payload: str) -> "Evidence":
        return cls(method=VerificationMethod.QR, value=payload)


@dataclass
class VerificationOutcome:
    result: VerificationResult
    document_hash: str
    method: VerificationMethod
    verified_at: datetime
    record: Optional[Document] = None
    gateway_url: Optional[str] = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
    suspicion: Optional[SuspicionReport] = None
    verifier: str = ANONYMOUS

    @property
    def authentic(self) -> bool:
        return self.result == VerificationResult.AUTHENTIC

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "result": self.result.value,
            "document_hash": self.document_hash,
            "method": self.method.value,
            "verified_at": self.verified_at.isoformat(),
            "verifier": self.verifier,
        }
        if self.result == VerificationResult.AUTHENTIC and self.record is not None:
            record = self.record
            data["verification_count"] = record.verification_count
            data["document"] = {
                **record.metadata_dict(),
                "status": record.status,
                "issuer_id": record.issuer_id,
                "owner_id": record.owner_id,
                "created_at": record.created_at.isoformat() if record.created_at else None,
                "verification_count": record.verification_count,
            }
            data["anchor"] = record.anchor_dict()
            data["storage"] = {
                "cid": record.storage_cid,
                "provider": record.storage_provider,
                "gateway_url": self.gateway_url,
            }
            data["checks"] = {
                "ledger": self.diagnostics.get("ledger"),
                "bytes": self.diagnostics.get("bytes"),
            }
        elif self.result == VerificationResult.TAMPERED:
            details = {
                "hash_match": self.diagnostics.get("hash_match"),
                "ledger_valid": _as_flag(self.diagnostics.get("ledger")),
                "file_integrity_ok": _as_flag(self.diagnostics.get("bytes")),
            }
            if "anchor_match" in self.diagnostics:
                details["anchor_match"] = self.diagnostics["anchor_match"]
            data["details"] = details

        if self.suspicion is not None and self.suspicion.suspicious and self.record is not None:
            data["warning"] = {
                "message": "Suspicious verification activity detected for this document",
                "failed_attempts": self.suspicion.failed_attempts,
                "window_minutes": self.suspicion.window_minutes,
                "severity": self.suspicion.severity,
            }
        return data


def _as_flag(state: Optional[str]) -> Optional[bool]:
    """valid -> True, invalid -> False, unknown/skipped -> None."""
    if state == CHECK_VALID:
        return True
    if state == CHECK_INVALID:
        return False
    return None


class VerificationEngine:
    def __init__(
        self,
        registry: DocumentRegistry,
        log_service: VerificationLogService,
        ledger: LedgerCoordinator,
        router: StorageRouter,
        cipher: EnvelopeCipher,
        qr_codec: QRCodec,
        ledger_check: bool = True,
        recheck_bytes: bool = False,
        window_minutes: int = 10,
        threshold: int = 5,
        budget_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.log_service = log_service
        self.ledger = ledger
        self.router = router
        self.cipher = cipher
        self.qr_codec = qr_codec
        self.ledger_check = ledger_check
        self.recheck_bytes = recheck_bytes
        self.window_minutes = window_minutes
        self.threshold = threshold
        self.budget_seconds = budget_seconds
        self._clock = clock

    async def _check_ledger(self, record: Document, deadline: Deadline) -> str:
        if not self.ledger_check:
            return CHECK_SKIPPED
        try:
            lookup = await self.ledger.lookup(record.document_hash, deadline=deadline)
        except LedgerError as exc:
            logger.warning(
                "Ledger check unavailable: %s",
                exc.message,
                extra={"document_hash": record.document_hash},
            )
            return CHECK_UNKNOWN
        return CHECK_VALID if lookup.valid else CHECK_INVALID

    async def _check_bytes(self, record: Document) -> str:
        if not self.recheck_bytes:
            return CHECK_SKIPPED
        if not record.storage_cid or not record.sealed_data_key:
            return CHECK_UNKNOWN
        try:
            envelope = await self.router.download(record.storage_cid)
        except (StorageError, NotFoundError, OperationTimeout) as exc:
            logger.warning(
                "Stored bytes unavailable for re-check: %s",
                exc.message,
                extra={"document_hash": record.document_hash},
            )
            return CHECK_UNKNOWN
        try:
            plaintext = self.cipher.open(envelope, SealedKey.from_json(record.sealed_data_key))
        except AuthFailure:
            return CHECK_INVALID
        return CHECK_VALID if self.cipher.verify_integrity(plaintext, record.document_hash) else CHECK_INVALID

    async def verify(
        self,
        evidence: Evidence,
        verifier_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationOutcome:
        deadline = Deadline(self.budget_seconds)
        diagnostics: dict[str, Any] = {"ledger": CHECK_SKIPPED, "bytes": CHECK_SKIPPED}
        computed_hash: Optional[str] = None
        presented_txn: Optional[str] = None

        # 1. Hash to look up
        if evidence.method == VerificationMethod.UPLOAD:
            computed_hash = hash_bytes(evidence.data)
            document_hash = (
                normalize_hash(evidence.claimed_hash, "claimed_hash") if evidence.claimed_hash else computed_hash
            )
        elif evidence.method == VerificationMethod.QR:
            payload = self.qr_codec.decode(evidence.value)
            document_hash = payload.document_hash
            presented_txn = payload.anchor_txn_id
        else:
            document_hash = normalize_hash(evidence.value)

        # 2. Lookup
        record = await self.registry.find_active(document_hash)

        if record is None:
            result = VerificationResult.NOT_FOUND
            logger.info("Document not found for verification", extra={"document_hash": document_hash})
        else:
            # 3. Ledger
            diagnostics["ledger"] = await self._check_ledger(record, deadline)

            # 4. Evidence against the record
            if computed_hash is not None:
                hash_match = digests_equal(computed_hash, record.document_hash)
            elif presented_txn is not None:
                anchor_match = bool(record.anchor_txn_id) and txn_ids_equal(presented_txn, record.anchor_txn_id)
                diagnostics["anchor_match"] = anchor_match
                hash_match = anchor_match
            else:
                hash_match = True
            diagnostics["hash_match"] = hash_match
            diagnostics["bytes"] = await self._check_bytes(record)

            # 5. Decision
            authentic = (
                hash_match
                and diagnostics["ledger"] != CHECK_INVALID
                and diagnostics["bytes"] != CHECK_INVALID
                and record.status in VERIFIABLE_STATUSES
            )
            result = VerificationResult.AUTHENTIC if authentic else VerificationResult.TAMPERED
            diagnostics["status"] = record.status

            # 8. Counter (and anchored -> verified on first authentic)
            record = await self.registry.record_verification(record.document_hash, authentic)

        outcome = VerificationOutcome(
            result=result,
            document_hash=document_hash,
            method=evidence.method,
            verified_at=self._clock(),
            record=record,
            gateway_url=self.router.gateway_url(record.storage_cid) if record and record.storage_cid else None,
            diagnostics=diagnostics,
            verifier=(verifier_id or ANONYMOUS).lower(),
        )

        # 9. Log and detect
        await self.log_service.log(VerificationAttempt(
            document_hash=document_hash,
            method=evidence.method.value,
            result=result.value,
            verifier_id=verifier_id,
            source_ip=source_ip,
            user_agent=user_agent,
            ledger_checked=diagnostics["ledger"],
            bytes_rechecked=diagnostics["bytes"],
            anchor_txn_id=presented_txn or (record.anchor_txn_id if record else None),
            timestamp=outcome.verified_at,
        ))
        try:
            outcome.suspicion = await self.log_service.detect_suspicious(
                document_hash, self.window_minutes, self.threshold
            )
        except SQLAlchemyError as exc:
            logger.error("Anomaly detection failed: %s", exc, extra={"document_hash": document_hash})

        if outcome.suspicion is not None and outcome.suspicion.suspicious:
            logger.warning(
                "Suspicious verification activity",
                extra={
                    "document_hash": document_hash,
                    "failed_attempts": outcome.suspicion.failed_attempts,
                    "severity": outcome.suspicion.severity,
                },
            )

        logger.info(
            "Verification completed",
            extra={"document_hash": document_hash, "result": result.value, "method": evidence.method.value},
        )
        return outcome
