"""
Credchain Database Models
SQLAlchemy ORM models for custody records and verification attempts.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from credchain.core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (what SQLite hands back on read)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================

class DocumentStatus(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    ANCHORED = "anchored"
    VERIFIED = "verified"
    FAILED = "failed"
    DEACTIVATED = "deactivated"


class DocumentKind(str, Enum):
    DEGREE = "degree"
    CERTIFICATE = "certificate"
    TRANSCRIPT = "transcript"
    DIPLOMA = "diploma"
    OTHER = "other"


class VerificationMethod(str, Enum):
    UPLOAD = "upload"
    QR = "qr"
    HASH = "hash"


class VerificationResult(str, Enum):
    AUTHENTIC = "authentic"
    TAMPERED = "tampered"
    NOT_FOUND = "not_found"


# Statuses a verification may call authentic
VERIFIABLE_STATUSES = {DocumentStatus.ANCHORED.value, DocumentStatus.VERIFIED.value}


# =============================================================================
# Document Record
# =============================================================================

class Document(Base):
    """
    Custody record for one registered document.

    The content hash is the identity: at most one row per hash, ever.
    Rows are soft-deleted through the deactivated status; only the
    administrative purge removes them.
    """
    __tablename__ = "documents"

    document_hash: Mapped[str] = mapped_column(String(66), primary_key=True)

    # Off-chain storage
    storage_cid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    storage_provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sealed_data_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Academic metadata
    student_name: Mapped[str] = mapped_column(String(100))
    student_id: Mapped[str] = mapped_column(String(50), index=True)
    institution_name: Mapped[str] = mapped_column(String(200))
    document_kind: Mapped[str] = mapped_column(String(20), index=True)
    issue_date: Mapped[date] = mapped_column(Date)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    grade: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    course: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # File info
    original_filename: Mapped[str] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(100))
    size: Mapped[int] = mapped_column(Integer)

    # Ledger anchor
    anchor_txn_id: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    anchor_block_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    anchor_gas: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    anchor_contract_id: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Access (addresses stored lowercase)
    owner_id: Mapped[str] = mapped_column(String(42), index=True)
    issuer_id: Mapped[str] = mapped_column(String(42), index=True)
    uploader_id: Mapped[str] = mapped_column(String(42))
    viewer_set: Mapped[list] = mapped_column(JSON, default=list)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), index=True, default=DocumentStatus.PENDING.value)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Lease held by the registration currently driving the record
    claim_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status_before_deactivation: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    deactivation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deactivated_by: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    verification_count: Mapped[int] = mapped_column(Integer, default=0)
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status != DocumentStatus.DEACTIVATED.value

    def metadata_dict(self) -> dict[str, Any]:
        return {
            "student_name": self.student_name,
            "student_id": self.student_id,
            "institution_name": self.institution_name,
            "document_kind": self.document_kind,
            "issue_date": self.issue_date.isoformat() if self.issue_date else None,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "grade": self.grade,
            "course": self.course,
            "description": self.description,
            "original_filename": self.original_filename,
            "mime_type": self.mime_type,
            "size": self.size,
        }

    def anchor_dict(self) -> Optional[dict[str, Any]]:
        if not self.anchor_txn_id:
            return None
        return {
            "txn_id": self.anchor_txn_id,
            "block_height": self.anchor_block_height,
            "gas": self.anchor_gas,
            "contract_id": self.anchor_contract_id,
        }

    def to_dict(self) -> dict[str, Any]:
        """Caller-facing view. The sealed data key never leaves the service."""
        return {
            "document_hash": self.document_hash,
            "status": self.status,
            "metadata": self.metadata_dict(),
            "storage": {"cid": self.storage_cid, "provider": self.storage_provider},
            "anchor": self.anchor_dict(),
            "owner_id": self.owner_id,
            "issuer_id": self.issuer_id,
            "uploader_id": self.uploader_id,
            "viewer_set": list(self.viewer_set or []),
            "failure_reason": self.failure_reason,
            "verification_count": self.verification_count,
            "last_verified_at": self.last_verified_at.isoformat() if self.last_verified_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deactivation": {
                "reason": self.deactivation_reason,
                "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
                "deactivated_by": self.deactivated_by,
            } if self.deactivated_at else None,
        }


# =============================================================================
# Verification Attempts (append-only)
# =============================================================================

class VerificationLog(Base):
    """One verification attempt, whatever its outcome."""
    __tablename__ = "verification_logs"
    __table_args__ = (
        Index("ix_verification_logs_hash_time", "document_hash", "timestamp"),
        Index("ix_verification_logs_result_time", "result", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_hash: Mapped[str] = mapped_column(String(66))
    verifier_id: Mapped[str] = mapped_column(String(42), default="anonymous", index=True)
    source_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    method: Mapped[str] = mapped_column(String(10))
    result: Mapped[str] = mapped_column(String(20))
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    ledger_checked: Mapped[str] = mapped_column(String(10), default="skipped")  # valid, invalid, unknown, skipped
    bytes_rechecked: Mapped[str] = mapped_column(String(10), default="skipped")
    anchor_txn_id: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_hash": self.document_hash,
            "verifier_id": self.verifier_id,
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "method": self.method,
            "result": self.result,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "ledger_checked": self.ledger_checked,
            "bytes_rechecked": self.bytes_rechecked,
            "anchor_txn_id": self.anchor_txn_id,
        }
