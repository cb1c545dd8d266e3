"""
Credchain - Verification Log & Anomaly Detector
Append-only record of every verification attempt, plus the failure-rate
detector that flags hashes being probed.

A failed attempt is one whose result is ``tampered`` or ``not_found``.
A hash is suspicious when it has at least ``threshold`` failed attempts
in the last ``window_minutes``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credchain.core.database import session_scope
from credchain.core.identity import ANONYMOUS
from credchain.models.models import Document, VerificationLog, VerificationResult, utcnow

logger = logging.getLogger(__name__)

FAILED_RESULTS = (VerificationResult.TAMPERED.value, VerificationResult.NOT_FOUND.value)


def _naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class VerificationAttempt:
    document_hash: str
    method: str
    result: str
    verifier_id: Optional[str] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    ledger_checked: str = "skipped"
    bytes_rechecked: str = "skipped"
    anchor_txn_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class SuspicionReport:
    suspicious: bool
    failed_attempts: int
    window_minutes: int
    threshold: int

    @property
    def severity(self) -> Optional[str]:
        if not self.suspicious:
            return None
        return "high" if self.failed_attempts >= self.threshold * 2 else "medium"

    def to_dict(self) -> dict:
        return {
            "suspicious": self.suspicious,
            "failed_attempts": self.failed_attempts,
            "window_minutes": self.window_minutes,
            "threshold": self.threshold,
            "severity": self.severity,
        }


@dataclass
class HistoryFilter:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    result: Optional[str] = None
    verifier_id: Optional[str] = None
    limit: int = 50
    skip: int = 0

    def criteria(self) -> list:
        criteria = []
        if self.start is not None:
            criteria.append(VerificationLog.timestamp >= _naive_utc(self.start))
        if self.end is not None:
            criteria.append(VerificationLog.timestamp <= _naive_utc(self.end))
        if self.result:
            criteria.append(VerificationLog.result == self.result)
        if self.verifier_id:
            criteria.append(VerificationLog.verifier_id == self.verifier_id.lower())
        return criteria


@dataclass
class SuspiciousDigest:
    window_minutes: int
    threshold: int
    total_suspicious: int
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        high = sum(1 for i in self.items if i["severity"] == "high")
        return {
            "suspicious_documents": self.items,
            "summary": {
                "total_suspicious": self.total_suspicious,
                "returned": len(self.items),
                "high_severity": high,
                "medium_severity": len(self.items) - high,
                "window_minutes": self.window_minutes,
                "threshold": self.threshold,
            },
        }


class VerificationLogService:
    """Writes and queries ``verification_logs``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self._clock = clock

    async def log(self, attempt: VerificationAttempt) -> Optional[VerificationLog]:
        """Append an attempt. A storage failure is logged, never raised."""
        entry = VerificationLog(
            document_hash=attempt.document_hash,
            verifier_id=(attempt.verifier_id or ANONYMOUS).lower(),
            source_ip=attempt.source_ip,
            user_agent=attempt.user_agent[:500] if attempt.user_agent else None,
            method=attempt.method,
            result=attempt.result,
            timestamp=attempt.timestamp or self._clock(),
            ledger_checked=attempt.ledger_checked,
            bytes_rechecked=attempt.bytes_rechecked,
            anchor_txn_id=attempt.anchor_txn_id,
        )
        try:
            async with session_scope(self._sessions) as db:
                db.add(entry)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to log verification: %s",
                exc,
                extra={"document_hash": attempt.document_hash, "result": attempt.result},
            )
            return None
        return entry

    async def detect_suspicious(
        self, document_hash: str, window_minutes: int = 10, threshold: int = 5
    ) -> SuspicionReport:
        since = self._clock() - timedelta(minutes=window_minutes)
        async with session_scope(self._sessions) as db:
            failed = (await db.execute(
                select(func.count())
                .select_from(VerificationLog)
                .where(
                    VerificationLog.document_hash == document_hash,
                    VerificationLog.result.in_(FAILED_RESULTS),
                    VerificationLog.timestamp >= since,
                )
            )).scalar_one()
        return SuspicionReport(
            suspicious=failed >= threshold,
            failed_attempts=failed,
            window_minutes=window_minutes,
            threshold=threshold,
        )

    async def history(self, document_hash: str, filters: Optional[HistoryFilter] = None) -> list[VerificationLog]:
        """Newest first."""
        filters = filters or HistoryFilter()
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                select(VerificationLog)
                .where(VerificationLog.document_hash == document_hash, *filters.criteria())
                .order_by(VerificationLog.timestamp.desc(), VerificationLog.id.desc())
                .offset(filters.skip)
                .limit(filters.limit)
            )
            return list(result.scalars().all())

    async def statistics(self, document_hash: str) -> dict[str, Any]:
        async with session_scope(self._sessions) as db:
            by_result = dict((await db.execute(
                select(VerificationLog.result, func.count())
                .where(VerificationLog.document_hash == document_hash)
                .group_by(VerificationLog.result)
            )).all())
            last = (await db.execute(
                select(VerificationLog)
                .where(VerificationLog.document_hash == document_hash)
                .order_by(VerificationLog.timestamp.desc(), VerificationLog.id.desc())
                .limit(1)
            )).scalar_one_or_none()
        return {
            "total": sum(by_result.values()),
            "by_result": by_result,
            "last_verification": {
                "timestamp": last.timestamp.isoformat(),
                "result": last.result,
            } if last else None,
        }

    async def suspicious_digest(
        self,
        window_minutes: int = 10,
        threshold: int = 5,
        limit: int = 50,
        skip: int = 0,
        find_document: Optional[Callable[[str], Awaitable[Optional[Document]]]] = None,
    ) -> SuspiciousDigest:
        """Hashes over the failure threshold, worst first, with document context."""
        since = self._clock() - timedelta(minutes=window_minutes)
        window = (
            VerificationLog.result.in_(FAILED_RESULTS),
            VerificationLog.timestamp >= since,
        )
        failed = func.count().label("failed_attempts")
        grouped = (
            select(
                VerificationLog.document_hash,
                failed,
                func.count(distinct(VerificationLog.verifier_id)).label("unique_verifiers"),
                func.min(VerificationLog.timestamp).label("first_attempt"),
                func.max(VerificationLog.timestamp).label("last_attempt"),
            )
            .where(*window)
            .group_by(VerificationLog.document_hash)
            .having(func.count() >= threshold)
        )

        async with session_scope(self._sessions) as db:
            total = (await db.execute(
                select(func.count()).select_from(grouped.subquery())
            )).scalar_one()
            rows = (await db.execute(
                grouped.order_by(failed.desc(), VerificationLog.document_hash).offset(skip).limit(limit)
            )).all()
            methods: dict[str, list[str]] = {}
            if rows:
                method_rows = (await db.execute(
                    select(VerificationLog.document_hash, VerificationLog.method)
                    .where(*window, VerificationLog.document_hash.in_([r.document_hash for r in rows]))
                    .distinct()
                )).all()
                for document_hash, method in method_rows:
                    methods.setdefault(document_hash, []).append(method)

        items = []
        for row in rows:
            high = row.failed_attempts >= threshold * 2
            item = {
                "document_hash": row.document_hash,
                "failed_attempts": row.failed_attempts,
                "unique_verifiers": row.unique_verifiers,
                "verification_methods": sorted(methods.get(row.document_hash, [])),
                "time_window": {
                    "first_attempt": row.first_attempt.isoformat(),
                    "last_attempt": row.last_attempt.isoformat(),
                    "duration_minutes": round((row.last_attempt - row.first_attempt).total_seconds() / 60),
                },
                "severity": "high" if high else "medium",
                "recommendation": (
                    "Immediate investigation recommended - possible targeted attack"
                    if high else "Monitor for continued suspicious activity"
                ),
                "document": {"exists": False},
            }
            if find_document is not None:
                record = await find_document(row.document_hash)
                if record is not None:
                    item["document"] = {
                        "exists": True,
                        "metadata": record.metadata_dict(),
                        "issuer_id": record.issuer_id,
                        "owner_id": record.owner_id,
                        "status": record.status,
                        "created_at": record.created_at.isoformat() if record.created_at else None,
                    }
            items.append(item)

        return SuspiciousDigest(
            window_minutes=window_minutes,
            threshold=threshold,
            total_suspicious=total,
            items=items,
        )
