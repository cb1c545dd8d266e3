"""
Credchain - Document Registry
Persistent custody records keyed by content hash.

Features:
- Hash claim: the primary key makes "at most one record per hash" a
  database guarantee, so concurrent registrations of the same bytes
  cannot both win
- Resume: failed records, and in-flight records whose lease went
  stale, are claimed back with a conditional update
- Claim tokens: every lifecycle write names the lease it holds, so a
  registration that lost its claim cannot overwrite the new owner
- Lifecycle transitions guarded by the expected current status
- Owner / issuer listings, text search, statistics
- Soft delete (deactivate) and administrative purge
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credchain.core.database import session_scope
from credchain.core.errors import ConflictError, DuplicateDocumentError, InternalError, NotFoundError
from credchain.models.models import Document, DocumentStatus, utcnow
from credchain.models.schemas import DocumentMetadata

logger = logging.getLogger(__name__)

# Records a live registration is still driving (until its lease goes stale)
IN_FLIGHT_STATUSES = (DocumentStatus.PENDING.value, DocumentStatus.UPLOADED.value)


@dataclass
class FileInfo:
    original_filename: str
    mime_type: str
    size: int


@dataclass
class ClaimResult:
    record: Document
    token: str
    resumed: bool = False


class DocumentRegistry:
    """Repository over the ``documents`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        claim_ttl_seconds: float = 300.0,
    ):
        self._sessions = session_factory
        self._clock = clock
        self.claim_ttl_seconds = claim_ttl_seconds

    # =========================================================================
    # Queries
    # =========================================================================

    async def find(self, document_hash: str) -> Optional[Document]:
        """Any record, deactivated included."""
        async with session_scope(self._sessions) as db:
            return await db.get(Document, document_hash)

    async def find_active(self, document_hash: str) -> Optional[Document]:
        record = await self.find(document_hash)
        if record is None or not record.is_active:
            return None
        return record

    async def get(self, document_hash: str) -> Document:
        record = await self.find(document_hash)
        if record is None:
            raise NotFoundError("Document", document_hash)
        return record

    async def _list(self, *criteria, limit: int = 50, skip: int = 0) -> list[Document]:
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                select(Document)
                .where(*criteria)
                .order_by(Document.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_by_owner(
        self, owner_id: str, include_inactive: bool = False, limit: int = 50, skip: int = 0
    ) -> list[Document]:
        criteria = [Document.owner_id == owner_id.lower()]
        if not include_inactive:
            criteria.append(Document.status != DocumentStatus.DEACTIVATED.value)
        return await self._list(*criteria, limit=limit, skip=skip)

    async def list_by_issuer(
        self, issuer_id: str, include_inactive: bool = False, limit: int = 50, skip: int = 0
    ) -> list[Document]:
        criteria = [Document.issuer_id == issuer_id.lower()]
        if not include_inactive:
            criteria.append(Document.status != DocumentStatus.DEACTIVATED.value)
        return await self._list(*criteria, limit=limit, skip=skip)

    async def search(
        self,
        text: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Document]:
        """Case-insensitive substring search over the academic metadata."""
        criteria = []
        if text:
            pattern = f"%{text.lower()}%"
            criteria.append(or_(
                func.lower(Document.student_name).like(pattern),
                func.lower(Document.student_id).like(pattern),
                func.lower(Document.institution_name).like(pattern),
                func.lower(Document.course).like(pattern),
            ))
        if kind:
            criteria.append(Document.document_kind == kind)
        if status:
            criteria.append(Document.status == status)
        else:
            criteria.append(Document.status != DocumentStatus.DEACTIVATED.value)
        return await self._list(*criteria, limit=limit, skip=skip)

    async def statistics(self) -> dict[str, Any]:
        async with session_scope(self._sessions) as db:
            by_status = dict((await db.execute(
                select(Document.status, func.count()).group_by(Document.status)
            )).all())
            by_kind = dict((await db.execute(
                select(Document.document_kind, func.count()).group_by(Document.document_kind)
            )).all())
            verifications = (await db.execute(
                select(func.coalesce(func.sum(Document.verification_count), 0))
            )).scalar_one()
        return {
            "total_documents": sum(by_status.values()),
            "by_status": by_status,
            "by_kind": by_kind,
            "total_verifications": int(verifications),
        }

    # =========================================================================
    # Commands
    # =========================================================================

    async def claim_hash(
        self,
        document_hash: str,
        metadata: DocumentMetadata,
        file_info: FileInfo,
        owner_id: str,
        issuer_id: str,
        uploader_id: str,
    ) -> ClaimResult:
        """
        Insert a pending record for ``document_hash`` and take its lease.

        A record from the same issuer is claimed back instead (``resumed``)
        when it failed, or when it is pending/uploaded but its lease is
        older than ``claim_ttl_seconds`` (the registration driving it died).
        Anything else is a duplicate.
        """
        now = self._clock()
        token = uuid.uuid4().hex
        record = Document(
            document_hash=document_hash,
            student_name=metadata.student_name,
            student_id=metadata.student_id,
            institution_name=metadata.institution_name,
            document_kind=metadata.document_kind.value,
            issue_date=metadata.issue_date,
            expiry_date=metadata.expiry_date,
            grade=metadata.grade,
            course=metadata.course,
            description=metadata.description,
            original_filename=file_info.original_filename,
            mime_type=file_info.mime_type,
            size=file_info.size,
            owner_id=owner_id,
            issuer_id=issuer_id,
            uploader_id=uploader_id,
            viewer_set=[],
            status=DocumentStatus.PENDING.value,
            claim_token=token,
            claimed_at=now,
            created_at=now,
            updated_at=now,
            verification_count=0,
        )
        try:
            async with session_scope(self._sessions) as db:
                db.add(record)
            return ClaimResult(record=record, token=token, resumed=False)
        except IntegrityError:
            pass

        stale_before = now - timedelta(seconds=self.claim_ttl_seconds)
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.document_hash == document_hash,
                    Document.issuer_id == issuer_id,
                    or_(
                        Document.status == DocumentStatus.FAILED.value,
                        and_(
                            Document.status.in_(IN_FLIGHT_STATUSES),
                            or_(Document.claimed_at.is_(None), Document.claimed_at < stale_before),
                        ),
                    ),
                )
                .values(
                    status=DocumentStatus.PENDING.value,
                    failure_reason=None,
                    claim_token=token,
                    claimed_at=now,
                    updated_at=now,
                )
            )
            resumed = result.rowcount == 1

        if not resumed:
            raise DuplicateDocumentError(document_hash)
        logger.info("Resuming registration", extra={"document_hash": document_hash})
        return ClaimResult(record=await self.get(document_hash), token=token, resumed=True)

    async def _transition(
        self,
        document_hash: str,
        expected: Iterable[str],
        action: str,
        token: Optional[str] = None,
        **values,
    ) -> Document:
        values.setdefault("updated_at", self._clock())
        criteria = [Document.document_hash == document_hash, Document.status.in_(tuple(expected))]
        if token is not None:
            criteria.append(Document.claim_token == token)
        async with session_scope(self._sessions) as db:
            result = await db.execute(update(Document).where(*criteria).values(**values))
            if result.rowcount != 1:
                raise InternalError(f"Cannot {action} document {document_hash}: unexpected status or lost claim")
        return await self.get(document_hash)

    async def mark_uploaded(
        self, document_hash: str, cid: str, provider: str, sealed_key: str, token: Optional[str] = None
    ) -> Document:
        return await self._transition(
            document_hash,
            [DocumentStatus.PENDING.value],
            "mark uploaded",
            token=token,
            status=DocumentStatus.UPLOADED.value,
            storage_cid=cid,
            storage_provider=provider,
            sealed_data_key=sealed_key,
        )

    async def finalize_anchor(
        self,
        document_hash: str,
        txn_id: str,
        block_height: Optional[int] = None,
        gas: Optional[int] = None,
        contract_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Document:
        if not txn_id:
            raise InternalError("Anchored records need a transaction id")
        return await self._transition(
            document_hash,
            [DocumentStatus.UPLOADED.value],
            "anchor",
            token=token,
            status=DocumentStatus.ANCHORED.value,
            anchor_txn_id=txn_id,
            anchor_block_height=block_height,
            anchor_gas=gas,
            anchor_contract_id=contract_id,
            failure_reason=None,
            claim_token=None,
        )

    async def mark_failed(
        self,
        document_hash: str,
        reason: str,
        storage: Optional[tuple[str, str, str]] = None,
        token: Optional[str] = None,
    ) -> Document:
        """Park a record as failed; ``storage`` is (cid, provider, sealed_key) when bytes were stored."""
        values: dict[str, Any] = {"status": DocumentStatus.FAILED.value, "failure_reason": reason, "claim_token": None}
        if storage is not None:
            values.update(storage_cid=storage[0], storage_provider=storage[1], sealed_data_key=storage[2])
        return await self._transition(
            document_hash,
            IN_FLIGHT_STATUSES,
            "fail",
            token=token,
            **values,
        )

    async def update_storage(self, document_hash: str, cid: str, provider: str) -> Optional[Document]:
        """Repoint a record at a new copy of the same envelope (queue drain)."""
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(Document)
                .where(Document.document_hash == document_hash)
                .values(storage_cid=cid, storage_provider=provider, updated_at=self._clock())
            )
            if result.rowcount != 1:
                return None
        return await self.find(document_hash)

    async def record_verification(self, document_hash: str, authentic: bool) -> Document:
        """Bump the counter; the first authentic verification promotes anchored to verified."""
        now = self._clock()
        async with session_scope(self._sessions) as db:
            await db.execute(
                update(Document)
                .where(Document.document_hash == document_hash)
                .values(
                    verification_count=Document.verification_count + 1,
                    last_verified_at=now,
                )
            )
            if authentic:
                await db.execute(
                    update(Document)
                    .where(
                        Document.document_hash == document_hash,
                        Document.status == DocumentStatus.ANCHORED.value,
                    )
                    .values(status=DocumentStatus.VERIFIED.value, updated_at=now)
                )
        return await self.get(document_hash)

    async def add_viewer(self, document_hash: str, viewer_id: str) -> Document:
        async with session_scope(self._sessions) as db:
            record = await db.get(Document, document_hash, with_for_update=True)
            if record is None or not record.is_active:
                raise NotFoundError("Document", document_hash)
            viewers = list(record.viewer_set or [])
            if viewer_id in viewers:
                raise ConflictError("Viewer already has access")
            viewers.append(viewer_id)
            record.viewer_set = viewers
            record.updated_at = self._clock()
        return record

    async def remove_viewer(self, document_hash: str, viewer_id: str) -> Document:
        async with session_scope(self._sessions) as db:
            record = await db.get(Document, document_hash, with_for_update=True)
            if record is None or not record.is_active:
                raise NotFoundError("Document", document_hash)
            viewers = list(record.viewer_set or [])
            if viewer_id not in viewers:
                raise NotFoundError("Viewer grant", viewer_id)
            viewers.remove(viewer_id)
            record.viewer_set = viewers
            record.updated_at = self._clock()
        return record

    async def deactivate(self, document_hash: str, reason: str, deactivated_by: str) -> Document:
        now = self._clock()
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.document_hash == document_hash,
                    Document.status != DocumentStatus.DEACTIVATED.value,
                )
                .values(
                    status_before_deactivation=Document.status,
                    status=DocumentStatus.DEACTIVATED.value,
                    deactivation_reason=reason,
                    deactivated_at=now,
                    deactivated_by=deactivated_by,
                    updated_at=now,
                )
            )
            changed = result.rowcount == 1
        if not changed:
            record = await self.find(document_hash)
            if record is None:
                raise NotFoundError("Document", document_hash)
            raise ConflictError("Document is already deactivated")
        return await self.get(document_hash)

    async def purge(self, document_hash: str) -> bool:
        """Hard delete (administrative). Verification history is kept."""
        async with session_scope(self._sessions) as db:
            result = await db.execute(delete(Document).where(Document.document_hash == document_hash))
            return result.rowcount == 1
