"""
Documents Router
Registration, verification and custody of academic documents.

Endpoints:
- POST   /register                       register a document (multipart)
- POST   /verify                         verify by upload, QR payload or hash
- GET    /mine                           records the caller owns or issued
- GET    /search                         registry search (admin)
- GET    /admin/suspicious-activity      anomaly digest (admin)
- GET    /{document_hash}                custody record (readers)
- GET    /{document_hash}/download       decrypted document (readers)
- POST   /{document_hash}/access         grant a viewer
- DELETE /{document_hash}/access         revoke a viewer
- POST   /{document_hash}/deactivate     soft delete
- GET    /{document_hash}/audit          audit trail
- DELETE /{document_hash}                purge (admin)

Partial outcomes (queued storage, failed anchoring, ledger-less access
changes) answer 207 Multi-Status.
"""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from credchain.core.errors import ValidationError
from credchain.core.identity import Actor, get_actor
from credchain.core.logging_middleware import client_ip
from credchain.models.models import DocumentKind, DocumentStatus, VerificationResult
from credchain.services.custody import DocumentCustodyService
from credchain.services.registration import Registered
from credchain.services.verification import Evidence
from credchain.services.verification_log import HistoryFilter

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_custody(request: Request) -> DocumentCustodyService:
    """The custody facade built in the application lifespan."""
    return request.app.state.services.custody


# =============================================================================
# Schemas
# =============================================================================

class AccessRequest(BaseModel):
    viewer_id: str = Field(..., description="Address to grant access to")


class DeactivateRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=500)


# =============================================================================
# Registration & Verification
# =============================================================================

async def read_upload(request: Request, file: UploadFile, field: str) -> bytes:
    """Read one byte past ``max_upload_bytes`` at most; a larger file is rejected."""
    max_bytes = request.app.state.services.settings.max_upload_bytes
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise ValidationError(f"File exceeds {max_bytes} bytes", field=field)
    return content


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_document(
    request: Request,
    file: UploadFile = File(...),
    metadata: str = Form(..., description="Document metadata as JSON"),
    owner_id: Optional[str] = Form(None, description="Student address; defaults to the issuer"),
    issuer_id: Optional[str] = Form(None, description="Issuer address (administrators only)"),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    """
    Register a document: hash, encrypt, pin, anchor and return the QR payload.

    201 when anchored; 207 when storage was queued or anchoring failed
    (registering the same file again resumes); 409 for a duplicate.
    """
    content = await read_upload(request, file, field="size")

    outcome = await custody.register(
        actor,
        data=content,
        filename=file.filename or "",
        mime_type=file.content_type or "",
        metadata=metadata,
        owner_id=owner_id,
        issuer_id=issuer_id,
    )
    code = status.HTTP_201_CREATED if isinstance(outcome, Registered) else status.HTTP_207_MULTI_STATUS
    return JSONResponse(status_code=code, content=outcome.to_dict())


@router.post("/verify")
async def verify_document(
    request: Request,
    file: Optional[UploadFile] = File(None),
    claimed_hash: Optional[str] = Form(None),
    qr_payload: Optional[str] = Form(None),
    document_hash: Optional[str] = Form(None),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    """
    Public verification. Exactly one of ``file``, ``qr_payload`` or
    ``document_hash``; ``claimed_hash`` only accompanies a file.
    """
    given = [name for name, value in (("file", file), ("qr_payload", qr_payload), ("document_hash", document_hash))
             if value]
    if len(given) != 1:
        raise ValidationError("Provide exactly one of file, qr_payload or document_hash", field="evidence")
    if claimed_hash and file is None:
        raise ValidationError("claimed_hash is only accepted with a file", field="claimed_hash")

    if file is not None:
        evidence = Evidence.upload(await read_upload(request, file, field="file"), claimed_hash=claimed_hash)
    elif qr_payload:
        evidence = Evidence.qr(qr_payload)
    else:
        evidence = Evidence.hash(document_hash)

    outcome = await custody.verify(
        evidence,
        actor=actor,
        source_ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return outcome.to_dict()


# =============================================================================
# Listings & Reports
# =============================================================================

@router.get("/mine")
async def my_documents(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    """Records the caller owns and records the caller issued."""
    listing = await custody.documents_for(actor, limit=limit, skip=skip)
    return {key: [record.to_dict() for record in records] for key, records in listing.items()}


@router.get("/search")
async def search_documents(
    q: Optional[str] = Query(None, max_length=100, description="Student, institution or course text"),
    kind: Optional[DocumentKind] = Query(None),
    document_status: Optional[DocumentStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    records = await custody.search(
        actor,
        text=q,
        kind=kind.value if kind else None,
        status=document_status.value if document_status else None,
        limit=limit,
        skip=skip,
    )
    return {"documents": [record.to_dict() for record in records], "count": len(records), "skip": skip}


@router.get("/admin/suspicious-activity")
async def suspicious_activity(
    window_minutes: Optional[int] = Query(None, ge=1, le=1440),
    threshold: Optional[int] = Query(None, ge=1),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    """Hashes with repeated failed verifications, worst first."""
    return await custody.suspicious_activity(
        actor, window_minutes=window_minutes, threshold=threshold, limit=limit, skip=skip
    )


# =============================================================================
# Single Document
# =============================================================================

@router.get("/{document_hash}")
async def get_document(
    document_hash: str,
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    record = await custody.describe(document_hash, actor)
    return record.to_dict()


@router.get("/{document_hash}/download")
async def download_document(
    document_hash: str,
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    """Decrypted bytes for the owner, the issuer or a granted viewer."""
    fetched = await custody.fetch(document_hash, actor)
    return Response(
        content=fetched.data,
        media_type=fetched.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(fetched.filename)}",
            "X-Document-Hash": fetched.document_hash,
        },
    )


@router.post("/{document_hash}/access")
async def grant_access(
    document_hash: str,
    body: AccessRequest,
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    change = await custody.grant(document_hash, body.viewer_id, actor)
    code = status.HTTP_207_MULTI_STATUS if change.partial else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=change.to_dict())


@router.delete("/{document_hash}/access")
async def revoke_access(
    document_hash: str,
    viewer_id: str = Query(..., description="Address to revoke"),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    change = await custody.revoke(document_hash, viewer_id, actor)
    code = status.HTTP_207_MULTI_STATUS if change.partial else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=change.to_dict())


@router.post("/{document_hash}/deactivate")
async def deactivate_document(
    document_hash: str,
    body: DeactivateRequest,
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    record = await custody.deactivate(document_hash, body.reason, actor)
    return {
        "document_hash": record.document_hash,
        "status": record.status,
        "deactivated_at": record.deactivated_at.isoformat(),
        "deactivated_by": record.deactivated_by,
        "reason": record.deactivation_reason,
    }


@router.get("/{document_hash}/audit")
async def audit_trail(
    document_hash: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    result: Optional[VerificationResult] = Query(None),
    verifier_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    filters = HistoryFilter(
        start=start,
        end=end,
        result=result.value if result else None,
        verifier_id=verifier_id,
        limit=limit,
        skip=skip,
    )
    return await custody.audit_trail(document_hash, actor, filters)


@router.delete("/{document_hash}")
async def purge_document(
    document_hash: str,
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    await custody.purge(document_hash, actor)
    return {"document_hash": document_hash.lower(), "purged": True}
