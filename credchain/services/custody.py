"""
Credchain - Document Custody Service
The operations the outside world calls, wired from settings.

Operations:
- register / verify
- fetch (decrypt for an authorized reader)
- grant / revoke viewer access (off-ledger first, ledger best effort)
- deactivate (soft delete)
- audit_trail, suspicious_activity, search, documents_for, purge
- health, queue_status, drain_queue

build_services() assembles every component from Settings; the FastAPI
lifespan and the CLI both go through it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from credchain.core.config import Settings
from credchain.core.database import build_engine, build_session_factory, init_db
from credchain.core.errors import (
    AuthFailure,
    ConflictError,
    InternalError,
    LedgerError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from credchain.core.identity import Actor, normalize_address
from credchain.models.models import Document, utcnow
from credchain.services.access_control import require_access, require_manage
from credchain.services.cipher import EnvelopeCipher, MasterKey, SealedKey
from credchain.services.document_registry import DocumentRegistry
from credchain.services.hasher import normalize_hash
from credchain.services.ledger import HttpLedgerClient, LedgerClient, LedgerCoordinator
from credchain.services.qr_payload import QRCodec
from credchain.services.registration import RegistrationOrchestrator, RegistrationOutcome
from credchain.services.storage import DrainReport, StorageRouter, build_router
from credchain.services.verification import Evidence, VerificationEngine, VerificationOutcome
from credchain.services.verification_log import HistoryFilter, VerificationLogService

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 10
MAX_REASON_LENGTH = 500


@dataclass
class FetchedDocument:
    document_hash: str
    data: bytes
    filename: str
    mime_type: str


@dataclass
class AccessChange:
    """Result of a grant/revoke. ``ledger_error`` set means multi-status."""
    document_hash: str
    viewer_id: str
    action: str
    viewer_set: list[str]
    ledger_txn_id: Optional[str] = None
    ledger_error: Optional[str] = None

    @property
    def partial(self) -> bool:
        return self.ledger_error is not None

    def to_dict(self) -> dict:
        data = {
            "document_hash": self.document_hash,
            "viewer_id": self.viewer_id,
            "action": self.action,
            "viewer_set": self.viewer_set,
            "ledger_txn_id": self.ledger_txn_id,
        }
        if self.partial:
            data["warning"] = f"Access updated off-ledger only: {self.ledger_error}"
        return data


class DocumentCustodyService:
    def __init__(
        self,
        registry: DocumentRegistry,
        log_service: VerificationLogService,
        router: StorageRouter,
        ledger: LedgerCoordinator,
        cipher: EnvelopeCipher,
        orchestrator: RegistrationOrchestrator,
        engine: VerificationEngine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        window_minutes: int = 10,
        threshold: int = 5,
    ):
        self.registry = registry
        self.log_service = log_service
        self.router = router
        self.ledger = ledger
        self.cipher = cipher
        self.orchestrator = orchestrator
        self.engine = engine
        self._sessions = session_factory
        self.window_minutes = window_minutes
        self.threshold = threshold

    # =========================================================================
    # Register / Verify
    # =========================================================================

    async def register(
        self,
        actor: Actor,
        data: bytes,
        filename: str,
        mime_type: str,
        metadata: Any,
        owner_id: Optional[str] = None,
        issuer_id: Optional[str] = None,
        size: Optional[int] = None,
    ) -> RegistrationOutcome:
        """Register a document; the caller is the issuer unless an administrator names one."""
        caller = actor.require_identified()
        if not actor.can_issue:
            raise UnauthorizedError("Only institutions may register documents")
        if not (actor.is_admin and issuer_id):
            issuer_id = caller
        return await self.orchestrator.register(
            data,
            filename,
            mime_type,
            metadata,
            issuer_id=issuer_id,
            owner_id=owner_id,
            size=size,
            uploader_id=caller,
        )

    async def verify(
        self,
        evidence: Evidence,
        actor: Optional[Actor] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationOutcome:
        return await self.engine.verify(
            evidence,
            verifier_id=actor.actor_id if actor else None,
            source_ip=source_ip,
            user_agent=user_agent,
        )

    # =========================================================================
    # Fetch
    # =========================================================================

    async def _active_record(self, document_hash: str) -> Document:
        record = await self.registry.find_active(normalize_hash(document_hash))
        if record is None:
            raise NotFoundError("Document", document_hash)
        return record

    async def fetch(self, document_hash: str, actor: Actor) -> FetchedDocument:
        """Download, decrypt and integrity-check a document for an authorized reader."""
        record = await self._active_record(document_hash)
        require_access(record, actor.actor_id, actor.is_admin)
        if not record.storage_cid or not record.sealed_data_key:
            raise NotFoundError("Stored copy of document", record.document_hash)

        envelope = await self.router.download(record.storage_cid)
        try:
            plaintext = self.cipher.open(envelope, SealedKey.from_json(record.sealed_data_key))
        except AuthFailure as exc:
            logger.error("Stored envelope failed to open", extra={"document_hash": record.document_hash})
            raise InternalError(f"Stored copy failed authentication: {exc.message}") from exc
        if not self.cipher.verify_integrity(plaintext, record.document_hash):
            logger.error("Decrypted bytes do not match the registered hash", extra={"document_hash": record.document_hash})
            raise InternalError("Stored copy does not match the registered hash")

        logger.info("Document fetched", extra={"document_hash": record.document_hash, "actor": actor.actor_id})
        return FetchedDocument(
            document_hash=record.document_hash,
            data=plaintext,
            filename=record.original_filename,
            mime_type=record.mime_type,
        )

    async def describe(self, document_hash: str, actor: Actor) -> Document:
        """The custody record itself, for readers of the document."""
        record = await self._active_record(document_hash)
        require_access(record, actor.actor_id, actor.is_admin)
        return record

    # =========================================================================
    # Access
    # =========================================================================

    async def grant(self, document_hash: str, viewer_id: str, actor: Actor) -> AccessChange:
        record = await self._active_record(document_hash)
        require_manage(record, actor.actor_id, actor.is_admin)
        viewer = normalize_address(viewer_id, "viewer_id")
        if viewer in (record.owner_id, record.issuer_id):
            raise ConflictError("Owner and issuer always have access")

        record = await self.registry.add_viewer(record.document_hash, viewer)
        change = AccessChange(record.document_hash, viewer, "grant", list(record.viewer_set))
        try:
            change.ledger_txn_id = await self.ledger.grant(record.document_hash, viewer, actor.actor_id or "admin")
        except LedgerError as exc:
            change.ledger_error = exc.message
            logger.warning("Grant recorded off-ledger only", extra={"document_hash": record.document_hash})
        return change

    async def revoke(self, document_hash: str, viewer_id: str, actor: Actor) -> AccessChange:
        record = await self._active_record(document_hash)
        require_manage(record, actor.actor_id, actor.is_admin)
        viewer = normalize_address(viewer_id, "viewer_id")

        record = await self.registry.remove_viewer(record.document_hash, viewer)
        change = AccessChange(record.document_hash, viewer, "revoke", list(record.viewer_set))
        try:
            change.ledger_txn_id = await self.ledger.revoke(record.document_hash, viewer, actor.actor_id or "admin")
        except LedgerError as exc:
            change.ledger_error = exc.message
            logger.warning("Revoke recorded off-ledger only", extra={"document_hash": record.document_hash})
        return change

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def deactivate(self, document_hash: str, reason: str, actor: Actor) -> Document:
        reason = (reason or "").strip()
        if not MIN_REASON_LENGTH <= len(reason) <= MAX_REASON_LENGTH:
            raise ValidationError(
                f"Reason must be {MIN_REASON_LENGTH}-{MAX_REASON_LENGTH} characters", field="reason"
            )
        record = await self._active_record(document_hash)
        require_manage(record, actor.actor_id, actor.is_admin)
        record = await self.registry.deactivate(record.document_hash, reason, actor.actor_id or "admin")
        logger.info("Document deactivated", extra={"document_hash": record.document_hash})
        return record

    async def purge(self, document_hash: str, actor: Actor) -> bool:
        if not actor.is_admin:
            raise UnauthorizedError("Only administrators may purge records")
        removed = await self.registry.purge(normalize_hash(document_hash))
        if not removed:
            raise NotFoundError("Document", document_hash)
        logger.warning("Document purged", extra={"document_hash": document_hash})
        return removed

    # =========================================================================
    # Audit & Reporting
    # =========================================================================

    async def audit_trail(
        self,
        document_hash: str,
        actor: Actor,
        filters: Optional[HistoryFilter] = None,
    ) -> dict[str, Any]:
        """Lifecycle events, verification history and statistics. Deactivated records included."""
        record = await self.registry.get(normalize_hash(document_hash))
        require_manage(record, actor.actor_id, actor.is_admin)

        events = [{
            "event": "document_created",
            "timestamp": record.created_at.isoformat() if record.created_at else None,
            "actor": record.uploader_id,
            "details": {"document_kind": record.document_kind, "issuer_id": record.issuer_id},
        }]
        if record.storage_cid:
            events.append({
                "event": "ipfs_upload",
                "timestamp": None,
                "actor": record.uploader_id,
                "details": {"cid": record.storage_cid, "provider": record.storage_provider},
            })
        if record.anchor_txn_id:
            events.append({
                "event": "blockchain_registered",
                "timestamp": None,
                "actor": record.issuer_id,
                "details": record.anchor_dict(),
            })
        if record.failure_reason:
            events.append({
                "event": "registration_failed",
                "timestamp": record.updated_at.isoformat() if record.updated_at else None,
                "actor": None,
                "details": {"reason": record.failure_reason},
            })
        if record.deactivated_at:
            events.append({
                "event": "document_deactivated",
                "timestamp": record.deactivated_at.isoformat(),
                "actor": record.deactivated_by,
                "details": {"reason": record.deactivation_reason},
            })

        history = await self.log_service.history(record.document_hash, filters)
        suspicion = await self.log_service.detect_suspicious(record.document_hash, self.window_minutes, self.threshold)
        return {
            "document_hash": record.document_hash,
            "document": record.to_dict(),
            "events": events,
            "verification_history": [entry.to_dict() for entry in history],
            "statistics": await self.log_service.statistics(record.document_hash),
            "suspicious_activity": suspicion.to_dict(),
        }

    async def suspicious_activity(
        self,
        actor: Actor,
        window_minutes: Optional[int] = None,
        threshold: Optional[int] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> dict[str, Any]:
        if not actor.is_admin:
            raise UnauthorizedError("Only administrators may view suspicious activity")
        digest = await self.log_service.suspicious_digest(
            window_minutes=window_minutes or self.window_minutes,
            threshold=threshold or self.threshold,
            limit=limit,
            skip=skip,
            find_document=self.registry.find,
        )
        logger.info("Suspicious activity report generated", extra={"found": len(digest.items)})
        return digest.to_dict()

    async def search(
        self,
        actor: Actor,
        text: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Document]:
        if not actor.is_admin:
            raise UnauthorizedError("Only administrators may search the registry")
        return await self.registry.search(text=text, kind=kind, status=status, limit=limit, skip=skip)

    async def documents_for(self, actor: Actor, limit: int = 50, skip: int = 0) -> dict[str, list[Document]]:
        """Records the caller owns and records the caller issued."""
        actor_id = actor.require_identified()
        return {
            "owned": await self.registry.list_by_owner(actor_id, limit=limit, skip=skip),
            "issued": await self.registry.list_by_issuer(actor_id, limit=limit, skip=skip),
        }

    # =========================================================================
    # Operations
    # =========================================================================

    async def health(self) -> dict[str, Any]:
        """Database, storage providers, ledger and queue depth; ready needs the database and one store."""
        checks: dict[str, Any] = {}
        if self._sessions is not None:
            try:
                async with self._sessions() as db:
                    await db.execute(text("SELECT 1"))
                checks["database"] = {"available": True}
            except SQLAlchemyError as exc:
                checks["database"] = {"available": False, "reason": str(exc)}
        checks["storage"] = await self.router.health()
        checks["ledger"] = await self.ledger.health()
        checks["queue"] = {"depth": self.router.queue.depth()}

        database_ok = checks.get("database", {"available": True})["available"]
        storage_ok = any(p["available"] for p in checks["storage"].values())
        return {"status": "ready" if database_ok and storage_ok else "degraded", "checks": checks}

    def queue_status(self) -> dict:
        return self.router.queue_status()

    async def drain_queue(self) -> DrainReport:
        return await self.router.process_queue_once(self.orchestrator.handle_drained)


# =============================================================================
# Assembly
# =============================================================================

@dataclass
class CustodyServices:
    """Everything built from settings, with its lifecycle."""
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    custody: DocumentCustodyService
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _drainer: Optional[asyncio.Task] = None

    async def startup(self, start_drainer: Optional[bool] = None) -> None:
        await init_db(self.engine)
        if start_drainer is None:
            start_drainer = self.settings.queue_worker_enabled
        if start_drainer and self.custody.router.remote_providers:
            self._stop.clear()
            self._drainer = asyncio.create_task(
                self.custody.router.run_queue_worker(
                    self._stop,
                    self.settings.queue_pause_ms / 1000.0,
                    self.custody.orchestrator.handle_drained,
                )
            )

    async def shutdown(self) -> None:
        if self._drainer is not None:
            self._stop.set()
            try:
                await asyncio.wait_for(self._drainer, timeout=10.0)
            except asyncio.TimeoutError:
                self._drainer.cancel()
                logger.warning("Queue worker did not stop in time; cancelled")
            self._drainer = None
        await self.engine.dispose()


def build_services(
    settings: Settings,
    ledger_client: Optional[LedgerClient] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Callable[[float], Any]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> CustodyServices:
    """
    Wire every component.

    Raises ConfigurationError when the master key is missing.
    """
    master_key = MasterKey.from_settings(settings.master_key, settings.master_key_file)
    cipher = EnvelopeCipher(master_key)

    engine = build_engine(settings.database_url, echo=settings.debug)
    session_factory = build_session_factory(engine)
    registry = DocumentRegistry(session_factory, clock=clock, claim_ttl_seconds=settings.registration_timeout_s)
    log_service = VerificationLogService(session_factory, clock=clock)

    router_kwargs = {"sleep": sleep} if sleep is not None else {}
    router = build_router(settings, transport=transport, **router_kwargs)

    ledger_timeout = settings.ledger_timeout_ms / 1000.0
    if ledger_client is None and settings.ledger_endpoint:
        ledger_client = HttpLedgerClient(
            settings.ledger_endpoint,
            credentials=settings.ledger_credentials,
            contract_id=settings.ledger_contract_id,
            timeout=ledger_timeout,
            transport=transport,
        )
    ledger = LedgerCoordinator(ledger_client, timeout=ledger_timeout)
    qr_codec = QRCodec(settings.verification_url, settings.qr_signing_key)

    orchestrator = RegistrationOrchestrator(
        registry=registry,
        cipher=cipher,
        router=router,
        ledger=ledger,
        qr_codec=qr_codec,
        max_upload_bytes=settings.max_upload_bytes,
        budget_seconds=settings.registration_timeout_s,
    )
    verification = VerificationEngine(
        registry=registry,
        log_service=log_service,
        ledger=ledger,
        router=router,
        cipher=cipher,
        qr_codec=qr_codec,
        ledger_check=settings.verify_ledger_check,
        recheck_bytes=settings.verify_recheck_bytes,
        window_minutes=settings.anomaly_window_minutes,
        threshold=settings.anomaly_threshold,
        budget_seconds=settings.request_timeout_s,
        clock=clock,
    )
    custody = DocumentCustodyService(
        registry=registry,
        log_service=log_service,
        router=router,
        ledger=ledger,
        cipher=cipher,
        orchestrator=orchestrator,
        engine=verification,
        session_factory=session_factory,
        window_minutes=settings.anomaly_window_minutes,
        threshold=settings.anomaly_threshold,
    )
    return CustodyServices(settings=settings, engine=engine, session_factory=session_factory, custody=custody)
