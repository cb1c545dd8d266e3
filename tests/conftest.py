"""
Shared fixtures: an isolated settings/database/storage tree per test, a
scriptable in-memory ledger and an ASGI client over the real app.
"""

import hashlib
from datetime import date
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from credchain.core.config import Settings
from credchain.core.errors import LedgerError
from credchain.core.identity import Actor, ActorRole
from credchain.main import create_app
from credchain.services.custody import build_services
from credchain.services.ledger import AnchorReceipt, LedgerClient, LedgerLookup


MASTER_KEY = "11" * 32

ISSUER = "0x" + "aa" * 19 + "01"
STUDENT = "0x" + "bb" * 19 + "02"
EMPLOYER = "0x" + "cc" * 19 + "03"
STRANGER = "0x" + "dd" * 19 + "04"
ADMIN = "0x" + "ee" * 19 + "05"

METADATA = {
    "student_name": "Ada Lovelace",
    "student_id": "E2E-STU-001",
    "institution_name": "Analytical University",
    "document_kind": "degree",
    "issue_date": date(2024, 1, 15).isoformat(),
    "course": "Mathematics",
    "grade": "First",
}


def document_bytes(size: int = 4096, seed: bytes = b"credential") -> bytes:
    """Deterministic pseudo-PDF of ``size`` bytes."""
    out = bytearray(b"%PDF-1.7\n")
    counter = 0
    while len(out) < size:
        out += hashlib.sha256(seed + counter.to_bytes(4, "big")).digest()
        counter += 1
    return bytes(out[:size])


class FakeLedger(LedgerClient):
    """In-memory ledger. Set ``fail`` to make every call raise."""

    def __init__(self):
        self.anchors: dict[str, dict] = {}
        self.grants: list[tuple[str, str, str]] = []
        self.revokes: list[tuple[str, str, str]] = []
        self.fail: Optional[str] = None
        self.fail_lookup = False
        self._counter = 0

    def _txn(self) -> str:
        self._counter += 1
        return "0x" + hashlib.sha256(f"txn-{self._counter}".encode()).hexdigest()

    def _check(self):
        if self.fail:
            raise LedgerError(self.fail)

    async def anchor(self, document_hash, storage_cid, owner_id, issuer_id, summary) -> AnchorReceipt:
        self._check()
        txn = self._txn()
        self.anchors[document_hash] = {"owner_id": owner_id, "issuer_id": issuer_id, "cid": storage_cid, "active": True}
        return AnchorReceipt(txn_id=txn, block_height=100 + self._counter, gas=21000, contract_id="0xcontract")

    async def lookup(self, document_hash: str) -> LedgerLookup:
        self._check()
        if self.fail_lookup:
            raise LedgerError("rpc unreachable")
        entry = self.anchors.get(document_hash)
        if entry is None:
            return LedgerLookup(present=False)
        return LedgerLookup(present=True, owner_id=entry["owner_id"], active=entry["active"])

    async def grant(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        self._check()
        self.grants.append((document_hash, viewer_id, caller_id))
        return self._txn()

    async def revoke(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        self._check()
        self.revokes.append((document_hash, viewer_id, caller_id))
        return self._txn()

    async def health(self) -> bool:
        return self.fail is None


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'credchain.db'}",
        local_store_path=tmp_path / "local-storage",
        queue_path=tmp_path / "upload-queue",
        master_key=MASTER_KEY,
        queue_worker_enabled=False,
        verification_url="https://verify.example.edu/verify",
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def services(settings, ledger, sleep):
    built = build_services(settings, ledger_client=ledger, sleep=sleep)
    await built.startup(start_drainer=False)
    yield built
    await built.shutdown()


@pytest.fixture
def custody(services):
    return services.custody


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def issuer() -> Actor:
    return Actor(actor_id=ISSUER, role=ActorRole.INSTITUTION)


@pytest.fixture
def student() -> Actor:
    return Actor(actor_id=STUDENT, role=ActorRole.STUDENT)


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id=ADMIN, role=ActorRole.ADMIN)


def headers_for(actor_id: str, role: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}
