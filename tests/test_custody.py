"""
Tests for the custody facade: fetching, viewer access, deactivation,
purge, audit trails, reporting and health.
"""

import pytest

from conftest import ADMIN, EMPLOYER, ISSUER, METADATA, STRANGER, STUDENT, document_bytes
from credchain.core.errors import ConflictError, InternalError, NotFoundError, UnauthorizedError, ValidationError
from credchain.core.identity import Actor, ActorRole
from credchain.models.models import DocumentStatus
from credchain.services.hasher import hash_bytes
from credchain.services.storage.local import SIDECAR_SUFFIX
from credchain.services.verification import Evidence
from credchain.services.verification_log import HistoryFilter

EMPLOYER_ACTOR = Actor(actor_id=EMPLOYER, role=ActorRole.EMPLOYER)
STRANGER_ACTOR = Actor(actor_id=STRANGER, role=ActorRole.EMPLOYER)


@pytest.fixture
async def document(custody, issuer):
    data = document_bytes()
    outcome = await custody.register(issuer, data, "degree.pdf", "application/pdf", METADATA, owner_id=STUDENT)
    return data, outcome.document_hash


# =============================================================================
# Fetch
# =============================================================================

@pytest.mark.anyio
@pytest.mark.parametrize("actor", [
    Actor(actor_id=STUDENT, role=ActorRole.STUDENT),
    Actor(actor_id=ISSUER, role=ActorRole.INSTITUTION),
    Actor(actor_id=ADMIN, role=ActorRole.ADMIN),
])
async def test_fetch_for_authorized_readers(custody, document, actor):
    data, document_hash = document
    fetched = await custody.fetch(document_hash, actor)
    assert fetched.data == data
    assert fetched.filename == "degree.pdf"
    assert fetched.mime_type == "application/pdf"


@pytest.mark.anyio
async def test_fetch_denied_for_stranger(custody, document):
    _, document_hash = document
    with pytest.raises(UnauthorizedError):
        await custody.fetch(document_hash, STRANGER_ACTOR)
    with pytest.raises(UnauthorizedError):
        await custody.fetch(document_hash, Actor())


@pytest.mark.anyio
async def test_fetch_missing(custody, student):
    with pytest.raises(NotFoundError):
        await custody.fetch(hash_bytes(b"nothing"), student)


@pytest.mark.anyio
async def test_fetch_detects_corrupted_copy(custody, document, student):
    _, document_hash = document
    for path in custody.router.local.root.iterdir():
        if not path.name.endswith(SIDECAR_SUFFIX):
            blob = bytearray(path.read_bytes())
            blob[-1] ^= 0x01
            path.write_bytes(bytes(blob))
    with pytest.raises(InternalError):
        await custody.fetch(document_hash, student)


# =============================================================================
# Access
# =============================================================================

@pytest.mark.anyio
async def test_grant_then_viewer_can_fetch(custody, document, student, ledger):
    data, document_hash = document

    change = await custody.grant(document_hash, EMPLOYER.upper().replace("0X", "0x"), student)

    assert change.viewer_set == [EMPLOYER]
    assert not change.partial
    assert change.ledger_txn_id.startswith("0x")
    assert ledger.grants == [(document_hash, EMPLOYER, STUDENT)]
    assert (await custody.fetch(document_hash, EMPLOYER_ACTOR)).data == data
    assert (await custody.describe(document_hash, EMPLOYER_ACTOR)).viewer_set == [EMPLOYER]


@pytest.mark.anyio
async def test_revoke_removes_access(custody, document, student):
    _, document_hash = document
    await custody.grant(document_hash, EMPLOYER, student)

    change = await custody.revoke(document_hash, EMPLOYER, student)

    assert change.viewer_set == []
    with pytest.raises(UnauthorizedError):
        await custody.fetch(document_hash, EMPLOYER_ACTOR)
    with pytest.raises(NotFoundError):
        await custody.revoke(document_hash, EMPLOYER, student)


@pytest.mark.anyio
async def test_grant_rules(custody, document, student):
    _, document_hash = document
    with pytest.raises(UnauthorizedError):
        await custody.grant(document_hash, STRANGER, EMPLOYER_ACTOR)
    with pytest.raises(ConflictError):
        await custody.grant(document_hash, ISSUER, student)
    with pytest.raises(ValidationError):
        await custody.grant(document_hash, "bob", student)
    await custody.grant(document_hash, EMPLOYER, student)
    with pytest.raises(ConflictError):
        await custody.grant(document_hash, EMPLOYER, student)


@pytest.mark.anyio
async def test_ledger_failure_makes_grant_partial(custody, document, student, ledger):
    _, document_hash = document
    ledger.fail = "rpc unreachable"

    change = await custody.grant(document_hash, EMPLOYER, student)

    assert change.partial
    assert change.ledger_txn_id is None
    assert "off-ledger" in change.to_dict()["warning"]
    assert (await custody.registry.get(document_hash)).viewer_set == [EMPLOYER]

    revoked = await custody.revoke(document_hash, EMPLOYER, student)
    assert revoked.partial
    assert revoked.viewer_set == []


# =============================================================================
# Deactivate & Purge
# =============================================================================

@pytest.mark.anyio
async def test_deactivate(custody, document, issuer):
    _, document_hash = document

    record = await custody.deactivate(document_hash, "  Issued with the wrong grade  ", issuer)

    assert record.status == DocumentStatus.DEACTIVATED.value
    assert record.deactivation_reason == "Issued with the wrong grade"
    assert record.deactivated_by == ISSUER
    with pytest.raises(NotFoundError):
        await custody.describe(document_hash, issuer)
    with pytest.raises(NotFoundError):
        await custody.deactivate(document_hash, "Issued with the wrong grade", issuer)


@pytest.mark.anyio
@pytest.mark.parametrize("reason", ["", "too short", "x" * 501])
async def test_deactivate_reason_length(custody, document, issuer, reason):
    _, document_hash = document
    with pytest.raises(ValidationError) as exc_info:
        await custody.deactivate(document_hash, reason, issuer)
    assert exc_info.value.field == "reason"


@pytest.mark.anyio
async def test_deactivate_requires_manager(custody, document):
    _, document_hash = document
    with pytest.raises(UnauthorizedError):
        await custody.deactivate(document_hash, "Issued with the wrong grade", STRANGER_ACTOR)


@pytest.mark.anyio
async def test_purge_is_admin_only(custody, document, issuer, admin):
    _, document_hash = document
    with pytest.raises(UnauthorizedError):
        await custody.purge(document_hash, issuer)

    assert await custody.purge(document_hash, admin)
    assert await custody.registry.find(document_hash) is None
    with pytest.raises(NotFoundError):
        await custody.purge(document_hash, admin)


# =============================================================================
# Audit & Reporting
# =============================================================================

@pytest.mark.anyio
async def test_audit_trail(custody, document, student, issuer):
    data, document_hash = document
    await custody.verify(Evidence.upload(data), actor=EMPLOYER_ACTOR)
    await custody.verify(Evidence.hash(document_hash))
    await custody.deactivate(document_hash, "Superseded by a reissued degree", issuer)

    trail = await custody.audit_trail(document_hash, student)

    assert [e["event"] for e in trail["events"]] == [
        "document_created",
        "ipfs_upload",
        "blockchain_registered",
        "document_deactivated",
    ]
    assert trail["events"][-1]["actor"] == ISSUER
    assert len(trail["verification_history"]) == 2
    assert trail["statistics"]["total"] == 2
    assert trail["suspicious_activity"]["suspicious"] is False
    assert trail["document"]["status"] == DocumentStatus.DEACTIVATED.value

    filtered = await custody.audit_trail(document_hash, student, HistoryFilter(verifier_id=EMPLOYER))
    assert len(filtered["verification_history"]) == 1


@pytest.mark.anyio
async def test_audit_trail_records_failure(custody, issuer, ledger):
    ledger.fail = "rpc unreachable"
    data = document_bytes(seed=b"failed")
    outcome = await custody.register(issuer, data, "degree.pdf", "application/pdf", METADATA)

    trail = await custody.audit_trail(outcome.document_hash, issuer)

    assert "registration_failed" in [e["event"] for e in trail["events"]]


@pytest.mark.anyio
async def test_audit_trail_permissions(custody, document, admin):
    _, document_hash = document
    with pytest.raises(UnauthorizedError):
        await custody.audit_trail(document_hash, EMPLOYER_ACTOR)
    assert (await custody.audit_trail(document_hash, admin))["document_hash"] == document_hash


@pytest.mark.anyio
async def test_suspicious_activity_report(custody, document, admin):
    data, document_hash = document
    forged = document_bytes(seed=b"forged")
    for _ in range(5):
        await custody.verify(Evidence.upload(forged, claimed_hash=document_hash))

    report = await custody.suspicious_activity(admin)

    assert report["summary"]["total_suspicious"] == 1
    item = report["suspicious_documents"][0]
    assert item["document_hash"] == document_hash
    assert item["document"]["exists"] is True
    assert item["document"]["metadata"]["student_id"] == METADATA["student_id"]

    with pytest.raises(UnauthorizedError):
        await custody.suspicious_activity(EMPLOYER_ACTOR)


@pytest.mark.anyio
async def test_search_and_listings(custody, document, issuer, student, admin):
    _, document_hash = document
    with pytest.raises(UnauthorizedError):
        await custody.search(issuer, text="ada")

    found = await custody.search(admin, text="lovelace")
    assert [d.document_hash for d in found] == [document_hash]

    mine = await custody.documents_for(student)
    assert [d.document_hash for d in mine["owned"]] == [document_hash]
    assert mine["issued"] == []
    issued = await custody.documents_for(issuer)
    assert [d.document_hash for d in issued["issued"]] == [document_hash]
    with pytest.raises(UnauthorizedError):
        await custody.documents_for(Actor())


# =============================================================================
# Operations
# =============================================================================

@pytest.mark.anyio
async def test_health_ready_without_remote_providers(custody, ledger):
    health = await custody.health()

    assert health["status"] == "ready"
    assert health["checks"]["database"] == {"available": True}
    assert health["checks"]["storage"]["local"]["available"]
    assert health["checks"]["ledger"] == {"available": True}
    assert health["checks"]["queue"] == {"depth": 0}

    ledger.fail = "down"
    degraded_ledger = await custody.health()
    assert degraded_ledger["status"] == "ready"
    assert degraded_ledger["checks"]["ledger"]["available"] is False


@pytest.mark.anyio
async def test_queue_status_and_drain_without_remote(custody):
    assert custody.queue_status()["depth"] == 0
    report = await custody.drain_queue()
    assert report.to_dict() == {"processed": 0, "dropped": 0, "remaining": 0}
