"""
Tests for verification: authentic, tampered and unknown documents by
upload, QR and hash, ledger disagreement, byte re-checks and the
suspicious-activity warning.
"""

import pytest

from conftest import EMPLOYER, METADATA, document_bytes
from credchain.core.errors import ValidationError
from credchain.core.identity import Actor, ActorRole
from credchain.models.models import DocumentStatus, VerificationResult
from credchain.services.hasher import hash_bytes
from credchain.services.storage.local import SIDECAR_SUFFIX
from credchain.services.verification import Evidence


@pytest.fixture
async def registered(custody, issuer):
    data = document_bytes()
    outcome = await custody.register(issuer, data, "degree.pdf", "application/pdf", METADATA)
    return data, outcome


@pytest.fixture
def employer() -> Actor:
    return Actor(actor_id=EMPLOYER, role=ActorRole.EMPLOYER)


def tampered_copy(data: bytes) -> bytes:
    copy = bytearray(data)
    copy[len(copy) // 2] ^= 0xFF
    return bytes(copy)


def corrupt_local_store(custody) -> None:
    root = custody.router.local.root
    for path in root.iterdir():
        if not path.name.endswith(SIDECAR_SUFFIX):
            blob = bytearray(path.read_bytes())
            blob[-1] ^= 0x01
            path.write_bytes(bytes(blob))


# =============================================================================
# Upload Evidence
# =============================================================================

@pytest.mark.anyio
async def test_original_upload_is_authentic(custody, registered):
    data, registration = registered

    outcome = await custody.verify(Evidence.upload(data))

    assert outcome.result == VerificationResult.AUTHENTIC
    body = outcome.to_dict()
    assert body["verifier"] == "anonymous"
    assert body["verification_count"] == 1
    assert body["document"]["student_id"] == METADATA["student_id"]
    assert body["document"]["status"] == DocumentStatus.VERIFIED.value
    assert body["anchor"]["txn_id"] == registration.anchor.txn_id
    assert body["checks"] == {"ledger": "valid", "bytes": "skipped"}
    assert "warning" not in body

    record = await custody.registry.get(registration.document_hash)
    assert record.status == DocumentStatus.VERIFIED.value


@pytest.mark.anyio
async def test_modified_upload_is_not_found(custody, registered):
    data, _ = registered
    outcome = await custody.verify(Evidence.upload(tampered_copy(data)))
    assert outcome.result == VerificationResult.NOT_FOUND
    assert "document" not in outcome.to_dict()


@pytest.mark.anyio
async def test_modified_upload_with_claimed_hash_is_tampered(custody, registered):
    data, registration = registered

    outcome = await custody.verify(Evidence.upload(tampered_copy(data), claimed_hash=registration.document_hash))

    assert outcome.result == VerificationResult.TAMPERED
    body = outcome.to_dict()
    assert body["details"] == {"hash_match": False, "ledger_valid": True, "file_integrity_ok": None}
    assert "document" not in body
    assert "anchor" not in body
    record = await custody.registry.get(registration.document_hash)
    assert record.status == DocumentStatus.ANCHORED.value
    assert record.verification_count == 1


def test_empty_upload_rejected():
    with pytest.raises(ValidationError):
        Evidence.upload(b"")


# =============================================================================
# Hash & QR Evidence
# =============================================================================

@pytest.mark.anyio
async def test_unknown_hash_is_not_found(custody):
    outcome = await custody.verify(Evidence.hash(hash_bytes(b"never registered")))
    assert outcome.result == VerificationResult.NOT_FOUND
    assert outcome.to_dict()["document_hash"] == hash_bytes(b"never registered")


@pytest.mark.anyio
async def test_malformed_hash_rejected(custody):
    with pytest.raises(ValidationError):
        await custody.verify(Evidence.hash("0x1234"))


@pytest.mark.anyio
async def test_qr_payload_is_authentic(custody, registered):
    _, registration = registered
    outcome = await custody.verify(Evidence.qr(registration.qr_payload))
    assert outcome.result == VerificationResult.AUTHENTIC
    assert outcome.method.value == "qr"


@pytest.mark.anyio
async def test_qr_with_wrong_transaction_is_tampered(custody, registered):
    _, registration = registered
    forged = registration.qr_payload.replace(registration.anchor.txn_id, "0x" + "99" * 32)

    outcome = await custody.verify(Evidence.qr(forged))

    assert outcome.result == VerificationResult.TAMPERED
    assert outcome.to_dict()["details"]["anchor_match"] is False


# =============================================================================
# Ledger & Stored Bytes
# =============================================================================

@pytest.mark.anyio
async def test_ledger_unreachable_does_not_fail_verification(custody, registered, ledger):
    data, _ = registered
    ledger.fail_lookup = True

    outcome = await custody.verify(Evidence.upload(data))

    assert outcome.result == VerificationResult.AUTHENTIC
    assert outcome.to_dict()["checks"]["ledger"] == "unknown"


@pytest.mark.anyio
async def test_ledger_disagreement_is_tampered(custody, registered, ledger):
    data, registration = registered
    ledger.anchors[registration.document_hash]["active"] = False

    outcome = await custody.verify(Evidence.upload(data))

    assert outcome.result == VerificationResult.TAMPERED
    assert outcome.to_dict()["details"]["ledger_valid"] is False


@pytest.mark.anyio
async def test_ledger_check_can_be_disabled(custody, registered, ledger):
    data, _ = registered
    custody.engine.ledger_check = False
    ledger.anchors.clear()

    outcome = await custody.verify(Evidence.upload(data))

    assert outcome.result == VerificationResult.AUTHENTIC
    assert outcome.to_dict()["checks"]["ledger"] == "skipped"


@pytest.mark.anyio
async def test_byte_recheck(custody, registered):
    data, _ = registered
    custody.engine.recheck_bytes = True

    intact = await custody.verify(Evidence.upload(data))
    assert intact.to_dict()["checks"]["bytes"] == "valid"

    corrupt_local_store(custody)
    broken = await custody.verify(Evidence.upload(data))
    assert broken.result == VerificationResult.TAMPERED
    assert broken.to_dict()["details"]["file_integrity_ok"] is False


# =============================================================================
# Record State
# =============================================================================

@pytest.mark.anyio
async def test_unanchored_record_is_not_authentic(custody, issuer, ledger):
    data = document_bytes(seed=b"partial")
    ledger.fail = "rpc unreachable"
    await custody.register(issuer, data, "degree.pdf", "application/pdf", METADATA)
    ledger.fail = None

    outcome = await custody.verify(Evidence.upload(data))

    assert outcome.result == VerificationResult.TAMPERED


@pytest.mark.anyio
async def test_deactivated_record_is_not_found(custody, registered, issuer):
    data, registration = registered
    await custody.deactivate(registration.document_hash, "Issued with the wrong grade", issuer)

    outcome = await custody.verify(Evidence.upload(data))

    assert outcome.result == VerificationResult.NOT_FOUND


# =============================================================================
# Verifier Identity & Logging
# =============================================================================

@pytest.mark.anyio
async def test_identified_and_anonymous_results_match(custody, registered, employer):
    data, _ = registered
    await custody.verify(Evidence.upload(data))

    anonymous = (await custody.verify(Evidence.upload(data))).to_dict()
    identified = (await custody.verify(Evidence.upload(data), actor=employer)).to_dict()

    assert anonymous.pop("verifier") == "anonymous"
    assert identified.pop("verifier") == EMPLOYER
    for body in (anonymous, identified):
        body.pop("verified_at")
        body.pop("verification_count")
        body["document"].pop("verification_count")
    assert anonymous == identified


@pytest.mark.anyio
async def test_attempts_are_logged(custody, registered, employer):
    data, registration = registered
    await custody.verify(Evidence.upload(data), actor=employer, source_ip="203.0.113.9", user_agent="pytest")
    await custody.verify(Evidence.hash(registration.document_hash))

    history = await custody.log_service.history(registration.document_hash)

    assert [e.method for e in history] == ["hash", "upload"]
    assert history[1].verifier_id == EMPLOYER
    assert history[1].source_ip == "203.0.113.9"
    assert history[0].verifier_id == "anonymous"


@pytest.mark.anyio
async def test_repeated_failures_raise_warning(custody, registered):
    data, registration = registered
    forged = tampered_copy(data)

    outcomes = []
    for _ in range(5):
        outcomes.append(await custody.verify(Evidence.upload(forged, claimed_hash=registration.document_hash)))

    assert "warning" not in outcomes[3].to_dict()
    warning = outcomes[4].to_dict()["warning"]
    assert warning["failed_attempts"] == 5
    assert warning["severity"] == "medium"
