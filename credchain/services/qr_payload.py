"""
Credchain - QR Payload Codec
The text carried by a document's QR code:

    {verification_url}?hash=<0x..64 hex>&tx=<transaction id>[&sig=<hex>]

``sig`` is an HMAC-SHA256 over "hash|tx", present when a signing key is
configured. Both sides sign and check the canonical forms, so a payload
encoded from mixed-case input still decodes. Rendering the QR image is
left to the client.
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from credchain.core.errors import ValidationError
from credchain.services.hasher import normalize_hash

# EVM-style transaction hashes, with or without the 0x prefix
HEX_TXN_RE = re.compile(r"^(0x)?[0-9a-f]{64}$", re.IGNORECASE)
# Anything else a ledger hands back (Fabric ids, test stubs)
OPAQUE_TXN_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def normalize_txn_id(value: str) -> str:
    """Canonical transaction id: lowercase 0x-hex when it is a hash, else as given."""
    if not isinstance(value, str):
        raise ValidationError("QR payload carries no valid transaction id", field="qr_payload")
    value = value.strip()
    if HEX_TXN_RE.match(value):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    # A 0x prefix promises a hash
    if value.lower().startswith("0x") or not OPAQUE_TXN_RE.match(value):
        raise ValidationError("QR payload carries no valid transaction id", field="qr_payload")
    return value


def txn_ids_equal(presented: str, recorded: str) -> bool:
    """Compare a decoded (canonical) transaction id with one stored as the ledger returned it."""
    try:
        recorded = normalize_txn_id(recorded)
    except ValidationError:
        return False
    return hmac.compare_digest(presented, recorded)


@dataclass(frozen=True)
class QRPayload:
    document_hash: str
    anchor_txn_id: str
    signed: bool = False


class QRCodec:
    def __init__(self, verification_url: str, signing_key: Optional[str] = None):
        self.verification_url = verification_url
        self._key = signing_key.encode("utf-8") if signing_key else None

    def _signature(self, document_hash: str, txn_id: str) -> str:
        return hmac.new(self._key, f"{document_hash}|{txn_id}".encode("utf-8"), hashlib.sha256).hexdigest()

    def encode(self, document_hash: str, txn_id: str) -> str:
        document_hash = normalize_hash(document_hash, field="document_hash")
        txn_id = normalize_txn_id(txn_id)
        params = {"hash": document_hash, "tx": txn_id}
        if self._key:
            params["sig"] = self._signature(document_hash, txn_id)
        return f"{self.verification_url}?{urlencode(params)}"

    def decode(self, payload: str) -> QRPayload:
        """Parse a scanned payload. Anything malformed is a ValidationError."""
        if not isinstance(payload, str) or not payload.strip():
            raise ValidationError("QR payload is empty", field="qr_payload")
        try:
            query = parse_qs(urlsplit(payload.strip()).query, strict_parsing=False)
        except ValueError:
            raise ValidationError("QR payload is not a URL", field="qr_payload") from None

        try:
            document_hash = normalize_hash((query.get("hash") or [""])[0], field="qr_payload")
        except ValidationError:
            raise ValidationError("QR payload carries no valid document hash", field="qr_payload") from None
        txn_id = normalize_txn_id((query.get("tx") or [""])[0])

        signature = (query.get("sig") or [None])[0]
        if signature is not None:
            if self._key is None:
                raise ValidationError("QR payload is signed but no signing key is configured", field="qr_payload")
            if not hmac.compare_digest(signature.lower(), self._signature(document_hash, txn_id)):
                raise ValidationError("QR payload signature mismatch", field="qr_payload")
        elif self._key is not None:
            raise ValidationError("QR payload is missing its signature", field="qr_payload")

        return QRPayload(document_hash=document_hash, anchor_txn_id=txn_id, signed=signature is not None)
