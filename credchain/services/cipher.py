"""
Credchain - Envelope Cipher
Per-document AES-256-GCM with the data key sealed under a master key.

Envelope layout (what goes to storage):
    b"CCE1" | nonce (12 bytes) | ciphertext || tag (16 bytes)

Sealed key (what goes in the registry, never to callers):
    {"v": 1, "alg": "AES-256-GCM", "nonce": b64, "key": b64}

Objects written by the previous deployment are JSON envelopes
({"encryptedData", "iv", "algorithm": "aes-256-cbc"}) whose key was
sealed as {"encryptedKey", "iv"} under sha256(master passphrase). They
are still readable.
"""

import base64
import binascii
import hashlib
import json
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from credchain.core.errors import AuthFailure, ConfigurationError
from credchain.services.hasher import digests_equal, hash_bytes


MAGIC = b"CCE1"
NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16

DOCUMENT_AAD = b"credchain/document/v1"
DATA_KEY_AAD = b"credchain/data-key/v1"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


# =============================================================================
# Master Key
# =============================================================================

@dataclass(frozen=True)
class MasterKey:
    """Key-encryption key. ``legacy_key`` opens keys sealed by the old scheme."""
    key: bytes
    legacy_key: bytes

    def __repr__(self) -> str:
        return "MasterKey(<redacted>)"

    @classmethod
    def from_secret(cls, secret: str) -> "MasterKey":
        """
        Interpret a configured secret.

        - 64 hex characters: the raw 32-byte key
        - ``base64:<urlsafe b64>``: a raw 32-byte key
        - anything else: a passphrase, stretched with SHA-256
        """
        secret = secret.strip()
        if not secret:
            raise ConfigurationError("Master key is empty")
        legacy = hashlib.sha256(secret.encode("utf-8")).digest()
        if _HEX_KEY_RE.match(secret):
            return cls(key=bytes.fromhex(secret), legacy_key=legacy)
        if secret.startswith("base64:"):
            try:
                raw = base64.urlsafe_b64decode(secret[len("base64:"):])
            except (binascii.Error, ValueError):
                raise ConfigurationError("Master key is not valid base64") from None
            if len(raw) != KEY_SIZE:
                raise ConfigurationError("Master key must decode to 32 bytes")
            return cls(key=raw, legacy_key=legacy)
        return cls(key=legacy, legacy_key=legacy)

    @classmethod
    def from_settings(cls, master_key: Optional[str], master_key_file: Optional[Path]) -> "MasterKey":
        if master_key:
            return cls.from_secret(master_key)
        if master_key_file:
            try:
                return cls.from_secret(Path(master_key_file).read_text(encoding="utf-8"))
            except OSError as exc:
                raise ConfigurationError(f"Cannot read master key file: {exc}") from exc
        raise ConfigurationError("No master key configured (CREDCHAIN_MASTER_KEY or CREDCHAIN_MASTER_KEY_FILE)")


# =============================================================================
# Sealed Key
# =============================================================================

@dataclass(frozen=True)
class SealedKey:
    """A data key encrypted under the master key."""
    ciphertext: bytes
    nonce: bytes
    legacy: bool = False

    def to_json(self) -> str:
        if self.legacy:
            return json.dumps({
                "encryptedKey": base64.b64encode(self.ciphertext).decode("ascii"),
                "iv": base64.b64encode(self.nonce).decode("ascii"),
            })
        return json.dumps({
            "v": 1,
            "alg": "AES-256-GCM",
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "key": base64.b64encode(self.ciphertext).decode("ascii"),
        })

    @classmethod
    def from_json(cls, text: str) -> "SealedKey":
        try:
            data = json.loads(text)
            if "encryptedKey" in data:
                return cls(
                    ciphertext=base64.b64decode(data["encryptedKey"]),
                    nonce=base64.b64decode(data["iv"]),
                    legacy=True,
                )
            return cls(
                ciphertext=base64.b64decode(data["key"]),
                nonce=base64.b64decode(data["nonce"]),
            )
        except (ValueError, KeyError, TypeError, binascii.Error):
            raise AuthFailure("Malformed sealed key") from None


# =============================================================================
# Cipher
# =============================================================================

def _cbc_decrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    """AES-256-CBC with PKCS#7 padding, as the previous deployment wrote."""
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(data) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise AuthFailure("Legacy ciphertext failed to decrypt") from None


class EnvelopeCipher:
    """
    Seal/open document bytes.

    Every seal draws a fresh data key and nonce, so sealing the same
    plaintext twice yields different envelopes.
    """

    def __init__(self, master_key: MasterKey):
        self._master = master_key

    # -------------------------------------------------------------------------
    # Data key wrapping
    # -------------------------------------------------------------------------

    def _wrap_key(self, data_key: bytes) -> SealedKey:
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = AESGCM(self._master.key).encrypt(nonce, data_key, DATA_KEY_AAD)
        return SealedKey(ciphertext=ciphertext, nonce=nonce)

    def _unwrap_key(self, sealed: SealedKey) -> bytes:
        if sealed.legacy:
            # Old scheme sealed the base64 text of the key
            text = _cbc_decrypt(self._master.legacy_key, sealed.nonce, sealed.ciphertext)
            try:
                return base64.b64decode(text)
            except (binascii.Error, ValueError):
                raise AuthFailure("Legacy sealed key is corrupt") from None
        try:
            data_key = AESGCM(self._master.key).decrypt(sealed.nonce, sealed.ciphertext, DATA_KEY_AAD)
        except InvalidTag:
            raise AuthFailure("Sealed key does not open under the master key") from None
        if len(data_key) != KEY_SIZE:
            raise AuthFailure("Sealed key has the wrong length")
        return data_key

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def seal(self, plaintext: bytes) -> tuple[bytes, SealedKey]:
        """Encrypt ``plaintext`` under a fresh data key."""
        data_key = AESGCM.generate_key(bit_length=256)
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = AESGCM(data_key).encrypt(nonce, plaintext, DOCUMENT_AAD)
        return MAGIC + nonce + ciphertext, self._wrap_key(data_key)

    def open(self, envelope: bytes, sealed_key: SealedKey) -> bytes:
        """Decrypt an envelope. Any tampering raises AuthFailure."""
        data_key = self._unwrap_key(sealed_key)

        if envelope.startswith(MAGIC):
            body = envelope[len(MAGIC):]
            if len(body) < NONCE_SIZE + TAG_SIZE:
                raise AuthFailure("Envelope is truncated")
            nonce, ciphertext = body[:NONCE_SIZE], body[NONCE_SIZE:]
            try:
                return AESGCM(data_key).decrypt(nonce, ciphertext, DOCUMENT_AAD)
            except InvalidTag:
                raise AuthFailure() from None

        legacy = self._parse_legacy_envelope(envelope)
        if legacy is None:
            raise AuthFailure("Unrecognized envelope format")
        try:
            iv = base64.b64decode(legacy["iv"])
            data = base64.b64decode(legacy["encryptedData"])
        except (binascii.Error, ValueError, KeyError, TypeError):
            raise AuthFailure("Legacy envelope is corrupt") from None
        return _cbc_decrypt(data_key, iv, data)

    def verify_integrity(self, data: bytes, expected_hash: str) -> bool:
        return digests_equal(hash_bytes(data), expected_hash)

    @staticmethod
    def _parse_legacy_envelope(envelope: bytes) -> Optional[dict[str, Any]]:
        if not envelope.lstrip().startswith(b"{"):
            return None
        try:
            data = json.loads(envelope.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(data, dict) or str(data.get("algorithm", "")).lower() != "aes-256-cbc":
            return None
        return data
