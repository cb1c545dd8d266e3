"""
Credchain - Content Hasher
SHA-256 over the exact plaintext bytes, rendered as ``0x`` + 64 lowercase hex.
"""

import hashlib
import hmac
import re
from typing import Iterable, Optional

from credchain.core.errors import ValidationError


HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def hash_bytes(data: bytes) -> str:
    """Digest of ``data``. Pure; identical bytes always give identical output."""
    return "0x" + hashlib.sha256(data).hexdigest()


def hash_stream(chunks: Iterable[bytes], max_bytes: Optional[int] = None) -> str:
    """
    Digest of a chunked source without buffering it whole.

    A source that raises mid-stream, or grows past ``max_bytes``, is
    rejected as invalid input.
    """
    digest = hashlib.sha256()
    total = 0
    try:
        for chunk in chunks:
            total += len(chunk)
            if max_bytes is not None and total > max_bytes:
                raise ValidationError(f"File exceeds {max_bytes} bytes", field="file")
            digest.update(chunk)
    except ValidationError:
        raise
    except (OSError, ValueError) as exc:
        raise ValidationError(f"Unreadable input: {exc}", field="file") from exc
    return "0x" + digest.hexdigest()


def normalize_hash(value: str, field: str = "document_hash") -> str:
    """Validate a presented hash and return its canonical lowercase form."""
    if not isinstance(value, str) or not HASH_RE.match(value.strip()):
        raise ValidationError("Hash must be 0x followed by 64 hex characters", field=field)
    return value.strip().lower()


def digests_equal(a: str, b: str) -> bool:
    """Constant-time comparison of two rendered digests."""
    return hmac.compare_digest(a.lower(), b.lower())
