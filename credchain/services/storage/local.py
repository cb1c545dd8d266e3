"""
Credchain - Local Store
Last-resort storage on the service's own disk.

Layout under ``local_store_path``:
    <timestamp_ms>_<sanitized name>             the stored bytes
    <timestamp_ms>_<sanitized name>.meta.json   sidecar describing them

Pseudo-CIDs are ``local_`` + first 32 hex chars of SHA-256(bytes), so the
same bytes always get the same identifier. The sidecar is written last;
an object without one is not considered stored.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from credchain.core.errors import NotFoundError, StorageError
from credchain.services.storage.base import PinnedObject, ProviderHealth, StorageProvider

logger = logging.getLogger(__name__)

LOCAL_CID_PREFIX = "local_"
SIDECAR_SUFFIX = ".meta.json"
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def is_local_cid(cid: str) -> bool:
    return cid.startswith(LOCAL_CID_PREFIX)


def local_cid_for(data: bytes) -> str:
    return LOCAL_CID_PREFIX + hashlib.sha256(data).hexdigest()[:32]


def sanitize_filename(filename: str) -> str:
    """Replace anything outside [A-Za-z0-9.-] and forbid leading dots."""
    safe = _UNSAFE_CHARS.sub("_", filename or "").lstrip(".")
    return safe or "file"


def atomic_write(path: Path, data: bytes) -> None:
    """Write bytes atomically (temp file in the same directory + rename)."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


@dataclass
class LocalObject:
    """Sidecar contents."""
    original_filename: str
    local_filename: str
    local_cid: str
    size: int
    uploaded_at: str
    metadata: dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "original_filename": self.original_filename,
            "local_filename": self.local_filename,
            "local_cid": self.local_cid,
            "size": self.size,
            "uploaded_at": self.uploaded_at,
            "metadata": self.metadata,
        }


class LocalStore(StorageProvider):
    """Filesystem-backed fallback. Never retried by the router."""

    # Always tried after every remote provider
    priority = 10_000

    def __init__(self, root: Path, clock=time.time):
        self.root = Path(root)
        self._clock = clock

    @property
    def provider_name(self) -> str:
        return "local"

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError("local", f"cannot create store directory: {exc}") from exc

    def _sidecars(self) -> Iterator[Path]:
        if not self.root.is_dir():
            return iter(())
        return (p for p in sorted(self.root.iterdir()) if p.name.endswith(SIDECAR_SUFFIX))

    def _find(self, cid: str) -> Optional[LocalObject]:
        for sidecar in self._sidecars():
            try:
                data = json.loads(sidecar.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable sidecar %s: %s", sidecar.name, exc)
                continue
            if data.get("local_cid") == cid:
                return LocalObject(
                    original_filename=data.get("original_filename", ""),
                    local_filename=data["local_filename"],
                    local_cid=data["local_cid"],
                    size=int(data.get("size", 0)),
                    uploaded_at=data.get("uploaded_at", ""),
                    metadata=data.get("metadata") or {},
                )
        return None

    # =========================================================================
    # Operations
    # =========================================================================

    def put(self, data: bytes, filename: str, metadata: Optional[Mapping[str, Any]] = None) -> LocalObject:
        """Store bytes; re-storing identical bytes returns the existing object."""
        cid = local_cid_for(data)
        existing = self._find(cid)
        if existing is not None and (self.root / existing.local_filename).is_file():
            return existing

        self._ensure_root()
        timestamp_ms = int(self._clock() * 1000)
        local_filename = f"{timestamp_ms}_{sanitize_filename(filename)}"
        counter = 1
        while (self.root / local_filename).exists():
            local_filename = f"{timestamp_ms}_{counter}_{sanitize_filename(filename)}"
            counter += 1

        obj = LocalObject(
            original_filename=filename,
            local_filename=local_filename,
            local_cid=cid,
            size=len(data),
            uploaded_at=datetime.fromtimestamp(self._clock(), timezone.utc).isoformat(),
            metadata=dict(metadata or {}),
        )
        try:
            atomic_write(self.root / local_filename, data)
            atomic_write(
                self.root / f"{local_filename}{SIDECAR_SUFFIX}",
                json.dumps(obj.to_dict(), indent=2, default=str).encode("utf-8"),
            )
        except OSError as exc:
            raise StorageError("local", f"write failed: {exc}") from exc

        logger.info("File stored locally", extra={"local_cid": cid, "size": len(data)})
        return obj

    def get(self, cid: str) -> bytes:
        obj = self._find(cid)
        if obj is None:
            raise NotFoundError("Local object", cid)
        try:
            return (self.root / obj.local_filename).read_bytes()
        except FileNotFoundError:
            raise NotFoundError("Local object", cid) from None
        except OSError as exc:
            raise StorageError("local", f"read failed: {exc}") from exc

    def exists(self, cid: str) -> bool:
        obj = self._find(cid)
        return obj is not None and (self.root / obj.local_filename).is_file()

    def stats(self) -> dict:
        count = 0
        total = 0
        for sidecar in self._sidecars():
            data_file = self.root / sidecar.name[: -len(SIDECAR_SUFFIX)]
            if data_file.is_file():
                count += 1
                total += data_file.stat().st_size
        return {"path": str(self.root), "objects": count, "total_bytes": total}

    # =========================================================================
    # StorageProvider interface
    # =========================================================================

    async def upload(self, data: bytes, filename: str, metadata: Mapping[str, Any]) -> PinnedObject:
        obj = self.put(data, filename, metadata)
        return PinnedObject(
            cid=obj.local_cid,
            provider=self.provider_name,
            size=obj.size,
            extra={"local_filename": obj.local_filename},
        )

    async def health(self) -> ProviderHealth:
        start = time.perf_counter()
        try:
            self._ensure_root()
            writable = os.access(self.root, os.W_OK)
        except StorageError as exc:
            return ProviderHealth(available=False, priority=self.priority, reason=exc.message)
        elapsed = round((time.perf_counter() - start) * 1000, 1)
        if not writable:
            return ProviderHealth(available=False, response_time_ms=elapsed, priority=self.priority, reason="not writable")
        return ProviderHealth(available=True, response_time_ms=elapsed, priority=self.priority)
