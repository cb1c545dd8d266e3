"""
Credchain - Persistent Upload Retry Queue
Encrypted payloads that no remote provider accepted wait here, on disk,
until the drainer gets them pinned.

Each entry is two files in ``queue_path``:
    <sequence>_<entry_id>.bin    the encrypted payload
    <sequence>_<entry_id>.json   the entry record (written last)

FIFO by sequence number; survives restarts.
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from credchain.core.errors import StorageError
from credchain.services.storage.local import atomic_write

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    entry_id: str
    sequence: int
    filename: str
    metadata: dict[str, Any] = field(default_factory=dict)
    enqueued_at: str = ""
    attempt_count: int = 0
    last_error: Optional[str] = None

    @property
    def stem(self) -> str:
        return f"{self.sequence:012d}_{self.entry_id}"

    @property
    def document_hash(self) -> Optional[str]:
        return self.metadata.get("hash")

    def to_dict(self) -> dict:
        return asdict(self)


class RetryQueue:
    """Durable FIFO of pending remote uploads."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError("queue", f"cannot create queue directory: {exc}") from exc

    def _record_path(self, entry: QueueEntry) -> Path:
        return self.root / f"{entry.stem}.json"

    def _payload_path(self, entry: QueueEntry) -> Path:
        return self.root / f"{entry.stem}.bin"

    def _write_record(self, entry: QueueEntry) -> None:
        atomic_write(self._record_path(entry), json.dumps(entry.to_dict(), indent=2).encode("utf-8"))

    def entries(self) -> list[QueueEntry]:
        """All committed entries, oldest first."""
        if not self.root.is_dir():
            return []
        result = []
        for path in sorted(self.root.glob("*.json")):
            try:
                result.append(QueueEntry(**json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, TypeError) as exc:
                logger.error("Unreadable queue entry %s: %s", path.name, exc)
        return result

    def depth(self) -> int:
        return len(self.entries())

    def peek(self) -> Optional[QueueEntry]:
        entries = self.entries()
        return entries[0] if entries else None

    def position(self, entry_id: str) -> Optional[int]:
        """1-based position of an entry, or None when it is gone."""
        for index, entry in enumerate(self.entries(), start=1):
            if entry.entry_id == entry_id:
                return index
        return None

    def enqueue(self, data: bytes, filename: str, metadata: Mapping[str, Any]) -> tuple[QueueEntry, int]:
        """
        Append a payload. An entry already queued for the same document
        hash keeps its place; when it holds a different envelope, its
        payload and metadata are swapped for the new ones.
        """
        with self._lock:
            entries = self.entries()
            document_hash = metadata.get("hash")
            if document_hash:
                for index, existing in enumerate(entries, start=1):
                    if existing.document_hash == document_hash:
                        if existing.metadata.get("envelope_cid") != metadata.get("envelope_cid"):
                            self._replace(existing, data, filename, metadata)
                        return existing, index

            self._ensure_root()
            entry = QueueEntry(
                entry_id=uuid.uuid4().hex,
                sequence=(entries[-1].sequence + 1) if entries else 1,
                filename=filename,
                metadata=dict(metadata),
                enqueued_at=datetime.now(timezone.utc).isoformat(),
            )
            try:
                atomic_write(self._payload_path(entry), data)
                self._write_record(entry)
            except OSError as exc:
                raise StorageError("queue", f"enqueue failed: {exc}") from exc

        logger.info(
            "Upload queued for later processing",
            extra={"entry_id": entry.entry_id, "queue_length": len(entries) + 1},
        )
        return entry, len(entries) + 1

    def _replace(self, entry: QueueEntry, data: bytes, filename: str, metadata: Mapping[str, Any]) -> None:
        entry.filename = filename
        entry.metadata = dict(metadata)
        entry.attempt_count = 0
        entry.last_error = None
        try:
            atomic_write(self._payload_path(entry), data)
            self._write_record(entry)
        except OSError as exc:
            raise StorageError("queue", f"replacing payload failed: {exc}") from exc
        logger.info(
            "Queued upload replaced with a newer envelope",
            extra={"entry_id": entry.entry_id, "document_hash": entry.document_hash},
        )

    def load_payload(self, entry: QueueEntry) -> bytes:
        try:
            return self._payload_path(entry).read_bytes()
        except OSError as exc:
            raise StorageError("queue", f"payload for {entry.entry_id} unreadable: {exc}") from exc

    def record_failure(self, entry: QueueEntry, error: str) -> QueueEntry:
        with self._lock:
            entry.attempt_count += 1
            entry.last_error = error
            self._write_record(entry)
        return entry

    def remove(self, entry: QueueEntry) -> None:
        with self._lock:
            # Record first, so a crash in between leaves only an orphan payload
            for path in (self._record_path(entry), self._payload_path(entry)):
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
