"""
Tests for the durable upload retry queue.
"""

import pytest

from credchain.services.storage.queue import RetryQueue


@pytest.fixture
def queue(tmp_path) -> RetryQueue:
    return RetryQueue(tmp_path / "queue")


def test_empty_queue(queue):
    assert queue.depth() == 0
    assert queue.peek() is None
    assert queue.entries() == []


def test_fifo_order(queue):
    first, pos1 = queue.enqueue(b"one", "a.pdf", {"hash": "0x01"})
    second, pos2 = queue.enqueue(b"two", "b.pdf", {"hash": "0x02"})
    assert (pos1, pos2) == (1, 2)
    assert [e.entry_id for e in queue.entries()] == [first.entry_id, second.entry_id]
    assert queue.peek().entry_id == first.entry_id
    assert queue.position(second.entry_id) == 2


def test_payload_is_kept(queue):
    entry, _ = queue.enqueue(b"\x00encrypted\xff", "a.pdf", {"hash": "0x01"})
    assert queue.load_payload(entry) == b"\x00encrypted\xff"


def test_dedupes_on_document_hash(queue):
    first, _ = queue.enqueue(b"one", "a.pdf", {"hash": "0x01"})
    again, position = queue.enqueue(b"one", "a.pdf", {"hash": "0x01"})
    assert again.entry_id == first.entry_id
    assert position == 1
    assert queue.depth() == 1


def test_requeue_with_new_envelope_replaces_payload(queue):
    first, _ = queue.enqueue(b"old envelope", "a.pdf", {"hash": "0x01", "envelope_cid": "local_old"})
    queue.enqueue(b"other", "b.pdf", {"hash": "0x02", "envelope_cid": "local_other"})
    queue.record_failure(first, "503")

    again, position = queue.enqueue(b"new envelope", "a.pdf", {"hash": "0x01", "envelope_cid": "local_new"})

    assert again.entry_id == first.entry_id
    assert position == 1
    assert queue.depth() == 2
    [stored] = [e for e in queue.entries() if e.entry_id == first.entry_id]
    assert stored.metadata["envelope_cid"] == "local_new"
    assert stored.attempt_count == 0
    assert stored.last_error is None
    assert queue.load_payload(stored) == b"new envelope"


def test_survives_restart(tmp_path):
    root = tmp_path / "queue"
    entry, _ = RetryQueue(root).enqueue(b"payload", "a.pdf", {"hash": "0x01"})

    reopened = RetryQueue(root)
    assert reopened.depth() == 1
    restored = reopened.peek()
    assert restored.entry_id == entry.entry_id
    assert restored.document_hash == "0x01"
    assert reopened.load_payload(restored) == b"payload"


def test_record_failure_persists(queue):
    entry, _ = queue.enqueue(b"payload", "a.pdf", {})
    queue.record_failure(entry, "pinata: server error 503")
    restored = RetryQueue(queue.root).peek()
    assert restored.attempt_count == 1
    assert restored.last_error == "pinata: server error 503"


def test_remove_exactly_once(queue):
    entry, _ = queue.enqueue(b"payload", "a.pdf", {})
    queue.remove(entry)
    queue.remove(entry)
    assert queue.depth() == 0
    assert list(queue.root.iterdir()) == []


def test_sequence_continues_after_removal(queue):
    first, _ = queue.enqueue(b"one", "a.pdf", {})
    second, _ = queue.enqueue(b"two", "b.pdf", {})
    queue.remove(second)
    third, _ = queue.enqueue(b"three", "c.pdf", {})
    assert third.sequence > first.sequence
    assert queue.position(third.entry_id) == 2
