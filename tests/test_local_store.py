"""
Tests for the local fallback store.
"""

import json

import pytest

from credchain.core.errors import NotFoundError
from credchain.services.storage.local import (
    SIDECAR_SUFFIX,
    LocalStore,
    is_local_cid,
    local_cid_for,
    sanitize_filename,
)


@pytest.fixture
def store(tmp_path) -> LocalStore:
    return LocalStore(tmp_path / "local", clock=lambda: 1_700_000_000.123)


def test_put_and_get(store):
    obj = store.put(b"encrypted bytes", "encrypted_degree.pdf", {"hash": "0xabc"})
    assert is_local_cid(obj.local_cid)
    assert obj.local_cid == local_cid_for(b"encrypted bytes")
    assert obj.local_filename == "1700000000123_encrypted_degree.pdf"
    assert store.get(obj.local_cid) == b"encrypted bytes"
    assert store.exists(obj.local_cid)


def test_sidecar_contents(store):
    obj = store.put(b"payload", "report card.pdf", {"kind": "transcript"})
    sidecar = store.root / f"{obj.local_filename}{SIDECAR_SUFFIX}"
    data = json.loads(sidecar.read_text())
    assert data["original_filename"] == "report card.pdf"
    assert data["local_cid"] == obj.local_cid
    assert data["size"] == len(b"payload")
    assert data["metadata"] == {"kind": "transcript"}


def test_same_bytes_same_object(store):
    first = store.put(b"same", "a.pdf")
    second = store.put(b"same", "b.pdf")
    assert first.local_filename == second.local_filename
    assert store.stats()["objects"] == 1


def test_missing_cid(store):
    with pytest.raises(NotFoundError):
        store.get("local_" + "0" * 32)
    assert not store.exists("local_" + "0" * 32)


def test_object_without_sidecar_is_not_stored(store):
    obj = store.put(b"payload", "x.pdf")
    (store.root / f"{obj.local_filename}{SIDECAR_SUFFIX}").unlink()
    with pytest.raises(NotFoundError):
        store.get(obj.local_cid)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("degree.pdf", "degree.pdf"),
        ("../../etc/passwd", "_.._etc_passwd"),
        ("...hidden", "hidden"),
        ("naïve résumé.pdf", "na_ve_r_sum_.pdf"),
        ("", "file"),
    ],
)
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected


def test_stats(store):
    store.put(b"one", "1.pdf")
    store.put(b"two!", "2.pdf")
    stats = store.stats()
    assert stats["objects"] == 2
    assert stats["total_bytes"] == 7


@pytest.mark.anyio
async def test_provider_interface(store):
    pinned = await store.upload(b"bytes", "f.pdf", {})
    assert pinned.provider == "local"
    assert pinned.size == 5
    health = await store.health()
    assert health.available
    assert health.priority == LocalStore.priority
