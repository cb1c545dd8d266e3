"""
Tests for the storage router: per-provider retry with backoff, fallback
across providers, local fallback with queueing, downloads and the queue
drain.
"""

import asyncio

import httpx
import pytest

from conftest import RecordingSleep
from credchain.core.config import RetryPolicy
from credchain.core.errors import AllProvidersUnavailable, NotFoundError, StorageError
from credchain.core.timeout import Deadline
from credchain.services.storage import (
    LocalStore,
    NFTStorageProvider,
    PinataProvider,
    RetryQueue,
    StorageRouter,
    Web3StorageProvider,
)
from credchain.services.storage.local import is_local_cid
from support import GATEWAY_HOST, NFT_HOST, PINATA_HOST, WEB3_HOST, ScriptedTransport, refused, timed_out

CID = "bafybeihkoviema7g3gxyt6la7vd5ho32ictqbilu3wnlo3rs7ewhnp7lly"
OTHER_CID = "bafkreidgvpkjawlxz6sffxzwgooowe5yt7i6wsyg236mfoks77nywkptdq"


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def recorder() -> RecordingSleep:
    return RecordingSleep()


def make_router(tmp_path, transport, sleep, remote=True, local_root=None, **kwargs) -> StorageRouter:
    providers = []
    if remote:
        providers = [
            Web3StorageProvider(api_key="w3", endpoint="https://api.web3.storage", priority=1, transport=transport),
            PinataProvider(
                api_key="pk", secret_api_key="sk", endpoint="https://api.pinata.cloud", priority=2, transport=transport
            ),
            NFTStorageProvider(api_key="nft", endpoint="https://api.nft.storage", priority=3, transport=transport),
        ]
    return StorageRouter(
        providers=providers,
        local=LocalStore(local_root or tmp_path / "local"),
        queue=RetryQueue(tmp_path / "queue"),
        sleep=sleep,
        transport=transport,
        **kwargs,
    )


def all_down(transport: ScriptedTransport) -> None:
    transport.script(WEB3_HOST, refused)
    transport.script(PINATA_HOST, timed_out)
    transport.script(NFT_HOST, httpx.Response(503))


# =============================================================================
# Upload
# =============================================================================

@pytest.mark.anyio
async def test_first_provider_wins(tmp_path, transport, recorder):
    transport.script(WEB3_HOST, httpx.Response(200, json={"cid": CID}))
    router = make_router(tmp_path, transport, recorder)

    result = await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"})

    assert result.cid == CID
    assert result.provider == "web3_storage"
    assert result.gateway_url == f"https://ipfs.io/ipfs/{CID}"
    assert not result.queued
    assert result.attempts == 1
    assert recorder.delays == []
    assert transport.calls(PINATA_HOST) == []


@pytest.mark.anyio
async def test_fallback_after_retries(tmp_path, transport, recorder):
    transport.script(WEB3_HOST, refused)
    transport.script(
        PINATA_HOST,
        httpx.Response(502),
        httpx.Response(502),
        httpx.Response(200, json={"IpfsHash": CID}),
    )
    router = make_router(tmp_path, transport, recorder)

    result = await router.upload(b"envelope", "degree.pdf", {})

    assert result.provider == "pinata"
    assert result.cid == CID
    assert len(transport.calls(WEB3_HOST)) == 3
    assert len(transport.calls(PINATA_HOST)) == 3
    assert transport.calls(NFT_HOST) == []
    assert result.attempts == 6
    assert recorder.delays == [1.0, 2.0, 1.0, 2.0]


@pytest.mark.anyio
async def test_client_error_skips_retries(tmp_path, transport, recorder):
    transport.script(WEB3_HOST, httpx.Response(401, json={"message": "bad token"}))
    transport.script(PINATA_HOST, httpx.Response(200, json={"IpfsHash": CID}))
    router = make_router(tmp_path, transport, recorder)

    result = await router.upload(b"envelope", "degree.pdf", {})

    assert result.provider == "pinata"
    assert len(transport.calls(WEB3_HOST)) == 1
    assert recorder.delays == []


@pytest.mark.anyio
async def test_backoff_is_capped(tmp_path, transport, recorder):
    transport.script(WEB3_HOST, refused)
    transport.script(PINATA_HOST, httpx.Response(200, json={"IpfsHash": CID}))
    retry = RetryPolicy(max_retries=6, initial_backoff_ms=1000, backoff_multiplier=2.0, max_backoff_ms=5000)
    router = make_router(tmp_path, transport, recorder, retry=retry)

    await router.upload(b"envelope", "degree.pdf", {})

    assert recorder.delays == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.anyio
async def test_deadline_cuts_retries_short(tmp_path, transport, recorder):
    clock = [0.0]

    async def sleep(seconds):
        await recorder(seconds)
        clock[0] += seconds

    all_down(transport)
    router = make_router(tmp_path, transport, sleep)
    deadline = Deadline(1.0, clock=lambda: clock[0])

    result = await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"}, deadline=deadline)

    assert len(transport.calls(WEB3_HOST)) == 2
    assert transport.calls(PINATA_HOST) == []
    assert transport.calls(NFT_HOST) == []
    assert recorder.delays == [1.0]
    assert result.queued
    assert result.errors["pinata"] == "deadline exhausted before upload"


@pytest.mark.anyio
async def test_all_remote_down_queues_and_stores_locally(tmp_path, transport, recorder):
    all_down(transport)
    router = make_router(tmp_path, transport, recorder)

    result = await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"})

    assert result.queued
    assert result.queue_position == 1
    assert result.provider == "local"
    assert is_local_cid(result.cid)
    assert result.gateway_url is None
    assert set(result.errors) == {"web3_storage", "pinata", "nft_storage"}
    assert router.local.get(result.cid) == b"envelope"
    assert router.queue.depth() == 1
    assert result.to_dict()["queue_position"] == 1


@pytest.mark.anyio
async def test_local_failure_after_remote_exhaustion(tmp_path, transport, recorder):
    all_down(transport)
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    router = make_router(tmp_path, transport, recorder, local_root=blocker)

    with pytest.raises(AllProvidersUnavailable) as exc_info:
        await router.upload(b"envelope", "degree.pdf", {})

    assert "local" in exc_info.value.errors
    assert exc_info.value.queue_position == 1


@pytest.mark.anyio
async def test_no_remote_providers_goes_local(tmp_path, transport, recorder):
    router = make_router(tmp_path, transport, recorder, remote=False)

    result = await router.upload(b"envelope", "degree.pdf", {})

    assert result.provider == "local"
    assert not result.queued
    assert router.queue.depth() == 0
    assert transport.requests == []


def test_duplicate_priorities_rejected(tmp_path, transport, recorder):
    with pytest.raises(ValueError):
        StorageRouter(
            providers=[
                Web3StorageProvider(api_key="a", endpoint="https://a", priority=1),
                NFTStorageProvider(api_key="b", endpoint="https://b", priority=1),
            ],
            local=LocalStore(tmp_path / "local"),
            queue=RetryQueue(tmp_path / "queue"),
        )


# =============================================================================
# Download
# =============================================================================

@pytest.mark.anyio
async def test_download_local(tmp_path, transport, recorder):
    router = make_router(tmp_path, transport, recorder, remote=False)
    result = await router.upload(b"envelope", "degree.pdf", {})
    assert await router.download(result.cid) == b"envelope"


@pytest.mark.anyio
async def test_download_from_gateway(tmp_path, transport, recorder):
    transport.script(GATEWAY_HOST, httpx.Response(200, content=b"remote envelope"))
    router = make_router(tmp_path, transport, recorder)

    assert await router.download(CID) == b"remote envelope"
    assert transport.calls(GATEWAY_HOST)[0].url.path == f"/ipfs/{CID}"


@pytest.mark.anyio
async def test_download_missing(tmp_path, transport, recorder):
    transport.script(GATEWAY_HOST, httpx.Response(404))
    router = make_router(tmp_path, transport, recorder)
    with pytest.raises(NotFoundError):
        await router.download(CID)


@pytest.mark.anyio
async def test_download_gateway_error(tmp_path, transport, recorder):
    transport.script(GATEWAY_HOST, httpx.Response(502))
    router = make_router(tmp_path, transport, recorder)
    with pytest.raises(StorageError) as exc_info:
        await router.download(CID)
    assert exc_info.value.retriable


# =============================================================================
# Health & Queue
# =============================================================================

@pytest.mark.anyio
async def test_health_covers_every_provider(tmp_path, transport, recorder):
    transport.script(WEB3_HOST, httpx.Response(200, json=[]))
    transport.script(PINATA_HOST, httpx.Response(401))
    transport.script(NFT_HOST, refused)
    router = make_router(tmp_path, transport, recorder)

    health = await router.health()

    assert health["web3_storage"]["available"]
    assert not health["pinata"]["available"]
    assert not health["nft_storage"]["available"]
    assert health["local"]["available"]


@pytest.mark.anyio
async def test_queue_status(tmp_path, transport, recorder):
    all_down(transport)
    router = make_router(tmp_path, transport, recorder)
    await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"})

    status = router.queue_status()

    assert status["depth"] == 1
    assert status["in_flight"] is False
    assert status["items"][0]["document_hash"] == "0x01"
    assert status["items"][0]["attempt_count"] == 0


@pytest.mark.anyio
async def test_drain_pins_queued_upload(tmp_path, transport, recorder):
    all_down(transport)
    router = make_router(tmp_path, transport, recorder)
    await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"})

    transport.script(WEB3_HOST, httpx.Response(200, json={"cid": OTHER_CID}))
    drained = []

    async def on_drained(entry, pinned):
        drained.append((entry.document_hash, pinned.cid))

    report = await router.process_queue_once(on_drained)

    assert report.to_dict() == {"processed": 1, "dropped": 0, "remaining": 0}
    assert drained == [("0x01", OTHER_CID)]


@pytest.mark.anyio
async def test_drain_failure_keeps_entry_then_drops(tmp_path, transport, recorder):
    all_down(transport)
    router = make_router(tmp_path, transport, recorder, queue_max_attempts=2)
    await router.upload(b"one", "one.pdf", {"hash": "0x01"})
    await router.upload(b"two", "two.pdf", {"hash": "0x02"})

    first = await router.process_queue_once()
    assert first.to_dict() == {"processed": 0, "dropped": 0, "remaining": 2}
    head, tail = router.queue.entries()
    assert head.attempt_count == 1
    assert head.last_error
    assert tail.attempt_count == 0

    second = await router.process_queue_once()
    assert second.dropped == 1
    assert second.remaining == 1
    assert router.queue.peek().document_hash == "0x02"


@pytest.mark.anyio
async def test_drain_callback_failure_does_not_requeue(tmp_path, transport, recorder):
    all_down(transport)
    router = make_router(tmp_path, transport, recorder)
    await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"})
    transport.script(WEB3_HOST, httpx.Response(200, json={"cid": OTHER_CID}))

    async def on_drained(entry, pinned):
        raise RuntimeError("database locked")

    report = await router.process_queue_once(on_drained)
    assert report.processed == 1
    assert router.queue.depth() == 0


@pytest.mark.anyio
async def test_drain_without_remote_providers_is_noop(tmp_path, transport, recorder):
    router = make_router(tmp_path, transport, recorder, remote=False)
    router.queue.enqueue(b"envelope", "degree.pdf", {"hash": "0x01"})

    report = await router.process_queue_once()

    assert report.processed == 0
    assert report.remaining == 1


@pytest.mark.anyio
async def test_queue_worker_stops_on_event(tmp_path, transport, recorder):
    all_down(transport)
    router = make_router(tmp_path, transport, recorder)
    await router.upload(b"envelope", "degree.pdf", {"hash": "0x01"})
    transport.script(WEB3_HOST, httpx.Response(200, json={"cid": OTHER_CID}))
    stop = asyncio.Event()

    async def on_drained(entry, pinned):
        stop.set()

    await asyncio.wait_for(router.run_queue_worker(stop, pause_seconds=0.01, on_drained=on_drained), timeout=5)

    assert stop.is_set()
    assert router.queue.depth() == 0
