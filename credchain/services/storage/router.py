"""
Credchain - Storage Router
Multi-provider upload with per-provider retry, local fallback and a
durable retry queue drained in the background.

Upload order:
1. Remote providers by ascending priority, each retried with exponential
   backoff on retriable failures (network, timeout, 5xx)
2. When every remote provider fails, the payload is queued for a later
   remote attempt and written to the local store (single try)
3. When the local store fails too, AllProvidersUnavailable
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from credchain.core.config import RetryPolicy
from credchain.core.errors import AllProvidersUnavailable, NotFoundError, StorageError
from credchain.core.timeout import Deadline
from credchain.services.storage.base import HttpPinningProvider, PinnedObject
from credchain.services.storage.local import LocalStore, is_local_cid
from credchain.services.storage.queue import QueueEntry, RetryQueue

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
DrainCallback = Callable[[QueueEntry, PinnedObject], Awaitable[None]]


class stop_at_deadline(stop_base):
    """Stop retrying once the caller's deadline has run out."""

    def __init__(self, deadline: Deadline):
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.deadline.expired


class wait_within_deadline(wait_base):
    """Wrap a wait strategy so no backoff sleeps past the deadline."""

    def __init__(self, wait: wait_base, deadline: Deadline):
        self.wait = wait
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.deadline.cap(self.wait(retry_state))


@dataclass
class UploadResult:
    cid: str
    provider: str
    size: int
    gateway_url: Optional[str]
    timestamp: str
    queued: bool = False
    queue_position: Optional[int] = None
    attempts: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "cid": self.cid,
            "provider": self.provider,
            "size": self.size,
            "gateway_url": self.gateway_url,
            "timestamp": self.timestamp,
            "queued": self.queued,
        }
        if self.queued:
            data["queue_position"] = self.queue_position
        return data


@dataclass
class DrainReport:
    processed: int = 0
    dropped: int = 0
    remaining: int = 0

    def to_dict(self) -> dict:
        return {"processed": self.processed, "dropped": self.dropped, "remaining": self.remaining}


class StorageRouter:
    """
    Routes uploads across providers.

    The provider table is fixed at construction. The retry queue has at
    most one drainer at a time.
    """

    def __init__(
        self,
        providers: Sequence[HttpPinningProvider],
        local: LocalStore,
        queue: RetryQueue,
        retry: Optional[RetryPolicy] = None,
        gateway_prefix: str = "https://ipfs.io/ipfs/",
        download_timeout: float = 30.0,
        queue_max_attempts: int = 5,
        sleep: SleepFunc = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        priorities = [p.priority for p in providers]
        if len(priorities) != len(set(priorities)):
            raise ValueError("provider priorities must be unique")
        self._providers: tuple[HttpPinningProvider, ...] = tuple(sorted(providers, key=lambda p: p.priority))
        self.local = local
        self.queue = queue
        self.retry = retry or RetryPolicy()
        self.gateway_prefix = gateway_prefix
        self.download_timeout = download_timeout
        self.queue_max_attempts = queue_max_attempts
        self._sleep = sleep
        self._transport = transport
        self._drain_lock = asyncio.Lock()

    @property
    def remote_providers(self) -> tuple[HttpPinningProvider, ...]:
        return self._providers

    def gateway_url(self, cid: str) -> Optional[str]:
        if is_local_cid(cid):
            return None
        return f"{self.gateway_prefix}{cid}"

    # =========================================================================
    # Upload
    # =========================================================================

    async def _backoff(self, seconds: float) -> None:
        await self._sleep(float(seconds))

    def _retrying(self, provider_name: str, deadline: Optional[Deadline]) -> AsyncRetrying:
        stop = stop_after_attempt(self.retry.max_retries)
        wait = self.retry.wait_strategy()
        if deadline is not None:
            stop = stop | stop_at_deadline(deadline)
            wait = wait_within_deadline(wait, deadline)

        def log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception()
            logger.warning(
                "Upload to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                provider_name,
                state.attempt_number,
                self.retry.max_retries,
                state.next_action.sleep,
                getattr(exc, "message", exc),
            )

        return AsyncRetrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception(lambda exc: isinstance(exc, StorageError) and exc.retriable),
            sleep=self._backoff,
            before_sleep=log_retry,
            reraise=True,
        )

    async def _upload_with_retry(
        self,
        provider: HttpPinningProvider,
        data: bytes,
        filename: str,
        metadata: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> tuple[PinnedObject, int]:
        attempts = 0
        try:
            async for attempt in self._retrying(provider.provider_name, deadline):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    timeout = deadline.cap(provider.upload_timeout) if deadline is not None else None
                    pinned = await provider.upload(data, filename, metadata, timeout=timeout)
        except StorageError as exc:
            exc.attempts = attempts
            raise
        return pinned, attempts

    async def upload_remote(
        self,
        data: bytes,
        filename: str,
        metadata: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> tuple[PinnedObject, int]:
        """Remote providers only. Raises AllProvidersUnavailable when all fail."""
        errors: dict[str, str] = {}
        attempts = 0
        for provider in self._providers:
            if deadline is not None and deadline.expired:
                errors[provider.provider_name] = "deadline exhausted before upload"
                continue
            try:
                pinned, used = await self._upload_with_retry(provider, data, filename, metadata, deadline)
            except StorageError as exc:
                attempts += getattr(exc, "attempts", 1)
                errors[provider.provider_name] = exc.message
                logger.error(
                    "Provider %s exhausted, trying next",
                    provider.provider_name,
                    extra={"provider": provider.provider_name, "error": exc.message},
                )
                continue
            attempts += used
            logger.info(
                "Upload succeeded via %s",
                provider.provider_name,
                extra={"provider": provider.provider_name, "cid": pinned.cid, "size": pinned.size},
            )
            return pinned, attempts
        error = AllProvidersUnavailable(errors)
        error.attempts = attempts
        raise error

    def _result(self, pinned: PinnedObject, attempts: int, **kwargs) -> UploadResult:
        return UploadResult(
            cid=pinned.cid,
            provider=pinned.provider,
            size=pinned.size,
            gateway_url=self.gateway_url(pinned.cid),
            timestamp=datetime.now(timezone.utc).isoformat(),
            attempts=attempts,
            **kwargs,
        )

    async def upload(
        self,
        data: bytes,
        filename: str,
        metadata: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> UploadResult:
        """
        Store ``data``.

        Returns a queued result (local pseudo-CID, queue position) when the
        remote providers are down but the local store took the bytes.
        """
        if not self._providers:
            try:
                pinned = await self.local.upload(data, filename, metadata)
            except StorageError as exc:
                raise AllProvidersUnavailable({"local": exc.message}) from exc
            return self._result(pinned, attempts=1)

        try:
            pinned, attempts = await self.upload_remote(data, filename, metadata, deadline)
            return self._result(pinned, attempts)
        except AllProvidersUnavailable as exc:
            errors = dict(exc.errors)
            attempts = getattr(exc, "attempts", 0)

        logger.warning("All remote providers failed, queueing and storing locally", extra={"errors": errors})
        position: Optional[int] = None
        try:
            _, position = self.queue.enqueue(data, filename, metadata)
        except StorageError as exc:
            errors["queue"] = exc.message
            logger.error("Could not queue upload for retry: %s", exc.message)

        try:
            pinned = await self.local.upload(data, filename, metadata)
        except StorageError as exc:
            errors["local"] = exc.message
            raise AllProvidersUnavailable(errors, queue_position=position) from exc

        return self._result(
            pinned,
            attempts + 1,
            queued=position is not None,
            queue_position=position,
            errors=errors,
        )

    # =========================================================================
    # Download
    # =========================================================================

    async def download(self, cid: str) -> bytes:
        if is_local_cid(cid):
            return self.local.get(cid)

        url = f"{self.gateway_prefix}{cid}"
        try:
            async with httpx.AsyncClient(timeout=self.download_timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise StorageError("gateway", f"download of {cid} timed out", retriable=True) from exc
        except httpx.TransportError as exc:
            raise StorageError("gateway", f"download of {cid} failed: {exc}", retriable=True) from exc

        if response.status_code == 404:
            raise NotFoundError("Stored object", cid)
        if response.status_code >= 400:
            raise StorageError(
                "gateway",
                f"download of {cid} returned {response.status_code}",
                retriable=response.status_code >= 500,
                http_status=response.status_code,
            )
        return response.content

    # =========================================================================
    # Health & Queue
    # =========================================================================

    async def health(self) -> dict[str, dict]:
        providers = [*self._providers, self.local]
        results = await asyncio.gather(*(p.health() for p in providers))
        return {p.provider_name: r.to_dict() for p, r in zip(providers, results)}

    def queue_status(self) -> dict:
        entries = self.queue.entries()
        return {
            "depth": len(entries),
            "in_flight": self._drain_lock.locked(),
            "items": [
                {
                    "entry_id": e.entry_id,
                    "filename": e.filename,
                    "document_hash": e.document_hash,
                    "enqueued_at": e.enqueued_at,
                    "attempt_count": e.attempt_count,
                    "last_error": e.last_error,
                }
                for e in entries
            ],
        }

    async def process_queue_once(self, on_drained: Optional[DrainCallback] = None) -> DrainReport:
        """
        One pass over the queue, oldest first.

        The pass stops at the first entry that still fails; an entry is
        dropped once it has failed ``queue_max_attempts`` times.
        """
        report = DrainReport()
        if not self._providers:
            report.remaining = self.queue.depth()
            return report

        async with self._drain_lock:
            while True:
                entry = self.queue.peek()
                if entry is None:
                    break
                try:
                    data = self.queue.load_payload(entry)
                    pinned, _ = await self.upload_remote(data, entry.filename, entry.metadata)
                except (StorageError, AllProvidersUnavailable) as exc:
                    entry = self.queue.record_failure(entry, exc.message)
                    if entry.attempt_count >= self.queue_max_attempts:
                        logger.error(
                            "Dropping queued upload after %d attempts",
                            entry.attempt_count,
                            extra={"entry_id": entry.entry_id, "document_hash": entry.document_hash},
                        )
                        self.queue.remove(entry)
                        report.dropped += 1
                    break

                self.queue.remove(entry)
                report.processed += 1
                logger.info(
                    "Queued upload pinned",
                    extra={"entry_id": entry.entry_id, "cid": pinned.cid, "provider": pinned.provider},
                )
                if on_drained is not None:
                    try:
                        await on_drained(entry, pinned)
                    except Exception:
                        logger.exception("Drain callback failed for %s", entry.entry_id)

        report.remaining = self.queue.depth()
        return report

    async def run_queue_worker(
        self,
        stop: asyncio.Event,
        pause_seconds: float,
        on_drained: Optional[DrainCallback] = None,
    ) -> None:
        """Drain until ``stop`` is set, pausing between passes."""
        logger.info("Queue worker started")
        while not stop.is_set():
            try:
                await self.process_queue_once(on_drained)
            except Exception:
                logger.exception("Queue drain pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=pause_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Queue worker stopped")
