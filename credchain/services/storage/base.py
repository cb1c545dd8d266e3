"""
Credchain Storage Service - Base Interface
Abstract base class for content-addressed pinning providers.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import httpx

from credchain.core.errors import StorageError


@dataclass
class ProviderHealth:
    """Result of one provider probe."""
    available: bool
    response_time_ms: Optional[float] = None
    priority: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "available": self.available,
            "response_time_ms": self.response_time_ms,
            "priority": self.priority,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class PinnedObject:
    """What a provider returns for a stored object."""
    cid: str
    provider: str
    size: int
    extra: dict[str, Any] = field(default_factory=dict)


class StorageProvider(ABC):
    """
    Abstract base class for storage providers.
    All providers (web3.storage, Pinata, NFT.Storage, local) implement this.
    """

    priority: int = 0

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider name: web3_storage, pinata, nft_storage, local"""
        pass

    @abstractmethod
    async def upload(self, data: bytes, filename: str, metadata: Mapping[str, Any]) -> PinnedObject:
        """Store ``data`` and return its content identifier."""
        pass

    @abstractmethod
    async def health(self) -> ProviderHealth:
        """Probe the provider."""
        pass


class HttpPinningProvider(StorageProvider):
    """
    Shared request plumbing for HTTP pinning services.

    Failure classification: connection refused, DNS failure, timeouts and
    5xx answers are retriable; 4xx answers and malformed responses are not.
    """

    upload_path: str = "/upload"
    health_path: str = "/"

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        priority: int,
        upload_timeout: float = 60.0,
        health_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.priority = priority
        self.upload_timeout = upload_timeout
        self.health_timeout = health_timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    @abstractmethod
    def _extract_cid(self, payload: Any) -> str:
        """Pull the CID out of the provider's JSON answer."""
        pass

    def _upload_request(
        self, data: bytes, filename: str, metadata: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Keyword arguments for the upload POST."""
        return {
            "url": f"{self.endpoint}{self.upload_path}",
            "files": {"file": (filename, data, "application/octet-stream")},
            "headers": self._auth_headers(),
        }

    async def upload(
        self, data: bytes, filename: str, metadata: Mapping[str, Any], timeout: Optional[float] = None
    ) -> PinnedObject:
        request = self._upload_request(data, filename, metadata)
        try:
            async with self._client(self.upload_timeout if timeout is None else timeout) as client:
                response = await client.post(**request)
        except httpx.TimeoutException as exc:
            raise StorageError(self.provider_name, f"upload timed out: {exc}", retriable=True) from exc
        except httpx.TransportError as exc:
            # Refused connections and DNS failures land here
            raise StorageError(self.provider_name, f"network error: {exc}", retriable=True) from exc

        if response.status_code >= 500:
            raise StorageError(
                self.provider_name,
                f"server error {response.status_code}",
                retriable=True,
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            raise StorageError(
                self.provider_name,
                f"rejected with {response.status_code}: {response.text[:200]}",
                http_status=response.status_code,
            )

        try:
            cid = self._extract_cid(response.json())
        except (ValueError, KeyError, TypeError):
            raise StorageError(self.provider_name, "malformed upload response") from None
        if not cid or not isinstance(cid, str):
            raise StorageError(self.provider_name, "upload response carried no CID")
        return PinnedObject(cid=cid, provider=self.provider_name, size=len(data))

    async def health(self) -> ProviderHealth:
        start = time.perf_counter()
        try:
            async with self._client(self.health_timeout) as client:
                response = await client.get(
                    f"{self.endpoint}{self.health_path}",
                    headers=self._auth_headers(),
                )
        except httpx.HTTPError as exc:
            return ProviderHealth(available=False, priority=self.priority, reason=str(exc) or type(exc).__name__)

        elapsed = round((time.perf_counter() - start) * 1000, 1)
        if response.status_code >= 400:
            return ProviderHealth(
                available=False,
                response_time_ms=elapsed,
                priority=self.priority,
                reason=f"HTTP {response.status_code}",
            )
        return ProviderHealth(available=True, response_time_ms=elapsed, priority=self.priority)
