"""
Credchain - Ledger Coordinator
Anchors document hashes on the ledger and answers lookups.

The chain itself sits behind a ledger gateway; this module speaks to it
through the LedgerClient port. HttpLedgerClient is the JSON-over-HTTP
implementation. Every failure surfaces as LedgerError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from credchain.core.errors import CredchainError, LedgerError
from credchain.core.timeout import Deadline, with_timeout

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class AnchorReceipt:
    txn_id: str
    block_height: Optional[int] = None
    gas: Optional[int] = None
    contract_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "txn_id": self.txn_id,
            "block_height": self.block_height,
            "gas": self.gas,
            "contract_id": self.contract_id,
        }


@dataclass
class LedgerLookup:
    present: bool
    owner_id: Optional[str] = None
    issued_at: Optional[str] = None
    active: bool = False

    @property
    def valid(self) -> bool:
        return self.present and self.active


# =============================================================================
# Port
# =============================================================================

class LedgerClient(ABC):
    """What the service needs from a ledger."""

    @abstractmethod
    async def anchor(
        self,
        document_hash: str,
        storage_cid: str,
        owner_id: str,
        issuer_id: str,
        summary: Mapping[str, Any],
    ) -> AnchorReceipt:
        pass

    @abstractmethod
    async def lookup(self, document_hash: str) -> LedgerLookup:
        pass

    @abstractmethod
    async def grant(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        """Record a viewer grant; returns the transaction id."""
        pass

    @abstractmethod
    async def revoke(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        pass

    @abstractmethod
    async def health(self) -> bool:
        pass


class HttpLedgerClient(LedgerClient):
    """
    Ledger gateway client.

    Endpoints:
    - POST /documents                        anchor
    - GET  /documents/{hash}                 lookup (404 = absent)
    - POST /documents/{hash}/access          grant / revoke
    - GET  /health
    """

    def __init__(
        self,
        endpoint: str,
        credentials: Optional[str] = None,
        contract_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.credentials = credentials
        self.contract_id = contract_id
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.credentials:
            headers["Authorization"] = f"Bearer {self.credentials}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.request(method, f"{self.endpoint}{path}", headers=self._headers(), **kwargs)

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict:
        if response.status_code >= 400:
            raise LedgerError(f"Ledger {action} rejected with {response.status_code}: {response.text[:200]}")
        return response.json()

    async def anchor(self, document_hash, storage_cid, owner_id, issuer_id, summary) -> AnchorReceipt:
        response = await self._request(
            "POST",
            "/documents",
            json={
                "document_hash": document_hash,
                "storage_cid": storage_cid,
                "owner_id": owner_id,
                "issuer_id": issuer_id,
                "contract_id": self.contract_id,
                **dict(summary),
            },
        )
        data = self._check(response, "anchor")
        return AnchorReceipt(
            txn_id=data["txn_id"],
            block_height=data.get("block_height"),
            gas=data.get("gas"),
            contract_id=data.get("contract_id", self.contract_id),
        )

    async def lookup(self, document_hash: str) -> LedgerLookup:
        response = await self._request("GET", f"/documents/{document_hash}")
        if response.status_code == 404:
            return LedgerLookup(present=False)
        data = self._check(response, "lookup")
        return LedgerLookup(
            present=bool(data.get("present", True)),
            owner_id=data.get("owner_id"),
            issued_at=data.get("issued_at"),
            active=bool(data.get("active", False)),
        )

    async def _access(self, action: str, document_hash: str, viewer_id: str, caller_id: str) -> str:
        response = await self._request(
            "POST",
            f"/documents/{document_hash}/access",
            json={"action": action, "viewer_id": viewer_id, "caller_id": caller_id},
        )
        return self._check(response, action)["txn_id"]

    async def grant(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        return await self._access("grant", document_hash, viewer_id, caller_id)

    async def revoke(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        return await self._access("revoke", document_hash, viewer_id, caller_id)

    async def health(self) -> bool:
        response = await self._request("GET", "/health")
        return response.status_code < 400


# =============================================================================
# Coordinator
# =============================================================================

class LedgerCoordinator:
    """
    Timeouts and error normalization around a LedgerClient.

    No client configured means every call fails with LedgerError, which
    registration turns into a partial-anchor outcome and verification
    into an "unknown" ledger check.
    """

    def __init__(self, client: Optional[LedgerClient], timeout: float = 30.0):
        self.client = client
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def _call(self, operation: str, coro_factory, deadline: Optional[Deadline] = None):
        if self.client is None:
            raise LedgerError("Ledger not configured")
        try:
            return await with_timeout(coro_factory(), self.timeout, f"ledger {operation}", deadline)
        except LedgerError:
            raise
        except CredchainError as exc:
            raise LedgerError(f"Ledger {operation} failed: {exc.message}") from exc
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise LedgerError(f"Ledger {operation} failed: {exc}") from exc

    async def anchor(
        self,
        document_hash: str,
        storage_cid: str,
        owner_id: str,
        issuer_id: str,
        summary: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> AnchorReceipt:
        receipt = await self._call(
            "anchor",
            lambda: self.client.anchor(document_hash, storage_cid, owner_id, issuer_id, summary),
            deadline,
        )
        logger.info(
            "Document anchored",
            extra={"document_hash": document_hash, "txn_id": receipt.txn_id, "block_height": receipt.block_height},
        )
        return receipt

    async def lookup(self, document_hash: str, deadline: Optional[Deadline] = None) -> LedgerLookup:
        return await self._call("lookup", lambda: self.client.lookup(document_hash), deadline)

    async def grant(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        return await self._call("grant", lambda: self.client.grant(document_hash, viewer_id, caller_id))

    async def revoke(self, document_hash: str, viewer_id: str, caller_id: str) -> str:
        return await self._call("revoke", lambda: self.client.revoke(document_hash, viewer_id, caller_id))

    async def health(self) -> dict:
        if self.client is None:
            return {"available": False, "reason": "not configured"}
        try:
            ok = await self._call("health", self.client.health)
        except LedgerError as exc:
            return {"available": False, "reason": exc.message}
        return {"available": bool(ok)}
