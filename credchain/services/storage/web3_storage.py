"""
Credchain - web3.storage Provider
Pins through the web3.storage HTTP API (Bearer token).
"""

from typing import Any, Mapping

from credchain.services.storage.base import HttpPinningProvider


class Web3StorageProvider(HttpPinningProvider):
    """web3.storage: POST /upload, answer ``{"cid": ...}``."""

    health_path = "/user/uploads"

    @property
    def provider_name(self) -> str:
        return "web3_storage"

    def _upload_request(self, data: bytes, filename: str, metadata: Mapping[str, Any]) -> dict[str, Any]:
        request = super()._upload_request(data, filename, metadata)
        request["headers"]["X-NAME"] = filename
        return request

    def _extract_cid(self, payload: Any) -> str:
        return payload["cid"]
