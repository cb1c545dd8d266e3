"""
Credchain - NFT.Storage Provider
"""

from typing import Any

from credchain.services.storage.base import HttpPinningProvider


class NFTStorageProvider(HttpPinningProvider):
    """NFT.Storage: POST /upload, answer ``{"value": {"cid": ...}}``."""

    @property
    def provider_name(self) -> str:
        return "nft_storage"

    def _extract_cid(self, payload: Any) -> str:
        return payload["value"]["cid"]
