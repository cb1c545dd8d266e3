"""
Credchain - Pinata Provider
Pins through the Pinata pinning API (API key + secret headers).
"""

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from credchain.services.storage.base import HttpPinningProvider


class PinataProvider(HttpPinningProvider):
    """
    Pinata: POST /pinning/pinFileToIPFS with ``pinataMetadata`` and
    ``pinataOptions`` form fields, answer ``{"IpfsHash": ...}``.
    """

    upload_path = "/pinning/pinFileToIPFS"
    health_path = "/data/testAuthentication"

    def __init__(
        self,
        api_key: str,
        secret_api_key: str,
        endpoint: str,
        priority: int,
        upload_timeout: float = 60.0,
        health_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            api_key=api_key,
            endpoint=endpoint,
            priority=priority,
            upload_timeout=upload_timeout,
            health_timeout=health_timeout,
            transport=transport,
        )
        self.secret_api_key = secret_api_key

    @property
    def provider_name(self) -> str:
        return "pinata"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "pinata_api_key": self.api_key,
            "pinata_secret_api_key": self.secret_api_key,
        }

    def _upload_request(self, data: bytes, filename: str, metadata: Mapping[str, Any]) -> dict[str, Any]:
        request = super()._upload_request(data, filename, metadata)
        keyvalues = {k: str(v) for k, v in metadata.items()}
        keyvalues["uploadedAt"] = datetime.now(timezone.utc).isoformat()
        request["data"] = {
            "pinataMetadata": json.dumps({"name": filename, "keyvalues": keyvalues}),
            "pinataOptions": json.dumps({"cidVersion": 1}),
        }
        return request

    def _extract_cid(self, payload: Any) -> str:
        return payload["IpfsHash"]
