# Storage services - content-addressed pinning providers with local fallback
from typing import Optional

import httpx

from credchain.core.config import ProviderConfig, Settings
from credchain.services.storage.base import HttpPinningProvider, PinnedObject, ProviderHealth, StorageProvider
from credchain.services.storage.local import LocalStore, is_local_cid
from credchain.services.storage.nft_storage import NFTStorageProvider
from credchain.services.storage.pinata import PinataProvider
from credchain.services.storage.queue import QueueEntry, RetryQueue
from credchain.services.storage.router import DrainReport, StorageRouter, UploadResult
from credchain.services.storage.web3_storage import Web3StorageProvider


def get_provider(provider_name: str, **kwargs) -> HttpPinningProvider:
    """
    Factory function to get a remote storage provider by name.

    Args:
        provider_name: One of 'web3_storage', 'pinata', 'nft_storage'
        **kwargs: Provider-specific configuration

    Returns:
        HttpPinningProvider instance
    """
    providers = {
        "web3_storage": Web3StorageProvider,
        "web3.storage": Web3StorageProvider,
        "pinata": PinataProvider,
        "nft_storage": NFTStorageProvider,
        "nft.storage": NFTStorageProvider,
    }

    provider_class = providers.get(provider_name.lower())
    if not provider_class:
        raise ValueError(f"Unknown storage provider: {provider_name}")

    return provider_class(**kwargs)


def provider_from_config(
    config: ProviderConfig,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HttpPinningProvider:
    kwargs = {
        "api_key": config.api_key,
        "endpoint": config.resolved_endpoint(),
        "priority": config.priority,
        "upload_timeout": settings.upload_timeout_ms / 1000.0,
        "health_timeout": settings.health_timeout_ms / 1000.0,
        "transport": transport,
    }
    if config.name == "pinata":
        kwargs["secret_api_key"] = config.secret_api_key
    return get_provider(config.name, **kwargs)


def build_router(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs) -> StorageRouter:
    """Storage router wired from settings."""
    return StorageRouter(
        providers=[provider_from_config(c, settings, transport) for c in settings.provider_configs()],
        local=LocalStore(settings.local_store_path),
        queue=RetryQueue(settings.queue_path),
        retry=settings.upload_retry,
        gateway_prefix=settings.gateway_prefix,
        download_timeout=settings.download_timeout_ms / 1000.0,
        queue_max_attempts=settings.queue_max_attempts,
        transport=transport,
        **kwargs,
    )


__all__ = [
    "StorageProvider",
    "HttpPinningProvider",
    "PinnedObject",
    "ProviderHealth",
    "LocalStore",
    "RetryQueue",
    "QueueEntry",
    "StorageRouter",
    "UploadResult",
    "DrainReport",
    "Web3StorageProvider",
    "PinataProvider",
    "NFTStorageProvider",
    "get_provider",
    "provider_from_config",
    "build_router",
    "is_local_cid",
]
