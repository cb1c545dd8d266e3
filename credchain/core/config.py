"""
Credchain Configuration
Environment-driven settings (prefix ``CREDCHAIN_``, ``.env`` supported).

Storage providers come either from the ``CREDCHAIN_STORAGE_PROVIDERS`` JSON
list or from the per-provider credential shortcuts that the previous
deployment used (``WEB3_STORAGE_API_KEY``, ``PINATA_API_KEY`` ...).
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from tenacity import wait_exponential


ProviderName = Literal["web3_storage", "pinata", "nft_storage"]

DEFAULT_ENDPOINTS: dict[str, str] = {
    "web3_storage": "https://api.web3.storage",
    "pinata": "https://api.pinata.cloud",
    "nft_storage": "https://api.nft.storage",
}

DEFAULT_PRIORITIES: dict[str, int] = {
    "web3_storage": 1,
    "pinata": 2,
    "nft_storage": 3,
}


class ProviderConfig(BaseModel):
    """One remote pinning provider."""
    name: ProviderName
    priority: int = Field(ge=1)
    enabled: bool = True
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    secret_api_key: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        if self.name == "pinata":
            return bool(self.api_key and self.secret_api_key)
        return bool(self.api_key)

    def resolved_endpoint(self) -> str:
        return (self.endpoint or DEFAULT_ENDPOINTS[self.name]).rstrip("/")


class RetryPolicy(BaseModel):
    """Per-provider upload retry schedule."""
    max_retries: int = Field(3, ge=1)
    initial_backoff_ms: int = Field(1000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_ms: int = Field(10000, ge=0)

    def wait_strategy(self) -> wait_exponential:
        """Capped exponential backoff; the first retry waits ``initial_backoff_ms``."""
        return wait_exponential(
            multiplier=self.initial_backoff_ms / 1000.0,
            exp_base=self.backoff_multiplier,
            max=self.max_backoff_ms / 1000.0,
        )


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CREDCHAIN_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "credchain"
    debug: bool = False
    request_timeout_s: float = 120.0
    registration_timeout_s: float = Field(300.0, gt=0)

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/credchain.db"

    # Storage
    storage_providers: list[ProviderConfig] = Field(default_factory=list)
    web3_storage_api_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("CREDCHAIN_WEB3_STORAGE_API_KEY", "WEB3_STORAGE_API_KEY")
    )
    pinata_api_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("CREDCHAIN_PINATA_API_KEY", "PINATA_API_KEY")
    )
    pinata_secret_api_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("CREDCHAIN_PINATA_SECRET_API_KEY", "PINATA_SECRET_API_KEY")
    )
    nft_storage_api_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("CREDCHAIN_NFT_STORAGE_API_KEY", "NFT_STORAGE_API_KEY")
    )
    local_store_path: Path = Path("data/local-storage")
    queue_path: Path = Path("data/upload-queue")
    max_upload_bytes: int = Field(10 * 1024 * 1024, ge=1)
    upload_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    queue_max_attempts: int = Field(5, ge=1)
    queue_pause_ms: int = Field(30000, ge=0)
    queue_worker_enabled: bool = True
    gateway_prefix: str = "https://ipfs.io/ipfs/"

    # Timeouts (milliseconds)
    upload_timeout_ms: int = 60000
    download_timeout_ms: int = 30000
    health_timeout_ms: int = 5000
    ledger_timeout_ms: int = 30000

    # Ledger
    ledger_endpoint: Optional[str] = None
    ledger_credentials: Optional[str] = None
    ledger_contract_id: Optional[str] = None

    # Keys
    master_key: Optional[str] = None
    master_key_file: Optional[Path] = None
    qr_signing_key: Optional[str] = None
    verification_url: str = "http://localhost:3000/verify"

    # Verification
    verify_ledger_check: bool = True
    verify_recheck_bytes: bool = False
    anomaly_window_minutes: int = Field(10, ge=1)
    anomaly_threshold: int = Field(5, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    @model_validator(mode="after")
    def _check_provider_priorities(self) -> "Settings":
        priorities = [p.priority for p in self.storage_providers]
        if len(priorities) != len(set(priorities)):
            raise ValueError("storage provider priorities must be unique")
        names = [p.name for p in self.storage_providers]
        if len(names) != len(set(names)):
            raise ValueError("storage providers must not be listed twice")
        return self

    def provider_configs(self) -> list[ProviderConfig]:
        """
        Remote providers that are enabled and carry credentials, by priority.

        An explicit ``storage_providers`` list wins; otherwise the list is
        derived from the credential shortcuts.
        """
        if self.storage_providers:
            configs = list(self.storage_providers)
        else:
            configs = []
            if self.web3_storage_api_key:
                configs.append(ProviderConfig(
                    name="web3_storage",
                    priority=DEFAULT_PRIORITIES["web3_storage"],
                    api_key=self.web3_storage_api_key,
                ))
            if self.pinata_api_key and self.pinata_secret_api_key:
                configs.append(ProviderConfig(
                    name="pinata",
                    priority=DEFAULT_PRIORITIES["pinata"],
                    api_key=self.pinata_api_key,
                    secret_api_key=self.pinata_secret_api_key,
                ))
            if self.nft_storage_api_key:
                configs.append(ProviderConfig(
                    name="nft_storage",
                    priority=DEFAULT_PRIORITIES["nft_storage"],
                    api_key=self.nft_storage_api_key,
                ))
        return sorted(
            (c for c in configs if c.enabled and c.has_credentials),
            key=lambda c: c.priority,
        )


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (FastAPI dependency)."""
    return Settings()
