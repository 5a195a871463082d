"""
Configuration management for the Truth credential relayer.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Environment-based settings.

    All settings can be overridden via environment variables (upper-case
    field names) or a `.env` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./truth_relayer.db"

    # EVM network
    rpc_url: str = "https://rpc-amoy.polygon.technology"
    chain_id: int = 80002
    rpc_timeout_seconds: float = Field(default=20.0, gt=0)

    # Soulbound credential contract
    sbt_contract_address: str = "0x0000000000000000000000000000000000000000"
    sbt_abi_path: Optional[Path] = Field(
        default=None,
        description="JSON ABI file for the SBT contract (defaults to the built-in minimal ABI)",
    )
    mint_function: str = "mint"
    mint_event: str = "Minted"
    mint_gas_limit: int = 200_000

    # Backends, chosen once at startup
    chain_backend: Literal["web3", "mock"] = "mock"
    publisher_backend: Literal["arweave", "mock"] = "mock"
    secret_backend: Literal["env", "vault"] = "env"

    # Metadata publisher
    arweave_gateway_url: str = "https://arweave.net"
    arweave_api_key: Optional[str] = None
    publisher_timeout_seconds: float = Field(default=30.0, gt=0)

    # Relayer key
    relayer_key_name: str = "relayer_private_key"
    relayer_private_key: str = ""
    vault_url: str = "http://127.0.0.1:8200"
    vault_token: Optional[str] = None
    vault_mount: str = "secret"
    secret_cache_ttl_seconds: int = Field(default=3600, ge=0)

    # Relayer worker
    relayer_poll_interval_seconds: float = Field(default=5.0, gt=0)
    gas_bump_percent: int = Field(default=10, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    batch_size: int = Field(default=25, ge=1)
    lease_seconds: int = Field(default=300, ge=1)

    # Confirmation watcher
    watcher_poll_interval_seconds: float = Field(default=60.0, gt=0)
    min_confirmations: int = Field(default=12, ge=0)
    pending_timeout_minutes: int = Field(default=30, ge=1)
    escalation_policy: Literal["flag", "resubmit", "fail"] = "flag"

    # Ledger
    mint_credit_cost: Decimal = Field(default=Decimal("1.00"), gt=0)

    @field_validator("database_url")
    @classmethod
    def _normalize_database_url(cls, value: str) -> str:
        # Railway/Heroku hand out postgres:// but SQLAlchemy requires postgresql://
        if value.startswith("postgres://"):
            return value.replace("postgres://", "postgresql://", 1)
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_settings(env_path: Optional[Path] = None) -> Settings:
    """Load settings, optionally from an explicit .env file."""
    if env_path:
        return Settings(_env_file=env_path)
    return get_settings()
