"""Application settings via environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]


class Settings(BaseSettings):
    """Central configuration — all values from environment."""

    model_config = SettingsConfigDict(env_prefix="CACM_")

    # Target environment
    environment: str = "dev"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # PostgreSQL (empty → in-memory consent store)
    pg_dsn: str = ""
    pg_pool_max_size: int = 10

    # Redis (ledger webhook deduplication)
    redis_url: str = "redis://localhost:6379/0"

    # Ledger confirmation gateway (empty → references are not cross-checked)
    ledger_url: str = ""
    ledger_timeout_seconds: float = 5.0
    ledger_webhook_secret: str = ""

    # Signing
    signing_timeout_seconds: float = 120.0
    verify_signatures: bool = True
    # "eip191" for Ethereum wallets (0x addresses), "ed25519" for hex public keys
    signature_scheme: Literal["eip191", "ed25519"] = "eip191"
