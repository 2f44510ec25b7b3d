"""Canonical configuration surface for the GBML engine."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from .constants import PauseDefaults, RoutingDefaults


class ChainSettings(BaseSettings):
    """Token ledger (EVM network) configuration."""
    rpc_url: str = ""
    chain_id: Optional[int] = None
    treasury_private_key: str = ""
    confirmations_required: int = 1
    confirmation_timeout_seconds: float = RoutingDefaults.CONFIRMATION_TIMEOUT_SECONDS
    poll_interval_seconds: float = RoutingDefaults.POLL_INTERVAL_SECONDS
    gas_limit: int = RoutingDefaults.DEFAULT_GAS_LIMIT


class GbmlSettings(BaseSettings):
    """Main engine configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Database - PostgreSQL; empty means in-memory stores
    database_url: str = ""

    # Chain execution mode
    chain_mode: Literal["simulated", "live"] = "simulated"
    chain: ChainSettings = Field(default_factory=ChainSettings)

    # Circuit breaker
    pause_cache_ttl_seconds: float = PauseDefaults.CACHE_TTL_SECONDS
    # Answer "paused" when no snapshot ever loaded (default is fail-open)
    pause_fail_closed: bool = False

    # Audit sink: "default" follows the storage backend, "logging" writes
    # records to the gbml.audit.trail logger instead
    audit_sink: Literal["default", "logging"] = "default"

    # Router
    serialize_per_token: bool = True
    disbursement_decimals: int = RoutingDefaults.DISBURSEMENT_DECIMALS

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    class Config:
        env_prefix = "GBML_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("database_url", mode="before")
    @classmethod
    def set_database_default(cls, v: str) -> str:
        """Fall back to DATABASE_URL (Heroku/Railway style) when unset."""
        if not v:
            v = os.getenv("DATABASE_URL", "")
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("pause_cache_ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        if v < 0:
            raise ValueError("pause_cache_ttl_seconds must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_live_chain(self) -> "GbmlSettings":
        """Live mode needs an RPC endpoint and a treasury signer."""
        if self.chain_mode == "live":
            if not self.chain.rpc_url:
                raise ValueError("GBML_CHAIN__RPC_URL is required when chain_mode is 'live'")
            if not self.chain.treasury_private_key:
                raise ValueError(
                    "GBML_CHAIN__TREASURY_PRIVATE_KEY is required when chain_mode is 'live'"
                )
        if self.environment == "prod" and self.chain_mode == "simulated":
            raise ValueError("Simulated chain mode is not allowed in prod")
        return self

    @property
    def use_postgres(self) -> bool:
        return self.database_url.startswith("postgresql://")


@lru_cache
def load_settings(env_file: str | None = None) -> GbmlSettings:
    """Load GbmlSettings once per process to keep components consistent."""
    env_path = Path(env_file) if env_file else None
    return GbmlSettings(_env_file=env_path)
