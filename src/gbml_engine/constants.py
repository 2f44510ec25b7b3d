"""
Centralized constants and configuration defaults for the GBML engine.

Usage:
    from gbml_engine.constants import PauseDefaults, RoutingDefaults

All values are organized into logical namespaces using classes.
"""
from __future__ import annotations

from typing import Final


class PauseDefaults:
    """Circuit breaker defaults."""

    # Snapshot refresh interval
    CACHE_TTL_SECONDS: Final[float] = 30.0

    # Target id used for the GLOBAL scope
    GLOBAL_TARGET_ID: Final[str] = "ALL"


class RoutingDefaults:
    """Payment router defaults."""

    # Decimals value treated as "unknown, ask the token"
    DECIMALS_SENTINEL: Final[int] = 18

    # Decimals assumed by the disbursement execute path when none were frozen
    DISBURSEMENT_DECIMALS: Final[int] = 18

    MAX_DECIMALS: Final[int] = 255

    # Finality wait
    CONFIRMATION_TIMEOUT_SECONDS: Final[float] = 120.0
    POLL_INTERVAL_SECONDS: Final[float] = 2.0

    # Gas
    DEFAULT_GAS_LIMIT: Final[int] = 200_000
    GAS_BUFFER_MULTIPLIER: Final[float] = 1.2


class IdPrefixes:
    """Prefixes for generated record ids."""

    DISBURSEMENT: Final[str] = "disb"
    AUDIT: Final[str] = "aud"
    MODULE: Final[str] = "mod"


class LoggingConfig:
    """Logging-related constants."""

    # Sensitive fields to mask in logs
    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "api_key",
        "apiKey",
        "private_key",
        "privateKey",
        "treasury_private_key",
        "secret_key",
        "secretKey",
        "access_token",
        "accessToken",
        "refresh_token",
        "refreshToken",
        "authorization",
        "credential",
        "credentials",
        "mnemonic",
        "seed",
    })

    # Key fragments that mark a field as sensitive wherever they appear
    SENSITIVE_FRAGMENTS: Final[tuple[str, ...]] = (
        "secret",
        "password",
        "private",
        "api_key",
        "credential",
        "mnemonic",
    )

    # Mask pattern for sensitive data
    MASK_PATTERN: Final[str] = "***REDACTED***"

    # Max log message length
    MAX_LOG_MESSAGE_LENGTH: Final[int] = 10000
