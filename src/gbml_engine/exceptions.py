"""Unified exception hierarchy for the GBML engine.

All engine exceptions inherit from GbmlException, enabling:
- Consistent error handling across the pause registry, router and workflow
- HTTP status code mapping for whichever API layer sits in front of the engine
- Structured error responses with machine-readable error codes
- Mapping of raw chain / RPC failures into a single RoutingError shape

Usage:
    from gbml_engine.exceptions import (
        GbmlException,
        PausedError,
        RoutingError,
        exception_from_chain_error,
    )

    try:
        receipt = await router.route(token, to, amount)
    except RoutingError as e:
        log.error("routing failed", **e.to_dict())

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional, Type


class GbmlException(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "GBML_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Input & Access Errors (4xx)
# =============================================================================

class ValidationError(GbmlException):
    """Malformed input (amount format, unsupported scope, bad address)."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class AuthorizationError(GbmlException):
    """Actor lacks the capability required by the operation."""

    error_code = "AUTHORIZATION_ERROR"
    http_status = 403

    def __init__(
        self,
        message: str,
        actor_id: Optional[str] = None,
        required: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if actor_id:
            details["actor_id"] = actor_id
        if required:
            details["required"] = required
        super().__init__(message, details=details)


class NotFoundError(GbmlException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class InvalidStateError(GbmlException):
    """Illegal state transition (e.g. executing an EXECUTED request)."""

    error_code = "INVALID_STATE"
    http_status = 409

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        current_status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if resource_id:
            details["resource_id"] = resource_id
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, details=details)


class PausedError(GbmlException):
    """Circuit breaker is active for the requested scope."""

    error_code = "PAUSED"
    http_status = 423

    def __init__(
        self,
        message: str = "Money movement is currently paused",
        scope: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if scope:
            details["scope"] = scope
        if target_id:
            details["target_id"] = target_id
        super().__init__(message, details=details)


# =============================================================================
# Chain & Infrastructure Errors (5xx)
# =============================================================================

class RoutingError(GbmlException):
    """A payment routing step failed on-chain or at the RPC layer.

    The underlying exception is kept on ``cause`` (and chained via
    ``raise ... from``) so callers can inspect the original revert.
    """

    error_code = "ROUTING_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        token_address: Optional[str] = None,
        step: Optional[str] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if cause is not None:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__
        if token_address:
            details["token_address"] = token_address
        if step:
            details["step"] = step
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, details=details)
        self.cause = cause


class ExecutionTimeoutError(GbmlException):
    """Finality was not reached within the caller-supplied timeout.

    Deliberately not a RoutingError: the transaction may still land, so a
    disbursement stays PROCESSING until reconciled.
    """

    error_code = "EXECUTION_TIMEOUT"
    http_status = 504

    def __init__(
        self,
        message: str = "Transaction not final before timeout",
        tx_hash: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, details=details)
        self.tx_hash = tx_hash


class StorageError(GbmlException):
    """Durable store unavailable or a storage operation failed."""

    error_code = "STORAGE_ERROR"
    http_status = 503

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class ConfigurationError(GbmlException):
    """Engine is misconfigured (missing RPC URL, signer key, ...)."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


# =============================================================================
# Error Mapping Utilities
# =============================================================================

# Raw chain error fragments and the message surfaced for them
CHAIN_ERROR_PATTERNS: dict[str, str] = {
    "insufficient allowance": "Insufficient token allowance",
    "insufficient balance": "Insufficient treasury balance",
    "transfer amount exceeds balance": "Insufficient treasury balance",
    "insufficient funds": "Insufficient funds for transaction",
    "accesscontrol": "Signer lacks the required token role",
    "caller is not the owner": "Signer lacks the required token role",
    "not minter": "Signer lacks mint authority",
    "execution reverted": "Transaction execution reverted",
    "nonce too low": "Transaction nonce too low",
    "replacement transaction underpriced": "Replacement transaction underpriced",
    "timeout": "RPC request timed out",
    "connection refused": "RPC node connection refused",
    "too many requests": "RPC rate limit exceeded",
}


def exception_from_chain_error(
    error: BaseException,
    token_address: Optional[str] = None,
    step: Optional[str] = None,
    tx_hash: Optional[str] = None,
) -> RoutingError:
    """Convert a chain/RPC error into a RoutingError.

    Known revert / RPC fragments are mapped to a readable message; anything
    else is surfaced as a generic routing failure. The original error is
    always preserved on ``RoutingError.cause``.

    Example:
        try:
            tx_hash = await ledger.transfer(token, to, amount)
        except Exception as e:
            raise exception_from_chain_error(e, token_address=token, step="transfer") from e
    """
    if isinstance(error, RoutingError):
        return error

    error_str = str(error).lower()
    for pattern, message in CHAIN_ERROR_PATTERNS.items():
        if pattern in error_str:
            return RoutingError(
                message,
                cause=error,
                token_address=token_address,
                step=step,
                tx_hash=tx_hash,
            )

    return RoutingError(
        f"Routing failed: {error}",
        cause=error,
        token_address=token_address,
        step=step,
        tx_hash=tx_hash,
    )


# Map of error codes to exception classes for dynamic instantiation
EXCEPTION_REGISTRY: dict[str, Type[GbmlException]] = {
    "GBML_ERROR": GbmlException,
    "VALIDATION_ERROR": ValidationError,
    "AUTHORIZATION_ERROR": AuthorizationError,
    "NOT_FOUND": NotFoundError,
    "INVALID_STATE": InvalidStateError,
    "PAUSED": PausedError,
    "ROUTING_ERROR": RoutingError,
    "EXECUTION_TIMEOUT": ExecutionTimeoutError,
    "STORAGE_ERROR": StorageError,
    "CONFIGURATION_ERROR": ConfigurationError,
}


def get_exception_class(error_code: str) -> Type[GbmlException]:
    """Get the exception class for an error code (defaults to GbmlException)."""
    return EXCEPTION_REGISTRY.get(error_code, GbmlException)


__all__ = [
    "GbmlException",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "InvalidStateError",
    "PausedError",
    "RoutingError",
    "ExecutionTimeoutError",
    "StorageError",
    "ConfigurationError",
    "CHAIN_ERROR_PATTERNS",
    "exception_from_chain_error",
    "EXCEPTION_REGISTRY",
    "get_exception_class",
]
