"""
Logging utilities for the GBML engine with sensitive data masking.

Treasury signing keys, API keys and connection strings must never reach a
log line. Every structured field passed through StructuredLogger is masked
recursively before it is attached to the record.

Usage:
    from gbml_engine.logging import get_logger, configure_logging

    logger = get_logger(__name__)
    logger.info("Routing payment", token_address=token, amount=str(amount))

    with logger.context(operation="execute_disbursement", actor_id=actor.id):
        logger.info("Claimed request")
"""
from __future__ import annotations

import json
import logging
import re
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    Optional,
    ParamSpec,
    Sequence,
    TypeVar,
)

from .constants import LoggingConfig

T = TypeVar("T")
P = ParamSpec("P")


# =============================================================================
# Sensitive Data Masking
# =============================================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, optionally showing first/last characters."""
    if not value or len(value) <= show_chars * 2:
        return LoggingConfig.MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data.

    Note that ``token_address`` and ``tx_hash`` are public on-chain data and
    deliberately do not match.
    """
    key_lower = key.lower().replace("-", "_")
    return key in LoggingConfig.SENSITIVE_FIELDS or key_lower in LoggingConfig.SENSITIVE_FIELDS or any(
        fragment in key_lower for fragment in LoggingConfig.SENSITIVE_FRAGMENTS
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = LoggingConfig.MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask
        mask_pattern: Pattern to replace sensitive values with

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)):
                result[key] = mask_pattern
            elif additional_fields and key in additional_fields:
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(
                    value,
                    additional_fields,
                    mask_pattern,
                    _depth + 1,
                    _max_depth,
                )
        return result

    elif isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(
                item,
                additional_fields,
                mask_pattern,
                _depth + 1,
                _max_depth,
            )
            for item in data
        )

    elif isinstance(data, str):
        return _mask_inline_patterns(data)

    return data


_INLINE_PATTERNS = [
    # gbml API keys
    (re.compile(r"\b(gbml_)[a-f0-9]{8,}\b", re.IGNORECASE), r"\1***"),
    # Bearer tokens
    (re.compile(r"(Bearer\s+)[a-zA-Z0-9._-]+", re.IGNORECASE), r"\1***"),
    # URLs with credentials (postgres DSNs included)
    (re.compile(r"([a-z][a-z0-9+.-]*://)[^:/@\s]+:[^@\s]+@", re.IGNORECASE), r"\1***:***@"),
]


def _mask_inline_patterns(text: str) -> str:
    """Mask API keys, bearer tokens and credentialed URLs embedded in text."""
    if len(text) > LoggingConfig.MAX_LOG_MESSAGE_LENGTH:
        text = text[: LoggingConfig.MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"

    for pattern, replacement in _INLINE_PATTERNS:
        text = pattern.sub(replacement, text)

    return text


# =============================================================================
# Structured Logging
# =============================================================================

@dataclass
class OperationContext:
    """Context for a single engine operation.

    Attributes:
        operation_id: Unique identifier for this operation
        operation: Name of the operation being performed
        started_at: When the operation started
        actor_id: Optional actor identifier
        tenant_id: Optional tenant identifier
        extra: Additional context data
    """

    operation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "operation_id": self.operation_id,
            "operation": self.operation,
            "elapsed_ms": self.elapsed_ms(),
        }
        if self.actor_id:
            result["actor_id"] = self.actor_id
        if self.tenant_id:
            result["tenant_id"] = self.tenant_id
        if self.extra:
            result.update(mask_sensitive_data(self.extra))
        return result


# Per-task context stack so concurrent coroutines never see each other's context
_context_stack: ContextVar[tuple[OperationContext, ...]] = ContextVar(
    "gbml_log_context", default=()
)


class StructuredLogger:
    """Logger wrapper that adds structured context and masking.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info("Disbursement executed", request_id="disb_xxx")

        with logger.context(operation="set_pause", actor_id="admin_1"):
            logger.info("Persisting pause state")
    """

    def __init__(
        self,
        name: str,
        level: Optional[int] = None,
    ) -> None:
        self._logger = logging.getLogger(name)
        if level is not None:
            self._logger.setLevel(level)

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def current_context(self) -> Optional[OperationContext]:
        stack = _context_stack.get()
        return stack[-1] if stack else None

    @contextmanager
    def context(
        self,
        operation: str,
        operation_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        **extra: Any,
    ) -> Iterator[OperationContext]:
        """Create a logging context for an operation.

        Failures inside the block are logged with elapsed time and re-raised.
        """
        ctx = OperationContext(
            operation_id=operation_id or str(uuid.uuid4()),
            operation=operation,
            actor_id=actor_id,
            tenant_id=tenant_id,
            extra=extra,
        )
        token = _context_stack.set(_context_stack.get() + (ctx,))

        try:
            self.debug(f"Starting {operation}")
            yield ctx
            self.debug(f"Completed {operation}", elapsed_ms=ctx.elapsed_ms())
        except Exception as e:
            self.error(
                f"Failed {operation}: {type(e).__name__}",
                elapsed_ms=ctx.elapsed_ms(),
                error=str(e),
            )
            raise
        finally:
            _context_stack.reset(token)

    def _build_extra(self, **kwargs: Any) -> Dict[str, Any]:
        extra = mask_sensitive_data(kwargs)

        if self.current_context:
            extra.update(self.current_context.to_dict())

        return extra

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(message, extra={"data": self._build_extra(**kwargs)})

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(message, extra={"data": self._build_extra(**kwargs)})

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(message, extra={"data": self._build_extra(**kwargs)})

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(message, extra={"data": self._build_extra(**kwargs)})

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self._logger.exception(message, extra={"data": self._build_extra(**kwargs)})

    def critical(self, message: str, **kwargs: Any) -> None:
        self._logger.critical(message, extra={"data": self._build_extra(**kwargs)})


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given name."""
    return StructuredLogger(name)


# =============================================================================
# Logging Decorators
# =============================================================================

def log_operation(
    operation_name: Optional[str] = None,
    logger: Optional[StructuredLogger] = None,
    log_args: bool = False,
    log_result: bool = False,
    log_exceptions: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator to log async function calls.

    Args:
        operation_name: Name for the operation (defaults to function name)
        logger: Logger to use (defaults to function's module)
        log_args: Whether to log (masked) function arguments
        log_result: Whether to log the (masked) return value
        log_exceptions: Whether to log exceptions before re-raising
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        nonlocal logger
        if logger is None:
            logger = get_logger(func.__module__)

        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            start_time = time.monotonic()

            extra: Dict[str, Any] = {"function": func.__name__}
            if log_args:
                extra["kwargs"] = mask_sensitive_data(
                    {k: v for k, v in kwargs.items() if isinstance(v, (str, int, float, bool))}
                )

            logger.debug(f"Starting {op_name}", **extra)

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.monotonic() - start_time) * 1000
                if log_exceptions:
                    logger.warning(
                        f"Failed {op_name}: {type(e).__name__}",
                        duration_ms=duration_ms,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                raise

            duration_ms = (time.monotonic() - start_time) * 1000
            result_extra: Dict[str, Any] = {"duration_ms": duration_ms}
            if log_result:
                result_extra["result"] = mask_sensitive_data(result)
            logger.debug(f"Completed {op_name}", **result_extra)
            return result

        return wrapper

    return decorator


# =============================================================================
# JSON Formatter for Production
# =============================================================================

class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "data") and record.data:
            log_data["data"] = record.data

        return json.dumps(log_data, default=str)


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for the process.

    Args:
        level: Logging level (int or name)
        json_format: Whether to use JSON formatting on the console
        log_file: Optional file path; file output is always JSON
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    if json_format:
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(JsonFormatter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=True,
    )


__all__ = [
    "mask_sensitive_data",
    "mask_value",
    "is_sensitive_key",
    "get_logger",
    "StructuredLogger",
    "OperationContext",
    "log_operation",
    "configure_logging",
    "JsonFormatter",
]
