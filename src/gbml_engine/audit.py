"""Append-only audit trail for state-changing engine actions.

Sinks only ever append. ``AuditTrail`` is what the engine components talk
to: it builds records, hands them to the sink, and turns a sink failure into
a logged error so an audit outage never overrides the outcome of the
operation being audited.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

from .database import Database, storage_errors
from .identity import Actor
from .logging import get_logger, mask_sensitive_data
from .constants import IdPrefixes
from .utils import generate_id, utc_now

logger = get_logger("gbml.audit")


class AuditAction(str, Enum):
    DISBURSEMENT_REQUEST = "DISBURSEMENT_REQUEST"
    DISBURSEMENT_APPROVE = "DISBURSEMENT_APPROVE"
    DISBURSEMENT_EXECUTE = "DISBURSEMENT_EXECUTE"
    DISBURSEMENT_FAILED = "DISBURSEMENT_FAILED"
    PAUSE_SET = "PAUSE_SET"
    PAYMENT_SENT = "PAYMENT_SENT"
    MODULE_ENABLED = "MODULE_ENABLED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class AuditRecord:
    """One audited action."""
    id: str
    action: AuditAction
    resource: str
    created_at: datetime
    tenant_id: Optional[str] = None
    actor_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["created_at"] = self.created_at.isoformat()
        return data


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None: ...


class InMemoryAuditSink:
    """Process-local sink (dev/test)."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def by_action(self, action: AuditAction) -> list[AuditRecord]:
        return [r for r in self._records if r.action == action]


class LoggingAuditSink:
    """Sink that writes each record as a structured log line."""

    def __init__(self, logger_name: str = "gbml.audit.trail") -> None:
        self._logger = get_logger(logger_name)

    async def append(self, record: AuditRecord) -> None:
        if record.error:
            self._logger.error(f"[AUDIT] {record.action.value}", record=record.to_dict())
        else:
            self._logger.info(f"[AUDIT] {record.action.value}", record=record.to_dict())


class PostgresAuditSink:
    """Sink backed by the ``audit_log`` table (insert only)."""

    async def append(self, record: AuditRecord) -> None:
        query = """
            INSERT INTO audit_log (
                id, action, resource, tenant_id, actor_id, payload, error, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
        """
        async with storage_errors("audit_append"):
            await Database.execute(
                query,
                record.id,
                record.action.value,
                record.resource,
                record.tenant_id,
                record.actor_id,
                json.dumps(record.payload, default=str),
                record.error,
                record.created_at,
            )


class AuditTrail:
    """Engine-facing audit API.

    ``record`` never raises on a sink failure: the failure is logged with
    the record attached so nothing is dropped silently, and the primary
    outcome of the audited operation stands.
    """

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    @property
    def sink(self) -> AuditSink:
        return self._sink

    async def record(
        self,
        action: AuditAction,
        resource: str,
        *,
        actor: Optional[Actor] = None,
        tenant_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[AuditRecord]:
        """Append an audit record; returns None if the sink failed."""
        record = AuditRecord(
            id=generate_id(IdPrefixes.AUDIT),
            action=action,
            resource=resource,
            created_at=utc_now(),
            tenant_id=tenant_id if tenant_id is not None else (actor.tenant_id if actor else None),
            actor_id=actor.id if actor else None,
            payload=mask_sensitive_data(payload or {}),
            error=error,
        )
        try:
            await self._sink.append(record)
        except Exception as e:
            logger.error(
                "Audit write failed",
                action=action.value,
                error_type=type(e).__name__,
                error=str(e),
                record=record.to_dict(),
            )
            return None
        return record

    async def record_error(
        self,
        error: BaseException | str,
        resource: str,
        *,
        actor: Optional[Actor] = None,
        tenant_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[AuditRecord]:
        """Audit an error event (the error channel)."""
        return await self.record(
            AuditAction.ERROR,
            resource,
            actor=actor,
            tenant_id=tenant_id,
            payload=context or {},
            error=str(error),
        )


__all__ = [
    "AuditAction",
    "AuditRecord",
    "AuditSink",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "PostgresAuditSink",
    "AuditTrail",
]
