"""Disbursement request repositories.

Both implementations honor ``transition`` as a compare-and-set on the status
column: the update only applies while the stored status is one of
``expected``. This is what makes execution idempotent under concurrency.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Iterable, List, Optional, Protocol

from .database import Database, storage_errors
from .disbursements import DisbursementRequest, DisbursementStatus
from .exceptions import StorageError
from .utils import utc_now

# Columns ``transition`` may set alongside the status
UPDATABLE_FIELDS = frozenset({
    "approved_by",
    "executed_by",
    "blockchain_tx_hash",
    "failure_reason",
})

_COLUMNS = """
    id, tenant_id, amount, token_address, recipient_address, reason,
    requested_by, status, approved_by, executed_by, blockchain_tx_hash,
    token_decimals, failure_reason, created_at, updated_at
"""


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update disbursement fields: {sorted(unknown)}")


class DisbursementRepository(Protocol):
    async def create(self, request: DisbursementRequest) -> DisbursementRequest: ...
    async def get(self, request_id: str) -> Optional[DisbursementRequest]: ...
    async def transition(
        self,
        request_id: str,
        expected: Iterable[DisbursementStatus],
        new_status: DisbursementStatus,
        **fields: Any,
    ) -> Optional[DisbursementRequest]: ...
    async def list(
        self,
        tenant_id: str,
        status: Optional[DisbursementStatus] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> List[DisbursementRequest]: ...


class InMemoryDisbursementRepository:
    """Process-local repository (dev/test)."""

    def __init__(self) -> None:
        self._requests: dict[str, DisbursementRequest] = {}
        self._lock = asyncio.Lock()

    async def create(self, request: DisbursementRequest) -> DisbursementRequest:
        async with self._lock:
            if request.id in self._requests:
                raise StorageError(f"Duplicate disbursement id {request.id}", operation="disbursement_create")
            self._requests[request.id] = replace(request)
        return replace(request)

    async def get(self, request_id: str) -> Optional[DisbursementRequest]:
        request = self._requests.get(request_id)
        return replace(request) if request else None

    async def transition(
        self,
        request_id: str,
        expected: Iterable[DisbursementStatus],
        new_status: DisbursementStatus,
        **fields: Any,
    ) -> Optional[DisbursementRequest]:
        _check_fields(fields)
        expected = frozenset(expected)
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status not in expected:
                return None
            updated = replace(current, status=new_status, updated_at=utc_now(), **fields)
            self._requests[request_id] = updated
        return replace(updated)

    async def list(
        self,
        tenant_id: str,
        status: Optional[DisbursementStatus] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> List[DisbursementRequest]:
        matches = [
            r for r in self._requests.values()
            if r.tenant_id == tenant_id and (status is None or r.status == status)
        ]
        matches.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return [replace(r) for r in matches[offset:offset + limit]]


class PostgresDisbursementRepository:
    """PostgreSQL repository for disbursement requests."""

    async def create(self, request: DisbursementRequest) -> DisbursementRequest:
        query = """
            INSERT INTO disbursement_requests (
                id, tenant_id, amount, token_address, recipient_address,
                reason, requested_by, status, token_decimals,
                created_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5,
                $6, $7, $8, $9,
                $10, $11
            )
        """
        async with storage_errors("disbursement_create"):
            await Database.execute(
                query,
                request.id, request.tenant_id, request.amount, request.token_address,
                request.recipient_address, request.reason, request.requested_by,
                request.status.value, request.token_decimals,
                request.created_at, request.updated_at,
            )
        return request

    async def get(self, request_id: str) -> Optional[DisbursementRequest]:
        query = f"SELECT {_COLUMNS} FROM disbursement_requests WHERE id = $1"
        async with storage_errors("disbursement_get"):
            row = await Database.fetchrow(query, request_id)
        if not row:
            return None
        return _row_to_disbursement(row)

    async def transition(
        self,
        request_id: str,
        expected: Iterable[DisbursementStatus],
        new_status: DisbursementStatus,
        **fields: Any,
    ) -> Optional[DisbursementRequest]:
        """Set ``new_status`` only while the row is in one of ``expected``.

        Returns:
            The updated request, or None if the row is missing or its
            status did not match.
        """
        _check_fields(fields)

        updates = ["status = $1", "updated_at = $2"]
        values: list[Any] = [new_status.value, utc_now()]
        param_idx = 3

        for name in sorted(fields):
            updates.append(f"{name} = ${param_idx}")
            values.append(fields[name])
            param_idx += 1

        values.append(request_id)
        id_param = f"${param_idx}"
        param_idx += 1

        values.append([s.value for s in expected])
        expected_param = f"${param_idx}"

        query = f"""
            UPDATE disbursement_requests
            SET {', '.join(updates)}
            WHERE id = {id_param} AND status = ANY({expected_param}::varchar[])
            RETURNING {_COLUMNS}
        """
        async with storage_errors("disbursement_transition"):
            row = await Database.fetchrow(query, *values)
        if not row:
            return None
        return _row_to_disbursement(row)

    async def list(
        self,
        tenant_id: str,
        status: Optional[DisbursementStatus] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> List[DisbursementRequest]:
        conditions = ["tenant_id = $1"]
        values: list[Any] = [tenant_id]
        param_idx = 2

        if status is not None:
            conditions.append(f"status = ${param_idx}")
            values.append(status.value)
            param_idx += 1

        values.append(limit)
        limit_param = f"${param_idx}"
        param_idx += 1

        values.append(offset)
        offset_param = f"${param_idx}"

        query = f"""
            SELECT {_COLUMNS}
            FROM disbursement_requests
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC
            LIMIT {limit_param} OFFSET {offset_param}
        """
        async with storage_errors("disbursement_list"):
            rows = await Database.fetch(query, *values)
        return [_row_to_disbursement(row) for row in rows]


def _row_to_disbursement(row) -> DisbursementRequest:
    return DisbursementRequest(
        id=row["id"],
        tenant_id=row["tenant_id"],
        amount=row["amount"],
        token_address=row["token_address"],
        recipient_address=row["recipient_address"],
        reason=row["reason"] or "",
        requested_by=row["requested_by"],
        status=DisbursementStatus(row["status"]),
        approved_by=row["approved_by"],
        executed_by=row["executed_by"],
        blockchain_tx_hash=row["blockchain_tx_hash"],
        token_decimals=row["token_decimals"],
        failure_reason=row["failure_reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


__all__ = [
    "DisbursementRepository",
    "InMemoryDisbursementRepository",
    "PostgresDisbursementRepository",
    "UPDATABLE_FIELDS",
]
