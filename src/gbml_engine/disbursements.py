"""Disbursement request model and lifecycle."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, FrozenSet, Optional

from .constants import IdPrefixes
from .utils import generate_id, utc_now


class DisbursementStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[DisbursementStatus] = frozenset({
    DisbursementStatus.EXECUTED,
    DisbursementStatus.FAILED,
})

# States from which execution may claim a request
EXECUTABLE_STATUSES: FrozenSet[DisbursementStatus] = frozenset({
    DisbursementStatus.PENDING,
    DisbursementStatus.APPROVED,
})

# Allowed edges of the lifecycle graph
TRANSITIONS: dict[DisbursementStatus, FrozenSet[DisbursementStatus]] = {
    DisbursementStatus.PENDING: frozenset({
        DisbursementStatus.APPROVED,
        DisbursementStatus.PROCESSING,
        DisbursementStatus.FAILED,
    }),
    DisbursementStatus.APPROVED: frozenset({
        DisbursementStatus.PROCESSING,
        DisbursementStatus.FAILED,
    }),
    DisbursementStatus.PROCESSING: frozenset({
        DisbursementStatus.EXECUTED,
        DisbursementStatus.FAILED,
    }),
    DisbursementStatus.EXECUTED: frozenset(),
    DisbursementStatus.FAILED: frozenset(),
}


def can_transition(current: DisbursementStatus, new: DisbursementStatus) -> bool:
    return new in TRANSITIONS[current]


@dataclass
class DisbursementRequest:
    """A tenant's request to move treasury funds to a recipient."""

    # Primary key
    id: str

    # Core fields
    tenant_id: str
    amount: str
    token_address: str
    recipient_address: str
    requested_by: str
    status: DisbursementStatus = DisbursementStatus.PENDING
    reason: str = ""

    # Set as the request moves through its lifecycle
    approved_by: Optional[str] = None
    executed_by: Optional[str] = None
    blockchain_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None

    # Decimals frozen at request time; None means "use the default"
    token_decimals: Optional[int] = None

    # Timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @staticmethod
    def generate_id() -> str:
        """Generate disbursement ID: disb_<timestamp_base36>_<random>."""
        return generate_id(IdPrefixes.DISBURSEMENT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "amount": self.amount,
            "token_address": self.token_address,
            "recipient_address": self.recipient_address,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "status": self.status.value,
            "approved_by": self.approved_by,
            "executed_by": self.executed_by,
            "blockchain_tx_hash": self.blockchain_tx_hash,
            "token_decimals": self.token_decimals,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


__all__ = [
    "DisbursementStatus",
    "DisbursementRequest",
    "TERMINAL_STATUSES",
    "EXECUTABLE_STATUSES",
    "TRANSITIONS",
    "can_transition",
]
