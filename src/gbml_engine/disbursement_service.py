"""
Disbursement workflow service.

Lifecycle:
    PENDING --approve--> APPROVED
    PENDING | APPROVED --execute (claim)--> PROCESSING
    PROCESSING --routed--> EXECUTED
    PROCESSING --routing failed--> FAILED

Requesting (PROGRAM) and executing (TREASURY) are separate capabilities.
Execution claims the request with a conditional status update before any
money moves, so two concurrent executes route at most one payment. A
finality timeout leaves the request PROCESSING for reconciliation, since the
transaction may still be mined.
"""
from __future__ import annotations

from typing import List, Optional

from .amounts import to_smallest_unit
from .audit import AuditAction, AuditTrail
from .constants import RoutingDefaults
from .disbursement_repository import DisbursementRepository
from .disbursements import (
    EXECUTABLE_STATUSES,
    DisbursementRequest,
    DisbursementStatus,
)
from .exceptions import (
    ExecutionTimeoutError,
    GbmlException,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .identity import Actor
from .logging import get_logger
from .pause_registry import PauseRegistry
from .rbac import Capability, RBACEngine
from .router import PaymentRouter
from .validators import validate_amount_string, validate_eth_address, validate_string

logger = get_logger(__name__)


class DisbursementService:
    """Role-gated disbursement workflow over a repository and the router."""

    def __init__(
        self,
        repository: DisbursementRepository,
        router: PaymentRouter,
        pause: PauseRegistry,
        audit: AuditTrail,
        *,
        default_decimals: int = RoutingDefaults.DISBURSEMENT_DECIMALS,
    ) -> None:
        self._repository = repository
        self._router = router
        self._pause = pause
        self._audit = audit
        self._default_decimals = default_decimals

    async def _freeze_decimals(self, token_address: str) -> Optional[int]:
        try:
            return await self._router.ledger.decimals(token_address)
        except Exception as e:
            logger.warning(
                "Could not read token decimals at request time",
                token_address=token_address,
                error=str(e),
            )
            return None

    async def request_disbursement(
        self,
        tenant_id: str,
        amount: str,
        token_address: str,
        recipient_address: str,
        reason: str,
        actor: Optional[Actor],
    ) -> DisbursementRequest:
        """Create a PENDING disbursement request.

        Raises:
            AuthorizationError: Actor lacks REQUEST_DISBURSEMENT for the tenant.
            ValidationError: Bad amount or address.
            PausedError: GLOBAL or TOKEN pause active; nothing is stored.
        """
        tenant_id = validate_string(tenant_id, "tenant_id", max_length=128)
        actor = RBACEngine.require(actor, Capability.REQUEST_DISBURSEMENT, tenant_id=tenant_id)
        amount = validate_amount_string(amount)
        token_address = validate_eth_address(token_address, "token_address")
        recipient_address = validate_eth_address(recipient_address, "recipient_address")

        await self._pause.ensure_not_paused(token_address=token_address)

        token_decimals = await self._freeze_decimals(token_address)
        if token_decimals is not None:
            # Reject amounts the token cannot represent before storing them
            to_smallest_unit(amount, token_decimals)

        request = await self._repository.create(
            DisbursementRequest(
                id=DisbursementRequest.generate_id(),
                tenant_id=tenant_id,
                amount=amount,
                token_address=token_address,
                recipient_address=recipient_address,
                reason=reason or "",
                requested_by=actor.id,
                token_decimals=token_decimals,
            )
        )

        logger.info(
            "Disbursement requested",
            request_id=request.id,
            tenant_id=tenant_id,
            amount=amount,
            token_address=token_address,
            requested_by=actor.id,
        )
        await self._audit.record(
            AuditAction.DISBURSEMENT_REQUEST,
            "disbursement",
            actor=actor,
            tenant_id=tenant_id,
            payload={
                "request_id": request.id,
                "amount": amount,
                "token_address": token_address,
                "recipient_address": recipient_address,
                "reason": request.reason,
            },
        )
        return request

    async def _fetch(self, request_id: str) -> DisbursementRequest:
        request = await self._repository.get(request_id)
        if request is None:
            raise NotFoundError("DisbursementRequest", request_id)
        return request

    async def approve_disbursement(self, request_id: str, actor: Optional[Actor]) -> DisbursementRequest:
        """Mark a PENDING request as APPROVED.

        Raises:
            AuthorizationError: Actor lacks APPROVE_DISBURSEMENT for the tenant.
            NotFoundError: Unknown request.
            InvalidStateError: Request is not PENDING.
        """
        actor = RBACEngine.require(actor, Capability.APPROVE_DISBURSEMENT)
        request = await self._fetch(request_id)
        RBACEngine.require(actor, Capability.APPROVE_DISBURSEMENT, tenant_id=request.tenant_id)

        updated = await self._repository.transition(
            request_id,
            {DisbursementStatus.PENDING},
            DisbursementStatus.APPROVED,
            approved_by=actor.id,
        )
        if updated is None:
            current = await self._fetch(request_id)
            raise InvalidStateError(
                f"Disbursement cannot be approved from status {current.status.value}",
                resource_id=request_id,
                current_status=current.status.value,
            )

        logger.info("Disbursement approved", request_id=request_id, approved_by=actor.id)
        await self._audit.record(
            AuditAction.DISBURSEMENT_APPROVE,
            "disbursement",
            actor=actor,
            tenant_id=updated.tenant_id,
            payload={"request_id": request_id},
        )
        return updated

    async def execute_disbursement(
        self,
        request_id: str,
        actor: Optional[Actor],
        *,
        timeout: Optional[float] = None,
    ) -> DisbursementRequest:
        """Route the payment for a PENDING or APPROVED request.

        Raises:
            AuthorizationError: Actor lacks EXECUTE_DISBURSEMENT for the tenant.
            NotFoundError: Unknown request.
            InvalidStateError: Request is not executable or was claimed by a
                concurrent execute.
            PausedError: GLOBAL or TOKEN pause active; request unchanged.
            RoutingError / ValidationError: Routing failed; request is FAILED.
            ExecutionTimeoutError: Finality not reached; request stays PROCESSING.
        """
        actor = RBACEngine.require(actor, Capability.EXECUTE_DISBURSEMENT)
        request = await self._fetch(request_id)
        RBACEngine.require(actor, Capability.EXECUTE_DISBURSEMENT, tenant_id=request.tenant_id)

        if request.status not in EXECUTABLE_STATUSES:
            raise InvalidStateError(
                f"Disbursement is {request.status.value}, not PENDING or APPROVED",
                resource_id=request_id,
                current_status=request.status.value,
            )

        await self._pause.ensure_not_paused(token_address=request.token_address)

        claimed = await self._repository.transition(
            request_id,
            EXECUTABLE_STATUSES,
            DisbursementStatus.PROCESSING,
        )
        if claimed is None:
            current = await self._fetch(request_id)
            raise InvalidStateError(
                "Disbursement was claimed by another execution",
                resource_id=request_id,
                current_status=current.status.value,
            )

        decimals = claimed.token_decimals if claimed.token_decimals is not None else self._default_decimals

        with logger.context(
            operation="execute_disbursement",
            actor_id=actor.id,
            tenant_id=claimed.tenant_id,
            request_id=request_id,
        ):
            try:
                receipt = await self._router.route(
                    claimed.token_address,
                    claimed.recipient_address,
                    claimed.amount,
                    decimals,
                    timeout=timeout,
                )
            except ExecutionTimeoutError as e:
                await self._audit.record_error(
                    e,
                    "disbursement",
                    actor=actor,
                    tenant_id=claimed.tenant_id,
                    context={
                        "request_id": request_id,
                        "status": DisbursementStatus.PROCESSING.value,
                        "tx_hash": e.tx_hash,
                    },
                )
                raise
            except GbmlException as e:
                await self._mark_failed(claimed, actor, e)
                raise

            updated = await self._repository.transition(
                request_id,
                {DisbursementStatus.PROCESSING},
                DisbursementStatus.EXECUTED,
                executed_by=actor.id,
                blockchain_tx_hash=receipt.tx_hash,
            )
            if updated is None:
                # The payment is on-chain; surface the stored record as-is
                logger.critical(
                    "Executed disbursement left PROCESSING",
                    request_id=request_id,
                    tx_hash=receipt.tx_hash,
                )
                updated = await self._fetch(request_id)

        logger.info(
            "Disbursement executed",
            request_id=request_id,
            tx_hash=receipt.tx_hash,
            strategy=receipt.strategy.value,
            executed_by=actor.id,
        )
        await self._audit.record(
            AuditAction.DISBURSEMENT_EXECUTE,
            "disbursement",
            actor=actor,
            tenant_id=updated.tenant_id,
            payload={
                "request_id": request_id,
                "tx_hash": receipt.tx_hash,
                "amount": str(receipt.amount),
                "strategy": receipt.strategy.value,
                "block_number": receipt.block_number,
            },
        )
        return updated

    async def _mark_failed(self, request: DisbursementRequest, actor: Actor, error: GbmlException) -> None:
        failure_reason = error.message
        try:
            await self._repository.transition(
                request.id,
                {DisbursementStatus.PROCESSING},
                DisbursementStatus.FAILED,
                failure_reason=failure_reason,
            )
        except StorageError as storage_error:
            logger.error(
                "Could not mark disbursement FAILED",
                request_id=request.id,
                error=str(storage_error),
            )

        logger.error(
            "Disbursement failed",
            request_id=request.id,
            error_code=error.error_code,
            error=failure_reason,
        )
        await self._audit.record(
            AuditAction.DISBURSEMENT_FAILED,
            "disbursement",
            actor=actor,
            tenant_id=request.tenant_id,
            payload={"request_id": request.id, "details": error.details},
            error=failure_reason,
        )

    async def list_requests(
        self,
        tenant_id: str,
        status: "DisbursementStatus | str | None" = None,
        *,
        actor: Optional[Actor] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[DisbursementRequest]:
        """Requests of ``tenant_id``, newest first."""
        if actor is not None:
            RBACEngine.require(actor, Capability.VIEW_DISBURSEMENTS, tenant_id=tenant_id)
        if status is not None and not isinstance(status, DisbursementStatus):
            try:
                status = DisbursementStatus(str(status).upper())
            except ValueError:
                raise ValidationError(f"Unknown disbursement status: {status}", field="status") from None
        return await self._repository.list(tenant_id, status, limit=limit, offset=offset)

    async def get_request(self, request_id: str, *, actor: Optional[Actor] = None) -> DisbursementRequest:
        request = await self._fetch(request_id)
        if actor is not None:
            RBACEngine.require(actor, Capability.VIEW_DISBURSEMENTS, tenant_id=request.tenant_id)
        return request


__all__ = ["DisbursementService"]
