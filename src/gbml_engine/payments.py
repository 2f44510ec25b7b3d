"""Direct send path: route a payment outside the disbursement workflow."""
from __future__ import annotations

from typing import Optional

from .amounts import AmountLike, AmountUnit
from .audit import AuditAction, AuditTrail
from .constants import RoutingDefaults
from .exceptions import exception_from_chain_error
from .identity import Actor
from .logging import get_logger, log_operation
from .modules import ModuleRegistry
from .pause_registry import PauseRegistry
from .rbac import Capability, RBACEngine
from .router import PaymentReceipt, PaymentRouter
from .validators import validate_eth_address

logger = get_logger(__name__)


class PaymentService:
    """Sends payments through the router, gated by the circuit breaker."""

    def __init__(
        self,
        router: PaymentRouter,
        pause: PauseRegistry,
        modules: ModuleRegistry,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self._router = router
        self._pause = pause
        self._modules = modules
        self._audit = audit

    async def send_payment(
        self,
        token_address: str,
        to: str,
        amount: AmountLike,
        *,
        actor: Optional[Actor],
        module_id: Optional[str] = None,
        unit: AmountUnit = AmountUnit.AUTO,
        timeout: Optional[float] = None,
    ) -> PaymentReceipt:
        """Route ``amount`` of ``token_address`` to ``to``.

        Decimals come from the module when ``module_id`` is given, otherwise
        the router resolves them from the token.

        Raises:
            AuthorizationError: No actor, actor lacks SEND_PAYMENT, or the
                module belongs to another tenant.
            ValidationError: Bad address or amount.
            NotFoundError: Unknown module.
            PausedError: GLOBAL, MODULE or TOKEN pause active.
            RoutingError / ExecutionTimeoutError: From the router.
        """
        actor = RBACEngine.require(actor, Capability.SEND_PAYMENT)
        token_address = validate_eth_address(token_address, "token_address")
        to = validate_eth_address(to, "to")

        decimals = RoutingDefaults.DECIMALS_SENTINEL
        tenant_id = actor.tenant_id
        if module_id:
            module = await self._modules.get_module(module_id)
            RBACEngine.require(actor, Capability.SEND_PAYMENT, tenant_id=module.tenant_id)
            decimals = module.decimals
            tenant_id = module.tenant_id

        await self._pause.ensure_not_paused(token_address=token_address, module_id=module_id)

        with logger.context(
            operation="send_payment",
            actor_id=actor.id,
            tenant_id=tenant_id,
        ):
            try:
                receipt = await self._router.route(
                    token_address, to, amount, decimals, timeout=timeout, unit=unit,
                )
            except Exception as e:
                if self._audit is not None:
                    await self._audit.record_error(
                        e,
                        "payment",
                        actor=actor,
                        tenant_id=tenant_id,
                        context={
                            "token_address": token_address,
                            "to": to,
                            "amount": str(amount),
                            "module_id": module_id,
                        },
                    )
                raise

        if self._audit is not None:
            await self._audit.record(
                AuditAction.PAYMENT_SENT,
                "payment",
                actor=actor,
                tenant_id=tenant_id,
                payload={
                    "token_address": token_address,
                    "to": to,
                    "amount": str(receipt.amount),
                    "module_id": module_id,
                    "strategy": receipt.strategy.value,
                    "tx_hash": receipt.tx_hash,
                    "block_number": receipt.block_number,
                },
            )
        return receipt

    @log_operation("get_balance", logger=logger)
    async def get_balance(self, token_address: str, address: str) -> int:
        """Token balance of ``address`` in smallest units."""
        token_address = validate_eth_address(token_address, "token_address")
        address = validate_eth_address(address, "address")
        try:
            return await self._router.ledger.balance_of(token_address, address)
        except Exception as e:
            raise exception_from_chain_error(e, token_address=token_address, step="balance") from e


__all__ = ["PaymentService"]
