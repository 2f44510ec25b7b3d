"""Tenant payment modules.

A module attaches an existing token contract to a tenant and records the
token's decimals; the direct send path reads decimals from here and the
MODULE pause scope targets module ids. Only ATTACH mode is supported; token
deployment happens outside the engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from .audit import AuditAction, AuditTrail
from .constants import IdPrefixes
from .database import Database, storage_errors
from .exceptions import NotFoundError, ValidationError
from .identity import Actor
from .logging import get_logger
from .rbac import Capability, RBACEngine
from .token_ledger import TokenLedger
from .utils import generate_id, utc_now
from .validators import validate_decimals, validate_eth_address, validate_string

logger = get_logger(__name__)

TOKEN_MODE_ATTACH = "ATTACH"


@dataclass(frozen=True)
class PaymentModule:
    module_id: str
    tenant_id: str
    token_address: str
    decimals: int
    token_mode: str = TOKEN_MODE_ATTACH
    created_at: datetime = field(default_factory=utc_now)


class ModuleRepository(Protocol):
    async def create(self, module: PaymentModule) -> PaymentModule: ...
    async def get(self, module_id: str) -> Optional[PaymentModule]: ...
    async def list(self, tenant_id: str) -> List[PaymentModule]: ...


class InMemoryModuleRepository:
    """Process-local module repository (dev/test)."""

    def __init__(self) -> None:
        self._modules: dict[str, PaymentModule] = {}

    async def create(self, module: PaymentModule) -> PaymentModule:
        self._modules[module.module_id] = module
        return module

    async def get(self, module_id: str) -> Optional[PaymentModule]:
        return self._modules.get(module_id)

    async def list(self, tenant_id: str) -> List[PaymentModule]:
        modules = [m for m in self._modules.values() if m.tenant_id == tenant_id]
        return sorted(modules, key=lambda m: m.created_at, reverse=True)


class PostgresModuleRepository:
    """PostgreSQL repository for payment modules."""

    async def create(self, module: PaymentModule) -> PaymentModule:
        query = """
            INSERT INTO payment_modules (
                module_id, tenant_id, token_address, token_mode, decimals, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6)
        """
        async with storage_errors("module_create"):
            await Database.execute(
                query,
                module.module_id, module.tenant_id, module.token_address,
                module.token_mode, module.decimals, module.created_at,
            )
        return module

    async def get(self, module_id: str) -> Optional[PaymentModule]:
        query = """
            SELECT module_id, tenant_id, token_address, token_mode, decimals, created_at
            FROM payment_modules
            WHERE module_id = $1
        """
        async with storage_errors("module_get"):
            row = await Database.fetchrow(query, module_id)
        if not row:
            return None
        return _row_to_module(row)

    async def list(self, tenant_id: str) -> List[PaymentModule]:
        query = """
            SELECT module_id, tenant_id, token_address, token_mode, decimals, created_at
            FROM payment_modules
            WHERE tenant_id = $1
            ORDER BY created_at DESC
        """
        async with storage_errors("module_list"):
            rows = await Database.fetch(query, tenant_id)
        return [_row_to_module(row) for row in rows]


def _row_to_module(row) -> PaymentModule:
    return PaymentModule(
        module_id=row["module_id"],
        tenant_id=row["tenant_id"],
        token_address=row["token_address"],
        token_mode=row["token_mode"],
        decimals=row["decimals"],
        created_at=row["created_at"],
    )


class ModuleRegistry:
    """Enables and looks up tenant payment modules."""

    def __init__(
        self,
        repository: ModuleRepository,
        ledger: TokenLedger,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._audit = audit

    async def enable_module(
        self,
        tenant_id: str,
        token_address: str,
        *,
        decimals: Optional[int] = None,
        actor: Optional[Actor] = None,
    ) -> PaymentModule:
        """Attach ``token_address`` to ``tenant_id``.

        When ``decimals`` is not given it is read from the token contract.

        Raises:
            AuthorizationError: If the actor may not manage modules.
            ValidationError: On a bad address or unreadable decimals.
        """
        tenant_id = validate_string(tenant_id, "tenant_id", max_length=128)
        actor = RBACEngine.require(actor, Capability.MANAGE_MODULES, tenant_id=tenant_id)
        token_address = validate_eth_address(token_address, "token_address")

        if decimals is None:
            try:
                decimals = await self._ledger.decimals(token_address)
            except Exception as e:
                raise ValidationError(
                    f"Could not read decimals from token {token_address}: {e}",
                    field="decimals",
                ) from e
        decimals = validate_decimals(decimals)

        module = await self._repository.create(
            PaymentModule(
                module_id=generate_id(IdPrefixes.MODULE),
                tenant_id=tenant_id,
                token_address=token_address,
                decimals=decimals,
            )
        )
        logger.info(
            "Payment module enabled",
            module_id=module.module_id,
            tenant_id=tenant_id,
            token_address=token_address,
            decimals=decimals,
        )
        if self._audit is not None:
            await self._audit.record(
                AuditAction.MODULE_ENABLED,
                "module",
                actor=actor,
                tenant_id=tenant_id,
                payload={
                    "module_id": module.module_id,
                    "token_address": token_address,
                    "token_mode": module.token_mode,
                    "decimals": decimals,
                },
            )
        return module

    async def get_module(self, module_id: str) -> PaymentModule:
        module = await self._repository.get(module_id)
        if module is None:
            raise NotFoundError("PaymentModule", module_id)
        return module

    async def list_modules(self, tenant_id: str) -> List[PaymentModule]:
        return await self._repository.list(tenant_id)


__all__ = [
    "TOKEN_MODE_ATTACH",
    "PaymentModule",
    "ModuleRepository",
    "InMemoryModuleRepository",
    "PostgresModuleRepository",
    "ModuleRegistry",
]
