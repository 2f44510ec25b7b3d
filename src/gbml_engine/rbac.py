"""Role-Based Access Control for engine operations.

Every gated operation names exactly one Capability. Roles map to capability
sets in ROLE_CAPABILITIES; an actor holds a capability if any of its roles
grants it. The mapping is checked exhaustively at import time so adding a
Role or Capability without wiring it up fails loudly.

Key concepts:
  - **Capability**: a gated engine operation (REQUEST_DISBURSEMENT, ...)
  - **Role**: admin / TREASURY / PROGRAM / COMPLIANCE
  - **RBACEngine**: capability checks and enforcement
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from .exceptions import AuthorizationError
from .identity import Actor, Role


class Capability(str, Enum):
    """Gated engine operations."""

    # Disbursement workflow
    REQUEST_DISBURSEMENT = "request_disbursement"
    APPROVE_DISBURSEMENT = "approve_disbursement"
    EXECUTE_DISBURSEMENT = "execute_disbursement"
    VIEW_DISBURSEMENTS = "view_disbursements"

    # Circuit breaker
    MANAGE_PAUSE = "manage_pause"
    VIEW_PAUSE = "view_pause"

    # Direct payments and modules
    SEND_PAYMENT = "send_payment"
    MANAGE_MODULES = "manage_modules"


# Role → Capabilities mapping
ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.PROGRAM: frozenset({
        Capability.REQUEST_DISBURSEMENT,
        Capability.VIEW_DISBURSEMENTS,
    }),
    Role.TREASURY: frozenset({
        Capability.APPROVE_DISBURSEMENT,
        Capability.EXECUTE_DISBURSEMENT,
        Capability.VIEW_DISBURSEMENTS,
        Capability.SEND_PAYMENT,
    }),
    Role.COMPLIANCE: frozenset({
        Capability.APPROVE_DISBURSEMENT,
        Capability.VIEW_DISBURSEMENTS,
        Capability.VIEW_PAUSE,
    }),
}

# Requesting and executing must stay in different role classes
REQUESTER_ROLES: FrozenSet[Role] = frozenset(
    role for role, caps in ROLE_CAPABILITIES.items() if Capability.REQUEST_DISBURSEMENT in caps
)
EXECUTOR_ROLES: FrozenSet[Role] = frozenset(
    role for role, caps in ROLE_CAPABILITIES.items() if Capability.EXECUTE_DISBURSEMENT in caps
)


def _check_mapping() -> None:
    missing = set(Role) - set(ROLE_CAPABILITIES)
    if missing:
        raise RuntimeError(f"Roles without a capability mapping: {sorted(r.value for r in missing)}")
    granted: Set[Capability] = set().union(*ROLE_CAPABILITIES.values())
    if granted != set(Capability):
        raise RuntimeError(f"Capabilities no role grants: {sorted(c.value for c in set(Capability) - granted)}")
    if (REQUESTER_ROLES & EXECUTOR_ROLES) - {Role.ADMIN}:
        raise RuntimeError("Only admin may hold both the requesting and executing capability")


_check_mapping()


class RBACEngine:
    """Capability checks for actors."""

    @staticmethod
    def get_capabilities(actor: Actor) -> FrozenSet[Capability]:
        """Union of the capabilities granted by all of the actor's roles."""
        caps: Set[Capability] = set()
        for role in actor.roles:
            caps |= ROLE_CAPABILITIES[role]
        return frozenset(caps)

    @staticmethod
    def has_capability(actor: Actor, capability: Capability) -> bool:
        return capability in RBACEngine.get_capabilities(actor)

    @staticmethod
    def require(
        actor: Optional[Actor],
        capability: Capability,
        *,
        tenant_id: Optional[str] = None,
    ) -> Actor:
        """Raise AuthorizationError unless ``actor`` holds ``capability``.

        When ``tenant_id`` is given, non-admin actors must also belong to that
        tenant.
        """
        if actor is None:
            raise AuthorizationError(
                "Authenticated actor required",
                required=capability.value,
            )

        if not RBACEngine.has_capability(actor, capability):
            raise AuthorizationError(
                f"Permission denied: requires {capability.value}",
                actor_id=actor.id,
                required=capability.value,
            )

        if tenant_id is not None and not actor.is_admin and actor.tenant_id != tenant_id:
            raise AuthorizationError(
                "Actor does not belong to this tenant",
                actor_id=actor.id,
                required=capability.value,
                details={"tenant_id": tenant_id},
            )

        return actor


__all__ = [
    "Capability",
    "ROLE_CAPABILITIES",
    "REQUESTER_ROLES",
    "EXECUTOR_ROLES",
    "RBACEngine",
]
