"""Actor identity as handed to the engine by the authentication layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable


class Role(str, Enum):
    """Closed set of roles an actor can hold.

    ``admin`` is lowercase because it comes from user profiles; the other
    roles come from API keys and are uppercase.
    """
    ADMIN = "admin"
    TREASURY = "TREASURY"
    PROGRAM = "PROGRAM"
    COMPLIANCE = "COMPLIANCE"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Parse a role name case-insensitively."""
        if isinstance(value, Role):
            return value
        normalized = value.strip()
        for role in cls:
            if role.value.lower() == normalized.lower():
                return role
        raise ValueError(f"Unknown role: {value}")


@dataclass(frozen=True)
class Actor:
    """An already-verified caller.

    The engine never validates credentials; it only reads ``roles``.
    """
    id: str
    tenant_id: str
    roles: FrozenSet[Role] = field(default_factory=frozenset)

    @classmethod
    def of(cls, id: str, tenant_id: str, roles: Iterable["str | Role"]) -> "Actor":
        """Build an actor from raw role names (e.g. an API key record)."""
        return cls(id=id, tenant_id=tenant_id, roles=frozenset(Role.parse(r) for r in roles))

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    def has_role(self, role: Role) -> bool:
        return role in self.roles


__all__ = ["Role", "Actor"]
