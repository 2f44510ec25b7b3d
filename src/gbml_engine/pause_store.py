"""Circuit breaker state definitions and the store protocol.

A pause entry is keyed by ``(scope, target_id)``; writing the same key again
replaces the entry (upsert). TOKEN target ids are normalized to lowercase so
checksummed and lowercase addresses resolve to the same entry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from .constants import PauseDefaults
from .exceptions import ValidationError
from .utils import utc_now


class PauseScope(str, Enum):
    GLOBAL = "GLOBAL"
    MODULE = "MODULE"
    TOKEN = "TOKEN"

    @classmethod
    def parse(cls, value: "str | PauseScope") -> "PauseScope":
        if isinstance(value, PauseScope):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Unsupported pause scope: {value}", field="scope") from None


def normalize_target(scope: PauseScope, target_id: str | None) -> str:
    """Canonical target id for a scope."""
    if scope is PauseScope.GLOBAL:
        return PauseDefaults.GLOBAL_TARGET_ID
    if not target_id or not str(target_id).strip():
        raise ValidationError(f"{scope.value} pause requires a target_id", field="target_id")
    target_id = str(target_id).strip()
    if scope is PauseScope.TOKEN:
        return target_id.lower()
    return target_id


@dataclass(frozen=True)
class PauseState:
    """One circuit breaker entry."""
    scope: PauseScope
    target_id: str
    is_paused: bool
    reason: str = ""
    set_by: str | None = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[PauseScope, str]:
        return (self.scope, self.target_id)


class PauseStore(Protocol):
    async def load_all(self) -> list[PauseState]: ...
    async def upsert(self, state: PauseState) -> PauseState: ...


__all__ = ["PauseScope", "PauseState", "PauseStore", "normalize_target"]
