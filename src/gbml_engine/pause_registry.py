"""
Pause registry: the emergency circuit breaker for money movement.

Reads are served from an immutable in-memory snapshot of all paused
entries. The snapshot is refreshed from the PauseStore once it is older than
the TTL; a failed refresh keeps the previous snapshot and is logged and
audited, so a read never raises because storage is down. After a failure
the store is not tried again until the retry window has passed, and the
outage is audited once rather than on every read. Writes go to the
store first and are then applied to the snapshot, so a writer observes its
own change without waiting for the TTL.

Resolution order:
    GLOBAL paused  -> every scope/target reports paused
    otherwise      -> the exact (scope, target_id) entry, if any

Usage:
    registry = PauseRegistry(store, audit)
    await registry.load()
    if await registry.is_paused(PauseScope.TOKEN, token_address):
        raise PausedError(scope="TOKEN", target_id=token_address)
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from .audit import AuditAction, AuditTrail
from .constants import PauseDefaults
from .exceptions import PausedError
from .identity import Actor
from .logging import get_logger
from .pause_store import PauseScope, PauseState, PauseStore, normalize_target
from .rbac import Capability, RBACEngine

logger = get_logger(__name__)

PauseKey = tuple[PauseScope, str]


@dataclass(frozen=True)
class PauseSnapshot:
    """Point-in-time view of the pause table."""
    entries: Mapping[PauseKey, PauseState] = field(default_factory=lambda: MappingProxyType({}))
    # Clock reading at the last successful refresh; None forces a refresh
    loaded_at: Optional[float] = None

    @classmethod
    def from_states(cls, states: list[PauseState], loaded_at: Optional[float]) -> "PauseSnapshot":
        return cls(
            entries=MappingProxyType({s.key: s for s in states}),
            loaded_at=loaded_at,
        )

    @property
    def global_paused(self) -> bool:
        entry = self.entries.get((PauseScope.GLOBAL, PauseDefaults.GLOBAL_TARGET_ID))
        return bool(entry and entry.is_paused)

    def is_paused(self, scope: PauseScope, target_id: str) -> bool:
        if self.global_paused:
            return True
        entry = self.entries.get((scope, normalize_target(scope, target_id)))
        return bool(entry and entry.is_paused)

    def paused_entries(self) -> list[PauseState]:
        return [s for s in self.entries.values() if s.is_paused]

    def with_state(self, state: PauseState) -> "PauseSnapshot":
        entries = dict(self.entries)
        entries[state.key] = state
        return replace(self, entries=MappingProxyType(entries))


class PauseRegistry:
    """Circuit breaker over GLOBAL, MODULE and TOKEN scopes.

    Args:
        store: Durable pause store
        audit: Audit trail for PAUSE_SET and refresh failures
        ttl_seconds: Maximum snapshot age before a read refreshes it
        clock: Monotonic clock, injectable for tests
        fail_closed: Answer "paused" when no snapshot has ever loaded
        retry_after_failure_seconds: How long a failed refresh is not retried;
            reads in that window are served from the previous snapshot
            without touching the store. Defaults to the TTL.
    """

    def __init__(
        self,
        store: PauseStore,
        audit: Optional[AuditTrail] = None,
        *,
        ttl_seconds: float = PauseDefaults.CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        fail_closed: bool = False,
        retry_after_failure_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._ttl = ttl_seconds
        self._clock = clock
        self._fail_closed = fail_closed
        self._retry_after_failure = (
            ttl_seconds if retry_after_failure_seconds is None else retry_after_failure_seconds
        )
        self._snapshot: Optional[PauseSnapshot] = None
        # Clock reading of the last failed refresh; None while healthy
        self._failed_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def refresh_failing(self) -> bool:
        return self._failed_at is not None

    def _is_stale(self, snapshot: Optional[PauseSnapshot]) -> bool:
        if snapshot is None or snapshot.loaded_at is None:
            return True
        return self._clock() - snapshot.loaded_at > self._ttl

    def _in_backoff(self) -> bool:
        return self._failed_at is not None and self._clock() - self._failed_at < self._retry_after_failure

    async def _refresh_locked(self) -> PauseSnapshot:
        states = await self._store.load_all()
        snapshot = PauseSnapshot.from_states(
            [s for s in states if s.is_paused],
            loaded_at=self._clock(),
        )
        self._snapshot = snapshot
        if self._failed_at is not None:
            logger.info("Pause snapshot refresh recovered")
        self._failed_at = None
        logger.debug("Pause snapshot refreshed", paused_entries=len(snapshot.entries))
        return snapshot

    async def load(self) -> PauseSnapshot:
        """Load the first snapshot.

        Raises:
            StorageError: If the store cannot be read.
        """
        async with self._lock:
            return await self._refresh_locked()

    async def _current(self) -> Optional[PauseSnapshot]:
        snapshot = self._snapshot
        if not self._is_stale(snapshot) or self._in_backoff():
            return snapshot

        async with self._lock:
            # Another reader may have refreshed (or failed to) while we waited
            if not self._is_stale(self._snapshot) or self._in_backoff():
                return self._snapshot
            try:
                return await self._refresh_locked()
            except Exception as e:
                first_failure = self._failed_at is None
                self._failed_at = self._clock()
                if not first_failure:
                    logger.warning("Pause snapshot refresh still failing", error=str(e))
                    return self._snapshot

                logger.error(
                    "Pause snapshot refresh failed, serving previous snapshot",
                    error=str(e),
                    has_snapshot=self._snapshot is not None,
                    retry_after_seconds=self._retry_after_failure,
                )
                if self._audit is not None:
                    await self._audit.record_error(
                        e,
                        "pause",
                        context={"operation": "pause_refresh"},
                    )
                return self._snapshot

    async def is_paused(self, scope: "PauseScope | str", target_id: str = PauseDefaults.GLOBAL_TARGET_ID) -> bool:
        """Whether money movement is paused for ``(scope, target_id)``.

        Raises:
            ValidationError: If ``scope`` is not a supported scope.
        """
        scope = PauseScope.parse(scope)
        snapshot = await self._current()
        if snapshot is None:
            return self._fail_closed
        return snapshot.is_paused(scope, target_id)

    async def ensure_not_paused(
        self,
        *,
        token_address: Optional[str] = None,
        module_id: Optional[str] = None,
    ) -> None:
        """Raise PausedError if GLOBAL or any of the given targets is paused."""
        checks: list[tuple[PauseScope, str]] = [(PauseScope.GLOBAL, PauseDefaults.GLOBAL_TARGET_ID)]
        if module_id:
            checks.append((PauseScope.MODULE, module_id))
        if token_address:
            checks.append((PauseScope.TOKEN, token_address))

        for scope, target_id in checks:
            if await self.is_paused(scope, target_id):
                logger.warning("Money movement blocked by pause", scope=scope.value, target_id=target_id)
                raise PausedError(
                    f"Money movement is paused ({scope.value})",
                    scope=scope.value,
                    target_id=target_id,
                )

    async def set_pause(
        self,
        scope: "PauseScope | str",
        target_id: Optional[str],
        paused: bool,
        reason: str,
        actor: Optional[Actor],
    ) -> PauseState:
        """Persist a pause state and apply it to the snapshot.

        Raises:
            AuthorizationError: If the actor may not manage pauses.
            ValidationError: On an unsupported scope or missing target.
            StorageError: If the store write fails; the snapshot is unchanged.
        """
        actor = RBACEngine.require(actor, Capability.MANAGE_PAUSE)
        scope = PauseScope.parse(scope)
        target = normalize_target(scope, target_id)
        state = PauseState(
            scope=scope,
            target_id=target,
            is_paused=bool(paused),
            reason=reason or "",
            set_by=actor.id,
        )

        async with self._lock:
            stored = await self._store.upsert(state)
            current = self._snapshot or PauseSnapshot()
            self._snapshot = current.with_state(stored)

        logger.warning(
            "Pause state changed",
            scope=scope.value,
            target_id=target,
            is_paused=stored.is_paused,
            reason=stored.reason,
            set_by=actor.id,
        )
        if self._audit is not None:
            await self._audit.record(
                AuditAction.PAUSE_SET,
                "pause",
                actor=actor,
                payload={
                    "scope": scope.value,
                    "target_id": target,
                    "is_paused": stored.is_paused,
                    "reason": stored.reason,
                },
            )
        return stored

    async def status(self, actor: Optional[Actor] = None) -> PauseSnapshot:
        """Current snapshot (refreshing it if stale)."""
        if actor is not None:
            RBACEngine.require(actor, Capability.VIEW_PAUSE)
        snapshot = await self._current()
        return snapshot or PauseSnapshot()

    async def list_states(self, actor: Optional[Actor] = None) -> list[PauseState]:
        """All stored entries, paused or not, read straight from the store."""
        if actor is not None:
            RBACEngine.require(actor, Capability.VIEW_PAUSE)
        return await self._store.load_all()

    def invalidate(self) -> None:
        """Force the next read to refresh from the store."""
        self._failed_at = None
        if self._snapshot is not None:
            self._snapshot = replace(self._snapshot, loaded_at=None)


__all__ = ["PauseKey", "PauseSnapshot", "PauseRegistry"]
