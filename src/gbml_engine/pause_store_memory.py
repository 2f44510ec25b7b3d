"""In-memory pause store (dev/test)."""

from __future__ import annotations

from .pause_store import PauseScope, PauseState, PauseStore


class InMemoryPauseStore(PauseStore):
    """Process-local pause store (swap for PostgreSQL in production)."""

    def __init__(self) -> None:
        self._states: dict[tuple[PauseScope, str], PauseState] = {}

    async def load_all(self) -> list[PauseState]:
        return list(self._states.values())

    async def upsert(self, state: PauseState) -> PauseState:
        self._states[state.key] = state
        return state
