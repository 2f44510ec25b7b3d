"""PostgreSQL-backed pause store."""

from __future__ import annotations

from .database import Database, storage_errors
from .pause_store import PauseScope, PauseState, PauseStore


class PostgresPauseStore(PauseStore):
    """Pause states persisted in ``pause_states`` (one row per scope/target)."""

    async def load_all(self) -> list[PauseState]:
        async with storage_errors("pause_load"):
            rows = await Database.fetch(
                """
                SELECT scope, target_id, is_paused, reason, set_by, updated_at
                FROM pause_states
                """
            )
        return [_row_to_pause_state(row) for row in rows]

    async def upsert(self, state: PauseState) -> PauseState:
        async with storage_errors("pause_upsert"):
            row = await Database.fetchrow(
                """
                INSERT INTO pause_states (scope, target_id, is_paused, reason, set_by, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (scope, target_id) DO UPDATE SET
                    is_paused = EXCLUDED.is_paused,
                    reason = EXCLUDED.reason,
                    set_by = EXCLUDED.set_by,
                    updated_at = EXCLUDED.updated_at
                RETURNING scope, target_id, is_paused, reason, set_by, updated_at
                """,
                state.scope.value,
                state.target_id,
                state.is_paused,
                state.reason,
                state.set_by,
                state.updated_at,
            )
        return _row_to_pause_state(row)


def _row_to_pause_state(row) -> PauseState:
    return PauseState(
        scope=PauseScope(row["scope"]),
        target_id=row["target_id"],
        is_paused=row["is_paused"],
        reason=row["reason"] or "",
        set_by=row["set_by"],
        updated_at=row["updated_at"],
    )
