from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional

from .db import DB, fetch_all, fetch_one, now_ms
from .types import PlanningState, PreCompactionSnapshot, SessionState

logger = logging.getLogger("memory_engine.session_state")

SESSION_TTL = 7 * 24 * 60 * 60
SNAPSHOT_TTL = 24 * 60 * 60
CLEANUP_INTERVAL = 30 * 60

_COLUMNS = "key, project_id, data, expires_at, created_at, updated_at"


def planning_key(session_id: str) -> str:
    return f"session:{session_id}"


def snapshot_key(session_id: str) -> str:
    return f"compaction:snapshot:{session_id}"


def _like_pattern(prefix: str) -> str:
    if prefix.endswith("*"):
        return prefix[:-1] + "%"
    return prefix + "%"


class SessionStateService:
    """Ephemeral per-session JSON values with optional expiry (seconds)."""

    def __init__(self, db: DB):
        self.db = db
        self._cleanup_task: Optional[asyncio.Task] = None

    async def get(self, key: str) -> Optional[Any]:
        async with self.db.connect() as conn:
            row = await fetch_one(
                conn,
                "SELECT data FROM session_state WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, now_ms()),
            )
        if row is None:
            return None
        try:
            return json.loads(row["data"])
        except ValueError:
            logger.warning("Discarding unreadable session state %s", key)
            return None

    async def set(self, key: str, project_id: str, data: Any, ttl: Optional[float] = None) -> None:
        now = now_ms()
        expires_at = now + int(ttl * 1000) if ttl else None
        async with self.db.connect() as conn:
            await conn.execute(
                f"INSERT INTO session_state ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET data = excluded.data, "
                "expires_at = excluded.expires_at, updated_at = excluded.updated_at",
                (key, project_id, json.dumps(data), expires_at, now, now),
            )
            await conn.commit()

    async def delete(self, key: str) -> None:
        async with self.db.connect() as conn:
            await conn.execute("DELETE FROM session_state WHERE key = ?", (key,))
            await conn.commit()

    async def delete_by_prefix(self, prefix: str) -> int:
        async with self.db.connect() as conn:
            cur = await conn.execute("DELETE FROM session_state WHERE key LIKE ?", (_like_pattern(prefix),))
            deleted = cur.rowcount
            await conn.commit()
        return deleted

    async def delete_expired(self) -> int:
        async with self.db.connect() as conn:
            cur = await conn.execute(
                "DELETE FROM session_state WHERE expires_at IS NOT NULL AND expires_at < ?", (now_ms(),)
            )
            deleted = cur.rowcount
            await conn.commit()
        return deleted

    async def list_by_project(self, project_id: str) -> List[SessionState]:
        async with self.db.connect() as conn:
            rows = await fetch_all(
                conn,
                f"SELECT {_COLUMNS} FROM session_state "
                "WHERE project_id = ? AND (expires_at IS NULL OR expires_at > ?) ORDER BY updated_at DESC",
                (project_id, now_ms()),
            )
        out: List[SessionState] = []
        for r in rows:
            try:
                data = json.loads(r["data"])
            except ValueError:
                continue
            out.append(
                SessionState(
                    key=r["key"],
                    project_id=r["project_id"],
                    data=data,
                    expires_at=r["expires_at"],
                    created_at=r["created_at"],
                    updated_at=r["updated_at"],
                )
            )
        return out

    # Planning state and compaction snapshots.

    async def get_planning_state(self, session_id: str) -> Optional[PlanningState]:
        data = await self.get(planning_key(session_id))
        return PlanningState.from_dict(data) if isinstance(data, dict) else None

    async def set_planning_state(self, session_id: str, project_id: str, state: PlanningState) -> None:
        await self.set(planning_key(session_id), project_id, state.to_dict(), SESSION_TTL)

    async def get_compaction_snapshot(self, session_id: str) -> Optional[PreCompactionSnapshot]:
        data = await self.get(snapshot_key(session_id))
        return PreCompactionSnapshot.from_dict(data) if isinstance(data, dict) else None

    async def set_compaction_snapshot(
        self, session_id: str, project_id: str, snapshot: PreCompactionSnapshot
    ) -> None:
        await self.set(snapshot_key(session_id), project_id, snapshot.to_dict(), SNAPSHOT_TTL)

    # Background expiry sweep.

    def start_cleanup(self, interval: float = CLEANUP_INTERVAL) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop(interval))

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                deleted = await self.delete_expired()
                if deleted:
                    logger.info("Cleaned up %d expired session state entries", deleted)
            except Exception:
                logger.exception("Failed to clean up expired session state")

    def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    def destroy(self) -> None:
        self.stop_cleanup()
