from __future__ import annotations

import asyncio

from memory_engine import session_state as session_state_module
from memory_engine.db import DB
from memory_engine.session_state import SessionStateService, planning_key, snapshot_key
from memory_engine.types import Phase, PlanningState, PreCompactionSnapshot


def _run(coro):
    return asyncio.run(coro)


async def _service(tmp_path) -> SessionStateService:
    db = DB(str(tmp_path / "memory.db"))
    await db.init()
    return SessionStateService(db)


def test_set_get_overwrite_delete(tmp_path) -> None:
    async def main():
        svc = await _service(tmp_path)
        await svc.set("k", "proj", {"a": 1})
        first = await svc.get("k")
        await svc.set("k", "proj", {"a": 2})
        second = await svc.get("k")
        await svc.delete("k")
        return first, second, await svc.get("k")

    assert _run(main()) == ({"a": 1}, {"a": 2}, None)


def test_expired_values_are_invisible_and_swept(tmp_path, monkeypatch) -> None:
    clock = {"now": 1_000_000}
    monkeypatch.setattr(session_state_module, "now_ms", lambda: clock["now"])

    async def main():
        svc = await _service(tmp_path)
        await svc.set("short", "proj", "x", ttl=10)
        await svc.set("forever", "proj", "y")
        clock["now"] += 11_000
        value = await svc.get("short")
        listed = [s.key for s in await svc.list_by_project("proj")]
        swept = await svc.delete_expired()
        return value, listed, swept, await svc.get("forever")

    value, listed, swept, forever = _run(main())
    assert value is None
    assert listed == ["forever"]
    assert swept == 1
    assert forever == "y"


def test_delete_by_prefix_wildcard(tmp_path) -> None:
    async def main():
        svc = await _service(tmp_path)
        await svc.set("session:a", "proj", 1)
        await svc.set("session:b", "proj", 2)
        await svc.set("compaction:snapshot:a", "proj", 3)
        removed = await svc.delete_by_prefix("session:*")
        remaining = sorted(s.key for s in await svc.list_by_project("proj"))
        return removed, remaining

    removed, remaining = _run(main())
    assert removed == 2
    assert remaining == ["compaction:snapshot:a"]


def test_planning_and_snapshot_helpers(tmp_path) -> None:
    async def main():
        svc = await _service(tmp_path)
        state = PlanningState(objective="o", phases=[Phase("p1", "in_progress", "n")], findings=["f"], active=True)
        await svc.set_planning_state("s1", "proj", state)
        snap = PreCompactionSnapshot(timestamp="2026-01-02T03:04:05.000Z", session_id="s1", planning_state=state,
                                     branch="main")
        await svc.set_compaction_snapshot("s1", "proj", snap)
        rows = {s.key: s for s in await svc.list_by_project("proj")}
        return await svc.get_planning_state("s1"), await svc.get_compaction_snapshot("s1"), rows

    planning, snapshot, rows = _run(main())
    assert planning.objective == "o"
    assert planning.phases[0].notes == "n"
    assert planning.active is True
    assert snapshot.branch == "main"
    assert snapshot.planning_state.findings == ["f"]

    # Planning state lives for a week, snapshots for a day.
    plan_row, snap_row = rows[planning_key("s1")], rows[snapshot_key("s1")]
    assert plan_row.expires_at - plan_row.updated_at == 7 * 24 * 3600 * 1000
    assert snap_row.expires_at - snap_row.updated_at == 24 * 3600 * 1000


def test_cleanup_task_lifecycle(tmp_path) -> None:
    async def main():
        svc = await _service(tmp_path)
        svc.start_cleanup(interval=0.01)
        task = svc._cleanup_task
        await asyncio.sleep(0.05)
        svc.destroy()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = _run(main())
    assert task is not None and task.cancelled()
