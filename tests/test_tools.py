from __future__ import annotations

import asyncio
import re

import pytest

from fakes import FakeProvider, make_fake_vec
from mcp_server import memory_tools
from mcp_server.memory_tools import (
    PhaseInput,
    mcp,
    memory_delete,
    memory_edit,
    memory_health,
    memory_planning_get,
    memory_planning_update,
    memory_read,
    memory_write,
)
from memory_engine.config import default_plugin_config
from memory_engine.plugin import MemoryPlugin


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def plugin_factory(tmp_path):
    """Build and install a started plugin inside the running loop."""

    async def make() -> MemoryPlugin:
        plugin = MemoryPlugin(
            "tool-proj",
            str(tmp_path),
            default_plugin_config(str(tmp_path)),
            data_dir=str(tmp_path),
            provider=FakeProvider(),
            vec_factory=make_fake_vec,
        )
        await plugin.start()
        memory_tools.configure(plugin)
        return plugin

    yield make
    memory_tools.configure(None)


def test_tools_are_registered_under_dashed_names() -> None:
    names = {t.name for t in _run(mcp.list_tools())}
    assert {
        "memory-read",
        "memory-write",
        "memory-edit",
        "memory-delete",
        "memory-health",
        "memory-planning-update",
        "memory-planning-get",
    } <= names


def test_write_read_edit_delete(plugin_factory) -> None:
    async def main():
        plugin = await plugin_factory()
        empty = await memory_read()
        stored = await memory_write("Run pytest before pushing", "convention")
        again = await memory_write("Run pytest before pushing", "convention")
        listed = await memory_read(scope="convention")
        searched = await memory_read(query="pytest pushing")
        memory_id = int(re.search(r"#(\d+)", stored).group(1))
        edited = await memory_edit(memory_id, "Run pytest and ruff before pushing")
        missing_edit = await memory_edit(9999, "x")
        deleted = await memory_delete(memory_id)
        missing_delete = await memory_delete(memory_id)
        await plugin.dispose()
        return memory_id, empty, stored, again, listed, searched, edited, missing_edit, deleted, missing_delete

    (memory_id, empty, stored, again, listed, searched, edited, missing_edit, deleted,
     missing_delete) = _run(main())

    assert empty == "No memories found."
    assert stored == f"Memory stored (ID: #{memory_id}, scope: convention)."
    assert again == f"Memory stored (ID: #{memory_id}, scope: convention). (matched existing memory)"
    assert listed.startswith("Found 1 memories:\n\n")
    assert re.search(rf"\[{memory_id}\] \(convention\) - Created \d{{4}}-\d{{2}}-\d{{2}}\nRun pytest", listed)
    assert searched.startswith("Found 1 memories:")
    assert edited == f"Updated memory #{memory_id} (scope: convention)."
    assert missing_edit == "Memory #9999 not found."
    assert deleted == f'Deleted memory #{memory_id}: "Run pytest and ruff before pushing..." (convention)'
    assert missing_delete == f"Memory #{memory_id} not found."


def test_planning_update_merges(plugin_factory) -> None:
    async def main():
        plugin = await plugin_factory()
        none = await memory_planning_get("s1")
        first = await memory_planning_update(
            "s1", objective="Port importer", findings=["a", "b"], phases=[PhaseInput(title="parse", status="completed")]
        )
        second = await memory_planning_update("s1", current="writing", findings=["b", "c"], errors=["x"])
        got = await memory_planning_get("s1")
        blank = await memory_planning_update("s2")
        blank_get = await memory_planning_get("s2")
        state = await plugin.session_state.get_planning_state("s1")
        await plugin.dispose()
        return none, first, second, got, blank, blank_get, state

    none, first, second, got, blank, blank_get, state = _run(main())
    assert none == "No planning state found for this session"
    assert first == "Planning state updated for session s1. objective: Port importer, 1 phases"
    assert second == "Planning state updated for session s1. objective: Port importer, current: writing, 1 phases"
    assert state.findings == ["a", "b", "c"]
    assert state.errors == ["x"]
    assert state.active is True
    assert "- [x] parse" in got
    assert blank == "Planning state updated for session s2. No data provided"
    assert blank_get == "Planning state exists but is empty"


def test_health_check_and_reindex(plugin_factory) -> None:
    async def main():
        plugin = await plugin_factory()
        await memory_write("one memory", "context")
        check = await memory_health()
        reindex = await memory_health("reindex")
        await plugin.dispose()
        return check, reindex

    check, reindex = _run(main())
    assert check.startswith("Memory Plugin Health: OK")
    assert "Total memories: 1" in check
    assert reindex.startswith("Reindex complete")
    assert "Embedded: 1" in reindex


def test_unexpected_errors_are_rendered(plugin_factory) -> None:
    async def main():
        plugin = await plugin_factory()

        async def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        plugin.memory.search = boom
        out = await memory_read(query="anything")
        await plugin.dispose()
        return out

    assert _run(main()) == "Error: disk on fire"


def test_resources_and_prompts(plugin_factory) -> None:
    from mcp_server.memory_resources import (
        compaction_context_prompt,
        conventions_resource,
        decisions_resource,
        health_resource,
        memory_extraction_prompt,
    )

    async def main():
        plugin = await plugin_factory()
        empty_digest = await compaction_context_prompt("s1")
        await memory_write("Prefer dataclasses for records", "convention")
        await memory_write("Store vectors in sqlite", "decision")
        out = (
            await conventions_resource(),
            await decisions_resource(),
            await health_resource(),
            await compaction_context_prompt("s1"),
            empty_digest,
        )
        await plugin.dispose()
        return out

    conventions, decisions, health, digest, empty_digest = _run(main())
    assert conventions.startswith("# Conventions (1 total)")
    assert "Prefer dataclasses for records" in conventions
    assert "Store vectors in sqlite" in decisions
    assert health.startswith("Memory Plugin Health:")
    assert "Prefer dataclasses for records" in digest
    assert empty_digest == "No project memory to preserve."
    assert 'sessionID "s2"' in memory_extraction_prompt("s2")


def test_edit_and_delete_do_not_count_as_reads(plugin_factory) -> None:
    async def main():
        plugin = await plugin_factory()
        keep = int(re.search(r"#(\d+)", await memory_write("Pin dependency versions", "convention")).group(1))
        drop = int(re.search(r"#(\d+)", await memory_write("Squash merge feature branches", "decision")).group(1))
        await memory_edit(keep, "Pin every dependency version")
        await memory_delete(drop)
        edited = await plugin.memory.queries.get_by_id(keep)
        await plugin.dispose()
        return edited

    edited = _run(main())
    assert edited.content == "Pin every dependency version"
    assert edited.access_count == 0
    assert edited.last_accessed_at is None
