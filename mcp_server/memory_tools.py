"""MCP memory tools - FastMCP based."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from functools import wraps
from typing import List, Literal, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel

from memory_engine.config import load_plugin_config, resolve_project_id
from memory_engine.compaction import format_planning_state
from memory_engine.plugin import MemoryPlugin
from memory_engine.types import CreateMemoryInput, Memory, Phase, PlanningState

logger = logging.getLogger("memory_engine.tools")

mcp = FastMCP("project-memory")

Scope = Literal["convention", "decision", "context"]


class PhaseInput(BaseModel):
    title: str
    status: str
    notes: Optional[str] = None


_plugin_lock = asyncio.Lock()
_plugin: Optional[MemoryPlugin] = None


def configure(plugin: Optional[MemoryPlugin]) -> None:
    """Install an already started plugin (or clear it)."""
    global _plugin
    _plugin = plugin


async def _ensure_plugin() -> MemoryPlugin:
    global _plugin
    if _plugin is not None:
        return _plugin
    async with _plugin_lock:
        if _plugin is not None:
            return _plugin
        directory = os.getcwd()
        plugin = MemoryPlugin(resolve_project_id(directory), directory, load_plugin_config())
        await plugin.start()
        _plugin = plugin
    return _plugin


def _with_plugin(fn):
    @wraps(fn)
    async def _wrapped(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            logger.exception("%s failed", fn.__name__)
            return f"Error: {e}"

    return _wrapped


def _created_date(memory: Memory) -> str:
    return datetime.fromtimestamp(memory.created_at / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def format_memory_list(memories: List[Memory]) -> str:
    if not memories:
        return "No memories found."
    formatted = [f"[{m.id}] ({m.scope}) - Created {_created_date(m)}\n{m.content}" for m in memories]
    return f"Found {len(memories)} memories:\n\n" + "\n\n".join(formatted)


@mcp.tool(name="memory-read")
@_with_plugin
async def memory_read(query: Optional[str] = None, scope: Optional[Scope] = None, limit: int = 10) -> str:
    """Search and retrieve project memories"""
    plugin = await _ensure_plugin()
    await plugin.ready()
    logger.info("memory-read: query=%r, scope=%s, limit=%d", query or "none", scope, limit)

    if query:
        results = await plugin.memory.search(query, plugin.project_id, scope=scope, limit=limit)
        memories = [r.memory for r in results]
    else:
        memories = await plugin.memory.list_by_project(plugin.project_id, scope=scope, limit=limit)

    logger.info("memory-read: returned %d results", len(memories))
    return format_memory_list(memories)


@mcp.tool(name="memory-write")
@_with_plugin
async def memory_write(content: str, scope: Scope) -> str:
    """Store a new project memory"""
    plugin = await _ensure_plugin()
    await plugin.ready()
    logger.info("memory-write: scope=%s, content=%r", scope, content[:80])

    result = await plugin.memory.create(
        CreateMemoryInput(project_id=plugin.project_id, scope=scope, content=content)
    )
    logger.info("memory-write: created id=%d, deduplicated=%s", result.id, result.deduplicated)
    suffix = " (matched existing memory)" if result.deduplicated else ""
    return f"Memory stored (ID: #{result.id}, scope: {scope}).{suffix}"


@mcp.tool(name="memory-edit")
@_with_plugin
async def memory_edit(id: int, content: str, scope: Optional[Scope] = None) -> str:
    """Edit an existing project memory"""
    plugin = await _ensure_plugin()
    await plugin.ready()
    logger.info("memory-edit: id=%d, content=%r", id, content[:80])

    memory = await plugin.memory.queries.get_by_id(id)
    if memory is None:
        return f"Memory #{id} not found."

    await plugin.memory.update(id, content=content, scope=scope)
    return f"Updated memory #{id} (scope: {scope or memory.scope})."


@mcp.tool(name="memory-delete")
@_with_plugin
async def memory_delete(id: int) -> str:
    """Delete a project memory"""
    # No wait on vector-store init; the row delete works without it.
    plugin = await _ensure_plugin()
    logger.info("memory-delete: id=%d", id)

    memory = await plugin.memory.queries.get_by_id(id)
    if memory is None:
        return f"Memory #{id} not found."

    await plugin.memory.delete(id)
    return f'Deleted memory #{id}: "{memory.content[:50]}..." ({memory.scope})'


@mcp.tool(name="memory-health")
@_with_plugin
async def memory_health(action: Literal["check", "reindex"] = "check") -> str:
    """Check memory plugin health or trigger a reindex of all embeddings.

    Use action "check" (default) to view status, or "reindex" to regenerate
    all embeddings when the model has changed or embeddings are missing.
    """
    plugin = await _ensure_plugin()
    await plugin.ready()
    if action == "reindex":
        return await plugin.health.reindex(plugin.memory)
    return await plugin.health.check()


def _merge_unique(existing: List[str], extra: List[str]) -> List[str]:
    return list(dict.fromkeys([*existing, *extra]))


def merge_planning_state(
    existing: Optional[PlanningState],
    objective: Optional[str] = None,
    current: Optional[str] = None,
    next: Optional[str] = None,
    phases: Optional[List[PhaseInput]] = None,
    findings: Optional[List[str]] = None,
    errors: Optional[List[str]] = None,
) -> PlanningState:
    """Overlay the given fields on ``existing``; findings and errors accumulate as ordered sets."""
    merged = existing or PlanningState()
    if objective is not None:
        merged.objective = objective
    if current is not None:
        merged.current = current
    if next is not None:
        merged.next = next
    if phases is not None:
        merged.phases = [Phase(title=p.title, status=p.status, notes=p.notes) for p in phases]
    if findings is not None:
        merged.findings = _merge_unique(merged.findings, findings)
    if errors is not None:
        merged.errors = _merge_unique(merged.errors, errors)
    merged.active = True
    return merged


def summarize_planning_state(state: PlanningState) -> str:
    parts = []
    if state.objective:
        parts.append(f"objective: {state.objective}")
    if state.current:
        parts.append(f"current: {state.current}")
    if state.phases:
        parts.append(f"{len(state.phases)} phases")
    return ", ".join(parts) or "No data provided"


@mcp.tool(name="memory-planning-update")
@_with_plugin
async def memory_planning_update(
    sessionID: str,
    objective: Optional[str] = None,
    current: Optional[str] = None,
    next: Optional[str] = None,
    phases: Optional[List[PhaseInput]] = None,
    findings: Optional[List[str]] = None,
    errors: Optional[List[str]] = None,
) -> str:
    """Update the session planning state (phases, objectives, progress). Merge new fields with existing state."""
    plugin = await _ensure_plugin()
    await plugin.ready()
    logger.info("memory-planning-update: session=%s", sessionID)

    existing = await plugin.session_state.get_planning_state(sessionID)
    merged = merge_planning_state(existing, objective, current, next, phases, findings, errors)
    await plugin.session_state.set_planning_state(sessionID, plugin.project_id, merged)

    return f"Planning state updated for session {sessionID}. {summarize_planning_state(merged)}"


@mcp.tool(name="memory-planning-get")
@_with_plugin
async def memory_planning_get(sessionID: str) -> str:
    """Get the current planning state for a session"""
    plugin = await _ensure_plugin()
    await plugin.ready()
    logger.info("memory-planning-get: session=%s", sessionID)

    state = await plugin.session_state.get_planning_state(sessionID)
    if state is None:
        return "No planning state found for this session"
    return format_planning_state(state) or "Planning state exists but is empty"
