"""MCP memory resources and prompts."""

from __future__ import annotations

from mcp_server.memory_tools import _ensure_plugin, mcp
from memory_engine.hooks import build_extraction_prompt

RESOURCE_LIMIT = 100


async def _scope_resource(scope: str, title: str) -> str:
    plugin = await _ensure_plugin()
    memories = await plugin.memory.list_by_project(plugin.project_id, scope=scope, limit=RESOURCE_LIMIT)
    lines = [f"# {title} ({len(memories)} total)\n"]
    for m in memories:
        lines.append(f"- [{m.id}] {m.content}")
    return "\n".join(lines)


@mcp.resource("memory://conventions")
async def conventions_resource() -> str:
    """Project conventions as a resource."""
    return await _scope_resource("convention", "Conventions")


@mcp.resource("memory://decisions")
async def decisions_resource() -> str:
    """Project decisions as a resource."""
    return await _scope_resource("decision", "Decisions")


@mcp.resource("memory://health")
async def health_resource() -> str:
    """Get memory system health status."""
    plugin = await _ensure_plugin()
    return await plugin.health.check()


@mcp.prompt(name="compaction-context")
async def compaction_context_prompt(session_id: str) -> str:
    """Project memory digest to preserve across a compaction."""
    plugin = await _ensure_plugin()
    result = await plugin.on_compacting(session_id)
    parts = list(result.context)
    if result.prompt:
        parts.append(result.prompt)
    return "\n\n".join(parts) or "No project memory to preserve."


@mcp.prompt(name="memory-extraction")
def memory_extraction_prompt(session_id: str) -> str:
    """Ask the assistant to store what a compaction summary taught it."""
    return build_extraction_prompt(session_id)
