"""Context digest injected right before the host compacts a session.

The digest carries the session's planning state, the snapshot left by the
previous compaction, and the project's conventions and decisions, trimmed
to a token budget (lowest-priority sections first).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .config import CompactionConfig
from .memory import MemoryService
from .session_state import SessionStateService
from .types import PlanningState, PreCompactionSnapshot

logger = logging.getLogger("memory_engine.compaction")

CONTEXT_HEADER = "## Project Memory\n\nPreserve these established facts during compaction:\n\n"
SECTION_SEPARATOR = "\n\n"
CHARS_PER_TOKEN = 4
MEMORIES_PER_SCOPE = 10

CUSTOM_COMPACTION_PROMPT = """You are generating a continuation context for a coding session with persistent
project memory. Your summary will be the ONLY context after compaction.
Preserve everything needed for seamless continuation.

## CRITICAL - Preserve These Verbatim
1. The current task/objective (quote the user's original request exactly)
2. Active planning state: current phase, completed phases, next steps, blockers
3. ALL file paths being actively worked on (with what's being done)
4. Key decisions made and their rationale
5. Any corrections or gotchas discovered during the session
6. Todo list state (what's done, in progress, pending)

## Structure Your Summary As:

### Active Task
[Verbatim objective + what was happening when compaction fired]

### Planning State
[Phases with status and notes]

### Key Context
[Decisions, constraints, user preferences, corrections]

### Active Files
[filepath -> what's being done to it]

### Next Steps
[What should happen immediately after compaction]

## Rules
- Use specific file paths, phase names - NOT vague references
- State what tools returned, not just that they were called
- Prefer completeness over brevity - this is the agent's entire working memory"""

_STATUS_ICONS = {"completed": "[x]", "in_progress": "[~]"}


def build_custom_compaction_prompt() -> str:
    return CUSTOM_COMPACTION_PROMPT


def format_planning_state(state: Optional[PlanningState]) -> Optional[str]:
    if state is None:
        return None

    lines: List[str] = []
    if state.objective:
        lines.append(f"**Objective:** {state.objective}")
    if state.current:
        lines.append(f"**Current:** {state.current}")
    if state.next:
        lines.append(f"**Next:** {state.next}")

    if state.phases:
        lines.append("\n### Phases:")
        for phase in state.phases:
            icon = _STATUS_ICONS.get(phase.status, "[ ]")
            notes = f" - {phase.notes}" if phase.notes else ""
            lines.append(f"- {icon} {phase.title}{notes}")

    if state.findings:
        lines.append("\n### Key Findings:")
        lines.extend(f"- {f}" for f in state.findings)

    if state.errors:
        lines.append("\n### Errors to Avoid:")
        lines.extend(f"- {e}" for e in state.errors)

    return "\n".join(lines)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def format_compaction_diagnostics(
    planning_phases: int, conventions: int, decisions: int, tokens_injected: int
) -> str:
    parts = []
    if planning_phases > 0:
        parts.append(_plural(planning_phases, "planning phase"))
    if conventions > 0:
        parts.append(_plural(conventions, "convention"))
    if decisions > 0:
        parts.append(_plural(decisions, "decision"))
    if not parts:
        return ""
    return f"> **Compaction preserved:** {', '.join(parts)} (~{tokens_injected} tokens injected)"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _hard_truncate(content: str, max_chars: int) -> str:
    if max_chars <= 3:
        return content[: max(0, max_chars)]
    return content[: max_chars - 3] + "..."


def trim_to_char_budget(content: str, max_chars: int, priority: str) -> str:
    """Shorten ``content`` to at most ``max_chars`` characters.

    ``low`` cuts mid-text, ``medium`` first drops the last fifth of its lines,
    ``high`` keeps whole lines for as long as any fits.
    """
    if len(content) <= max_chars:
        return content
    if max_chars <= 0:
        return ""
    if priority == "low":
        return _hard_truncate(content, max_chars)

    lines = content.split("\n")
    skip = int(len(lines) * 0.2) if priority == "medium" else 0
    candidates = lines[: len(lines) - skip] if skip else lines

    room = max_chars - len("\n...")
    kept: List[str] = []
    used = 0
    for line in candidates:
        cost = len(line) + (1 if kept else 0)
        if used + cost > room:
            break
        kept.append(line)
        used += cost

    if not kept:
        return _hard_truncate(content, max_chars)
    return "\n".join(kept) + "\n..."


def trim_to_token_budget(content: str, max_tokens: int, priority: str) -> str:
    return trim_to_char_budget(content, max_tokens * CHARS_PER_TOKEN, priority)


def section_priority(index: int) -> str:
    if index == 0:
        return "high"
    if index == 1:
        return "medium"
    return "low"


def fit_sections(sections: List[str], max_tokens: int, header: str = CONTEXT_HEADER) -> List[str]:
    """Trim sections, last first, so ``header`` plus the joined sections fit.

    Empty sections are dropped from the result.
    """
    budget = max_tokens * CHARS_PER_TOKEN - len(header)
    out = list(sections)

    def total() -> int:
        live = [s for s in out if s]
        return sum(len(s) for s in live) + len(SECTION_SEPARATOR) * max(0, len(live) - 1)

    for i in range(len(out) - 1, -1, -1):
        current = total()
        if current <= budget:
            break
        allowed = budget - (current - len(out[i]))
        out[i] = trim_to_char_budget(out[i], allowed, section_priority(i))

    return [s for s in out if s]


def format_local_time(iso_timestamp: str) -> str:
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except ValueError:
        return iso_timestamp
    local = dt.astimezone()
    hour = local.hour % 12 or 12
    ampm = "AM" if local.hour < 12 else "PM"
    return f"{local.month}/{local.day}/{local.year}, {hour}:{local.minute:02d}:{local.second:02d} {ampm}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class CompactionResult:
    context: List[str] = field(default_factory=list)
    prompt: Optional[str] = None


class CompactionAssembler:
    def __init__(
        self,
        project_id: str,
        memory_service: MemoryService,
        session_state: SessionStateService,
        config: Optional[CompactionConfig] = None,
    ):
        self.project_id = project_id
        self.memory_service = memory_service
        self.session_state = session_state
        self.config = config or CompactionConfig()

    async def assemble(self, session_id: str, branch: Optional[str] = None) -> CompactionResult:
        result = CompactionResult()
        sections: List[str] = []

        planning: Optional[PlanningState] = None
        if self.config.inline_planning:
            planning = await self.session_state.get_planning_state(session_id)
            text = format_planning_state(planning)
            if text:
                sections.append(f"## Planning State\n{text}")

        if self.config.snapshot_to_kv:
            prior = await self.session_state.get_compaction_snapshot(session_id)
            if prior is not None:
                parts = [f"Last compaction: {format_local_time(prior.timestamp)}"]
                if prior.branch:
                    parts.append(f"branch: {prior.branch}")
                prior_text = format_planning_state(prior.planning_state)
                if prior_text:
                    parts.append(f"\n### Prior Planning State:\n{prior_text}")
                sections.append("## Prior Session Context\n" + "\n".join(parts))

        conventions = await self.memory_service.list_by_project(
            self.project_id, scope="convention", limit=MEMORIES_PER_SCOPE
        )
        decisions = await self.memory_service.list_by_project(
            self.project_id, scope="decision", limit=MEMORIES_PER_SCOPE
        )
        logger.info(
            "Compacting: fetched %d memories (conv=%d, dec=%d)",
            len(conventions) + len(decisions), len(conventions), len(decisions),
        )
        if conventions:
            sections.append("### Conventions\n" + "\n".join(f"- {m.content}" for m in conventions))
        if decisions:
            sections.append("### Decisions\n" + "\n".join(f"- {m.content}" for m in decisions))

        trimmed = fit_sections(sections, self.config.max_context_tokens)
        if not trimmed:
            return result

        body = SECTION_SEPARATOR.join(trimmed)
        result.context.append(CONTEXT_HEADER + body)

        if self.config.custom_prompt:
            result.prompt = build_custom_compaction_prompt()

        if self.config.snapshot_to_kv:
            snapshot = PreCompactionSnapshot(
                timestamp=utc_now_iso(), session_id=session_id, planning_state=planning, branch=branch
            )
            try:
                await self.session_state.set_compaction_snapshot(session_id, self.project_id, snapshot)
            except Exception:
                logger.exception("Failed to store pre-compaction snapshot")

        diagnostics = format_compaction_diagnostics(
            planning_phases=len(planning.phases) if planning else 0,
            conventions=len(conventions),
            decisions=len(decisions),
            tokens_injected=estimate_tokens(body),
        )
        if diagnostics:
            result.context.append(diagnostics)

        logger.info("Compacting: injected %d context sections", len(trimmed))
        return result
