from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("memory_engine.hooks")

KEYWORD_PATTERNS = [
    re.compile(r"remember\s+(this|that)", re.IGNORECASE),
    re.compile(r"recall", re.IGNORECASE),
    re.compile(r"what\s+do\s+you\s+know\s+about", re.IGNORECASE),
    re.compile(r"project\s+memory", re.IGNORECASE),
    re.compile(r"do\s+you\s+remember", re.IGNORECASE),
    re.compile(r"stored\s+memory", re.IGNORECASE),
    re.compile(r"from\s+memory", re.IGNORECASE),
]

MODE_PATTERNS: Dict[str, List[re.Pattern[str]]] = {
    "creative": [
        re.compile(r"brainstorm", re.IGNORECASE),
        re.compile(r"be\s+creative", re.IGNORECASE),
        re.compile(r"explore\s+options", re.IGNORECASE),
        re.compile(r"generate\s+ideas", re.IGNORECASE),
    ],
    "deepThink": [
        re.compile(r"think\s+hard", re.IGNORECASE),
        re.compile(r"think\s+deeply", re.IGNORECASE),
        re.compile(r"analyze\s+carefully", re.IGNORECASE),
        re.compile(r"think\s+through", re.IGNORECASE),
    ],
    "thorough": [
        re.compile(r"go\s+deep", re.IGNORECASE),
        re.compile(r"be\s+thorough", re.IGNORECASE),
        re.compile(r"take\s+your\s+time", re.IGNORECASE),
    ],
}

ACTIVATION_CONTEXT = """## Project Memory Available

This project has a memory system that stores architectural decisions, conventions, and patterns. You have access to:
- memory-read: Search and retrieve project memories
- memory-write: Store new project memories as suggestions
- memory-delete: Delete a memory by ID

Memory scopes: convention, decision, context

When relevant, use these tools to provide context from the project's knowledge base."""

# Events worth a log line; everything else is ignored silently.
LOGGED_EVENTS = {"session.compacted", "session.status", "session.updated", "session.created"}


def build_extraction_prompt(session_id: str) -> str:
    return f"""[COMPACTION COMPLETE]

The compaction summary above is now in your context window.

Review the compaction summary and extract any project knowledge worth preserving across sessions. For each item found, use memory-write to store it with the appropriate scope:

- convention: coding style rules, naming patterns, workflow preferences
- decision: architectural choices with their rationale
- context: project structure, key file locations, domain knowledge, known issues

Also extract any planning state (phases, objectives, progress, blockers) from the compaction summary. If found, use memory-planning-update with sessionID "{session_id}" to store it. This creates continuity across compactions.

Be selective: only store knowledge that will be useful in future sessions. Skip ephemeral task details and session-specific notes.

Check for duplicates before writing (use memory-read to search). If a similar memory already exists, skip it."""


def has_keyword(text: str) -> bool:
    return any(p.search(text) for p in KEYWORD_PATTERNS)


def detect_mode(text: str) -> Optional[str]:
    for mode, patterns in MODE_PATTERNS.items():
        if any(p.search(text) for p in patterns):
            return mode
    return None


def message_text(parts: Optional[Iterable[Any]]) -> str:
    """Join the non-empty text parts of a chat message."""
    texts = []
    for part in parts or []:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            texts.append(text)
    return " ".join(texts)


@dataclass
class SessionActivation:
    activated: bool = False
    mode: Optional[str] = None
    initialized: bool = False


class SessionRegistry:
    """Per-session activation and mode flags, owned by one plugin instance."""

    def __init__(self):
        self._sessions: Dict[str, SessionActivation] = {}

    def get(self, session_id: str) -> SessionActivation:
        state = self._sessions.get(session_id)
        if state is None:
            state = self._sessions[session_id] = SessionActivation()
        return state

    def is_activated(self, session_id: str) -> bool:
        state = self._sessions.get(session_id)
        return bool(state and state.activated)

    def get_mode(self, session_id: str) -> Optional[str]:
        state = self._sessions.get(session_id)
        return state.mode if state else None

    def observe(self, session_id: str, text: str) -> SessionActivation:
        """Latch the activation flag and the first detected mode."""
        state = self.get(session_id)
        if state.activated and state.mode:
            return state
        if not text:
            return state
        if not state.activated and has_keyword(text):
            logger.info("Keyword match detected in session %s, setting activation flag", session_id)
            state.activated = True
        if state.mode is None:
            mode = detect_mode(text)
            if mode:
                logger.info("Mode pattern detected in session %s: %s", session_id, mode)
                state.mode = mode
        return state

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


def apply_mode_params(mode: Optional[str], params: Dict[str, Any]) -> Dict[str, Any]:
    """Adjust chat parameters in place for the session's mode."""
    if mode == "creative":
        params["temperature"] = 0.8
    elif mode == "deepThink":
        params.setdefault("options", {})["thinking"] = {"budgetTokens": 32000}
    elif mode == "thorough":
        params.setdefault("options", {})["maxSteps"] = 50
    return params
