from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .compaction import CompactionAssembler, CompactionResult
from .config import CompactionConfig, PluginConfig, resolve_data_dir
from .db import DB
from .embedding import EmbeddingProvider, create_embedding_provider
from .embedding_sync import EmbeddingSyncService
from .health import HealthMonitor
from .hooks import (
    ACTIVATION_CONTEXT,
    LOGGED_EVENTS,
    SessionRegistry,
    apply_mode_params,
    build_extraction_prompt,
    message_text,
)
from .logger import configure_logging
from .memory import MemoryService
from .session_state import SessionStateService
from .vector import VecService, create_vec_service

logger = logging.getLogger("memory_engine.plugin")

PromptSender = Callable[[str, str], Awaitable[None]]
VecFactory = Callable[[DB, str, int], Awaitable[VecService]]


class MemoryPlugin:
    """Wires the memory services together for one host project.

    Vector-store startup runs in the background; ``ready()`` waits for it.
    The session registry lives and dies with the instance.
    """

    def __init__(
        self,
        project_id: str,
        directory: str,
        config: PluginConfig,
        data_dir: Optional[str] = None,
        provider: Optional[EmbeddingProvider] = None,
        vec_factory: Optional[VecFactory] = None,
        prompt_sender: Optional[PromptSender] = None,
    ):
        self.project_id = project_id
        self.directory = directory
        self.config = config
        self.data_dir = data_dir or config.data_dir or resolve_data_dir()
        self.provider = provider or create_embedding_provider(config.embedding, self.data_dir)
        self.vec_factory: VecFactory = vec_factory or create_vec_service
        self.prompt_sender = prompt_sender

        self.db = DB.for_data_dir(self.data_dir)
        self.memory = MemoryService(self.db, self.provider)
        self.session_state = SessionStateService(self.db)
        self.health = HealthMonitor(self.db, config, self.provider, self.data_dir)
        self.sessions = SessionRegistry()
        self.compaction = CompactionAssembler(
            project_id, self.memory, self.session_state, config.compaction or CompactionConfig()
        )
        self.embedding_sync = EmbeddingSyncService(self.memory)

        self._init_task: Optional[asyncio.Task] = None
        self._started = False
        self._disposed = False

    @property
    def dimensions(self) -> int:
        return self.config.embedding.dimensions or self.provider.dimensions

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        configure_logging(self.config.logging)
        logger.info("Initializing plugin for directory: %s, projectId: %s", self.directory, self.project_id)

        self.provider.warmup()
        await self.db.init()

        if self.config.dedup_threshold:
            self.memory.set_dedup_threshold(self.config.dedup_threshold)

        self.session_state.start_cleanup()
        await self.session_state.delete_expired()

        self._init_task = asyncio.get_running_loop().create_task(self._init_vectors())

    async def _init_vectors(self) -> None:
        try:
            vec = await self.vec_factory(self.db, self.data_dir, self.dimensions)
            self.memory.set_vec_service(vec)
            if not vec.available:
                logger.info("Vec service unavailable, skipping embedding sync")
                return
            logger.info("Vec service initialized (%s)", vec.name)
            await self.embedding_sync.start()
            await self.health.auto_validate(self.memory)
        except Exception:
            logger.exception("Vec service initialization failed")

    async def ready(self) -> None:
        if not self._started:
            await self.start()
        if self._init_task is not None:
            await asyncio.shield(self._init_task)

    # Host hooks.

    async def on_chat_message(self, session_id: Optional[str], parts: Optional[Iterable[Any]]) -> None:
        if not session_id:
            return
        state = self.sessions.get(session_id)
        if not state.initialized:
            state.initialized = True
            logger.info("Session initialized: %s (project %s)", session_id, self.project_id)
        self.sessions.observe(session_id, message_text(parts))

    def on_chat_params(self, session_id: Optional[str], params: Dict[str, Any]) -> Dict[str, Any]:
        if session_id:
            apply_mode_params(self.sessions.get_mode(session_id), params)
        return params

    def system_transform(self, session_id: Optional[str], system: List[str]) -> List[str]:
        if session_id and self.sessions.is_activated(session_id):
            system.append(ACTIVATION_CONTEXT)
        return system

    async def on_event(self, event: Dict[str, Any]) -> Optional[str]:
        """Handle a host event; returns the extraction prompt after a compaction."""
        event_type = event.get("type")
        if event_type == "server.instance.disposed":
            await self.dispose()
            return None
        properties = event.get("properties") or {}
        if event_type in LOGGED_EVENTS:
            logger.info("Event received: %s %s", event_type, properties)
        if event_type != "session.compacted":
            return None

        session_id = properties.get("sessionId") or properties.get("sessionID")
        if not session_id:
            logger.info("session.compacted event missing sessionId")
            return None

        prompt = build_extraction_prompt(session_id)
        if self.prompt_sender is not None:
            try:
                await self.prompt_sender(session_id, prompt)
            except Exception as e:
                logger.error("Failed to invoke memory extraction: %s", e)
        return prompt

    async def on_compacting(self, session_id: str, branch: Optional[str] = None) -> CompactionResult:
        logger.info("Compacting hook fired for project %s, session %s", self.project_id, session_id)
        try:
            return await self.compaction.assemble(session_id, branch)
        except Exception:
            logger.exception("Compacting hook failed")
            return CompactionResult()

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        logger.info("Cleaning up plugin resources...")
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
        await self.memory.destroy()
        self.session_state.destroy()
        self.sessions.clear()
        logger.info("Plugin cleanup complete")
