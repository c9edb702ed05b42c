from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..ipc import IPCError, send_request
from .base import EmbeddingProvider, zero_vector
from .local import LocalEmbeddingProvider
from .shared import (
    DEFAULT_GRACE_PERIOD_MS,
    ServerPaths,
    SharedEmbeddingConfig,
    acquire_embedding_server,
    check_server_health,
)

logger = logging.getLogger("memory_engine.embedding.client")

EMBED_TIMEOUT = 30.0


class ProviderMode(str, enum.Enum):
    IDLE = "idle"
    SERVER = "server"
    LOCAL = "local"


class SharedEmbeddingClient(EmbeddingProvider):
    """Embeds through the shared server, degrading to an in-process model.

    Once the client has fallen back to ``LOCAL`` it stays there for the rest
    of its lifetime; the server is not retried.
    """

    def __init__(
        self,
        data_dir: str,
        model: str,
        dimensions: int,
        grace_period_ms: Optional[int] = None,
        server_command: Optional[Sequence[str]] = None,
        local_factory: Optional[Callable[[str], EmbeddingProvider]] = None,
    ):
        self.data_dir = data_dir
        self.model = model
        self.dimensions = dimensions
        self.grace_period_ms = grace_period_ms if grace_period_ms is not None else DEFAULT_GRACE_PERIOD_MS
        self.server_command = server_command
        self.paths = ServerPaths(data_dir)
        self._local_factory = local_factory or (lambda m: LocalEmbeddingProvider(m))
        self._local: Optional[EmbeddingProvider] = None
        self._mode = ProviderMode.IDLE
        self._connect_lock = asyncio.Lock()
        self._warmup_task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return f"shared:local:{self.dimensions}d"

    @property
    def mode(self) -> ProviderMode:
        return self._mode

    @property
    def ready(self) -> bool:
        return self._mode is not ProviderMode.IDLE

    def _set_mode(self, mode: ProviderMode) -> None:
        if mode is not self._mode:
            logger.info("Embedding client mode %s -> %s", self._mode.value, mode.value)
        self._mode = mode

    def warmup(self) -> None:
        if self._mode is not ProviderMode.IDLE or self._warmup_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._warmup_task = loop.create_task(self.ensure_connected())
        self._warmup_task.add_done_callback(self._on_warmup_done)

    def _on_warmup_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            if not task.cancelled():
                logger.warning("Embedding warmup failed: %s", task.exception())
            self._warmup_task = None

    async def ensure_connected(self) -> ProviderMode:
        async with self._connect_lock:
            if self._mode is not ProviderMode.IDLE:
                return self._mode

            # Reuses a server only when its model and dimensions match ours.
            started = await acquire_embedding_server(
                SharedEmbeddingConfig(
                    data_dir=self.data_dir,
                    model=self.model,
                    dimensions=self.dimensions,
                    grace_period_ms=self.grace_period_ms,
                    server_command=self.server_command,
                )
            )
            if not started:
                await self._fall_back("server could not be started")
                return self._mode

            response = await self._send({"action": "connect"}, timeout=EMBED_TIMEOUT)
            if response is not None and response.get("status") == "connected":
                self._set_mode(ProviderMode.SERVER)
            else:
                await self._fall_back("connect was refused")
            return self._mode

    async def _fall_back(self, reason: str) -> None:
        logger.warning("Using in-process embedding model: %s", reason)
        local = self._local_factory(self.model)
        ensure_loaded = getattr(local, "ensure_loaded", None)
        if ensure_loaded is not None:
            try:
                await ensure_loaded()
            except Exception as e:
                logger.error("Local model failed to load: %s", e)
        self._local = local
        self._set_mode(ProviderMode.LOCAL)

    async def _send(self, request: Dict[str, Any], timeout: float) -> Optional[Dict[str, Any]]:
        try:
            return await send_request(self.paths.socket, request, timeout=timeout)
        except IPCError as e:
            logger.warning("Embedding server request %s failed: %s", request.get("action"), e)
            return None

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if self._local is None:
            await self.ensure_connected()
        if self._local is not None:
            return await self._local.embed(texts)

        response = await self._send({"action": "embed", "texts": list(texts)}, timeout=EMBED_TIMEOUT)
        embeddings = response.get("embeddings") if response and not response.get("error") else None
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            await self._fall_back("embed request failed")
            if self._local is not None:
                return await self._local.embed(texts)
            return [zero_vector(self.dimensions) for _ in texts]
        return [[float(x) for x in vec] for vec in embeddings]

    async def test(self) -> bool:
        if self._local is not None:
            return await self._local.test()
        try:
            health = await check_server_health(self.paths.socket)
            if health is not None and health.identity.matches(self.model, self.dimensions):
                return True
            await self.ensure_connected()
            if self._local is not None:
                return await self._local.test()
            return False
        except Exception as e:
            logger.warning("Embedding self-test failed: %s", e)
            return False

    async def dispose(self) -> None:
        if self._warmup_task is not None and not self._warmup_task.done():
            self._warmup_task.cancel()
        self._warmup_task = None
        if self._local is not None:
            await self._local.dispose()
            self._local = None
        elif self._mode is ProviderMode.SERVER:
            await self._send({"action": "disconnect"}, timeout=EMBED_TIMEOUT)
        self._set_mode(ProviderMode.IDLE)
