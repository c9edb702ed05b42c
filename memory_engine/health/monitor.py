from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import PluginConfig
from ..db import DB, fetch_one
from ..embedding import EmbeddingProvider
from ..embedding.shared import ServerHealth, ServerPaths, ServerState, probe_server
from ..memory import MemoryService
from ..metadata import MetadataStore
from ..types import ModelIdentity

logger = logging.getLogger("memory_engine.health")

REINDEX_NOT_OPERATIONAL = (
    "Reindex failed: embedding provider is not operational. Check your API key and model configuration."
)


@dataclass
class HealthStatus:
    db_status: str
    memory_count: int
    operational: bool
    server_running: bool
    server_health: Optional[ServerHealth]
    configured_model: ModelIdentity
    current_model: Optional[ModelIdentity]
    needs_reindex: bool
    overall_status: str


class HealthMonitor:
    """Health report, drift detection and reindexing."""

    def __init__(self, db: DB, config: PluginConfig, provider: EmbeddingProvider, data_dir: str):
        self.db = db
        self.config = config
        self.provider = provider
        self.data_dir = data_dir
        self.metadata = MetadataStore(db)

    @property
    def configured_model(self) -> ModelIdentity:
        return ModelIdentity(
            model=self.config.embedding.model,
            dimensions=self.config.embedding.dimensions or self.provider.dimensions,
        )

    async def _operational(self) -> bool:
        try:
            return bool(await self.provider.test())
        except Exception as e:
            logger.warning("Embedding provider test raised: %s", e)
            return False

    async def snapshot(self) -> HealthStatus:
        db_status = "ok"
        memory_count = 0
        try:
            async with self.db.connect() as conn:
                row = await fetch_one(conn, "SELECT COUNT(*) FROM memories")
            memory_count = int(row[0]) if row else 0
        except Exception as e:
            logger.error("Health check database probe failed: %s", e)
            db_status = "error"

        operational = await self._operational()

        server_health: Optional[ServerHealth] = None
        try:
            status = await probe_server(ServerPaths(self.data_dir))
            server_running = status.state is ServerState.RUNNING
            server_health = status.health
        except OSError:
            server_running = False

        current: Optional[ModelIdentity] = None
        try:
            current = await self.metadata.get_embedding_model()
        except Exception as e:
            logger.warning("Could not read indexed model: %s", e)

        configured = self.configured_model
        needs_reindex = current is None or current != configured

        if db_status == "error":
            overall = "error"
        elif not operational:
            overall = "degraded"
        else:
            overall = "ok"

        return HealthStatus(
            db_status=db_status,
            memory_count=memory_count,
            operational=operational,
            server_running=server_running,
            server_health=server_health,
            configured_model=configured,
            current_model=current,
            needs_reindex=needs_reindex,
            overall_status=overall,
        )

    def format(self, status: HealthStatus) -> str:
        lines = [
            f"Memory Plugin Health: {status.overall_status.upper()}",
            "",
            f"Embedding: {'ok' if status.operational else 'error'}",
            f"  Provider: {self.provider.name} ({self.provider.dimensions}d)",
            f"  Operational: {str(status.operational).lower()}",
            f"  Server running: {str(status.server_running).lower()}",
        ]
        if status.server_health is not None:
            uptime = round(status.server_health.uptime_ms / 1000)
            lines.append(f"  Clients: {status.server_health.clients}, Uptime: {uptime}s")

        configured = status.configured_model
        lines += [
            "",
            f"Database: {status.db_status}",
            f"  Total memories: {status.memory_count}",
            "",
            f"Model: {'drift' if status.needs_reindex else 'ok'}",
            f"  Configured: {configured.model} ({configured.dimensions}d)",
        ]
        if status.current_model is not None:
            lines.append(f"  Indexed: {status.current_model.model} ({status.current_model.dimensions}d)")
        else:
            lines.append("  Indexed: none")
        if status.needs_reindex:
            lines.append('  Reindex required - run memory-health with action "reindex"')
        else:
            lines.append("  In sync")
        return "\n".join(lines)

    async def check(self) -> str:
        return self.format(await self.snapshot())

    async def _reindex_and_record(self, memory_service: MemoryService):
        result = await memory_service.reindex()
        if result.success > 0 or result.total == 0:
            configured = self.configured_model
            await self.metadata.set_embedding_model(configured.model, configured.dimensions)
        return result

    async def reindex(self, memory_service: MemoryService) -> str:
        if not await self._operational():
            return REINDEX_NOT_OPERATIONAL

        result = await self._reindex_and_record(memory_service)
        configured = self.configured_model
        lines = [
            "Reindex complete",
            "",
            f"Total memories: {result.total}",
            f"Embedded: {result.success}",
            f"Failed: {result.failed}",
            "",
            f"Model: {configured.model} ({configured.dimensions}d)",
        ]
        if result.failed > 0:
            lines.append(f"WARNING: {result.failed} memories failed to embed")
        return "\n".join(lines)

    async def auto_validate(self, memory_service: MemoryService) -> bool:
        """Reindex on model drift when healthy; True if a reindex ran."""
        status = await self.snapshot()
        if status.overall_status == "error":
            logger.info("Auto-validate: unhealthy (db error), skipping")
            return False
        if not status.needs_reindex:
            logger.info("Auto-validate: healthy, no action needed")
            return False
        if not status.operational:
            logger.info("Auto-validate: reindex needed but provider not operational, skipping")
            return False

        logger.info("Auto-validate: model drift detected, starting reindex")
        result = await self._reindex_and_record(memory_service)
        logger.info(
            "Auto-validate: reindex complete (total=%d, success=%d, failed=%d)",
            result.total, result.success, result.failed,
        )
        return True
