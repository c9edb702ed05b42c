from __future__ import annotations

import json
import logging
from typing import Optional

from .db import DB, fetch_one, now_ms
from .types import ModelIdentity

logger = logging.getLogger("memory_engine.metadata")

EMBEDDING_MODEL_KEY = "embedding_model"


class MetadataStore:
    """Key/value rows in ``plugin_metadata``."""

    def __init__(self, db: DB):
        self.db = db

    async def get(self, key: str) -> Optional[str]:
        async with self.db.connect() as conn:
            row = await fetch_one(conn, "SELECT value FROM plugin_metadata WHERE key = ?", (key,))
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        async with self.db.connect() as conn:
            await conn.execute(
                "INSERT INTO plugin_metadata (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value, now_ms()),
            )
            await conn.commit()

    async def get_embedding_model(self) -> Optional[ModelIdentity]:
        """The identity the current index was built with, if recorded."""
        raw = await self.get(EMBEDDING_MODEL_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return ModelIdentity(model=str(data["model"]), dimensions=int(data["dimensions"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed %s metadata: %r", EMBEDDING_MODEL_KEY, raw)
            return None

    async def set_embedding_model(self, model: str, dimensions: int) -> None:
        await self.set(EMBEDDING_MODEL_KEY, json.dumps({"model": model, "dimensions": int(dimensions)}))
