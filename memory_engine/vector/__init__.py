from __future__ import annotations

import logging
from typing import Optional

from ..config import settings
from ..db import DB
from .base import NoopVecService, VecSearchResult, VecService
from .client import WorkerVecService
from .direct import DirectVecService

logger = logging.getLogger("memory_engine.vector")


async def create_vec_service(
    db: DB, data_dir: str, dimensions: int, worker_python: Optional[str] = None
) -> VecService:
    """Pick the best backend: in-process, then worker process, then no-op."""
    direct = DirectVecService(db)
    if await direct.probe():
        await direct.initialize(dimensions)
        return direct

    python = worker_python or settings.vec_worker_python
    if not python:
        # The same interpreter would fail the same way.
        logger.warning("sqlite-vec unavailable and no worker interpreter configured")
        return NoopVecService()

    worker = WorkerVecService(db_path=db.path, data_dir=data_dir, dimensions=dimensions, python=python)
    if await worker.start():
        await worker.initialize(dimensions)
        logger.info("Using vec worker backend")
        return worker

    logger.warning("No vector backend available; search falls back to recency")
    return NoopVecService()


__all__ = [
    "DirectVecService",
    "NoopVecService",
    "VecSearchResult",
    "VecService",
    "WorkerVecService",
    "create_vec_service",
]
