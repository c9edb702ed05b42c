from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..ipc import IPCError, pid_alive, read_pid, remove_file, send_request
from .base import VecSearchResult, VecService

logger = logging.getLogger("memory_engine.vector.client")

REQUEST_TIMEOUT = 10.0
STARTUP_POLLS = 20
STARTUP_POLL_INTERVAL = 0.25


class WorkerVecService(VecService):
    """Proxies vector operations to a ``memory_engine.vector.worker`` process.

    Request failures degrade to empty results; the worker is never restarted
    mid-session.
    """

    name = "worker"

    def __init__(
        self,
        db_path: str,
        data_dir: str,
        dimensions: int,
        python: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
    ):
        self.db_path = db_path
        self.dimensions = dimensions
        self.socket_path = str(Path(data_dir) / "vec-worker.sock")
        self.pid_path = str(Path(data_dir) / "vec-worker.pid")
        self.python = python or sys.executable
        self.command = command
        self._available = False

    @property
    def available(self) -> bool:
        return self._available

    def _running(self) -> bool:
        if not (os.path.exists(self.pid_path) and os.path.exists(self.socket_path)):
            return False
        return pid_alive(read_pid(self.pid_path))

    def _cleanup_stale(self) -> None:
        if os.path.exists(self.pid_path) and not pid_alive(read_pid(self.pid_path)):
            remove_file(self.pid_path)
        remove_file(self.socket_path)

    def _build_command(self) -> List[str]:
        base = list(self.command or [self.python, "-m", "memory_engine.vector.worker"])
        return base + [
            "--db", self.db_path,
            "--socket", self.socket_path,
            "--pid", self.pid_path,
            "--dimensions", str(self.dimensions),
        ]

    async def start(self) -> bool:
        """Reuse a live worker or spawn one; True once it answers health."""
        if self._running():
            self._available = True
            return True

        self._cleanup_stale()
        try:
            subprocess.Popen(
                self._build_command(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            logger.warning("Could not spawn vec worker: %s", e)
            return False

        for _ in range(STARTUP_POLLS):
            await asyncio.sleep(STARTUP_POLL_INTERVAL)
            if not os.path.exists(self.socket_path):
                continue
            try:
                resp = await send_request(self.socket_path, {"action": "health"}, REQUEST_TIMEOUT)
            except IPCError:
                continue
            if resp.get("status") == "ok":
                self._available = True
                return True

        logger.warning("Vec worker did not start")
        return False

    async def _request(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self._available:
            return None
        try:
            resp = await send_request(self.socket_path, payload, REQUEST_TIMEOUT)
        except IPCError as e:
            logger.warning("Vec worker %s failed: %s", payload.get("action"), e)
            return None
        if resp.get("error"):
            logger.warning("Vec worker %s error: %s", payload.get("action"), resp.get("error"))
            return None
        return resp

    async def initialize(self, dimensions: int) -> None:
        self.dimensions = int(dimensions)
        await self._request({"action": "init", "dimensions": self.dimensions})

    async def insert(self, embedding: List[float], memory_id: int, project_id: str) -> None:
        await self._request(
            {"action": "insert", "embedding": list(embedding), "memoryId": memory_id, "projectId": project_id}
        )

    async def delete(self, memory_id: int) -> None:
        await self._request({"action": "delete", "memoryId": memory_id})

    async def delete_by_project(self, project_id: str) -> None:
        await self._request({"action": "deleteByProject", "projectId": project_id})

    async def delete_by_memory_ids(self, memory_ids: List[int]) -> None:
        if memory_ids:
            await self._request({"action": "deleteByMemoryIds", "memoryIds": list(memory_ids)})

    @staticmethod
    def _results(resp: Optional[Dict[str, Any]]) -> List[VecSearchResult]:
        if not resp or not isinstance(resp.get("results"), list):
            return []
        return [VecSearchResult.from_dict(r) for r in resp["results"]]

    async def search(
        self,
        embedding: List[float],
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: int = 10,
    ) -> List[VecSearchResult]:
        return self._results(
            await self._request(
                {
                    "action": "search",
                    "embedding": list(embedding),
                    "projectId": project_id,
                    "scope": scope,
                    "limit": limit,
                }
            )
        )

    async def find_similar(
        self, embedding: List[float], project_id: str, threshold: float, limit: int
    ) -> List[VecSearchResult]:
        return self._results(
            await self._request(
                {
                    "action": "findSimilar",
                    "embedding": list(embedding),
                    "projectId": project_id,
                    "threshold": threshold,
                    "limit": limit,
                }
            )
        )

    async def count(self) -> int:
        resp = await self._request({"action": "count"})
        return int(resp.get("count") or 0) if resp else 0

    async def dispose(self) -> None:
        self._available = False
        pid = read_pid(self.pid_path)
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            pass
