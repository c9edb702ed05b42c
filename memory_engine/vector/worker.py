"""Vector index worker process.

Hosts a :class:`DirectVecService` in an interpreter that can load sqlite-vec
and answers the same operations over a Unix socket::

    python -m memory_engine.vector.worker --db memory.db --socket S --pid P --dimensions 384
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..db import DB
from ..ipc import remove_file, start_server, write_pid
from ..logger import configure_process_logging
from .direct import DirectVecService

logger = logging.getLogger("memory_engine.vector.worker")


class VecWorker:
    def __init__(self, db_path: str, socket_path: str, pid_path: str, dimensions: int):
        self.socket_path = socket_path
        self.pid_path = pid_path
        self.dimensions = dimensions
        self.vec = DirectVecService(DB(db_path))
        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        if not await self.vec.probe():
            raise RuntimeError("sqlite-vec could not be loaded in the worker")
        await self.vec.initialize(self.dimensions)
        write_pid(self.pid_path)
        self._server = await start_server(self.socket_path, self.handle_request)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.shutdown)
            except (NotImplementedError, RuntimeError):
                pass
        logger.info("Vec worker listening on %s (pid=%s)", self.socket_path, os.getpid())

    async def serve_forever(self) -> None:
        await self.start()
        await self._stopped.wait()

    async def handle_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        action = request.get("action")
        vec = self.vec

        if action == "health":
            return {"status": "ok"}
        if action == "init":
            await vec.initialize(int(request.get("dimensions") or self.dimensions))
            return {"ok": True}
        if action == "insert":
            await vec.insert(_vector(request), int(request["memoryId"]), str(request["projectId"]))
            return {"ok": True}
        if action == "delete":
            await vec.delete(int(request["memoryId"]))
            return {"ok": True}
        if action == "deleteByProject":
            await vec.delete_by_project(str(request["projectId"]))
            return {"ok": True}
        if action == "deleteByMemoryIds":
            await vec.delete_by_memory_ids([int(x) for x in request.get("memoryIds") or []])
            return {"ok": True}
        if action == "search":
            results = await vec.search(
                _vector(request),
                request.get("projectId"),
                request.get("scope"),
                int(request.get("limit") or 10),
            )
            return {"results": [r.to_dict() for r in results]}
        if action == "findSimilar":
            results = await vec.find_similar(
                _vector(request),
                str(request["projectId"]),
                float(request["threshold"]),
                int(request.get("limit") or 1),
            )
            return {"results": [r.to_dict() for r in results]}
        if action == "count":
            return {"count": await vec.count()}
        return {"error": f"Unknown action: {action}"}

    def shutdown(self) -> None:
        if self._stopped.is_set():
            return
        if self._server is not None:
            self._server.close()
            self._server = None
        remove_file(self.socket_path)
        remove_file(self.pid_path)
        self._stopped.set()


def _vector(request: Dict[str, Any]) -> List[float]:
    embedding = request.get("embedding")
    if not isinstance(embedding, list):
        raise ValueError("Missing or invalid embedding")
    return [float(x) for x in embedding]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="memory-vec-worker")
    p.add_argument("--db", required=True)
    p.add_argument("--socket", required=True)
    p.add_argument("--pid", required=True)
    p.add_argument("--dimensions", type=int, required=True)
    p.add_argument("--log-file", default="")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    log_file = args.log_file or str(Path(args.socket).parent / "logs" / "vec-worker.log")
    configure_process_logging(log_file)
    worker = VecWorker(args.db, args.socket, args.pid, args.dimensions)
    try:
        asyncio.run(worker.serve_forever())
    except Exception:
        logger.exception("Vec worker failed")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
