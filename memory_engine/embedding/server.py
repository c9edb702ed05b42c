"""Background process hosting one loaded embedding model.

Started detached by :func:`memory_engine.embedding.shared.acquire_embedding_server`::

    python -m memory_engine.embedding.server --socket S --pid P \\
        --model all-MiniLM-L6-v2 --dimensions 384 --grace-period 30000
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config import DEFAULT_LOCAL_DIMENSIONS, DEFAULT_LOCAL_MODEL
from ..ipc import remove_file, start_server, write_pid
from ..logger import configure_process_logging
from .base import EmbeddingProvider
from .local import LocalEmbeddingProvider

logger = logging.getLogger("memory_engine.embedding.server")

ProviderFactory = Callable[[str, int], EmbeddingProvider]


class EmbeddingServer:
    def __init__(
        self,
        socket_path: str,
        pid_path: str,
        model: str,
        dimensions: int,
        grace_period: float,
        provider: EmbeddingProvider,
    ):
        self.socket_path = socket_path
        self.pid_path = pid_path
        self.model = model
        self.dimensions = dimensions
        # seconds
        self.grace_period = grace_period
        self.provider = provider
        self.clients = 0
        self.started_at = time.time()
        self._server: Optional[asyncio.AbstractServer] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        ensure_loaded = getattr(self.provider, "ensure_loaded", None)
        if ensure_loaded is not None:
            await ensure_loaded()
        write_pid(self.pid_path)
        self._server = await start_server(self.socket_path, self.handle_request)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.shutdown)
            except (NotImplementedError, RuntimeError):
                pass
        # Nobody may ever connect; don't linger forever in that case.
        self._arm_idle_timer()
        logger.info(
            "Embedding server listening on %s (model=%s, %sd, pid=%s)",
            self.socket_path, self.model, self.dimensions, os.getpid(),
        )

    async def serve_forever(self) -> None:
        await self.start()
        await self._stopped.wait()

    async def handle_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        action = request.get("action")
        if action == "embed":
            texts = request.get("texts")
            if not isinstance(texts, list):
                return {"error": "Missing or invalid texts array"}
            return await self._embed([str(t) for t in texts])
        if action == "health":
            return {
                "status": "ok",
                "clients": self.clients,
                "uptime": int((time.time() - self.started_at) * 1000),
                "dimensions": self.dimensions,
                "model": self.model,
            }
        if action == "connect":
            self.clients += 1
            self._cancel_idle_timer()
            return {"status": "connected", "clients": self.clients}
        if action == "disconnect":
            self.clients = max(0, self.clients - 1)
            if self.clients == 0:
                self._arm_idle_timer()
            return {"status": "disconnected", "clients": self.clients}
        return {"error": f"Unknown action: {action}"}

    async def _embed(self, texts: List[str]) -> Dict[str, Any]:
        try:
            return {"embeddings": await self.provider.embed(texts)}
        except Exception as e:
            logger.exception("Embedding failed")
            return {"error": "Embedding failed", "details": str(e)}

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.grace_period, self._on_idle)

    def _on_idle(self) -> None:
        self._idle_timer = None
        if self.clients == 0:
            logger.info("No clients for %.1fs, shutting down", self.grace_period)
            self.shutdown()

    def shutdown(self) -> None:
        if self._stopped.is_set():
            return
        self._cancel_idle_timer()
        if self._server is not None:
            self._server.close()
            self._server = None
        remove_file(self.socket_path)
        remove_file(self.pid_path)
        self._stopped.set()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="memory-embedding-server")
    p.add_argument("--socket", required=True)
    p.add_argument("--pid", required=True)
    p.add_argument("--model", default=DEFAULT_LOCAL_MODEL)
    p.add_argument("--dimensions", type=int, default=DEFAULT_LOCAL_DIMENSIONS)
    p.add_argument("--grace-period", type=int, default=30000, help="idle shutdown delay in ms")
    p.add_argument("--log-file", default="")
    return p


def _default_provider(model: str, dimensions: int) -> EmbeddingProvider:
    return LocalEmbeddingProvider(model)


async def run(args: argparse.Namespace, provider_factory: ProviderFactory = _default_provider) -> None:
    provider = provider_factory(args.model, args.dimensions)
    server = EmbeddingServer(
        socket_path=args.socket,
        pid_path=args.pid,
        model=args.model,
        dimensions=args.dimensions,
        grace_period=args.grace_period / 1000.0,
        provider=provider,
    )
    try:
        await server.serve_forever()
    finally:
        await provider.dispose()


def main(argv: Optional[List[str]] = None, provider_factory: ProviderFactory = _default_provider) -> int:
    args = build_parser().parse_args(argv)
    log_file = args.log_file or str(Path(args.socket).parent / "logs" / "embedding-server.log")
    configure_process_logging(log_file)
    try:
        asyncio.run(run(args, provider_factory))
    except Exception:
        logger.exception("Embedding server failed")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
