"""Singleton embedding server lifecycle.

Many short-lived host processes share one background process that holds the
loaded model. The on-disk witnesses (PID file + socket) plus a live health
probe decide whether a server is running; a lock directory decides who gets
to start one.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shutil
import signal
import subprocess
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from ..ipc import IPCError, pid_alive, read_pid, remove_file, send_request

logger = logging.getLogger("memory_engine.embedding.shared")

HEALTH_TIMEOUT = 3.0
LOCK_STALE_AFTER = 30.0
DEFAULT_GRACE_PERIOD_MS = 30000

WAITER_POLLS = 10
WAITER_POLL_INTERVAL = 0.5
STARTUP_POLLS = 30
STARTUP_POLL_INTERVAL = 0.5
KILL_POLLS = 20
KILL_POLL_INTERVAL = 0.25


@dataclass(frozen=True)
class ServerPaths:
    data_dir: str
    name: str = "embedding"

    @property
    def socket(self) -> str:
        return str(Path(self.data_dir) / f"{self.name}.sock")

    @property
    def pid(self) -> str:
        return str(Path(self.data_dir) / f"{self.name}.pid")

    @property
    def lock(self) -> str:
        return str(Path(self.data_dir) / f"{self.name}.startup.lock")


class StartupLock:
    """Advisory mutex backed by an atomically created directory.

    A lock whose directory is older than ``stale_after`` seconds is treated
    as abandoned by a crashed starter and reclaimed.
    """

    def __init__(self, path: str, stale_after: float = LOCK_STALE_AFTER):
        self.path = path
        self.stale_after = stale_after
        self.owned = False

    def age(self) -> Optional[float]:
        try:
            return time.time() - os.stat(self.path).st_mtime
        except FileNotFoundError:
            return None

    def is_held(self) -> bool:
        age = self.age()
        return age is not None and age <= self.stale_after

    def is_stale(self) -> bool:
        age = self.age()
        return age is not None and age > self.stale_after

    def try_acquire(self) -> bool:
        try:
            if self.is_stale():
                logger.info("Reclaiming stale startup lock %s", self.path)
                shutil.rmtree(self.path, ignore_errors=True)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            os.mkdir(self.path)
        except FileExistsError:
            return False
        except OSError as e:
            logger.warning("Could not create startup lock %s: %s", self.path, e)
            return False
        self.owned = True
        return True

    def release(self) -> None:
        if not self.owned:
            return
        self.owned = False
        shutil.rmtree(self.path, ignore_errors=True)

    @asynccontextmanager
    async def held(self):
        """Yield whether the lock was acquired; release on exit if it was."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


class ServerState(str, enum.Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STALE = "stale"


@dataclass(frozen=True)
class ServerIdentity:
    model: Optional[str]
    dimensions: int

    def matches(self, model: str, dimensions: int) -> bool:
        if self.dimensions != dimensions:
            return False
        # Older servers don't report a model; dimensions alone decide then.
        return self.model is None or self.model == model


@dataclass
class ServerHealth:
    status: str
    clients: int = 0
    uptime_ms: int = 0
    identity: ServerIdentity = field(default_factory=lambda: ServerIdentity(None, 0))

    @classmethod
    def from_response(cls, data: dict) -> "ServerHealth":
        model = data.get("model")
        return cls(
            status=str(data.get("status")),
            clients=int(data.get("clients") or 0),
            uptime_ms=int(data.get("uptime") or 0),
            identity=ServerIdentity(
                model=str(model) if model is not None else None,
                dimensions=int(data.get("dimensions") or 0),
            ),
        )


@dataclass
class ServerStatus:
    state: ServerState
    health: Optional[ServerHealth] = None
    pid: Optional[int] = None

    @property
    def identity(self) -> Optional[ServerIdentity]:
        return self.health.identity if self.health else None


async def check_server_health(socket_path: str, timeout: float = HEALTH_TIMEOUT) -> Optional[ServerHealth]:
    """Health probe; ``None`` means unusable for any reason."""
    if not os.path.exists(socket_path):
        return None
    try:
        data = await send_request(socket_path, {"action": "health"}, timeout=timeout)
    except IPCError:
        return None
    if data.get("status") != "ok":
        return None
    try:
        return ServerHealth.from_response(data)
    except (TypeError, ValueError):
        return None


async def probe_server(paths: ServerPaths) -> ServerStatus:
    """Derive the server state from witnesses, PID liveness, lock and health."""
    pid = read_pid(paths.pid)
    has_pid = os.path.exists(paths.pid)
    has_socket = os.path.exists(paths.socket)

    if has_pid and has_socket and pid_alive(pid):
        health = await check_server_health(paths.socket)
        if health is not None:
            return ServerStatus(ServerState.RUNNING, health, pid)

    if StartupLock(paths.lock).is_held():
        return ServerStatus(ServerState.STARTING, pid=pid)
    if has_pid or has_socket:
        return ServerStatus(ServerState.STALE, pid=pid)
    return ServerStatus(ServerState.ABSENT)


async def is_server_running(data_dir: str) -> bool:
    return (await probe_server(ServerPaths(data_dir))).state is ServerState.RUNNING


def cleanup_stale_files(paths: ServerPaths) -> None:
    """Remove the PID file if its process is gone, and the socket file."""
    if os.path.exists(paths.pid) and not pid_alive(read_pid(paths.pid)):
        remove_file(paths.pid)
    remove_file(paths.socket)


async def kill_embedding_server(paths: ServerPaths) -> bool:
    pid = read_pid(paths.pid)
    if pid is None:
        return False

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        pass

    for _ in range(KILL_POLLS):
        await asyncio.sleep(KILL_POLL_INTERVAL)
        if not pid_alive(pid):
            break
    else:
        logger.warning("Embedding server %s did not exit after SIGTERM", pid)

    remove_file(paths.pid)
    remove_file(paths.socket)
    return True


@dataclass
class SharedEmbeddingConfig:
    data_dir: str
    model: str
    dimensions: int
    grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS
    # Replaces ``python -m memory_engine.embedding.server``; the lifecycle
    # flags are appended to it.
    server_command: Optional[Sequence[str]] = None
    log_file: Optional[str] = None

    @property
    def paths(self) -> ServerPaths:
        return ServerPaths(self.data_dir)


def build_server_command(config: SharedEmbeddingConfig) -> List[str]:
    paths = config.paths
    base = list(config.server_command or [sys.executable, "-m", "memory_engine.embedding.server"])
    args = [
        "--socket", paths.socket,
        "--pid", paths.pid,
        "--model", config.model,
        "--dimensions", str(config.dimensions),
        "--grace-period", str(config.grace_period_ms),
    ]
    if config.log_file:
        args += ["--log-file", config.log_file]
    return base + args


def spawn_server(config: SharedEmbeddingConfig) -> int:
    """Start the server detached from us; we never wait on it."""
    proc = subprocess.Popen(
        build_server_command(config),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )
    logger.info("Spawned embedding server pid=%s", proc.pid)
    return proc.pid


async def _matching_health(paths: ServerPaths, model: str, dimensions: int) -> Optional[ServerHealth]:
    health = await check_server_health(paths.socket)
    if health is not None and health.identity.matches(model, dimensions):
        return health
    return None


async def _wait_for_server(paths: ServerPaths, model: str, dimensions: int, polls: int, interval: float) -> bool:
    for _ in range(polls):
        await asyncio.sleep(interval)
        if await _matching_health(paths, model, dimensions) is not None:
            return True
    return False


async def _reuse_or_kill(paths: ServerPaths, model: str, dimensions: int) -> bool:
    """True if a running server matches; a mismatched one is terminated."""
    status = await probe_server(paths)
    if status.state is not ServerState.RUNNING or status.identity is None:
        return False
    if status.identity.matches(model, dimensions):
        return True
    logger.info(
        "Embedding server identity %s/%sd does not match %s/%sd, restarting",
        status.identity.model, status.identity.dimensions, model, dimensions,
    )
    await kill_embedding_server(paths)
    return False


async def acquire_embedding_server(config: SharedEmbeddingConfig) -> bool:
    """Make sure a server with the configured identity is serving.

    Returns False when none could be reached; the caller then loads the
    model in-process.
    """
    paths = config.paths

    if await _reuse_or_kill(paths, config.model, config.dimensions):
        return True

    lock = StartupLock(paths.lock)
    if not lock.try_acquire():
        # Someone else is starting it.
        return await _wait_for_server(
            paths, config.model, config.dimensions, WAITER_POLLS, WAITER_POLL_INTERVAL
        )

    try:
        if await _reuse_or_kill(paths, config.model, config.dimensions):
            return True
        cleanup_stale_files(paths)
        spawn_server(config)
        if await _wait_for_server(
            paths, config.model, config.dimensions, STARTUP_POLLS, STARTUP_POLL_INTERVAL
        ):
            return True
        logger.warning("Embedding server did not become healthy in time")
        return False
    except OSError as e:
        logger.error("Failed to start embedding server: %s", e)
        return False
    finally:
        lock.release()
