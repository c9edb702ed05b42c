"""Newline-delimited JSON over Unix domain sockets.

Shared by the embedding server and the vector worker: one request line in,
one response line out, ``{"error": ...}`` on failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("memory_engine.ipc")

MAX_LINE_SIZE = 64 * 1024 * 1024

Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class IPCError(Exception):
    pass


async def send_request(socket_path: str, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    """Open a connection, send one request, return the first response line.

    Raises ``IPCError`` on connection failure, timeout, or a malformed reply.
    """

    async def _roundtrip() -> Dict[str, Any]:
        reader, writer = await asyncio.open_unix_connection(socket_path, limit=MAX_LINE_SIZE)
        try:
            writer.write((json.dumps(request) + "\n").encode("utf-8"))
            await writer.drain()
            while True:
                line = await reader.readline()
                if not line:
                    raise IPCError("connection closed before a response was received")
                if not line.strip():
                    continue
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise IPCError(f"unexpected response: {data!r}")
                return data
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    try:
        return await asyncio.wait_for(_roundtrip(), timeout=timeout)
    except IPCError:
        raise
    except asyncio.TimeoutError as e:
        raise IPCError(f"timed out after {timeout}s") from e
    except (OSError, ValueError) as e:
        raise IPCError(str(e)) from e


def make_connection_handler(handler: Handler):
    """Wrap a request handler into an ``asyncio.start_unix_server`` callback.

    Requests on one connection are answered in order.
    """

    async def _serve(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except (ConnectionError, asyncio.LimitOverrunError, ValueError) as e:
                    logger.warning("Socket read failed: %s", e)
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    request = json.loads(line)
                    if not isinstance(request, dict):
                        raise ValueError("request must be a JSON object")
                    response = await handler(request)
                except Exception as e:
                    logger.exception("Request failed")
                    response = {"error": "Internal server error", "message": str(e)}
                writer.write((json.dumps(response) + "\n").encode("utf-8"))
                try:
                    await writer.drain()
                except ConnectionError:
                    break
        finally:
            writer.close()

    return _serve


async def start_server(socket_path: str, handler: Handler) -> asyncio.AbstractServer:
    """Bind a Unix socket, replacing any stale socket file left behind."""
    os.makedirs(os.path.dirname(socket_path) or ".", exist_ok=True)
    if os.path.exists(socket_path):
        os.unlink(socket_path)
    return await asyncio.start_unix_server(
        make_connection_handler(handler), path=socket_path, limit=MAX_LINE_SIZE
    )


def remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


def read_pid(pid_path: str) -> Optional[int]:
    try:
        with open(pid_path, "r", encoding="utf-8") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def write_pid(pid_path: str) -> None:
    os.makedirs(os.path.dirname(pid_path) or ".", exist_ok=True)
    with open(pid_path, "w", encoding="utf-8") as f:
        f.write(str(os.getpid()))


def pid_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        # Reap it if it is an exited child of ours; a zombie still answers kill 0.
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True
