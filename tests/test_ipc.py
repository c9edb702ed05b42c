from __future__ import annotations

import asyncio

import pytest

from memory_engine.ipc import IPCError, pid_alive, read_pid, send_request, start_server, write_pid


def _run(coro):
    return asyncio.run(coro)


async def _echo(request):
    if request.get("action") == "boom":
        raise RuntimeError("handler broke")
    return {"echo": request}


def test_roundtrip_and_handler_errors(tmp_path) -> None:
    sock = str(tmp_path / "t.sock")

    async def main():
        server = await start_server(sock, _echo)
        try:
            ok = await send_request(sock, {"action": "ping", "n": 1}, timeout=2)
            failed = await send_request(sock, {"action": "boom"}, timeout=2)
        finally:
            server.close()
            await server.wait_closed()
        return ok, failed

    ok, failed = _run(main())
    assert ok == {"echo": {"action": "ping", "n": 1}}
    assert failed == {"error": "Internal server error", "message": "handler broke"}


def test_stale_socket_file_is_replaced(tmp_path) -> None:
    sock = tmp_path / "t.sock"
    sock.write_text("left over", encoding="utf-8")

    async def main():
        server = await start_server(str(sock), _echo)
        try:
            return await send_request(str(sock), {"x": 1}, timeout=2)
        finally:
            server.close()
            await server.wait_closed()

    assert _run(main()) == {"echo": {"x": 1}}


def test_missing_socket_raises(tmp_path) -> None:
    with pytest.raises(IPCError):
        _run(send_request(str(tmp_path / "absent.sock"), {"action": "health"}, timeout=1))


def test_pid_file_helpers(tmp_path) -> None:
    pid_path = str(tmp_path / "sub" / "x.pid")
    assert read_pid(pid_path) is None
    write_pid(pid_path)
    pid = read_pid(pid_path)
    assert pid is not None and pid_alive(pid)
    assert not pid_alive(None)
    assert not pid_alive(0)
    assert not pid_alive(999_999_999)
