from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from pathlib import Path

import pytest

from agentdeck.adapters.hook_server import HookServer
from agentdeck.engine.errors import HookServerBindError


@pytest.fixture
def socket_dir():
    # Unix socket paths are length-limited, so stay out of deep tmp_path dirs.
    path = Path(tempfile.mkdtemp(prefix="deck-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


def _envelope(event: str, session_id: str = "s1", **data) -> bytes:
    return (json.dumps({
        "event": event,
        "sessionId": session_id,
        "cwd": "/work",
        "timestamp": "2025-01-01T00:00:00Z",
        "data": data,
    }) + "\n").encode()


async def _send(path: Path, *lines: bytes) -> None:
    _, writer = await asyncio.open_unix_connection(str(path))
    for line in lines:
        writer.write(line)
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def _collect(server: HookServer, count: int) -> list:
    return [await asyncio.wait_for(server.next_envelope(), timeout=2) for _ in range(count)]


@pytest.mark.asyncio
async def test_envelopes_arrive_in_order(socket_dir: Path) -> None:
    server = HookServer(socket_dir / "deck.sock")
    await server.start()
    try:
        await _send(
            server.socket_path,
            _envelope("sessionStart"),
            _envelope("preToolUse", toolName="bash"),
            _envelope("postToolUse", toolName="bash"),
        )
        received = await _collect(server, 3)
        assert [e.event for e in received] == ["sessionStart", "preToolUse", "postToolUse"]
        assert received[1].data == {"toolName": "bash"}
        assert received[0].cwd == "/work"
        assert received[0].timestamp is not None
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_malformed_lines_do_not_close_connection(socket_dir: Path) -> None:
    server = HookServer(socket_dir / "deck.sock")
    await server.start()
    try:
        await _send(
            server.socket_path,
            b"not json\n",
            b'{"sessionId": "s1"}\n',
            b"\n",
            _envelope("sessionEnd"),
        )
        (envelope,) = await _collect(server, 1)
        assert envelope.event == "sessionEnd"
        assert server.envelopes.empty()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_concurrent_connections(socket_dir: Path) -> None:
    server = HookServer(socket_dir / "deck.sock")
    await server.start()
    try:
        await asyncio.gather(*(
            _send(server.socket_path, _envelope("preToolUse", session_id=f"s{i}"))
            for i in range(10)
        ))
        received = await _collect(server, 10)
        assert sorted(e.session_id for e in received) == sorted(f"s{i}" for i in range(10))
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_full_queue_drops_envelopes(socket_dir: Path) -> None:
    server = HookServer(socket_dir / "deck.sock", queue_size=2)
    await server.start()
    try:
        await _send(server.socket_path, *(_envelope("preToolUse") for _ in range(5)))
        for _ in range(50):
            if server.dropped == 3:
                break
            await asyncio.sleep(0.02)
        assert server.envelopes.qsize() == 2
        assert server.dropped == 3
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_stale_socket_file_is_replaced(socket_dir: Path) -> None:
    path = socket_dir / "deck.sock"
    path.write_text("stale")
    server = HookServer(path)
    await server.start()
    try:
        assert server.listening
        await _send(path, _envelope("sessionStart"))
        assert len(await _collect(server, 1)) == 1
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_removes_socket(socket_dir: Path) -> None:
    server = HookServer(socket_dir / "deck.sock")
    await server.start()
    waiter = asyncio.create_task(server.next_envelope())
    await asyncio.sleep(0)

    await server.close()
    await server.close()

    assert not server.socket_path.exists()
    assert not server.listening
    assert await asyncio.wait_for(waiter, timeout=1) is None


@pytest.mark.asyncio
async def test_close_before_start_is_safe(socket_dir: Path) -> None:
    server = HookServer(socket_dir / "deck.sock")
    await server.close()
    assert await server.next_envelope() is None


@pytest.mark.asyncio
async def test_bind_failure_raises(socket_dir: Path) -> None:
    blocker = socket_dir / "file"
    blocker.write_text("")
    server = HookServer(blocker / "deck.sock")
    with pytest.raises(HookServerBindError):
        await server.start()
    await server.close()
