"""Unix-socket server receiving envelopes from companion hook processes.

Each connection may carry any number of newline-delimited JSON envelopes::

    {"event": "preToolUse", "sessionId": "...", "cwd": "...",
     "timestamp": "2025-01-01T00:00:00Z", "data": {...}}

Parsed envelopes go onto a bounded queue; when it is full new envelopes
are dropped so a slow consumer never stalls a hook process.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

from agentdeck.adapters.event_bus import get_until_closed
from agentdeck.adapters.events import HookEnvelope
from agentdeck.engine.errors import HookServerBindError

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 1024 * 1024


class HookServer:
    def __init__(self, socket_path: Path | str, queue_size: int = 64) -> None:
        self.socket_path = Path(socket_path)
        self.envelopes: asyncio.Queue[HookEnvelope] = asyncio.Queue(maxsize=queue_size)
        self.closed = asyncio.Event()
        self.dropped = 0
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def listening(self) -> bool:
        return self._server is not None and not self.closed.is_set()

    async def start(self) -> None:
        """Bind the socket, replacing any stale socket file."""
        if self._server is not None or self.closed.is_set():
            return
        try:
            self.socket_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            if self.socket_path.exists() or self.socket_path.is_symlink():
                self.socket_path.unlink()
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=str(self.socket_path),
                limit=MAX_LINE_BYTES,
            )
            self.socket_path.chmod(0o600)
        except OSError as exc:
            raise HookServerBindError(str(self.socket_path), str(exc)) from exc
        logger.info("Hook server listening on %s", self.socket_path)

    async def serve(self) -> None:
        """Start if needed and block until close() is called."""
        await self.start()
        await self.closed.wait()

    async def next_envelope(self) -> HookEnvelope | None:
        """Return the next envelope, or None once closed."""
        return await get_until_closed(self.envelopes, self.closed)

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._writers.add(writer)
        try:
            while not self.closed.is_set():
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.debug("Hook line exceeds %d bytes, skipped", MAX_LINE_BYTES)
                    continue
                except ConnectionError:
                    break
                if not line:
                    break
                envelope = self._parse(line)
                if envelope is not None:
                    self._enqueue(envelope)
        finally:
            self._writers.discard(writer)
            writer.close()

    @staticmethod
    def _parse(line: bytes) -> HookEnvelope | None:
        stripped = line.strip()
        if not stripped:
            return None
        try:
            return HookEnvelope.from_dict(json.loads(stripped))
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
            logger.debug("Skipping malformed hook envelope: %s", exc)
            return None

    def _enqueue(self, envelope: HookEnvelope) -> None:
        try:
            self.envelopes.put_nowait(envelope)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(
                "Hook queue full, dropping %s for %s", envelope.event, envelope.session_id
            )

    async def close(self) -> None:
        """Stop accepting, drop open connections and remove the socket file."""
        if self.closed.is_set():
            return
        self.closed.set()
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for writer in list(self._writers):
            writer.close()
        await server.wait_closed()
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        logger.info("Hook server stopped")
