"""Run the agent CLI interactively inside a pseudo-terminal.

A ``PtySession`` owns the PTY master descriptor, a read loop that feeds
every 4 KB read through a ``PromptParser``, a bounded output queue of
cleaned chunks and a ``done`` event set when the child exits.
"""
from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import struct
import termios
from typing import Sequence

from agentdeck.adapters.event_bus import get_until_closed
from agentdeck.adapters.prompt_parser import OutputChunk, PromptParser
from agentdeck.engine.errors import PtyClosedError, PtySpawnError

logger = logging.getLogger(__name__)

READ_SIZE = 4096
OUTPUT_QUEUE_SIZE = 64
DEFAULT_ROWS = 40
DEFAULT_COLS = 120


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def agent_command(
    agent_cli: str,
    session_id: str,
    message: str = "",
    extra_args: Sequence[str] = (),
) -> list[str]:
    """Build the argv that resumes *session_id* interactively."""
    argv = [agent_cli]
    if message:
        argv += ["-i", message]
    argv += ["--resume", session_id]
    argv += list(extra_args)
    return argv


class PtySession:
    """One interactive subprocess attached to a pseudo-terminal."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        session_id: str = "",
    ) -> None:
        self.session_id = session_id
        self.output: asyncio.Queue[OutputChunk] = asyncio.Queue(maxsize=OUTPUT_QUEUE_SIZE)
        self.done = asyncio.Event()
        self.exit_code: int | None = None
        self._process = process
        self._master_fd = master_fd
        self._parser = PromptParser()
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    @classmethod
    async def spawn(
        cls,
        agent_cli: str,
        session_id: str,
        message: str = "",
        cwd: str = "",
        extra_args: Sequence[str] = (),
    ) -> PtySession:
        """Start ``agent_cli`` resuming *session_id* in its working directory."""
        argv = agent_command(agent_cli, session_id, message, extra_args)
        return await cls._start(argv, cwd=cwd or None, session_id=session_id)

    @classmethod
    async def spawn_raw(cls, *argv: str, cwd: str | None = None) -> PtySession:
        """Start an arbitrary command in a PTY."""
        return await cls._start(list(argv), cwd=cwd)

    @classmethod
    async def _start(
        cls, argv: list[str], cwd: str | None, session_id: str = ""
    ) -> PtySession:
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, DEFAULT_ROWS, DEFAULT_COLS)
        except OSError:
            logger.debug("Could not set PTY window size", exc_info=True)
        env = dict(os.environ)
        env["TERM"] = "xterm-256color"
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            os.close(master_fd)
            raise PtySpawnError(" ".join(argv), str(exc)) from exc
        finally:
            os.close(slave_fd)
        logger.info("Spawned %s in PTY (pid=%s)", argv[0], process.pid)
        return cls(process, master_fd, session_id=session_id)

    @property
    def running(self) -> bool:
        return not self.done.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def next_chunk(self) -> OutputChunk | None:
        """Return the next output chunk, or None once the process has exited."""
        return await get_until_closed(self.output, self.done)

    def write(self, text: str) -> None:
        """Send literal input, e.g. ``"1\\n"`` to pick the first option."""
        if self._closed:
            raise PtyClosedError(self.session_id)
        try:
            os.write(self._master_fd, text.encode("utf-8"))
        except OSError as exc:
            raise PtyClosedError(self.session_id) from exc

    async def close(self, timeout: float = 2.0) -> None:
        """Terminate the child and release the PTY. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("PTY child %s ignored SIGTERM, killing", self._process.pid)
                self._process.kill()
                await self._process.wait()
        self._reader_task.cancel()
        try:
            await self._reader_task
        except asyncio.CancelledError:
            pass
        os.close(self._master_fd)
        self.exit_code = self._process.returncode
        self.done.set()

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    data = await self._read_once()
                except OSError as exc:
                    # EIO means the child side of the PTY is gone.
                    if exc.errno != errno.EIO:
                        await self.output.put(
                            OutputChunk(raw=b"", cleaned=f"[PTY error: {exc}]")
                        )
                    break
                if not data:
                    break
                chunk = self._parser.feed(data)
                if chunk.cleaned or chunk.is_prompt:
                    await self.output.put(chunk)
            self.exit_code = await self._process.wait()
            logger.info("PTY child %s exited with %s", self._process.pid, self.exit_code)
        finally:
            self.done.set()

    async def _read_once(self) -> bytes:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[bytes] = loop.create_future()
        fd = self._master_fd

        def _ready() -> None:
            loop.remove_reader(fd)
            if future.done():
                return
            try:
                future.set_result(os.read(fd, READ_SIZE))
            except OSError as exc:
                future.set_exception(exc)

        loop.add_reader(fd, _ready)
        try:
            return await future
        finally:
            loop.remove_reader(fd)
