"""Asynchronous work issued by the scheduler.

A ``Command`` wraps a coroutine factory. The scheduler runs each one as a
task and puts the message it resolves to (if any) back on the event bus.
Commands convert component exceptions into error messages so nothing
raises into the scheduler loop.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from agentdeck.adapters.events import (
    DeckEvent,
    HookReceived,
    LoadFailed,
    MessageSent,
    PtyClosed,
    PtyOutput,
    PtyPromptDetected,
    PtyStarted,
    RecordsAppended,
    RecordsLoaded,
    ReplyTimedOut,
    ResumeFailed,
    SendFailed,
    SessionResumed,
    SessionsLoaded,
    StatusExpired,
    StatusMessage,
)
from agentdeck.adapters.pty_proxy import PtySession
from agentdeck.engine.errors import AgentDeckError
from agentdeck.shared.models.message import ConversationTurn
from agentdeck.shared.models.session import Session
from agentdeck.shared.services.reconciler import Conversation
from agentdeck.shared.services.record_reader import IncrementalLogReader
from agentdeck.shared.services.session_export import export_conversation

if TYPE_CHECKING:
    from agentdeck.adapters.hook_server import HookServer
    from agentdeck.adapters.protocol import SessionProtocolAdapter
    from agentdeck.adapters.watcher import DebouncedWatcher
    from agentdeck.shared.services.session_repo import SessionRepository

logger = logging.getLogger(__name__)


@dataclass
class Command:
    """A named unit of asynchronous work for one session (or none)."""
    name: str
    factory: Callable[[], Awaitable[DeckEvent | None]]
    session_id: str = ""
    # Message emitted when the factory raises something it did not handle.
    on_error: Callable[[Exception], DeckEvent | None] | None = None

    async def run(self) -> DeckEvent | None:
        return await self.factory()


# -- Discovery and log reads --


def scan_sessions(repo: SessionRepository) -> Command:
    async def _run() -> DeckEvent:
        try:
            sessions = await asyncio.to_thread(repo.list)
        except AgentDeckError as exc:
            logger.warning("Session rescan failed: %s", exc)
            return LoadFailed(error=str(exc))
        return SessionsLoaded(sessions=sessions)

    return Command("scan_sessions", _run)


def load_records(session_id: str, reader: IncrementalLogReader) -> Command:
    async def _run() -> DeckEvent:
        try:
            records = await asyncio.to_thread(reader.read_all)
        except AgentDeckError as exc:
            logger.warning("Loading %s failed: %s", session_id[:8], exc)
            return LoadFailed(session_id=session_id, error=str(exc))
        except Exception as exc:
            logger.exception("Loading %s crashed", session_id[:8])
            return LoadFailed(session_id=session_id, error=str(exc) or type(exc).__name__)
        conversation = Conversation()
        conversation.apply(records)
        return RecordsLoaded(session_id=session_id, conversation=conversation)

    return Command("load_records", _run, session_id)


def read_new_records(session_id: str, reader: IncrementalLogReader) -> Command:
    async def _run() -> DeckEvent:
        try:
            records = await asyncio.to_thread(reader.read_new)
        except AgentDeckError as exc:
            logger.warning("Reading %s failed: %s", session_id[:8], exc)
            return LoadFailed(session_id=session_id, error=str(exc))
        except Exception as exc:
            logger.exception("Reading %s crashed", session_id[:8])
            return LoadFailed(session_id=session_id, error=str(exc) or type(exc).__name__)
        return RecordsAppended(session_id=session_id, records=records)

    return Command("read_new_records", _run, session_id)


def rename_session(repo: SessionRepository, session_id: str, name: str) -> Command:
    async def _run() -> DeckEvent:
        try:
            await asyncio.to_thread(repo.rename, session_id, name)
            sessions = await asyncio.to_thread(repo.list)
        except AgentDeckError as exc:
            logger.warning("Rename of %s failed: %s", session_id[:8], exc)
            return StatusMessage(text=f"Rename failed: {exc}")
        return SessionsLoaded(sessions=sessions)

    return Command("rename_session", _run, session_id)


def export_session(
    session: Session, turns: list[ConversationTurn], export_dir: str
) -> Command:
    async def _run() -> DeckEvent:
        try:
            path = await asyncio.to_thread(export_conversation, session, turns, export_dir)
        except OSError as exc:
            logger.warning("Export of %s failed: %s", session.short_id, exc)
            return StatusMessage(text=f"Export failed: {exc}")
        return StatusMessage(text=f"Exported to {path}")

    return Command("export_session", _run, session.id)


def update_watches(
    watcher: DebouncedWatcher, add: list[str], remove: list[str]
) -> Command:
    async def _run() -> None:
        for session_id in remove:
            watcher.unwatch_session(session_id)
        for session_id in add:
            watcher.watch_session(session_id)
        return None

    return Command("update_watches", _run)


# -- Event sources. Each resolves to one message and is re-armed by the scheduler. --


def next_watch_event(watcher: DebouncedWatcher) -> Command:
    return Command("next_watch_event", watcher.next_notification)


def next_hook_event(server: HookServer) -> Command:
    async def _run() -> DeckEvent | None:
        envelope = await server.next_envelope()
        if envelope is None:
            return None
        return HookReceived(envelope=envelope)

    return Command("next_hook_event", _run)


def next_protocol_event(adapter: SessionProtocolAdapter) -> Command:
    return Command("next_protocol_event", adapter.next_event)


# -- Session protocol --


def resume_session(adapter: SessionProtocolAdapter, session_id: str, cwd: str) -> Command:
    async def _run() -> DeckEvent:
        try:
            await adapter.resume_session(session_id, cwd)
        except AgentDeckError as exc:
            return ResumeFailed(session_id=session_id, error=str(exc))
        except Exception as exc:
            logger.exception("Resuming %s crashed", session_id[:8])
            return ResumeFailed(session_id=session_id, error=str(exc) or type(exc).__name__)
        return SessionResumed(session_id=session_id)

    return Command("resume_session", _run, session_id)


def send_message(
    adapter: SessionProtocolAdapter, session_id: str, cwd: str, text: str
) -> Command:
    async def _run() -> DeckEvent:
        try:
            await adapter.resume_session(session_id, cwd)
            message_id = await adapter.send(session_id, text)
        except AgentDeckError as exc:
            logger.warning("Send to %s failed: %s", session_id[:8], exc)
            return SendFailed(session_id=session_id, error=str(exc))
        except Exception as exc:
            logger.exception("Send to %s crashed", session_id[:8])
            return SendFailed(session_id=session_id, error=str(exc) or type(exc).__name__)
        return MessageSent(session_id=session_id, message_id=message_id)

    return Command("send_message", _run, session_id)


def abort_session(adapter: SessionProtocolAdapter, session_id: str) -> Command:
    async def _run() -> DeckEvent | None:
        try:
            await adapter.abort(session_id)
        except AgentDeckError as exc:
            return StatusMessage(text=f"Abort failed: {exc}")
        return None

    return Command("abort_session", _run, session_id)


# -- Interactive PTY sessions --


def spawn_pty(agent_cli: str, session: Session, message: str = "") -> Command:
    async def _run() -> DeckEvent:
        try:
            pty = await PtySession.spawn(agent_cli, session.id, message=message, cwd=session.cwd)
        except AgentDeckError as exc:
            logger.warning("PTY spawn for %s failed: %s", session.short_id, exc)
            return ResumeFailed(session_id=session.id, error=str(exc))
        return PtyStarted(session_id=session.id, pty=pty)

    return Command(
        "spawn_pty", _run, session.id,
        on_error=lambda exc: ResumeFailed(session_id=session.id, error=str(exc) or type(exc).__name__),
    )


def next_pty_chunk(session_id: str, pty: PtySession) -> Command:
    async def _run() -> DeckEvent:
        chunk = await pty.next_chunk()
        if chunk is None:
            return PtyClosed(session_id=session_id, exit_code=pty.exit_code)
        if chunk.prompt is not None:
            return PtyPromptDetected(
                session_id=session_id, text=chunk.cleaned, prompt=chunk.prompt
            )
        return PtyOutput(session_id=session_id, text=chunk.cleaned)

    return Command(
        "next_pty_chunk", _run, session_id,
        on_error=lambda exc: PtyClosed(session_id=session_id, exit_code=pty.exit_code, error=str(exc)),
    )


def write_pty(session_id: str, pty: PtySession, text: str) -> Command:
    async def _run() -> DeckEvent | None:
        try:
            pty.write(text)
        except AgentDeckError as exc:
            return PtyClosed(session_id=session_id, exit_code=pty.exit_code, error=str(exc))
        return None

    return Command(
        "write_pty", _run, session_id,
        on_error=lambda exc: PtyClosed(session_id=session_id, exit_code=pty.exit_code, error=str(exc)),
    )


def close_pty(session_id: str, pty: PtySession) -> Command:
    async def _run() -> None:
        await pty.close()
        return None

    return Command("close_pty", _run, session_id)


# -- Timers --


def expire_status(generation: int, delay: float) -> Command:
    async def _run() -> DeckEvent:
        await asyncio.sleep(delay)
        return StatusExpired(generation=generation)

    return Command("expire_status", _run)


def reply_timeout(request_id: str, delay: float) -> Command:
    async def _run() -> DeckEvent:
        await asyncio.sleep(delay)
        return ReplyTimedOut(request_id=request_id)

    return Command("reply_timeout", _run)
