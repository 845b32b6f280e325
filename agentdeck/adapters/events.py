"""Message types delivered to the scheduler.

Every producer (log reads, the directory watcher, the hook server, the
PTY proxy, the protocol adapter and the TUI) talks to the scheduler only
by emitting one of these dataclasses onto the event bus. Each carries its
data by value; the scheduler is the only code that mutates session state.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from agentdeck.engine.errors import ReplyAlreadySentError
from agentdeck.shared.models.message import Record
from agentdeck.shared.models.session import ApprovalPrompt, Session
from agentdeck.shared.normalize import coerce_mapping, parse_timestamp

if TYPE_CHECKING:
    from agentdeck.adapters.pty_proxy import PtySession
    from agentdeck.shared.services.reconciler import Conversation


class Reply:
    """Single-use reply slot for a request that blocks its producer.

    The producer awaits :meth:`wait`; whoever answers calls :meth:`send`
    exactly once. A second ``send`` raises ``ReplyAlreadySentError``.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.request_id = uuid.uuid4().hex
        self._event = asyncio.Event()
        self._value: Any = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def send(self, value: Any) -> None:
        if self._event.is_set():
            raise ReplyAlreadySentError(self.kind)
        self._value = value
        self._event.set()

    async def wait(self, timeout: float | None = None) -> Any:
        """Block until a value is sent. Raises ``asyncio.TimeoutError``."""
        if timeout is None:
            await self._event.wait()
        else:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        return self._value


@dataclass
class PermissionDecision:
    allow: bool
    message: str = ""


@dataclass
class HookEnvelope:
    """One line-delimited JSON envelope sent by a companion hook process."""
    event: str
    session_id: str
    cwd: str = ""
    timestamp: datetime | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> HookEnvelope:
        if not isinstance(raw, dict):
            raise ValueError("envelope is not an object")
        event = raw.get("event")
        session_id = raw.get("sessionId")
        if not isinstance(event, str) or not event:
            raise ValueError("envelope has no event")
        return cls(
            event=event,
            session_id=session_id if isinstance(session_id, str) else "",
            cwd=str(raw.get("cwd") or ""),
            timestamp=parse_timestamp(raw.get("timestamp")),
            data=coerce_mapping(raw.get("data")) if raw.get("data") is not None else {},
        )


@dataclass
class DeckEvent:
    """Base message."""
    event_type: str = ""


# -- Session discovery and log reads --


@dataclass
class Tick(DeckEvent):
    event_type: str = "tick"


@dataclass
class SessionsLoaded(DeckEvent):
    event_type: str = "sessions_loaded"
    sessions: list[Session] = field(default_factory=list)


@dataclass
class SessionDirChanged(DeckEvent):
    event_type: str = "session_dir_changed"


@dataclass
class FileChanged(DeckEvent):
    event_type: str = "file_changed"
    session_id: str = ""


@dataclass
class RecordsLoaded(DeckEvent):
    """A full read of a session log, already folded into turns."""
    event_type: str = "records_loaded"
    session_id: str = ""
    conversation: Conversation | None = None


@dataclass
class RecordsAppended(DeckEvent):
    event_type: str = "records_appended"
    session_id: str = ""
    records: list[Record] = field(default_factory=list)


@dataclass
class LoadFailed(DeckEvent):
    """A log or directory read failed. ``session_id`` is empty for rescans."""
    event_type: str = "load_failed"
    session_id: str = ""
    error: str = ""


# -- Hook ingestion --


@dataclass
class HookReceived(DeckEvent):
    event_type: str = "hook_received"
    envelope: HookEnvelope | None = None


# -- Session protocol --


@dataclass
class SessionSelected(DeckEvent):
    event_type: str = "session_selected"
    session_id: str | None = None


@dataclass
class SendRequested(DeckEvent):
    event_type: str = "send_requested"
    session_id: str = ""
    text: str = ""


@dataclass
class MessageSent(DeckEvent):
    event_type: str = "message_sent"
    session_id: str = ""
    message_id: str = ""


@dataclass
class SendFailed(DeckEvent):
    event_type: str = "send_failed"
    session_id: str = ""
    error: str = ""


@dataclass
class ResumeRequested(DeckEvent):
    event_type: str = "resume_requested"
    session_id: str = ""


@dataclass
class SessionResumed(DeckEvent):
    event_type: str = "session_resumed"
    session_id: str = ""


@dataclass
class ResumeFailed(DeckEvent):
    event_type: str = "resume_failed"
    session_id: str = ""
    error: str = ""


@dataclass
class AbortRequested(DeckEvent):
    event_type: str = "abort_requested"
    session_id: str = ""


@dataclass
class ProtocolEvent(DeckEvent):
    """A server-pushed event for one resumed session.

    ``kind`` is one of ``message_delta``, ``assistant_message``,
    ``tool_start``, ``tool_complete``, ``session_idle`` or ``session_error``.
    """
    event_type: str = "protocol_event"
    session_id: str = ""
    kind: str = ""
    text: str = ""
    tool_name: str = ""
    tool_call_id: str = ""
    is_error: bool = False


@dataclass
class PermissionRequested(DeckEvent):
    event_type: str = "permission_requested"
    session_id: str = ""
    tool_name: str = ""
    arguments: str = ""
    reply: Reply | None = None


@dataclass
class UserInputRequested(DeckEvent):
    event_type: str = "user_input_requested"
    session_id: str = ""
    question: str = ""
    choices: list[str] = field(default_factory=list)
    allow_freeform: bool = True
    reply: Reply | None = None


@dataclass
class RequestAnswered(DeckEvent):
    """The UI answered a pending permission or user-input request."""
    event_type: str = "request_answered"
    request_id: str = ""
    answer: Any = None


@dataclass
class ReplyTimedOut(DeckEvent):
    event_type: str = "reply_timed_out"
    request_id: str = ""


@dataclass
class ProtocolDisconnected(DeckEvent):
    """The protocol connection dropped. An empty ``session_id`` means all sessions."""
    event_type: str = "protocol_disconnected"
    session_id: str = ""
    error: str = ""


# -- Interactive PTY sessions --


@dataclass
class PtySpawnRequested(DeckEvent):
    event_type: str = "pty_spawn_requested"
    session_id: str = ""
    message: str = ""


@dataclass
class PtyStarted(DeckEvent):
    event_type: str = "pty_started"
    session_id: str = ""
    pty: PtySession | None = None


@dataclass
class PtyOutput(DeckEvent):
    event_type: str = "pty_output"
    session_id: str = ""
    text: str = ""


@dataclass
class PtyPromptDetected(DeckEvent):
    event_type: str = "pty_prompt_detected"
    session_id: str = ""
    text: str = ""
    prompt: ApprovalPrompt | None = None


@dataclass
class ApprovalSelected(DeckEvent):
    event_type: str = "approval_selected"
    session_id: str = ""
    shortcut: str = ""


@dataclass
class PtyInputRequested(DeckEvent):
    event_type: str = "pty_input_requested"
    session_id: str = ""
    text: str = ""


@dataclass
class PtyClosed(DeckEvent):
    event_type: str = "pty_closed"
    session_id: str = ""
    exit_code: int | None = None
    error: str = ""


# -- Housekeeping --


@dataclass
class StatusMessage(DeckEvent):
    event_type: str = "status_message"
    text: str = ""


@dataclass
class StatusExpired(DeckEvent):
    event_type: str = "status_expired"
    generation: int = 0


@dataclass
class ExportRequested(DeckEvent):
    event_type: str = "export_requested"
    session_id: str = ""


@dataclass
class RenameRequested(DeckEvent):
    event_type: str = "rename_requested"
    session_id: str = ""
    name: str = ""
