"""The scheduler: sole owner and mutator of session state.

Every producer emits messages onto the ``EventBus``; ``Scheduler.run``
drains the bus and applies one message at a time through ``update``.
``update`` mutates ``DeckState`` and returns ``Command`` objects for any
follow-up I/O. Commands run as tasks and their resulting messages go back
onto the bus, so no other task ever touches ``DeckState``.

Event sources are consumed one message at a time: after handling a
watcher, hook, protocol or PTY message the scheduler re-arms the matching
``next_*`` command.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from agentdeck.adapters.events import (
    AbortRequested,
    ApprovalSelected,
    DeckEvent,
    ExportRequested,
    FileChanged,
    HookReceived,
    LoadFailed,
    MessageSent,
    PermissionDecision,
    PermissionRequested,
    ProtocolDisconnected,
    ProtocolEvent,
    PtyClosed,
    PtyInputRequested,
    PtyOutput,
    PtyPromptDetected,
    PtySpawnRequested,
    PtyStarted,
    RecordsAppended,
    RecordsLoaded,
    RenameRequested,
    ReplyTimedOut,
    RequestAnswered,
    ResumeFailed,
    ResumeRequested,
    SendFailed,
    SendRequested,
    SessionDirChanged,
    SessionResumed,
    SessionSelected,
    SessionsLoaded,
    StatusExpired,
    StatusMessage,
    Tick,
    UserInputRequested,
)
from agentdeck.engine import commands as cmd
from agentdeck.engine.commands import Command
from agentdeck.engine.config import AppConfig
from agentdeck.engine.errors import HookServerBindError, WatcherStartError
from agentdeck.shared.models.message import ConversationTurn
from agentdeck.shared.models.session import ApprovalPrompt, PendingTool, Session
from agentdeck.shared.normalize import coerce_text
from agentdeck.shared.services.reconciler import Conversation
from agentdeck.shared.services.record_reader import IncrementalLogReader

if TYPE_CHECKING:
    from agentdeck.adapters.event_bus import EventBus
    from agentdeck.adapters.hook_server import HookServer
    from agentdeck.adapters.protocol import SessionProtocolAdapter
    from agentdeck.adapters.pty_proxy import PtySession
    from agentdeck.adapters.watcher import DebouncedWatcher
    from agentdeck.shared.services.session_repo import SessionRepository

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 16_000
STREAMING_LIMIT = 16_000


class SessionPhase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    RESUMED = "resumed"
    PENDING_APPROVAL = "pending-approval"


@dataclass
class SessionState:
    """Everything the scheduler tracks for one session."""
    session: Session
    reader: IncrementalLogReader
    conversation: Conversation | None = None
    unread: int = 0
    last_seen: datetime | None = None
    sending: bool = False
    resumed: bool = False
    resumable: bool = True
    # At most one log read per session is in flight; later requests queue.
    reading: bool = False
    queued_read: str | None = None
    pending_tools: list[PendingTool] = field(default_factory=list)
    request_ids: list[str] = field(default_factory=list)
    approval: ApprovalPrompt | None = None
    pty: PtySession | None = None
    transcript: str = ""
    streaming_text: str = ""

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def turns(self) -> list[ConversationTurn]:
        return self.conversation.turns if self.conversation is not None else []

    @property
    def phase(self) -> SessionPhase:
        if self.approval is not None or self.request_ids:
            return SessionPhase.PENDING_APPROVAL
        if self.sending:
            return SessionPhase.SENDING
        if self.resumed:
            return SessionPhase.RESUMED
        return SessionPhase.IDLE

    @property
    def busy(self) -> bool:
        return self.sending or self.pty is not None or bool(self.request_ids)


@dataclass
class PendingRequest:
    """A permission or user-input request still waiting for its reply."""
    event: PermissionRequested | UserInputRequested
    session_id: str
    marker: PendingTool | None = None

    @property
    def kind(self) -> str:
        return "permission" if isinstance(self.event, PermissionRequested) else "user_input"


@dataclass
class DeckState:
    sessions: dict[str, SessionState] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    selected: str | None = None
    status: str = ""
    status_generation: int = 0
    requests: dict[str, PendingRequest] = field(default_factory=dict)

    @property
    def selected_state(self) -> SessionState | None:
        if self.selected is None:
            return None
        return self.sessions.get(self.selected)

    def session_list(self) -> list[SessionState]:
        return [self.sessions[sid] for sid in self.order if sid in self.sessions]

    def requests_for(self, session_id: str) -> list[PendingRequest]:
        return [r for r in self.requests.values() if r.session_id == session_id]

    def next_request(self) -> PendingRequest | None:
        """The oldest unanswered request, preferring the selected session."""
        if self.selected is not None:
            for request in self.requests.values():
                if request.session_id == self.selected:
                    return request
        return next(iter(self.requests.values()), None)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Applies messages to ``DeckState`` one at a time."""

    def __init__(
        self,
        config: AppConfig,
        bus: EventBus,
        repo: SessionRepository,
        *,
        watcher: DebouncedWatcher | None = None,
        hook_server: HookServer | None = None,
        protocol: SessionProtocolAdapter | None = None,
        on_change: Callable[[DeckEvent], None] | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self.repo = repo
        self.watcher = watcher
        self.hook_server = hook_server
        self.protocol = protocol
        self.on_change = on_change
        self.state = DeckState()
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False
        self._handlers: dict[type, Callable[[Any], list[Command]]] = {
            Tick: self._on_tick,
            SessionsLoaded: self._on_sessions_loaded,
            SessionDirChanged: self._on_session_dir_changed,
            LoadFailed: self._on_load_failed,
            SessionSelected: self._on_session_selected,
            FileChanged: self._on_file_changed,
            RecordsLoaded: self._on_records_loaded,
            RecordsAppended: self._on_records_appended,
            HookReceived: self._on_hook_received,
            SendRequested: self._on_send_requested,
            MessageSent: self._on_message_sent,
            SendFailed: self._on_send_failed,
            ResumeRequested: self._on_resume_requested,
            SessionResumed: self._on_session_resumed,
            ResumeFailed: self._on_resume_failed,
            AbortRequested: self._on_abort_requested,
            ProtocolEvent: self._on_protocol_event,
            PermissionRequested: self._on_permission_requested,
            UserInputRequested: self._on_user_input_requested,
            RequestAnswered: self._on_request_answered,
            ReplyTimedOut: self._on_reply_timed_out,
            ProtocolDisconnected: self._on_protocol_disconnected,
            PtySpawnRequested: self._on_pty_spawn_requested,
            PtyStarted: self._on_pty_started,
            PtyOutput: self._on_pty_output,
            PtyPromptDetected: self._on_pty_prompt_detected,
            ApprovalSelected: self._on_approval_selected,
            PtyInputRequested: self._on_pty_input_requested,
            PtyClosed: self._on_pty_closed,
            StatusMessage: self._on_status_message,
            StatusExpired: self._on_status_expired,
            ExportRequested: self._on_export_requested,
            RenameRequested: self._on_rename_requested,
        }

    # -- Loop --

    def start_commands(self) -> list[Command]:
        """Initial rescan plus one armed read per attached event source."""
        commands = [cmd.scan_sessions(self.repo)]
        if self.watcher is not None:
            commands.append(cmd.next_watch_event(self.watcher))
        if self.hook_server is not None:
            commands.append(cmd.next_hook_event(self.hook_server))
        if self.protocol is not None:
            commands.append(cmd.next_protocol_event(self.protocol))
        return commands

    def update(self, event: DeckEvent) -> list[Command]:
        """Apply one message to the state and return follow-up commands."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("No handler for %s", event.event_type)
            return []
        return handler(event)

    def apply(self, event: DeckEvent) -> list[Command]:
        commands = self.update(event)
        self.dispatch(commands)
        if self.on_change is not None:
            self.on_change(event)
        return commands

    def dispatch(self, commands: list[Command]) -> None:
        if self._stopping:
            return
        for command in commands:
            task = asyncio.create_task(self._run_command(command))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_command(self, command: Command) -> None:
        try:
            result = await command.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Command %s failed", command.name)
            if command.on_error is None:
                return
            result = command.on_error(exc)
        if result is not None:
            await self.bus.emit(result)

    async def run(self) -> None:
        """Consume the bus until it is closed."""
        self.dispatch(self.start_commands())
        ticker = asyncio.create_task(self._tick_loop())
        try:
            async for event in self.bus.consume():
                self.apply(event)
        finally:
            ticker.cancel()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.rescan_interval_seconds)
            await self.bus.emit(Tick())

    async def shutdown(self) -> None:
        """Answer every outstanding request, then close all event sources."""
        for request_id in list(self.state.requests):
            self._answer_default(request_id)
        self._stopping = True
        self.bus.close()
        if self.watcher is not None:
            self.watcher.close()
        if self.hook_server is not None:
            await self.hook_server.close()
        for ss in self.state.sessions.values():
            if ss.pty is not None:
                await ss.pty.close()
        if self.protocol is not None:
            await self.protocol.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    # -- Helpers --

    def _flash(self, text: str) -> list[Command]:
        self.state.status = text
        self.state.status_generation += 1
        return [cmd.expire_status(self.state.status_generation, self.config.status_flash_seconds)]

    def _ensure(self, session_id: str, cwd: str = "") -> SessionState:
        ss = self.state.sessions.get(session_id)
        if ss is None:
            ss = SessionState(
                session=Session(id=session_id, cwd=cwd),
                reader=IncrementalLogReader(self.repo.events_path(session_id)),
            )
            self.state.sessions[session_id] = ss
            self.state.order.append(session_id)
        return ss

    def _request_read(self, ss: SessionState, full: bool = False) -> list[Command]:
        if ss.reading:
            ss.queued_read = "all" if full or ss.queued_read == "all" else "new"
            return []
        ss.reading = True
        if full:
            return [cmd.load_records(ss.session_id, ss.reader)]
        return [cmd.read_new_records(ss.session_id, ss.reader)]

    def _finish_read(self, ss: SessionState) -> list[Command]:
        ss.reading = False
        queued, ss.queued_read = ss.queued_read, None
        if queued is None:
            return []
        return self._request_read(ss, full=queued == "all")

    def _activity(self, ss: SessionState) -> list[Command]:
        """New activity: reread if selected, otherwise count it as unread."""
        ss.last_seen = _now()
        if ss.session_id == self.state.selected:
            return self._request_read(ss)
        ss.unread += 1
        return []

    def _rearm_protocol(self) -> list[Command]:
        if self.protocol is None or self.protocol.closed.is_set():
            return []
        return [cmd.next_protocol_event(self.protocol)]

    def _rearm_pty(self, ss: SessionState) -> list[Command]:
        if ss.pty is None:
            return []
        return [cmd.next_pty_chunk(ss.session_id, ss.pty)]

    # -- Discovery and log reads --

    def _on_tick(self, event: Tick) -> list[Command]:
        return [cmd.scan_sessions(self.repo)]

    def _on_session_dir_changed(self, event: SessionDirChanged) -> list[Command]:
        commands = [cmd.scan_sessions(self.repo)]
        if self.watcher is not None:
            commands.append(cmd.next_watch_event(self.watcher))
        return commands

    def _on_sessions_loaded(self, event: SessionsLoaded) -> list[Command]:
        listed = [s.id for s in event.sessions]
        added: list[str] = []
        for session in event.sessions:
            ss = self.state.sessions.get(session.id)
            if ss is None:
                self._ensure(session.id).session = session
                added.append(session.id)
            else:
                ss.session = session

        listed_set = set(listed)
        removed = [
            sid for sid, ss in self.state.sessions.items()
            if sid not in listed_set and not ss.busy
        ]
        for sid in removed:
            del self.state.sessions[sid]
        self.state.order = listed + [
            sid for sid in self.state.order
            if sid not in listed_set and sid in self.state.sessions
        ]
        if self.state.selected is not None and self.state.selected not in self.state.sessions:
            self.state.selected = None

        if self.watcher is not None and (added or removed):
            return [cmd.update_watches(self.watcher, added, removed)]
        return []

    def _on_load_failed(self, event: LoadFailed) -> list[Command]:
        commands: list[Command] = []
        ss = self.state.sessions.get(event.session_id) if event.session_id else None
        if ss is not None:
            commands += self._finish_read(ss)
        return commands + self._flash(f"Load failed: {event.error}")

    def _on_session_selected(self, event: SessionSelected) -> list[Command]:
        if event.session_id is None:
            self.state.selected = None
            return []
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return self._flash(f"Unknown session {event.session_id[:8]}")
        self.state.selected = ss.session_id
        ss.unread = 0
        commands = self._request_read(ss, full=True)
        if self.watcher is not None:
            commands.append(cmd.update_watches(self.watcher, [ss.session_id], []))
        return commands

    def _on_file_changed(self, event: FileChanged) -> list[Command]:
        commands = []
        if self.watcher is not None:
            commands.append(cmd.next_watch_event(self.watcher))
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return commands
        return commands + self._activity(ss)

    def _on_records_loaded(self, event: RecordsLoaded) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return []
        commands = self._finish_read(ss)
        if event.session_id == self.state.selected:
            ss.conversation = event.conversation or Conversation()
        return commands

    def _on_records_appended(self, event: RecordsAppended) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return []
        commands = self._finish_read(ss)
        if ss.conversation is None:
            # The full load never landed, so these records have no base.
            if ss.session_id == self.state.selected:
                commands += self._request_read(ss, full=True)
            return commands
        if event.records:
            ss.conversation.apply(event.records)
        return commands

    # -- Hook ingestion --

    def _on_hook_received(self, event: HookReceived) -> list[Command]:
        commands: list[Command] = []
        if self.hook_server is not None:
            commands.append(cmd.next_hook_event(self.hook_server))
        envelope = event.envelope
        if envelope is None or not envelope.session_id:
            return commands
        ss = self._ensure(envelope.session_id, envelope.cwd)
        # A deny decision is final; the marker lasts until the next hook.
        ss.pending_tools = [t for t in ss.pending_tools if not t.denied]

        data = envelope.data
        tool_name = coerce_text(data.get("toolName") or "")
        if envelope.event == "preToolUse" and tool_name:
            tool_args = coerce_text(data.get("toolArgs") or "")
            denied, reason = self.config.is_denied(tool_name, tool_args)
            ss.pending_tools.append(
                PendingTool(tool_name=tool_name, tool_args=tool_args, denied=denied, deny_reason=reason)
            )
        elif envelope.event == "postToolUse" and tool_name:
            for index, tool in enumerate(ss.pending_tools):
                if tool.tool_name == tool_name:
                    del ss.pending_tools[index]
                    break
        elif envelope.event == "sessionEnd":
            ss.pending_tools.clear()
        return commands + self._activity(ss)

    # -- Session protocol --

    def _on_send_requested(self, event: SendRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or not event.text.strip():
            return []
        if ss.sending:
            logger.info("Send to %s refused: a message is already in flight", ss.session_id[:8])
            return []
        if self.protocol is None:
            return self._flash("No session protocol available")
        if not ss.resumable:
            return self._flash(f"{ss.session.display_name} is not resumable; resume it first")
        ss.sending = True
        return [cmd.send_message(self.protocol, ss.session_id, ss.session.cwd, event.text)]

    def _on_message_sent(self, event: MessageSent) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is not None:
            ss.resumed = True
        return []

    def _on_send_failed(self, event: SendFailed) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is not None:
            ss.sending = False
        return self._flash(f"Send failed: {event.error}")

    def _on_resume_requested(self, event: ResumeRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or self.protocol is None:
            return []
        ss.resumable = True
        return [cmd.resume_session(self.protocol, ss.session_id, ss.session.cwd)]

    def _on_session_resumed(self, event: SessionResumed) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is not None:
            ss.resumed = True
            ss.resumable = True
        return []

    def _on_resume_failed(self, event: ResumeFailed) -> list[Command]:
        return self._flash(f"Resume failed: {event.error}")

    def _on_abort_requested(self, event: AbortRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or not ss.sending or self.protocol is None:
            return []
        return [cmd.abort_session(self.protocol, ss.session_id)]

    def _on_protocol_event(self, event: ProtocolEvent) -> list[Command]:
        commands = self._rearm_protocol()
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return commands
        ss.last_seen = _now()
        ss.resumed = True
        if event.kind == "message_delta":
            ss.streaming_text = (ss.streaming_text + event.text)[-STREAMING_LIMIT:]
        elif event.kind == "assistant_message":
            ss.streaming_text = ""
        elif event.kind == "session_idle":
            ss.sending = False
            ss.streaming_text = ""
            if ss.session_id == self.state.selected:
                commands += self._request_read(ss)
        elif event.kind == "session_error":
            ss.sending = False
            ss.streaming_text = ""
            commands += self._flash(f"Session error: {event.text}")
        return commands

    def _on_permission_requested(self, event: PermissionRequested) -> list[Command]:
        commands = self._rearm_protocol()
        ss = self._ensure(event.session_id)
        marker = PendingTool(tool_name=event.tool_name, tool_args=event.arguments)
        ss.pending_tools.append(marker)
        return commands + self._admit_request(ss, event, marker)

    def _on_user_input_requested(self, event: UserInputRequested) -> list[Command]:
        commands = self._rearm_protocol()
        ss = self._ensure(event.session_id)
        return commands + self._admit_request(ss, event, None)

    def _admit_request(
        self,
        ss: SessionState,
        event: PermissionRequested | UserInputRequested,
        marker: PendingTool | None,
    ) -> list[Command]:
        if event.reply is None:
            return []
        request_id = event.reply.request_id
        self.state.requests[request_id] = PendingRequest(event, ss.session_id, marker)
        ss.request_ids.append(request_id)

        policy = self.config.permission_policy
        if policy == "allow":
            if isinstance(event, PermissionRequested):
                self._answer(request_id, PermissionDecision(allow=True))
            else:
                self._answer(request_id, "")
            return []
        if policy == "deny":
            self._answer_default(request_id)
            return []

        commands: list[Command] = []
        timeout = self.config.permission_timeout_seconds
        if timeout > 0:
            commands.append(cmd.reply_timeout(request_id, timeout))
        if ss.session_id != self.state.selected:
            ss.unread += 1
        if isinstance(event, PermissionRequested):
            commands += self._flash(f"{ss.session.display_name}: {event.tool_name} needs approval")
        else:
            commands += self._flash(f"{ss.session.display_name} is asking a question")
        return commands

    def _answer(self, request_id: str, value: Any) -> bool:
        pending = self.state.requests.pop(request_id, None)
        if pending is None:
            logger.debug("Request %s already answered", request_id[:8])
            return False
        ss = self.state.sessions.get(pending.session_id)
        if ss is not None:
            if request_id in ss.request_ids:
                ss.request_ids.remove(request_id)
            if pending.marker is not None:
                ss.pending_tools = [t for t in ss.pending_tools if t is not pending.marker]
        reply = pending.event.reply
        if reply is None:
            return False
        reply.send(value)
        logger.info("Answered %s request %s", pending.kind, request_id[:8])
        return True

    def _answer_default(self, request_id: str) -> bool:
        pending = self.state.requests.get(request_id)
        if pending is None:
            return False
        if pending.kind == "permission":
            return self._answer(request_id, PermissionDecision(allow=False, message="Denied by policy"))
        return self._answer(request_id, "")

    def _on_request_answered(self, event: RequestAnswered) -> list[Command]:
        pending = self.state.requests.get(event.request_id)
        if pending is None:
            return []
        answer = event.answer
        if pending.kind == "permission" and not isinstance(answer, PermissionDecision):
            answer = PermissionDecision(allow=bool(answer))
        elif pending.kind == "user_input":
            answer = coerce_text(answer) if answer is not None else ""
        self._answer(event.request_id, answer)
        return []

    def _on_reply_timed_out(self, event: ReplyTimedOut) -> list[Command]:
        if event.request_id not in self.state.requests:
            return []
        logger.warning("Request %s timed out, answering with the safe default", event.request_id[:8])
        self._answer_default(event.request_id)
        return self._flash("Request timed out and was declined")

    def _on_protocol_disconnected(self, event: ProtocolDisconnected) -> list[Command]:
        commands = self._rearm_protocol()
        if event.session_id:
            targets = [self.state.sessions[event.session_id]] if event.session_id in self.state.sessions else []
        else:
            targets = [ss for ss in self.state.sessions.values() if ss.resumed]
        for ss in targets:
            ss.resumed = False
            ss.resumable = False
            ss.sending = False
            ss.streaming_text = ""
            for request_id in list(ss.request_ids):
                self._answer_default(request_id)
        return commands + self._flash(f"Protocol disconnected: {event.error}")

    # -- Interactive PTY sessions --

    def _on_pty_spawn_requested(self, event: PtySpawnRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return []
        if ss.pty is not None:
            return self._flash(f"{ss.session.display_name} already has a terminal")
        return [cmd.spawn_pty(self.config.agent_cli, ss.session, event.message)]

    def _on_pty_started(self, event: PtyStarted) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or event.pty is None:
            return [cmd.close_pty(event.session_id, event.pty)] if event.pty else []
        if ss.pty is not None:
            return [cmd.close_pty(event.session_id, event.pty)]
        ss.pty = event.pty
        ss.resumed = True
        ss.resumable = True
        return self._rearm_pty(ss)

    def _append_transcript(self, ss: SessionState, text: str) -> None:
        if text:
            ss.transcript = (ss.transcript + text)[-TRANSCRIPT_LIMIT:]
            ss.last_seen = _now()

    def _on_pty_output(self, event: PtyOutput) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return []
        self._append_transcript(ss, event.text)
        return self._rearm_pty(ss)

    def _on_pty_prompt_detected(self, event: PtyPromptDetected) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None:
            return []
        self._append_transcript(ss, event.text)
        ss.approval = event.prompt
        commands = self._rearm_pty(ss)
        if ss.session_id != self.state.selected:
            ss.unread += 1
        return commands + self._flash(f"{ss.session.display_name} is waiting for approval")

    def _on_approval_selected(self, event: ApprovalSelected) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or ss.pty is None or ss.approval is None:
            return []
        if event.shortcut not in ss.approval.shortcuts:
            return self._flash(f"No option {event.shortcut!r}")
        ss.approval = None
        return [cmd.write_pty(ss.session_id, ss.pty, f"{event.shortcut}\n")]

    def _on_pty_input_requested(self, event: PtyInputRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or ss.pty is None:
            return []
        return [cmd.write_pty(ss.session_id, ss.pty, f"{event.text}\n")]

    def _on_pty_closed(self, event: PtyClosed) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or ss.pty is None:
            return []
        pty, ss.pty = ss.pty, None
        ss.approval = None
        ss.sending = False
        ss.resumed = False
        ss.resumable = False
        detail = event.error or f"exit code {event.exit_code}"
        return [cmd.close_pty(ss.session_id, pty)] + self._flash(
            f"{ss.session.display_name} terminal closed ({detail})"
        )

    # -- Housekeeping --

    def _on_status_message(self, event: StatusMessage) -> list[Command]:
        return self._flash(event.text)

    def _on_status_expired(self, event: StatusExpired) -> list[Command]:
        if event.generation == self.state.status_generation:
            self.state.status = ""
        return []

    def _on_export_requested(self, event: ExportRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        if ss is None or ss.conversation is None:
            return self._flash("Nothing to export")
        return [cmd.export_session(copy.deepcopy(ss.session), copy.deepcopy(ss.turns), self.config.export_dir)]

    def _on_rename_requested(self, event: RenameRequested) -> list[Command]:
        ss = self.state.sessions.get(event.session_id)
        name = event.name.strip()
        if ss is None or not name:
            return []
        ss.session.summary = name
        return [cmd.rename_session(self.repo, ss.session_id, name)]


async def build_scheduler(
    config: AppConfig,
    bus: EventBus,
    *,
    protocol: SessionProtocolAdapter | None = None,
    on_change: Callable[[DeckEvent], None] | None = None,
) -> Scheduler:
    """Start every event source that can start and wire them to a scheduler.

    A watcher or hook server that fails to start is left out; the
    scheduler then runs on the remaining sources and periodic rescans.
    """
    from agentdeck.adapters.hook_server import HookServer
    from agentdeck.adapters.protocol import SessionProtocolAdapter
    from agentdeck.adapters.watcher import DebouncedWatcher
    from agentdeck.shared.services.session_repo import SessionRepository

    watcher: DebouncedWatcher | None = DebouncedWatcher(
        config.state_path, debounce_seconds=config.debounce_seconds
    )
    try:
        watcher.start()
    except WatcherStartError as exc:
        logger.warning("Directory watcher unavailable, relying on rescans: %s", exc)
        watcher.close()
        watcher = None

    hook_server: HookServer | None = HookServer(config.socket_file, queue_size=config.hook_queue_size)
    try:
        await hook_server.start()
    except HookServerBindError as exc:
        logger.warning("Hook server unavailable: %s", exc)
        await hook_server.close()
        hook_server = None

    return Scheduler(
        config,
        bus,
        SessionRepository(config.state_path),
        watcher=watcher,
        hook_server=hook_server,
        protocol=protocol if protocol is not None else SessionProtocolAdapter(),
        on_change=on_change,
    )
