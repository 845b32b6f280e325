"""agentdeck TUI: Textual application hosting the scheduler."""

from __future__ import annotations

import logging

from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.widgets import Footer, Header, Input, OptionList

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    AbortRequested,
    ApprovalSelected,
    DeckEvent,
    ExportRequested,
    PermissionDecision,
    PermissionRequested,
    PtyInputRequested,
    PtySpawnRequested,
    RenameRequested,
    RequestAnswered,
    ResumeRequested,
    SendRequested,
    SessionSelected,
    StatusMessage,
)
from agentdeck.engine.config import AppConfig
from agentdeck.engine.scheduler import PendingRequest, Scheduler, build_scheduler
from agentdeck.tui.screens.prompts import ApprovalScreen, PermissionScreen, QuestionScreen
from agentdeck.tui.widgets.conversation import ConversationView
from agentdeck.tui.widgets.session_list import SessionList
from agentdeck.tui.widgets.status_bar import StatusBar

logger = logging.getLogger(__name__)

INPUT_PLACEHOLDER = "Message  (/resume  /terminal  /abort  /export  /rename NAME)"


class AgentDeckApp(App):
    """Dashboard for monitoring and driving agent sessions."""

    TITLE = "agentdeck"
    SUB_TITLE = "Agent Sessions"

    CSS = """
    #main {
        height: 1fr;
    }

    #detail {
        width: 1fr;
    }

    #message-input {
        dock: bottom;
    }
    """

    BINDINGS = [
        ("ctrl+q", "quit", "Quit"),
        ("ctrl+r", "resume", "Resume"),
        ("ctrl+t", "open_terminal", "Terminal"),
        ("ctrl+x", "abort", "Abort"),
        ("ctrl+e", "export", "Export"),
        ("ctrl+l", "focus_sessions", "Sessions"),
        ("escape", "cancel_or_blur", "Cancel"),
    ]

    def __init__(self, config: AppConfig, **kwargs) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.bus = EventBus()
        self.scheduler: Scheduler | None = None
        self._modal_key: str | None = None
        self._skipped_approval: int | None = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="main"):
            yield SessionList(id="session-list")
            with Vertical(id="detail"):
                yield ConversationView(id="conversation")
                yield Input(placeholder=INPUT_PLACEHOLDER, id="message-input")
        yield StatusBar(id="status-bar")
        yield Footer()

    async def on_mount(self) -> None:
        self.scheduler = await build_scheduler(self.config, self.bus, on_change=self._on_state_change)
        sources = ["logs"]
        if self.scheduler.watcher is not None:
            sources.append("watcher")
        if self.scheduler.hook_server is not None:
            sources.append("hooks")
        self.screen_stack[0].query_one(StatusBar).sources = "+".join(sources)
        self.run_worker(self.scheduler.run(), name="scheduler", exclusive=True)
        self._on_state_change(None)

    async def on_unmount(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown()

    # -- Posting messages to the scheduler --

    def post_event(self, event: DeckEvent) -> None:
        if not self.bus.post(event):
            logger.warning("Event bus full, dropped %s", event.event_type)

    @property
    def _selected(self) -> str | None:
        return self.scheduler.state.selected if self.scheduler is not None else None

    # -- Rendering --

    def _on_state_change(self, event: DeckEvent | None) -> None:
        """Re-render from scheduler state after every applied message."""
        if self.scheduler is None:
            return
        state = self.scheduler.state
        selected = state.selected_state
        # Widgets live on the base screen, which may be covered by a modal.
        try:
            base = self.screen_stack[0]
            session_list = base.query_one(SessionList)
            conversation = base.query_one(ConversationView)
            bar = base.query_one(StatusBar)
        except (IndexError, NoMatches):
            # Shutting down.
            return
        session_list.show(state.session_list(), state.selected)
        conversation.show(selected)
        bar.session_name = selected.session.display_name if selected else "No session"
        bar.phase = selected.phase.value if selected else "idle"
        bar.flash = state.status
        self._maybe_open_prompt()

    def _maybe_open_prompt(self) -> None:
        state = self.scheduler.state
        if self._modal_key is not None:
            kind, _, key = self._modal_key.partition(":")
            if kind == "request":
                stale = key not in state.requests
            else:
                ss = state.sessions.get(key)
                stale = ss is None or ss.approval is None
            if stale and isinstance(self.screen, (PermissionScreen, QuestionScreen, ApprovalScreen)):
                self._modal_key = None
                self.pop_screen()
            return

        request = state.next_request()
        if request is not None:
            self._open_request(request)
            return

        selected = state.selected_state
        if (
            selected is not None
            and selected.approval is not None
            and id(selected.approval) != self._skipped_approval
        ):
            prompt = selected.approval
            session_id = selected.session_id
            self._modal_key = f"approval:{session_id}"

            def _chosen(shortcut: str | None) -> None:
                self._modal_key = None
                if shortcut:
                    self.post_event(ApprovalSelected(session_id=session_id, shortcut=shortcut))
                else:
                    self._skipped_approval = id(prompt)

            self.push_screen(ApprovalScreen(session_id, selected.session.display_name, prompt), _chosen)

    def _open_request(self, request: PendingRequest) -> None:
        event = request.event
        request_id = event.reply.request_id
        ss = self.scheduler.state.sessions.get(request.session_id)
        name = ss.session.display_name if ss else request.session_id[:8]
        self._modal_key = f"request:{request_id}"

        def _answered(answer) -> None:
            if self._modal_key != f"request:{request_id}":
                return
            self._modal_key = None
            if isinstance(event, PermissionRequested):
                answer = PermissionDecision(allow=bool(answer), message="" if answer else "Denied by user")
            self.post_event(RequestAnswered(request_id=request_id, answer=answer))

        if isinstance(event, PermissionRequested):
            screen = PermissionScreen(request_id, name, event.tool_name, event.arguments)
        else:
            screen = QuestionScreen(request_id, name, event.question, event.choices, event.allow_freeform)
        self.push_screen(screen, _answered)

    # -- Input --

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        if event.option.id and event.option.id != self._selected:
            self._skipped_approval = None
            self.post_event(SessionSelected(session_id=event.option.id))
            self.query_one("#message-input", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "message-input":
            return
        text = event.value.strip()
        event.input.value = ""
        if not text:
            return
        session_id = self._selected
        if session_id is None:
            self.post_event(StatusMessage(text="Select a session first"))
            return
        if text.startswith("/"):
            self._handle_command(session_id, text)
            return
        ss = self.scheduler.state.sessions.get(session_id)
        if ss is not None and ss.pty is not None:
            self.post_event(PtyInputRequested(session_id=session_id, text=text))
        else:
            self.post_event(SendRequested(session_id=session_id, text=text))

    def _handle_command(self, session_id: str, text: str) -> None:
        command, _, arg = text[1:].partition(" ")
        command = command.lower()
        if command == "resume":
            self.post_event(ResumeRequested(session_id=session_id))
        elif command in ("terminal", "pty"):
            self.post_event(PtySpawnRequested(session_id=session_id, message=arg.strip()))
        elif command == "abort":
            self.post_event(AbortRequested(session_id=session_id))
        elif command == "export":
            self.post_event(ExportRequested(session_id=session_id))
        elif command == "rename":
            self.post_event(RenameRequested(session_id=session_id, name=arg))
        else:
            self.post_event(StatusMessage(text=f"Unknown command /{command}"))

    # -- Actions --

    def action_resume(self) -> None:
        if self._selected:
            self.post_event(ResumeRequested(session_id=self._selected))

    def action_open_terminal(self) -> None:
        if self._selected:
            self.post_event(PtySpawnRequested(session_id=self._selected))

    def action_abort(self) -> None:
        if self._selected:
            self.post_event(AbortRequested(session_id=self._selected))

    def action_export(self) -> None:
        if self._selected:
            self.post_event(ExportRequested(session_id=self._selected))

    def action_focus_sessions(self) -> None:
        self.query_one(SessionList).focus()

    def action_cancel_or_blur(self) -> None:
        self.screen.set_focus(None)
