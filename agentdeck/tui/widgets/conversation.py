"""Conversation view: reconciled turns, live streaming text and PTY output."""

from __future__ import annotations

from rich.console import Group
from rich.text import Text
from textual.containers import VerticalScroll
from textual.widgets import Static

from agentdeck.engine.scheduler import SessionState
from agentdeck.shared.models.message import ConversationTurn, MessageRole, ToolCall, ToolCallStatus

TRANSCRIPT_TAIL = 4000
SUMMARY_WIDTH = 100

_ROLE_LABELS = {
    MessageRole.USER: ("You", "bold cyan"),
    MessageRole.ASSISTANT: ("Agent", "bold green"),
    MessageRole.SYSTEM: ("System", "dim italic"),
    MessageRole.TOOL: ("Tool", "magenta"),
}

_STATUS_GLYPHS = {
    ToolCallStatus.PENDING: ("⏳", "yellow"),
    ToolCallStatus.RUNNING: ("⏳", "yellow"),
    ToolCallStatus.COMPLETE: ("✓", "green"),
    ToolCallStatus.FAILED: ("✗", "red"),
}


def _one_line(text: str, width: int = SUMMARY_WIDTH) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def _tool_line(call: ToolCall) -> Text:
    glyph, style = _STATUS_GLYPHS.get(call.status, ("?", "white"))
    line = Text("  ")
    line.append(f"{glyph} ", style=style)
    line.append(call.name, style="bold")
    detail = call.command or call.file_path or call.question or ", ".join(call.files)
    if detail:
        line.append(f"  {_one_line(detail)}", style="dim")
    if call.summary:
        line.append(f"\n      {_one_line(call.summary)}", style="dim italic")
    return line


def render_turn(turn: ConversationTurn) -> list[Text]:
    label, style = _ROLE_LABELS.get(turn.role, ("?", "white"))
    header = Text(label, style=style)
    if turn.timestamp is not None:
        header.append(f"  {turn.timestamp:%H:%M:%S}", style="dim")
    parts = [header]
    if turn.content:
        parts.append(Text(turn.content))
    parts.extend(_tool_line(call) for call in turn.tool_calls)
    parts.append(Text(""))
    return parts


def render_session(ss: SessionState | None) -> Group:
    if ss is None:
        return Group(Text("Select a session.", style="dim"))
    parts: list[Text] = []
    if ss.conversation is None:
        parts.append(Text("Loading…", style="dim"))
    for turn in ss.turns:
        parts.extend(render_turn(turn))
    for tool in ss.pending_tools:
        line = Text("  … ", style="yellow")
        line.append(tool.tool_name, style="bold")
        if tool.denied:
            line.append(f"  denied: {tool.deny_reason}", style="red")
        parts.append(line)
    if ss.streaming_text:
        parts.append(Text(ss.streaming_text, style="italic"))
    if ss.transcript:
        parts.append(Text("── terminal ──", style="dim"))
        parts.append(Text(ss.transcript[-TRANSCRIPT_TAIL:]))
    return Group(*parts)


class ConversationView(VerticalScroll):
    """Scrollable view of the selected session."""

    DEFAULT_CSS = """
    ConversationView {
        height: 1fr;
        padding: 0 1;
    }
    """

    def compose(self):
        yield Static(render_session(None), id="conversation-body")

    def show(self, ss: SessionState | None) -> None:
        at_bottom = self.scroll_y >= self.max_scroll_y
        self.query_one("#conversation-body", Static).update(render_session(ss))
        if at_bottom:
            self.call_after_refresh(self.scroll_end, animate=False)
