"""Session list: one row per known session, with its phase and unread count."""

from __future__ import annotations

from rich.text import Text
from textual.widgets import OptionList
from textual.widgets.option_list import Option

from agentdeck.engine.scheduler import SessionPhase, SessionState

_PHASE_STYLES = {
    SessionPhase.IDLE: ("○", "dim"),
    SessionPhase.RESUMED: ("●", "green"),
    SessionPhase.SENDING: ("●", "yellow"),
    SessionPhase.PENDING_APPROVAL: ("!", "bold red"),
}


def session_label(ss: SessionState) -> Text:
    glyph, style = _PHASE_STYLES[ss.phase]
    label = Text(f"{glyph} ", style=style)
    label.append(ss.session.display_name, style="bold" if ss.unread else "")
    if ss.unread:
        label.append(f" ({ss.unread})", style="cyan")
    if not ss.resumable:
        label.append(" ✕", style="red")
    return label


class SessionList(OptionList):
    DEFAULT_CSS = """
    SessionList {
        width: 36;
        height: 1fr;
        border: round $primary-darken-2;
    }
    """

    def show(self, sessions: list[SessionState], selected: str | None) -> None:
        highlighted = self.highlighted
        self.clear_options()
        self.add_options(
            [Option(session_label(ss), id=ss.session_id) for ss in sessions]
        )
        ids = [ss.session_id for ss in sessions]
        if selected in ids:
            self.highlighted = ids.index(selected)
        elif highlighted is not None and highlighted < len(ids):
            self.highlighted = highlighted
