"""Status bar showing the selected session phase and the transient status flash."""

from __future__ import annotations

from rich.text import Text
from textual.reactive import reactive
from textual.widget import Widget


class StatusBar(Widget):
    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        dock: bottom;
        background: $surface-darken-1;
    }
    """

    session_name: reactive[str] = reactive("No session")
    phase: reactive[str] = reactive("idle")
    flash: reactive[str] = reactive("")
    sources: reactive[str] = reactive("")

    def render(self) -> Text:
        phase_colors = {
            "idle": "dim",
            "resumed": "green",
            "sending": "yellow",
            "pending-approval": "red bold",
        }
        bar = Text()
        bar.append(f" {self.session_name} ", style="bold")
        bar.append(" │ ", style="dim")
        bar.append(f"● {self.phase}", style=phase_colors.get(self.phase, "white"))
        if self.sources:
            bar.append(" │ ", style="dim")
            bar.append(self.sources, style="dim")
        if self.flash:
            bar.append(" │ ", style="dim")
            bar.append(self.flash, style="italic yellow")
        return bar
