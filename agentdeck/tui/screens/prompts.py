"""Modal dialogs for permission, user-input and terminal approval prompts."""

from __future__ import annotations

from rich.markup import escape
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Static

from agentdeck.shared.models.session import ApprovalPrompt

_DIALOG_CSS = """
#prompt-dialog {
    width: 80;
    height: auto;
    padding: 1 2;
    border: thick $warning;
    background: $surface;
}

#prompt-title {
    text-style: bold;
    color: $warning;
    margin-bottom: 1;
}

#prompt-details {
    color: $text-muted;
    margin-bottom: 1;
    max-height: 12;
}

#prompt-buttons {
    height: auto;
}

#prompt-buttons Button {
    margin-right: 1;
}
"""


class PermissionScreen(ModalScreen[bool]):
    """Ask the user to approve or deny a tool call. Dismisses with a bool."""

    DEFAULT_CSS = "PermissionScreen { align: center middle; }" + _DIALOG_CSS
    BINDINGS = [("y", "decide(True)", "Allow"), ("n", "decide(False)", "Deny")]

    def __init__(self, request_id: str, session_name: str, tool_name: str, arguments: str = "") -> None:
        super().__init__()
        self.request_id = request_id
        self.session_name = session_name
        self.tool_name = tool_name
        self.arguments = arguments

    def compose(self) -> ComposeResult:
        with Vertical(id="prompt-dialog"):
            yield Static("Permission Request", id="prompt-title")
            yield Static(
                f"[bold]{escape(self.session_name)}[/bold] wants to use "
                f"[cyan]{escape(self.tool_name)}[/cyan]"
            )
            if self.arguments:
                yield Static(escape(self.arguments[:500]), id="prompt-details")
            with Horizontal(id="prompt-buttons"):
                yield Button("Allow (y)", variant="success", id="btn-allow")
                yield Button("Deny (n)", variant="error", id="btn-deny")

    def action_decide(self, allow: bool) -> None:
        self.dismiss(allow)

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "btn-allow")


class QuestionScreen(ModalScreen[str]):
    """A question from the agent, answered by choice or free text."""

    DEFAULT_CSS = "QuestionScreen { align: center middle; }" + _DIALOG_CSS

    def __init__(
        self,
        request_id: str,
        session_name: str,
        question: str,
        choices: list[str] | None = None,
        allow_freeform: bool = True,
    ) -> None:
        super().__init__()
        self.request_id = request_id
        self.session_name = session_name
        self.question = question
        self.choices = list(choices or [])
        self.allow_freeform = allow_freeform

    def compose(self) -> ComposeResult:
        with Vertical(id="prompt-dialog"):
            yield Static(f"{escape(self.session_name)} asks", id="prompt-title")
            yield Static(escape(self.question or "(no question text)"), id="prompt-details")
            with Vertical(id="prompt-buttons"):
                for index, choice in enumerate(self.choices):
                    yield Button(choice, id=f"choice-{index}")
            if self.allow_freeform or not self.choices:
                yield Input(placeholder="Type an answer and press Enter", id="prompt-answer")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        index = int((event.button.id or "choice-0").removeprefix("choice-"))
        self.dismiss(self.choices[index])

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.dismiss(event.value)


class ApprovalScreen(ModalScreen[str]):
    """A multiple-choice prompt detected in a terminal session.

    Dismisses with the chosen option's shortcut, or an empty string when
    the user closes the dialog without answering.
    """

    DEFAULT_CSS = "ApprovalScreen { align: center middle; }" + _DIALOG_CSS
    BINDINGS = [("escape", "dismiss_prompt", "Later")]

    def __init__(self, session_id: str, session_name: str, prompt: ApprovalPrompt) -> None:
        super().__init__()
        self.session_id = session_id
        self.session_name = session_name
        self.prompt = prompt

    def compose(self) -> ComposeResult:
        with Vertical(id="prompt-dialog"):
            yield Static(f"{escape(self.session_name)} needs approval", id="prompt-title")
            yield Static(escape(self.prompt.question), id="prompt-details")
            with Vertical(id="prompt-buttons"):
                for option in self.prompt.options:
                    yield Button(f"{option.shortcut}. {option.label}", id=f"option-{option.shortcut}")

    def on_key(self, event) -> None:
        if event.character and event.character in self.prompt.shortcuts:
            event.stop()
            self.dismiss(event.character)

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss((event.button.id or "").removeprefix("option-"))

    def action_dismiss_prompt(self) -> None:
        self.dismiss("")
