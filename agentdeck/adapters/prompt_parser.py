"""Approval-prompt detection over streamed terminal output.

The agent CLI renders tool approvals as free-form text, e.g.::

    Do you want to run this command?
    ❯ 1. Yes
      2. No, and tell the agent what to do differently
    Confirm with number keys or Enter

Output arrives in arbitrary read-sized pieces, so ``PromptParser`` keeps a
bounded rolling buffer of cleaned text and only reports a prompt once
non-whitespace text follows the last numbered option.
"""
from __future__ import annotations

import codecs
import re
from dataclasses import dataclass

from agentdeck.shared.models.session import ApprovalOption, ApprovalPrompt

BUFFER_LIMIT = 2048
BUFFER_KEEP = 1024
_CARRY_LIMIT = 256

_ANSI_RE = re.compile(
    r"\x1b"
    r"(?:"
    r"\[[0-?]*[ -/]*[@-~]"  # CSI, including private markers and ~ finals
    r"|"
    r"\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC, BEL or ST terminated
    r"|"
    r"[()#][0-9A-Za-z]"  # charset select, e.g. sgr0's ESC ( B
    r"|"
    r"[=>]"
    r")"
)
# An escape sequence cut off at the end of a read.
_INCOMPLETE_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?|[()#])?\Z")

_QUESTION_RE = re.compile(
    r"((?:do you want|allow|approve|confirm|proceed|permission|accept|execute|apply|run this)\b.*)$",
    re.IGNORECASE | re.MULTILINE,
)
_OPTION_RE = re.compile(r"^\s*[❯►>]?\s*(\d+)\.\s+(.+)$", re.MULTILINE)


def strip_ansi(text: str) -> str:
    """Remove CSI, OSC, charset-select and keypad-mode escapes from *text*."""
    return _ANSI_RE.sub("", text)


def detect_approval_prompt(cleaned: str) -> ApprovalPrompt | None:
    """Return the approval prompt in *cleaned*, or None if absent or incomplete.

    A prompt needs a question line and at least two numbered options, and
    is only complete once non-whitespace text follows the last option.
    """
    question = _QUESTION_RE.search(cleaned)
    if question is None:
        return None
    options = list(_OPTION_RE.finditer(cleaned))
    if len(options) < 2:
        return None
    if not cleaned[options[-1].end():].strip():
        return None
    return ApprovalPrompt(
        question=question.group(1).strip(),
        options=[
            ApprovalOption(label=m.group(2).strip(), shortcut=m.group(1), index=i)
            for i, m in enumerate(options)
        ],
        raw=cleaned,
    )


@dataclass
class OutputChunk:
    """One read from the terminal after cleaning."""
    raw: bytes
    cleaned: str
    prompt: ApprovalPrompt | None = None

    @property
    def is_prompt(self) -> bool:
        return self.prompt is not None


class PromptParser:
    """Stateful, chunk-incremental prompt detector."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""
        self._buffer = ""

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, raw: bytes) -> OutputChunk:
        text = self._carry + self._decoder.decode(raw)
        tail = _INCOMPLETE_ESCAPE_RE.search(text)
        if tail is not None and len(text) - tail.start() <= _CARRY_LIMIT:
            self._carry = text[tail.start():]
            text = text[:tail.start()]
        else:
            self._carry = ""
        cleaned = strip_ansi(text)

        self._buffer += cleaned
        if len(self._buffer) > BUFFER_LIMIT:
            self._buffer = self._buffer[-BUFFER_KEEP:]

        chunk = OutputChunk(raw=raw, cleaned=cleaned)
        prompt = detect_approval_prompt(self._buffer)
        if prompt is not None:
            chunk.prompt = prompt
            self._buffer = ""
        return chunk

    def reset(self) -> None:
        self._buffer = ""
        self._carry = ""
        self._decoder.reset()
