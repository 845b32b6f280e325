"""Session metadata and the transient per-session records the core tracks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePath
from typing import Any

from agentdeck.shared.normalize import parse_timestamp


@dataclass
class Session:
    """An agent conversation bound to a working directory."""
    id: str
    cwd: str = ""
    summary: str = ""
    summary_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def display_name(self) -> str:
        if self.summary:
            return self.summary
        if self.cwd:
            return PurePath(self.cwd).name or self.cwd
        return self.short_id

    @classmethod
    def from_workspace(cls, data: dict[str, Any]) -> Session:
        """Build a session from a parsed workspace.yaml mapping."""
        session_id = data.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("workspace has no id")
        try:
            summary_count = int(data.get("summary_count") or 0)
        except (TypeError, ValueError):
            summary_count = 0
        return cls(
            id=session_id,
            cwd=str(data.get("cwd") or ""),
            summary=str(data.get("summary") or ""),
            summary_count=summary_count,
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class PendingTool:
    """A tool reported by the preToolUse hook that has not finished yet."""
    tool_name: str
    tool_args: str = ""
    denied: bool = False
    deny_reason: str = ""


@dataclass
class ApprovalOption:
    label: str
    shortcut: str
    index: int = 0


@dataclass
class ApprovalPrompt:
    """A multiple-choice approval prompt detected in terminal output."""
    question: str
    options: list[ApprovalOption] = field(default_factory=list)
    raw: str = ""

    @property
    def labels(self) -> list[str]:
        return [opt.label for opt in self.options]

    @property
    def shortcuts(self) -> list[str]:
        return [opt.shortcut for opt in self.options]
