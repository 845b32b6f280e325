"""Log record, conversation turn and tool call models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agentdeck.shared.normalize import parse_timestamp


class RecordType(str, Enum):
    """Record type tags written to a session's events.jsonl."""
    SESSION_START = "session.start"
    SESSION_INFO = "session.info"
    USER_MESSAGE = "user.message"
    ASSISTANT_MESSAGE = "assistant.message"
    ASSISTANT_TURN_START = "assistant.turn_start"
    ASSISTANT_TURN_END = "assistant.turn_end"
    TOOL_EXECUTION_START = "tool.execution_start"
    TOOL_EXECUTION_COMPLETE = "tool.execution_complete"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ToolCallStatus(str, Enum):
    """Tool call lifecycle. Transitions only move forward."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETE, ToolCallStatus.FAILED)


_STATUS_RANK = {
    ToolCallStatus.PENDING: 0,
    ToolCallStatus.RUNNING: 1,
    ToolCallStatus.COMPLETE: 2,
    ToolCallStatus.FAILED: 2,
}


@dataclass(frozen=True)
class Record:
    """One immutable line of a session's append-only event log."""
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    timestamp: datetime | None = None
    parent_id: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> Record:
        """Build a record from a decoded JSON line.

        Raises ValueError when the line is not a record object.
        """
        if not isinstance(raw, dict):
            raise ValueError("record must be a JSON object")
        record_type = raw.get("type")
        if not isinstance(record_type, str) or not record_type:
            raise ValueError("record has no type")
        data = raw.get("data")
        parent_id = raw.get("parentId")
        return cls(
            type=record_type,
            data=data if isinstance(data, dict) else {},
            id=str(raw.get("id") or ""),
            timestamp=parse_timestamp(raw.get("timestamp")),
            parent_id=parent_id if isinstance(parent_id, str) else None,
        )


@dataclass
class ToolCall:
    """A tool invocation shown in the conversation."""
    id: str
    name: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    summary: str = ""
    command: str = ""  # shell tools
    question: str = ""  # ask-user tools
    choices: list[str] = field(default_factory=list)
    file_path: str = ""  # edit/create tools
    patch: str = ""  # synthesized or embedded diff
    files: list[str] = field(default_factory=list)  # apply-patch tools

    def advance(self, status: ToolCallStatus) -> bool:
        """Move to *status* if that is a forward transition.

        Returns True when the status changed.
        """
        if self.status.is_terminal or status.rank <= self.status.rank:
            return False
        self.status = status
        return True


@dataclass
class ConversationTurn:
    """A display-ready unit of conversation."""
    role: MessageRole
    content: str = ""
    timestamp: datetime | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
