"""Fold raw log records into display-ready conversation turns.

Turns live in one indexable list. Tool calls are located through a
``tool_call_id -> (turn_index, tool_index)`` table, and every status update
goes through that indirection, so an update made after the fold is visible
at the tool call's original position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from agentdeck.shared.formatters.tool_call import apply_tool_details
from agentdeck.shared.models.message import (
    ConversationTurn,
    MessageRole,
    Record,
    RecordType,
    ToolCall,
    ToolCallStatus,
)
from agentdeck.shared.normalize import coerce_text

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    """Turns for one session plus the tool call location table."""

    turns: list[ConversationTurn] = field(default_factory=list)
    _locations: dict[str, tuple[int, int]] = field(default_factory=dict, repr=False)

    def apply(self, records: Iterable[Record]) -> int:
        """Fold *records* into the conversation in order.

        Returns the number of turns appended.
        """
        before = len(self.turns)
        for record in records:
            handler = _HANDLERS.get(record.type)
            if handler is not None:
                handler(self, record)
        return len(self.turns) - before

    def tool_call(self, tool_call_id: str) -> ToolCall | None:
        location = self._locations.get(tool_call_id)
        if location is None:
            return None
        turn_index, tool_index = location
        return self.turns[turn_index].tool_calls[tool_index]

    def update_tool_call(
        self,
        tool_call_id: str,
        status: ToolCallStatus,
        summary: str | None = None,
    ) -> bool:
        """Advance a tool call by identifier. Unknown identifiers are ignored."""
        call = self.tool_call(tool_call_id)
        if call is None:
            logger.debug("Ignoring update for unknown tool call %s", tool_call_id)
            return False
        changed = call.advance(status)
        if changed and summary is not None:
            call.summary = summary
        return changed

    def _append(self, turn: ConversationTurn, tool_ids: list[str] | None = None) -> None:
        turn_index = len(self.turns)
        self.turns.append(turn)
        for tool_index, tool_id in enumerate(tool_ids or []):
            if tool_id:
                self._locations[tool_id] = (turn_index, tool_index)


def reconcile(records: Iterable[Record]) -> list[ConversationTurn]:
    """Fold a full record sequence into conversation turns."""
    conversation = Conversation()
    conversation.apply(records)
    return conversation.turns


# -- Record handlers --


def _on_user_message(conv: Conversation, record: Record) -> None:
    data = record.data
    content = coerce_text(data.get("content") or data.get("transformedContent"))
    conv._append(
        ConversationTurn(role=MessageRole.USER, content=content, timestamp=record.timestamp)
    )


def _on_assistant_message(conv: Conversation, record: Record) -> None:
    data = record.data
    content = coerce_text(data.get("content"))
    requests = data.get("toolRequests")
    tool_calls: list[ToolCall] = []
    tool_ids: list[str] = []
    for request in requests if isinstance(requests, list) else []:
        if not isinstance(request, dict):
            continue
        call = ToolCall(
            id=str(request.get("toolCallId") or ""),
            name=str(request.get("name") or "tool"),
        )
        apply_tool_details(call, request.get("arguments"))
        tool_calls.append(call)
        tool_ids.append(call.id)
    if not content and not tool_calls:
        return
    conv._append(
        ConversationTurn(
            role=MessageRole.ASSISTANT,
            content=content,
            timestamp=record.timestamp,
            tool_calls=tool_calls,
        ),
        tool_ids,
    )


def _on_tool_start(conv: Conversation, record: Record) -> None:
    tool_call_id = record.data.get("toolCallId")
    if isinstance(tool_call_id, str):
        conv.update_tool_call(tool_call_id, ToolCallStatus.RUNNING)


def _on_tool_complete(conv: Conversation, record: Record) -> None:
    data = record.data
    tool_call_id = data.get("toolCallId")
    if not isinstance(tool_call_id, str):
        return
    success = bool(data.get("success"))
    summary = _result_summary(data)
    if not success and not summary:
        summary = "Tool execution failed"
    conv.update_tool_call(
        tool_call_id,
        ToolCallStatus.COMPLETE if success else ToolCallStatus.FAILED,
        summary,
    )


def _on_session_info(conv: Conversation, record: Record) -> None:
    message = record.data.get("message")
    if not isinstance(message, str) or not message.strip():
        return
    conv._append(
        ConversationTurn(role=MessageRole.SYSTEM, content=message, timestamp=record.timestamp)
    )


def _result_summary(data: dict[str, Any]) -> str:
    result = data.get("result")
    if isinstance(result, dict):
        text = result.get("content") or result.get("detailedContent")
        if text:
            return coerce_text(text)
    elif isinstance(result, str) and result:
        return result
    error = data.get("error")
    if isinstance(error, dict):
        return coerce_text(error.get("message") or "")
    return coerce_text(error) if error else ""


_HANDLERS = {
    RecordType.USER_MESSAGE.value: _on_user_message,
    RecordType.ASSISTANT_MESSAGE.value: _on_assistant_message,
    RecordType.TOOL_EXECUTION_START.value: _on_tool_start,
    RecordType.TOOL_EXECUTION_COMPLETE.value: _on_tool_complete,
    RecordType.SESSION_INFO.value: _on_session_info,
}
