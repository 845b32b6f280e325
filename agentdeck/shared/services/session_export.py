"""Export a reconciled conversation to a Markdown file."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from agentdeck.shared.models.message import ConversationTurn, MessageRole, ToolCallStatus
from agentdeck.shared.models.session import Session

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 100

_STATUS_GLYPHS = {
    ToolCallStatus.PENDING: "⏳",
    ToolCallStatus.RUNNING: "⏳",
    ToolCallStatus.COMPLETE: "✓",
    ToolCallStatus.FAILED: "✗",
}


def export_filename(session: Session) -> str:
    return f"agent-session-{session.short_id}.md"


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else "unknown"


def _clock(value: datetime | None) -> str:
    return value.strftime("%H:%M:%S") if value else "--:--:--"


def _truncate(text: str, limit: int = SUMMARY_LIMIT) -> str:
    text = " ".join(text.split())
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def render_conversation(session: Session, turns: list[ConversationTurn]) -> str:
    lines = [
        f"# Agent Session: {session.display_name}",
        "",
        f"- **Session ID**: `{session.id}`",
        f"- **CWD**: `{session.cwd}`",
        f"- **Created**: {_iso(session.created_at)}",
        f"- **Updated**: {_iso(session.updated_at)}",
        "",
        "---",
        "",
    ]
    for turn in turns:
        ts = _clock(turn.timestamp)
        if turn.role == MessageRole.USER:
            lines += [f"### You ({ts})", "", turn.content, ""]
        elif turn.role == MessageRole.ASSISTANT:
            lines += [f"### Agent ({ts})", ""]
            if turn.content:
                lines += [turn.content, ""]
            for call in turn.tool_calls:
                entry = f"- **{call.name}** {_STATUS_GLYPHS.get(call.status, '?')}"
                if call.summary:
                    entry += f": `{_truncate(call.summary)}`"
                lines.append(entry)
            if turn.tool_calls:
                lines.append("")
        elif turn.role == MessageRole.SYSTEM:
            lines += [f"*{turn.content}* ({ts})", ""]
    return "\n".join(lines)


def export_conversation(
    session: Session,
    turns: list[ConversationTurn],
    export_dir: Path | str = ".",
) -> Path:
    """Write the conversation as Markdown and return the file path."""
    out_dir = Path(export_dir).expanduser()
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / export_filename(session)
    path.write_text(render_conversation(session, turns), encoding="utf-8")
    logger.info("Exported session %s to %s", session.short_id, path)
    return path
