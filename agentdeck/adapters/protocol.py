"""Bidirectional session-protocol adapter built on the Claude Agent SDK.

One ``ClaudeSDKClient`` is connected per resumed session. A pump task per
client translates SDK messages into ``ProtocolEvent`` messages, and the
``can_use_tool`` callback turns permission checks and ask-user tool calls
into ``PermissionRequested`` / ``UserInputRequested`` messages whose reply
slot blocks the agent until the scheduler answers. Everything is funneled
through the single ``events`` queue.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, ClaudeSDKError
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from agentdeck.adapters.event_bus import get_until_closed
from agentdeck.adapters.events import (
    DeckEvent,
    PermissionDecision,
    PermissionRequested,
    ProtocolDisconnected,
    ProtocolEvent,
    Reply,
    UserInputRequested,
)
from agentdeck.engine.errors import ProtocolError, SessionNotResumedError
from agentdeck.shared.formatters.tool_call import apply_tool_details, normalize_tool_name
from agentdeck.shared.models.message import ToolCall
from agentdeck.shared.normalize import coerce_text

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ClaudeAgentOptions], Any]

_ARGUMENT_LIMIT = 2000


@dataclass
class _ResumedSession:
    client: Any
    pump: asyncio.Task


def _default_client_factory(options: ClaudeAgentOptions) -> ClaudeSDKClient:
    return ClaudeSDKClient(options=options)


class SessionProtocolAdapter:
    """Tracks resumed sessions and forwards their events in arrival order."""

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        queue_size: int = 256,
    ) -> None:
        self._client_factory = client_factory or _default_client_factory
        self.events: asyncio.Queue[DeckEvent] = asyncio.Queue(maxsize=queue_size)
        self.closed = asyncio.Event()
        self._sessions: dict[str, _ResumedSession] = {}
        self._resuming: dict[str, asyncio.Task] = {}

    def is_resumed(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def resumed_sessions(self) -> list[str]:
        return list(self._sessions)

    async def resume_session(self, session_id: str, cwd: str = "") -> None:
        """Connect a client for *session_id*. Resuming twice is a no-op."""
        if self.closed.is_set():
            raise ProtocolError(session_id, "adapter closed")
        if session_id in self._sessions:
            return
        task = self._resuming.get(session_id)
        if task is None:
            task = asyncio.create_task(self._connect(session_id, cwd))
            self._resuming[session_id] = task
            task.add_done_callback(lambda _t: self._resuming.pop(session_id, None))
        await asyncio.shield(task)

    async def _connect(self, session_id: str, cwd: str) -> None:
        options = ClaudeAgentOptions(
            resume=session_id,
            cwd=cwd or None,
            include_partial_messages=True,
            can_use_tool=self._make_permission_handler(session_id),
        )
        client = self._client_factory(options)
        try:
            await client.connect()
        except Exception as exc:
            raise ProtocolError(session_id, str(exc)) from exc
        pump = asyncio.create_task(self._pump(session_id, client))
        self._sessions[session_id] = _ResumedSession(client=client, pump=pump)
        logger.info("Resumed session %s", session_id[:8])

    async def send(self, session_id: str, text: str) -> str:
        """Queue *text* for the agent and return an identifier for it.

        Completion arrives later as a ``session_idle`` event.
        """
        session = self._require(session_id)
        message_id = uuid.uuid4().hex
        try:
            await session.client.query(text)
        except Exception as exc:
            raise ProtocolError(session_id, str(exc)) from exc
        logger.info("Sent message %s to session %s", message_id[:8], session_id[:8])
        return message_id

    async def abort(self, session_id: str) -> None:
        session = self._require(session_id)
        try:
            await session.client.interrupt()
        except Exception as exc:
            raise ProtocolError(session_id, str(exc)) from exc

    async def next_event(self) -> DeckEvent | None:
        """Return the next protocol event, or None once closed."""
        return await get_until_closed(self.events, self.closed)

    async def close(self) -> None:
        """Disconnect every client. Safe to call twice or before any resume."""
        if self.closed.is_set():
            return
        self.closed.set()
        for task in list(self._resuming.values()):
            task.cancel()
        sessions, self._sessions = self._sessions, {}
        for session_id, session in sessions.items():
            session.pump.cancel()
            await asyncio.gather(session.pump, return_exceptions=True)
            try:
                await session.client.disconnect()
            except Exception as exc:
                logger.warning("Disconnect failed for %s: %s", session_id[:8], exc)

    def _require(self, session_id: str) -> _ResumedSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotResumedError(session_id)
        return session

    # -- Event translation --

    async def _pump(self, session_id: str, client: Any) -> None:
        error = "agent stream ended"
        try:
            async for message in client.receive_messages():
                for event in translate_message(session_id, message):
                    await self.events.put(event)
        except (ClaudeSDKError, OSError) as exc:
            error = str(exc)
            logger.warning("Protocol stream failed for %s: %s", session_id[:8], exc)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.exception("Protocol stream for %s crashed", session_id[:8])
        if self._sessions.pop(session_id, None) is not None:
            await self.events.put(ProtocolDisconnected(session_id=session_id, error=error))

    # -- Blocking request handlers --

    def _make_permission_handler(self, session_id: str):
        async def can_use_tool(tool_name: str, tool_input: dict, context: Any):
            if normalize_tool_name(tool_name) == "ask_user":
                return await self._ask_user(session_id, tool_name, tool_input)
            reply = Reply("permission")
            await self.events.put(PermissionRequested(
                session_id=session_id,
                tool_name=tool_name,
                arguments=_format_arguments(tool_input),
                reply=reply,
            ))
            decision = await reply.wait()
            if isinstance(decision, PermissionDecision) and decision.allow:
                return PermissionResultAllow()
            message = decision.message if isinstance(decision, PermissionDecision) else ""
            return PermissionResultDeny(message=message or "User denied tool call")

        return can_use_tool

    async def _ask_user(self, session_id: str, tool_name: str, tool_input: Any):
        call = apply_tool_details(ToolCall(id="", name=tool_name), tool_input)
        allow_freeform = True
        if isinstance(tool_input, dict) and "allow_freeform" in tool_input:
            allow_freeform = bool(tool_input["allow_freeform"])
        reply = Reply("user_input")
        await self.events.put(UserInputRequested(
            session_id=session_id,
            question=call.question,
            choices=list(call.choices),
            allow_freeform=allow_freeform,
            reply=reply,
        ))
        answer = await reply.wait()
        if not answer:
            return PermissionResultDeny(message="User did not answer the question.")
        return PermissionResultDeny(message=f"User responded: {answer}")


def _format_arguments(tool_input: Any) -> str:
    try:
        text = json.dumps(tool_input) if isinstance(tool_input, dict) else str(tool_input)
    except (TypeError, ValueError):
        text = str(tool_input)
    return text[:_ARGUMENT_LIMIT]


def translate_message(session_id: str, message: Any) -> list[ProtocolEvent]:
    """Map one SDK message onto zero or more protocol events."""
    events: list[ProtocolEvent] = []

    stream_event = getattr(message, "event", None)
    if isinstance(stream_event, dict):
        delta = stream_event.get("delta") or {}
        if stream_event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            events.append(ProtocolEvent(
                session_id=session_id, kind="message_delta", text=delta.get("text", ""),
            ))
        return events

    if hasattr(message, "result") and hasattr(message, "is_error"):
        if message.is_error:
            events.append(ProtocolEvent(
                session_id=session_id,
                kind="session_error",
                text=coerce_text(message.result or getattr(message, "subtype", "")),
                is_error=True,
            ))
        else:
            events.append(ProtocolEvent(session_id=session_id, kind="session_idle"))
        return events

    content = getattr(message, "content", None)
    if not isinstance(content, list):
        return events
    is_assistant = hasattr(message, "model")
    texts: list[str] = []
    for block in content:
        if hasattr(block, "tool_use_id"):
            events.append(ProtocolEvent(
                session_id=session_id,
                kind="tool_complete",
                tool_call_id=block.tool_use_id,
                text=coerce_text(getattr(block, "content", "") or ""),
                is_error=bool(getattr(block, "is_error", False)),
            ))
        elif hasattr(block, "name") and hasattr(block, "input"):
            events.append(ProtocolEvent(
                session_id=session_id,
                kind="tool_start",
                tool_name=block.name,
                tool_call_id=getattr(block, "id", ""),
            ))
        elif is_assistant and hasattr(block, "text"):
            texts.append(block.text)
    if texts:
        events.insert(0, ProtocolEvent(
            session_id=session_id, kind="assistant_message", text="".join(texts),
        ))
    return events
