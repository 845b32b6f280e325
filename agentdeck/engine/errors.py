"""Exception hierarchy for the event-ingestion core.

Components raise these at their API boundary. Commands issued by the
scheduler convert them into error messages, so none of them ever reach
the scheduler loop itself.
"""
from __future__ import annotations


class AgentDeckError(Exception):
    """Base exception for all agentdeck errors."""


class LogReadError(AgentDeckError):
    """A session log or the session-state directory could not be read."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read {path}: {reason}")


class SessionNotResumedError(AgentDeckError):
    """An operation needed a resumed protocol session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not resumed")


class ProtocolError(AgentDeckError):
    """The session protocol client failed a request."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Protocol error for session {session_id}: {reason}")


class PtySpawnError(AgentDeckError):
    """The agent CLI could not be started in a pseudo-terminal."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Cannot spawn {command!r}: {reason}")


class PtyClosedError(AgentDeckError):
    """Input was written to a pseudo-terminal session that is closed."""
    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        super().__init__(f"PTY session {session_id or '<raw>'} is closed")


class HookServerBindError(AgentDeckError):
    """The hook ingestion socket could not be bound."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot listen on {path}: {reason}")


class WatcherStartError(AgentDeckError):
    """The directory watcher could not be started."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot watch {path}: {reason}")


class ReplyAlreadySentError(AgentDeckError):
    """A second reply was written to a single-use request slot."""
    def __init__(self, request_kind: str):
        self.request_kind = request_kind
        super().__init__(f"{request_kind} request already answered")
