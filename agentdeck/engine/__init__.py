"""agentdeck engine: configuration, errors and the scheduler core."""
from .config import AppConfig
from .errors import (
    AgentDeckError,
    HookServerBindError,
    LogReadError,
    ProtocolError,
    PtyClosedError,
    PtySpawnError,
    ReplyAlreadySentError,
    SessionNotResumedError,
    WatcherStartError,
)

__all__ = [
    "AppConfig",
    "AgentDeckError",
    "HookServerBindError",
    "LogReadError",
    "ProtocolError",
    "PtyClosedError",
    "PtySpawnError",
    "ReplyAlreadySentError",
    "SessionNotResumedError",
    "WatcherStartError",
]
