"""Adapters package - event sources and the bus that feeds the scheduler.

Each adapter wraps one external source (the session-state directory, the
hook socket, an interactive PTY, the session protocol client) and turns
its activity into messages for the scheduler.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "DebouncedWatcher",
    "HookServer",
    "PtySession",
    "PromptParser",
    "SessionProtocolAdapter",
]

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.hook_server import HookServer
from agentdeck.adapters.prompt_parser import PromptParser
from agentdeck.adapters.protocol import SessionProtocolAdapter
from agentdeck.adapters.pty_proxy import PtySession
from agentdeck.adapters.watcher import DebouncedWatcher
