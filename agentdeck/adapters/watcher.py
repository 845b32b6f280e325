"""Debounced filesystem watcher for the session-state directory.

Writes to ``<state_dir>/<id>/events.jsonl`` are coalesced: every affected
session identifier is collected, and once no further write arrives for
``debounce_seconds`` one ``FileChanged`` is emitted per identifier. A
session directory appearing or disappearing directly under the state
directory emits ``SessionDirChanged`` immediately.

watchdog delivers events on its observer thread; they are bridged into
the event loop with ``call_soon_threadsafe`` and all debounce state is
only touched on the loop.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from agentdeck.adapters.event_bus import get_until_closed
from agentdeck.adapters.events import DeckEvent, FileChanged, SessionDirChanged
from agentdeck.engine.errors import WatcherStartError
from agentdeck.shared.services.record_reader import EVENTS_FILENAME

logger = logging.getLogger(__name__)


class _SessionStateHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the loop."""

    def __init__(self, watcher: DebouncedWatcher, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._watcher = watcher
        self._loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            self._loop.call_soon_threadsafe(self._watcher.handle_fs_event, event)
        except RuntimeError:
            pass  # Loop closed


class DebouncedWatcher:
    def __init__(
        self,
        base_path: Path | str,
        debounce_seconds: float = 0.1,
        queue_size: int = 64,
    ) -> None:
        self.base_path = Path(base_path)
        self.debounce_seconds = debounce_seconds
        self.notifications: asyncio.Queue[DeckEvent] = asyncio.Queue(maxsize=queue_size)
        self.closed = asyncio.Event()
        self._observer: Observer | None = None
        self._handler: _SessionStateHandler | None = None
        self._watched: dict[str, ObservedWatch | None] = {}
        self._pending: dict[str, None] = {}
        self._timer: asyncio.TimerHandle | None = None
        self.dropped = 0

    @property
    def watched_sessions(self) -> list[str]:
        return list(self._watched)

    def start(self) -> None:
        """Start observing the state directory and every registered session."""
        if self._observer is not None:
            return
        loop = asyncio.get_running_loop()
        self._handler = _SessionStateHandler(self, loop)
        observer = Observer()
        observer.daemon = True
        try:
            observer.schedule(self._handler, str(self.base_path), recursive=False)
            observer.start()
        except OSError as exc:
            raise WatcherStartError(str(self.base_path), str(exc)) from exc
        self._observer = observer
        for session_id in list(self._watched):
            self._watched[session_id] = self._schedule(session_id)
        logger.info("Watching %s", self.base_path)

    def watch_session(self, session_id: str) -> bool:
        """Start observing one session's directory. Returns False on failure."""
        if session_id in self._watched and (
            self._observer is None or self._watched[session_id] is not None
        ):
            return True
        watch = self._schedule(session_id) if self._observer is not None else None
        self._watched[session_id] = watch
        return self._observer is None or watch is not None

    def unwatch_session(self, session_id: str) -> None:
        watch = self._watched.pop(session_id, None)
        self._pending.pop(session_id, None)
        if watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError):
                logger.debug("Watch for %s already gone", session_id)

    def _schedule(self, session_id: str) -> ObservedWatch | None:
        assert self._observer is not None and self._handler is not None
        path = self.base_path / session_id
        try:
            return self._observer.schedule(self._handler, str(path), recursive=False)
        except OSError as exc:
            logger.debug("Cannot watch %s: %s", path, exc)
            return None

    def handle_fs_event(self, event: FileSystemEvent) -> None:
        """Classify one filesystem event. Must run on the event loop."""
        if self.closed.is_set():
            return
        paths = [Path(str(event.src_path))]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(Path(str(dest)))

        if event.is_directory and event.event_type in ("created", "deleted", "moved"):
            if any(p.parent == self.base_path for p in paths):
                self._post(SessionDirChanged())
            return

        if event.event_type not in ("created", "modified", "moved"):
            return
        for path in paths:
            if path.name != EVENTS_FILENAME:
                continue
            session_id = path.parent.name
            if session_id not in self._watched:
                continue
            self._pending[session_id] = None
            self._rearm_timer()

    def _rearm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._flush)

    def _flush(self) -> None:
        self._timer = None
        pending, self._pending = self._pending, {}
        for session_id in pending:
            self._post(FileChanged(session_id=session_id))

    def _post(self, event: DeckEvent) -> None:
        try:
            self.notifications.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Watcher queue full, dropping %s", event.event_type)

    async def next_notification(self) -> DeckEvent | None:
        """Return the next notification, or None once closed."""
        return await get_until_closed(self.notifications, self.closed)

    def close(self) -> None:
        """Stop observing. Safe to call more than once, or before start()."""
        if self.closed.is_set():
            return
        self.closed.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        logger.info("Watcher stopped")
