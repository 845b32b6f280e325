"""Session discovery over the agent CLI's session-state directory.

Layout::

    <state_dir>/<session_id>/workspace.yaml
    <state_dir>/<session_id>/events.jsonl
"""
from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import yaml

from agentdeck.engine.errors import LogReadError
from agentdeck.shared.models.session import Session
from agentdeck.shared.services.record_reader import EVENTS_FILENAME

logger = logging.getLogger(__name__)

WORKSPACE_FILENAME = "workspace.yaml"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class SessionRepository:
    def __init__(self, state_dir: Path | str) -> None:
        self.state_dir = Path(state_dir).expanduser()

    def list(self) -> list[Session]:
        """Return every parseable session, most recently updated first."""
        try:
            entries = sorted(self.state_dir.iterdir())
        except OSError as exc:
            raise LogReadError(str(self.state_dir), str(exc)) from exc

        sessions: list[Session] = []
        for entry in entries:
            if not entry.is_dir():
                continue
            session = self._load(entry / WORKSPACE_FILENAME)
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda s: s.updated_at or _EPOCH, reverse=True)
        return sessions

    def get(self, session_id: str) -> Session | None:
        return self._load(self.state_dir / session_id / WORKSPACE_FILENAME)

    def events_path(self, session_id: str) -> Path:
        return self.state_dir / session_id / EVENTS_FILENAME

    def rename(self, session_id: str, name: str) -> None:
        """Replace the session summary, keeping every other workspace key."""
        path = self.state_dir / session_id / WORKSPACE_FILENAME
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise LogReadError(str(path), str(exc)) from exc
        if not isinstance(data, dict):
            raise LogReadError(str(path), "workspace is not a mapping")
        data["summary"] = name
        _atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
        logger.info("Renamed session %s to %r", session_id[:8], name)

    @staticmethod
    def _load(path: Path) -> Session | None:
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
            return Session.from_workspace(data if isinstance(data, dict) else {})
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.debug("Skipping unparseable workspace %s: %s", path, exc)
            return None


def _atomic_write_text(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise LogReadError(str(path), str(exc)) from exc
