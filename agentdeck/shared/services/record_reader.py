"""Incremental reader for a session's append-only events.jsonl.

The reader remembers the byte offset reached by its last successful read,
so repeated ``read_new()`` calls only return records appended since then.
A missing file yields no records. Malformed lines are skipped one at a
time without disturbing the offset.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from agentdeck.engine.errors import LogReadError
from agentdeck.shared.models.message import Record

logger = logging.getLogger(__name__)

EVENTS_FILENAME = "events.jsonl"


class IncrementalLogReader:
    """Offset-tracking reader for one log file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._offset = 0

    @property
    def offset(self) -> int:
        return self._offset

    def read_all(self) -> list[Record]:
        """Reset the offset and return every well-formed record in the file."""
        self._offset = 0
        return self.read_new()

    def read_new(self) -> list[Record]:
        """Return records appended since the last successful read."""
        try:
            handle = self.path.open("rb")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise LogReadError(str(self.path), str(exc)) from exc

        records: list[Record] = []
        skipped = 0
        with handle:
            try:
                size = handle.seek(0, 2)
                if size < self._offset:
                    # Truncated or replaced; start over.
                    logger.info(
                        "Log %s shrank (%d < %d), rereading from start",
                        self.path, size, self._offset,
                    )
                    self._offset = 0
                handle.seek(self._offset)
                consumed = self._offset
                for line in handle:
                    record = self._parse_line(line)
                    if not line.endswith(b"\n") and record is None:
                        # Writer is mid-line; pick it up on the next read.
                        break
                    consumed += len(line)
                    if record is None:
                        if line.strip():
                            skipped += 1
                        continue
                    records.append(record)
            except OSError as exc:
                raise LogReadError(str(self.path), str(exc)) from exc

        self._offset = consumed
        if skipped:
            logger.debug("Skipped %d malformed line(s) in %s", skipped, self.path)
        return records

    @staticmethod
    def _parse_line(line: bytes) -> Record | None:
        stripped = line.strip()
        if not stripped:
            return None
        try:
            return Record.from_dict(json.loads(stripped))
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
            return None
