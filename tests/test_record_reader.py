from __future__ import annotations

import json
from pathlib import Path

from agentdeck.shared.models.message import RecordType
from agentdeck.shared.services.record_reader import IncrementalLogReader


def _line(record_type: str, **data) -> str:
    return json.dumps({
        "type": record_type,
        "data": data,
        "id": data.get("id", ""),
        "timestamp": "2025-01-02T03:04:05Z",
    }) + "\n"


def test_missing_file_yields_no_records(tmp_path: Path) -> None:
    reader = IncrementalLogReader(tmp_path / "nope" / "events.jsonl")
    assert reader.read_all() == []
    assert reader.read_new() == []
    assert reader.offset == 0


def test_read_new_twice_returns_nothing_second_time(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(_line("user.message", content="hi") + _line("user.message", content="again"))
    reader = IncrementalLogReader(path)

    first = reader.read_new()
    assert [r.data["content"] for r in first] == ["hi", "again"]
    assert reader.read_new() == []


def test_read_new_returns_only_appended_records(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(_line("user.message", content="one"))
    reader = IncrementalLogReader(path)
    reader.read_new()

    with open(path, "a") as f:
        f.write(_line("session.info", message="two"))

    records = reader.read_new()
    assert len(records) == 1
    assert records[0].type == RecordType.SESSION_INFO.value
    assert records[0].timestamp is not None


def test_read_all_ignores_prior_offset(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(_line("user.message", content="a") + _line("user.message", content="b"))
    reader = IncrementalLogReader(path)
    reader.read_new()

    assert len(reader.read_all()) == 2
    assert len(reader.read_all()) == 2


def test_malformed_lines_are_skipped_in_order(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(
        _line("user.message", content="first")
        + "{not json\n"
        + "\n"
        + json.dumps({"data": {"content": "no type"}}) + "\n"
        + _line("user.message", content="second")
        + _line("user.message", content="third")
    )
    reader = IncrementalLogReader(path)

    records = reader.read_all()
    assert [r.data["content"] for r in records] == ["first", "second", "third"]
    # The bad lines were consumed, not retried.
    assert reader.read_new() == []


def test_partial_trailing_line_is_picked_up_later(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    full = _line("user.message", content="complete")
    partial = _line("user.message", content="later")
    path.write_text(full + partial[:10])
    reader = IncrementalLogReader(path)

    assert [r.data["content"] for r in reader.read_new()] == ["complete"]

    with open(path, "a") as f:
        f.write(partial[10:])
    assert [r.data["content"] for r in reader.read_new()] == ["later"]


def test_large_record_is_not_truncated(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    big = "x" * (3 * 1024 * 1024)
    path.write_text(_line("user.message", content=big))

    records = IncrementalLogReader(path).read_all()
    assert len(records) == 1
    assert len(records[0].data["content"]) == len(big)


def test_truncated_file_is_reread_from_start(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(_line("user.message", content="a") * 3)
    reader = IncrementalLogReader(path)
    reader.read_new()

    path.write_text(_line("user.message", content="fresh"))
    assert [r.data["content"] for r in reader.read_new()] == ["fresh"]


def test_parent_id_is_kept(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(json.dumps({
        "type": "assistant.message",
        "data": {"content": "ok"},
        "id": "r2",
        "parentId": "r1",
    }) + "\n")

    (record,) = IncrementalLogReader(path).read_all()
    assert record.id == "r2"
    assert record.parent_id == "r1"
