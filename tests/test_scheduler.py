"""Tests for the scheduler state machine.

Most tests drive ``Scheduler.update`` directly and inspect the returned
commands by name; commands are only run where their effect matters.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    AbortRequested,
    ApprovalSelected,
    ExportRequested,
    FileChanged,
    HookEnvelope,
    HookReceived,
    LoadFailed,
    PermissionDecision,
    PermissionRequested,
    ProtocolDisconnected,
    ProtocolEvent,
    PtyClosed,
    PtyPromptDetected,
    PtyStarted,
    RecordsAppended,
    RecordsLoaded,
    RenameRequested,
    Reply,
    ReplyTimedOut,
    RequestAnswered,
    SendFailed,
    SendRequested,
    SessionSelected,
    SessionsLoaded,
    StatusExpired,
    StatusMessage,
    UserInputRequested,
)
from agentdeck.engine import commands as cmd
from agentdeck.engine.config import AppConfig
from agentdeck.engine.scheduler import PendingRequest, Scheduler, SessionPhase
from agentdeck.shared.models.message import Record
from agentdeck.shared.models.session import ApprovalOption, ApprovalPrompt, Session
from agentdeck.shared.services.reconciler import Conversation
from agentdeck.shared.services.session_repo import SessionRepository


class FakeProtocol:
    def __init__(self) -> None:
        self.closed = asyncio.Event()
        self.close_calls = 0

    async def next_event(self):
        await self.closed.wait()
        return None

    async def close(self) -> None:
        self.close_calls += 1
        self.closed.set()


class FakePty:
    def __init__(self) -> None:
        self.written: list[str] = []
        self.exit_code = None
        self.close_calls = 0

    def write(self, text: str) -> None:
        self.written.append(text)

    async def next_chunk(self):
        return None

    async def close(self) -> None:
        self.close_calls += 1


def _names(commands) -> list[str]:
    return [c.name for c in commands]


def _make(tmp_path: Path, **overrides) -> Scheduler:
    settings = dict(
        state_dir=str(tmp_path),
        export_dir=str(tmp_path / "exports"),
        status_flash_seconds=0.05,
    )
    settings.update(overrides)
    scheduler = Scheduler(
        AppConfig(**settings), EventBus(), SessionRepository(tmp_path), protocol=FakeProtocol()
    )
    scheduler.update(SessionsLoaded(sessions=[Session(id="a", cwd="/w/a"), Session(id="b", cwd="/w/b")]))
    return scheduler


def _permission(session_id: str = "a", tool: str = "bash") -> PermissionRequested:
    return PermissionRequested(session_id=session_id, tool_name=tool, arguments="{}", reply=Reply("permission"))


def _question(session_id: str = "a") -> UserInputRequested:
    return UserInputRequested(session_id=session_id, question="Which?", choices=["x", "y"], reply=Reply("user_input"))


def _hook(event: str, session_id: str = "a", **data) -> HookReceived:
    return HookReceived(envelope=HookEnvelope(event=event, session_id=session_id, data=data))


class TestSending:
    def test_at_most_one_send_in_flight_per_session(self, tmp_path):
        scheduler = _make(tmp_path)

        first = scheduler.update(SendRequested(session_id="a", text="one"))
        second = scheduler.update(SendRequested(session_id="a", text="two"))
        other = scheduler.update(SendRequested(session_id="b", text="three"))

        assert _names(first) == ["send_message"]
        assert second == []
        assert _names(other) == ["send_message"]
        assert scheduler.state.sessions["a"].phase == SessionPhase.SENDING

    def test_idle_clears_sending(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SendRequested(session_id="a", text="one"))

        scheduler.update(ProtocolEvent(session_id="a", kind="session_idle"))

        assert not scheduler.state.sessions["a"].sending
        assert _names(scheduler.update(SendRequested(session_id="a", text="two"))) == ["send_message"]

    def test_error_and_failure_clear_sending(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SendRequested(session_id="a", text="one"))
        scheduler.update(SendRequested(session_id="b", text="one"))

        scheduler.update(ProtocolEvent(session_id="a", kind="session_error", text="boom"))
        scheduler.update(SendFailed(session_id="b", error="not connected"))

        assert not scheduler.state.sessions["a"].sending
        assert not scheduler.state.sessions["b"].sending
        assert "not connected" in scheduler.state.status

    def test_blank_text_is_ignored(self, tmp_path):
        scheduler = _make(tmp_path)
        assert scheduler.update(SendRequested(session_id="a", text="   ")) == []

    def test_not_resumable_session_refuses_send(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(ProtocolDisconnected(session_id="a", error="gone"))

        commands = scheduler.update(SendRequested(session_id="a", text="hi"))

        assert "send_message" not in _names(commands)
        assert "not resumable" in scheduler.state.status

    def test_abort_only_for_sending_session(self, tmp_path):
        scheduler = _make(tmp_path)
        assert scheduler.update(AbortRequested(session_id="a")) == []
        scheduler.update(SendRequested(session_id="a", text="go"))
        assert _names(scheduler.update(AbortRequested(session_id="a"))) == ["abort_session"]

    def test_streaming_text_accumulates_until_message(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(ProtocolEvent(session_id="a", kind="message_delta", text="Hel"))
        scheduler.update(ProtocolEvent(session_id="a", kind="message_delta", text="lo"))
        assert scheduler.state.sessions["a"].streaming_text == "Hello"

        scheduler.update(ProtocolEvent(session_id="a", kind="assistant_message", text="Hello"))
        assert scheduler.state.sessions["a"].streaming_text == ""


class TestLogReads:
    def test_selection_clears_unread_and_loads(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(FileChanged(session_id="a"))
        scheduler.update(FileChanged(session_id="a"))
        assert scheduler.state.sessions["a"].unread == 2

        commands = scheduler.update(SessionSelected(session_id="a"))

        assert scheduler.state.selected == "a"
        assert scheduler.state.sessions["a"].unread == 0
        assert _names(commands) == ["load_records"]

    def test_file_change_for_selected_session_reads_new_records(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="a"))
        scheduler.update(RecordsLoaded(session_id="a", conversation=Conversation()))

        assert _names(scheduler.update(FileChanged(session_id="a"))) == ["read_new_records"]
        assert scheduler.state.sessions["a"].unread == 0

    def test_reads_are_serialized_per_session(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="a"))

        # A load is in flight, so these queue up as a single follow-up read.
        assert scheduler.update(FileChanged(session_id="a")) == []
        assert scheduler.update(FileChanged(session_id="a")) == []

        follow_up = scheduler.update(RecordsLoaded(session_id="a", conversation=Conversation()))
        assert _names(follow_up) == ["read_new_records"]
        assert scheduler.update(RecordsAppended(session_id="a", records=[])) == []

    def test_records_loaded_for_unselected_session_is_ignored(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="a"))
        scheduler.update(SessionSelected(session_id="b"))

        scheduler.update(RecordsLoaded(session_id="a", conversation=Conversation()))

        assert scheduler.state.sessions["a"].conversation is None

    def test_appended_records_fold_into_conversation(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="a"))
        scheduler.update(RecordsLoaded(session_id="a", conversation=Conversation()))

        scheduler.update(RecordsAppended(session_id="a", records=[
            Record(type="user.message", data={"content": "hi"}),
            Record(type="assistant.message", data={"content": "hello"}),
        ]))

        assert [t.content for t in scheduler.state.sessions["a"].turns] == ["hi", "hello"]

    @pytest.mark.asyncio
    async def test_load_command_reads_the_session_log(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "events.jsonl").write_text(
            json.dumps({"type": "user.message", "data": {"content": "hi"}}) + "\n"
        )
        scheduler = _make(tmp_path)
        (command,) = scheduler.update(SessionSelected(session_id="a"))

        loaded = await command.run()
        scheduler.update(loaded)

        assert [t.content for t in scheduler.state.sessions["a"].turns] == ["hi"]


class TestSessionList:
    def test_sessions_loaded_keeps_busy_and_drops_missing(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="b"))
        scheduler.update(SendRequested(session_id="a", text="busy"))

        scheduler.update(SessionsLoaded(sessions=[Session(id="c")]))

        assert scheduler.state.order == ["c", "a"]
        assert "b" not in scheduler.state.sessions
        assert scheduler.state.selected is None

    def test_rename_updates_summary_and_persists(self, tmp_path):
        scheduler = _make(tmp_path)
        commands = scheduler.update(RenameRequested(session_id="a", name="  Refactor  "))
        assert scheduler.state.sessions["a"].session.display_name == "Refactor"
        assert _names(commands) == ["rename_session"]


class TestRequests:
    def test_prompt_policy_waits_for_the_user(self, tmp_path):
        scheduler = _make(tmp_path)
        request = _permission()

        commands = scheduler.update(request)

        assert "reply_timeout" in _names(commands)
        assert not request.reply.done
        assert scheduler.state.sessions["a"].phase == SessionPhase.PENDING_APPROVAL
        assert [t.tool_name for t in scheduler.state.sessions["a"].pending_tools] == ["bash"]

        scheduler.update(RequestAnswered(request_id=request.reply.request_id, answer=PermissionDecision(allow=True)))
        # A late duplicate answer must not send a second reply.
        scheduler.update(RequestAnswered(request_id=request.reply.request_id, answer=PermissionDecision(allow=False)))

        assert request.reply.done
        assert request.reply._value == PermissionDecision(allow=True)
        assert scheduler.state.sessions["a"].pending_tools == []
        assert scheduler.state.requests == {}

    @pytest.mark.parametrize("policy,allowed", [("allow", True), ("deny", False)])
    def test_synchronous_policies_answer_immediately(self, tmp_path, policy, allowed):
        scheduler = _make(tmp_path, permission_policy=policy)
        permission = _permission()
        question = _question()

        scheduler.update(permission)
        scheduler.update(question)

        assert permission.reply.done
        assert permission.reply._value.allow is allowed
        assert question.reply.done
        assert question.reply._value == ""
        assert scheduler.state.requests == {}
        assert scheduler.state.sessions["a"].phase == SessionPhase.IDLE

    def test_timeout_answers_with_safe_default_once(self, tmp_path):
        scheduler = _make(tmp_path, permission_timeout_seconds=1.0)
        permission = _permission()
        question = _question()
        scheduler.update(permission)
        scheduler.update(question)

        scheduler.update(ReplyTimedOut(request_id=permission.reply.request_id))
        scheduler.update(ReplyTimedOut(request_id=question.reply.request_id))
        scheduler.update(ReplyTimedOut(request_id=question.reply.request_id))
        scheduler.update(RequestAnswered(request_id=question.reply.request_id, answer="late"))

        assert permission.reply._value.allow is False
        assert question.reply._value == ""

    def test_zero_timeout_disables_timer(self, tmp_path):
        scheduler = _make(tmp_path, permission_timeout_seconds=0)
        assert "reply_timeout" not in _names(scheduler.update(_permission()))

    def test_user_input_answer_is_text(self, tmp_path):
        scheduler = _make(tmp_path)
        question = _question()
        scheduler.update(question)

        scheduler.update(RequestAnswered(request_id=question.reply.request_id, answer="y"))

        assert question.reply._value == "y"

    def test_disconnect_answers_that_sessions_requests(self, tmp_path):
        scheduler = _make(tmp_path)
        on_a = _permission("a")
        on_b = _permission("b")
        scheduler.update(on_a)
        scheduler.update(on_b)

        scheduler.update(ProtocolDisconnected(session_id="a", error="stream ended"))

        assert on_a.reply.done and on_a.reply._value.allow is False
        assert not on_b.reply.done
        assert not scheduler.state.sessions["a"].resumable
        assert scheduler.state.sessions["b"].resumable

    @pytest.mark.asyncio
    async def test_shutdown_answers_every_outstanding_request(self, tmp_path):
        scheduler = _make(tmp_path)
        permission = _permission()
        question = _question("b")
        scheduler.update(permission)
        scheduler.update(question)

        await scheduler.shutdown()

        assert permission.reply.done and permission.reply._value.allow is False
        assert question.reply.done and question.reply._value == ""
        assert scheduler.protocol.close_calls == 1
        assert scheduler.bus.closed


class TestHooks:
    def test_pre_then_post_leaves_no_pending_tool(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(_hook("preToolUse", toolName="bash", toolArgs='{"command": "ls"}'))
        assert [t.tool_name for t in scheduler.state.sessions["a"].pending_tools] == ["bash"]

        scheduler.update(_hook("postToolUse", toolName="bash"))

        assert scheduler.state.sessions["a"].pending_tools == []

    def test_post_removes_oldest_matching_tool(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(_hook("preToolUse", toolName="bash", toolArgs="first"))
        scheduler.update(_hook("preToolUse", toolName="view", toolArgs="x"))
        scheduler.update(_hook("preToolUse", toolName="bash", toolArgs="second"))

        scheduler.update(_hook("postToolUse", toolName="bash"))

        remaining = [(t.tool_name, t.tool_args) for t in scheduler.state.sessions["a"].pending_tools]
        assert remaining == [("view", "x"), ("bash", "second")]

    def test_denied_tool_is_marked_then_dropped(self, tmp_path):
        scheduler = _make(tmp_path, denied_patterns=["rm -rf"])
        scheduler.update(_hook("preToolUse", toolName="bash", toolArgs="rm -rf /"))
        (tool,) = scheduler.state.sessions["a"].pending_tools
        assert tool.denied and "rm -rf" in tool.deny_reason

        scheduler.update(_hook("notification"))
        assert scheduler.state.sessions["a"].pending_tools == []

    def test_session_end_clears_pending(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(_hook("preToolUse", toolName="bash"))
        scheduler.update(_hook("preToolUse", toolName="edit"))
        scheduler.update(_hook("sessionEnd"))
        assert scheduler.state.sessions["a"].pending_tools == []

    def test_hook_activity_counts_unread_or_reads(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(_hook("postToolUse", toolName="bash"))
        assert scheduler.state.sessions["a"].unread == 1
        assert scheduler.state.sessions["a"].last_seen is not None

        scheduler.update(SessionSelected(session_id="b"))
        scheduler.update(RecordsLoaded(session_id="b", conversation=Conversation()))
        assert _names(scheduler.update(_hook("postToolUse", session_id="b"))) == ["read_new_records"]

    def test_hook_for_unknown_session_registers_it(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(HookReceived(envelope=HookEnvelope(event="sessionStart", session_id="zz", cwd="/w/zz")))
        assert scheduler.state.sessions["zz"].session.cwd == "/w/zz"
        assert "zz" in scheduler.state.order


class TestPty:
    def _prompt(self) -> ApprovalPrompt:
        return ApprovalPrompt(
            question="Do you want to proceed?",
            options=[ApprovalOption("Yes", "1", 0), ApprovalOption("No", "2", 1)],
        )

    @pytest.mark.asyncio
    async def test_prompt_selection_writes_shortcut(self, tmp_path):
        scheduler = _make(tmp_path)
        pty = FakePty()
        assert _names(scheduler.update(PtyStarted(session_id="a", pty=pty))) == ["next_pty_chunk"]

        scheduler.update(PtyPromptDetected(session_id="a", text="Do you want...", prompt=self._prompt()))
        state = scheduler.state.sessions["a"]
        assert state.phase == SessionPhase.PENDING_APPROVAL
        assert "Do you want" in state.transcript

        assert "write_pty" not in _names(scheduler.update(ApprovalSelected(session_id="a", shortcut="7")))
        (write,) = scheduler.update(ApprovalSelected(session_id="a", shortcut="1"))
        await write.run()

        assert pty.written == ["1\n"]
        assert state.approval is None

    @pytest.mark.asyncio
    async def test_pty_exit_marks_not_resumable(self, tmp_path):
        scheduler = _make(tmp_path)
        pty = FakePty()
        scheduler.update(PtyStarted(session_id="a", pty=pty))
        scheduler.update(SendRequested(session_id="a", text="x"))

        commands = scheduler.update(PtyClosed(session_id="a", exit_code=1))
        for command in commands:
            if command.name == "close_pty":
                await command.run()

        state = scheduler.state.sessions["a"]
        assert state.pty is None
        assert not state.resumable
        assert not state.sending
        assert pty.close_calls == 1
        assert scheduler.update(PtyClosed(session_id="a", exit_code=1)) == []


class TestStatus:
    def test_older_expiry_does_not_clear_newer_flash(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(StatusMessage(text="first"))
        scheduler.update(StatusMessage(text="second"))
        generation = scheduler.state.status_generation

        scheduler.update(StatusExpired(generation=generation - 1))
        assert scheduler.state.status == "second"

        scheduler.update(StatusExpired(generation=generation))
        assert scheduler.state.status == ""

    @pytest.mark.asyncio
    async def test_export_writes_markdown(self, tmp_path):
        scheduler = _make(tmp_path)
        assert "expire_status" in _names(scheduler.update(ExportRequested(session_id="a")))

        scheduler.update(SessionSelected(session_id="a"))
        conversation = Conversation()
        conversation.apply([Record(type="user.message", data={"content": "hello"})])
        scheduler.update(RecordsLoaded(session_id="a", conversation=conversation))

        (command,) = scheduler.update(ExportRequested(session_id="a"))
        result = await command.run()

        assert isinstance(result, StatusMessage)
        exported = tmp_path / "exports" / "agent-session-a.md"
        assert str(exported) in result.text
        assert "hello" in exported.read_text()


@pytest.mark.asyncio
async def test_run_loop_discovers_and_loads_sessions(tmp_path):
    session_dir = tmp_path / "s-1234567890"
    session_dir.mkdir()
    (session_dir / "workspace.yaml").write_text(
        "id: s-1234567890\ncwd: /w/project\nsummary: Demo\nupdated_at: 2025-01-01T00:00:00Z\n"
    )
    (session_dir / "events.jsonl").write_text(
        json.dumps({"type": "user.message", "data": {"content": "hi"}}) + "\n"
    )
    config = AppConfig(state_dir=str(tmp_path), rescan_interval_seconds=60)
    bus = EventBus()
    seen: list[str] = []
    scheduler = Scheduler(config, bus, SessionRepository(tmp_path), on_change=lambda e: seen.append(e.event_type))
    runner = asyncio.create_task(scheduler.run())

    async def _until(predicate) -> None:
        for _ in range(200):
            if predicate():
                return
            await asyncio.sleep(0.01)
        raise AssertionError("condition not reached")

    try:
        await _until(lambda: "s-1234567890" in scheduler.state.sessions)
        await bus.emit(SessionSelected(session_id="s-1234567890"))
        await _until(lambda: scheduler.state.sessions["s-1234567890"].turns)
        assert scheduler.state.sessions["s-1234567890"].session.display_name == "Demo"
        assert "sessions_loaded" in seen
    finally:
        await scheduler.shutdown()
        await asyncio.wait_for(runner, timeout=2)


class BrokenTransportProtocol(FakeProtocol):
    async def resume_session(self, session_id: str, cwd: str = "") -> None:
        return None

    async def send(self, session_id: str, text: str) -> str:
        raise RuntimeError("transport broke")


class CrashingPty(FakePty):
    async def next_chunk(self):
        raise RuntimeError("read loop died")


async def _next_message(scheduler: Scheduler):
    async for event in scheduler.bus.consume():
        return event


class TestCommandFailures:
    @pytest.mark.asyncio
    async def test_unexpected_send_error_clears_sending(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.protocol = BrokenTransportProtocol()
        (send,) = scheduler.update(SendRequested(session_id="a", text="one"))

        await scheduler._run_command(send)
        failure = await asyncio.wait_for(_next_message(scheduler), timeout=2)
        scheduler.update(failure)

        assert isinstance(failure, SendFailed)
        assert "transport broke" in failure.error
        assert not scheduler.state.sessions["a"].sending
        assert _names(scheduler.update(SendRequested(session_id="a", text="two"))) == ["send_message"]

    @pytest.mark.asyncio
    async def test_crashed_pty_read_reports_close(self, tmp_path):
        scheduler = _make(tmp_path)
        pty = CrashingPty()
        (read,) = scheduler.update(PtyStarted(session_id="a", pty=pty))

        await scheduler._run_command(read)
        closed = await asyncio.wait_for(_next_message(scheduler), timeout=2)

        assert isinstance(closed, PtyClosed)
        assert closed.error == "read loop died"
        scheduler.update(closed)
        assert scheduler.state.sessions["a"].pty is None
        assert not scheduler.state.sessions["a"].resumable

    @pytest.mark.asyncio
    async def test_command_without_error_message_emits_nothing(self, tmp_path):
        scheduler = _make(tmp_path)

        async def _boom():
            raise RuntimeError("no session to report to")

        await scheduler._run_command(cmd.Command("scratch", _boom))

        assert scheduler.bus.qsize() == 0


class TestFailedLoadRecovery:
    def test_appended_records_without_base_trigger_full_load(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="a"))
        scheduler.update(LoadFailed(session_id="a", error="permission denied"))
        assert _names(scheduler.update(FileChanged(session_id="a"))) == ["read_new_records"]

        follow_up = scheduler.update(RecordsAppended(session_id="a", records=[
            Record(type="user.message", data={"content": "hi"}),
        ]))

        assert _names(follow_up) == ["load_records"]
        assert scheduler.state.sessions["a"].conversation is None

    def test_unselected_session_does_not_reload(self, tmp_path):
        scheduler = _make(tmp_path)
        scheduler.update(SessionSelected(session_id="a"))
        scheduler.update(SessionSelected(session_id="b"))
        scheduler.update(RecordsLoaded(session_id="a", conversation=None))

        assert scheduler.update(RecordsAppended(session_id="a", records=[])) == []


def test_answering_request_without_reply_slot_is_a_no_op(tmp_path):
    scheduler = _make(tmp_path)
    orphan = PermissionRequested(session_id="a", tool_name="bash", arguments="{}")
    scheduler.state.requests["r1"] = PendingRequest(orphan, "a")
    scheduler.state.sessions["a"].request_ids.append("r1")

    scheduler.update(RequestAnswered(request_id="r1", answer=PermissionDecision(allow=True)))

    assert scheduler.state.requests == {}
    assert scheduler.state.sessions["a"].request_ids == []
