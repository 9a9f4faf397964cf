"""AgentSession 模块测试。

测试会话模型的状态转换：
- launch 拒绝与 command 产出
- 各消息对状态、横幅和回调的影响
- 输出历史上限
"""

from __future__ import annotations

from unittest import mock

import pytest

from juggle_supervisor.bridge import AgentBridge
from juggle_supervisor.config import Config
from juggle_supervisor.messages import (
    CancelRequested,
    Cancelled,
    CompletionResult,
    Finished,
    Iteration,
    LaunchRequested,
    Output,
    OutputClosed,
    ProcessStarted,
)
from juggle_supervisor.runtime.output import OutputRecord
from juggle_supervisor.session import AgentSession, OutputBuffer


@pytest.fixture
def bridge() -> AgentBridge:
    return AgentBridge(Config(listen_timeout=0.02))


@pytest.fixture
def session(bridge) -> AgentSession:
    return AgentSession(bridge, max_output_lines=5, max_iterations=7)


def started(session: AgentSession, session_id: str = "s1") -> mock.MagicMock:
    """launch 并投递 ProcessStarted，返回假 handle。"""
    session.launch(session_id)
    handle = mock.MagicMock()
    handle.session_id = session_id
    session.update(ProcessStarted(handle=handle, session_id=session_id))
    return handle


class TestOutputBuffer:
    """OutputBuffer 测试。"""

    def test_drops_oldest(self):
        buffer = OutputBuffer(3)
        for i in range(5):
            buffer.append(Output(line=str(i)))

        assert buffer.lines() == ["2", "3", "4"]
        assert len(buffer) == 3
        assert buffer.max_lines == 3

    def test_clear(self):
        buffer = OutputBuffer(3)
        buffer.append(Output(line="x"))
        buffer.clear()
        assert len(buffer) == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            OutputBuffer(0)


class TestLaunch:
    """launch 测试。"""

    def test_returns_launch_and_listen(self, session, bridge):
        commands = session.launch("s1")

        assert len(commands) == 2
        assert commands[0].func == bridge.launch
        assert commands[0].args[0] == "s1"
        assert session.running
        assert session.status.session_id == "s1"
        assert session.status.max_iterations == 7
        assert session.output.lines() == ["=== Starting agent for session: s1 ==="]

    def test_refused_while_running(self, session):
        session.launch("s1")
        before = session.output.lines()

        assert session.launch("s2") == []
        assert session.message == "Agent already running for: s1"
        assert session.status.session_id == "s1"
        assert session.output.lines() == before

    def test_refused_for_empty_session(self, session):
        assert session.launch("") == []
        assert not session.running

    def test_clears_previous_output(self, session):
        session.launch("s1")
        session.update(Finished(session_id="s1", complete=True))
        session.launch("s2")

        assert session.output.lines() == ["=== Starting agent for session: s2 ==="]

    def test_launch_requested_message(self, session):
        commands = session.update(LaunchRequested(session_id="s9"))

        assert len(commands) == 2
        assert session.status.session_id == "s9"


class TestUpdate:
    """消息处理测试。"""

    def test_process_started_issues_await_completion(self, session, bridge):
        session.launch("s1")
        handle = mock.MagicMock()

        commands = session.update(ProcessStarted(handle=handle, session_id="s1"))

        assert session.handle is handle
        assert len(commands) == 1
        assert commands[0].func == bridge.await_completion
        assert commands[0].args == (handle,)

    def test_output_appends_and_relistens(self, session):
        session.launch("s1")

        commands = session.update(Output(line="hello", is_error=False))

        assert session.output.lines()[-1] == "hello"
        assert len(commands) == 1

    def test_output_after_drain_does_not_relisten(self, session):
        session.launch("s1")
        session.update(OutputClosed(session_id="s1"))

        assert session.update(Output(line="late")) == []

    def test_iteration_updates_status(self, session):
        session.launch("s1")
        session.update(Iteration(session_id="s1", iteration=3, max_iterations=10))

        assert session.status.iteration == 3
        assert session.status.max_iterations == 10
        assert "Agent iteration 3/10" in session.activity

    @pytest.mark.parametrize(
        "msg, banner, result",
        [
            (Finished(session_id="s1", complete=True), "=== Agent completed ===", CompletionResult.COMPLETE),
            (
                Finished(session_id="s1", err=OSError("no such file")),
                "=== Agent Error: no such file ===",
                CompletionResult.ERROR,
            ),
            (
                Finished(session_id="s1", blocked=True, blocked_reason="needs input"),
                "=== Agent blocked: needs input ===",
                CompletionResult.BLOCKED,
            ),
            (
                Finished(session_id="s1"),
                "=== Agent finished (max iterations) ===",
                CompletionResult.MAX_ITERATIONS_REACHED,
            ),
            (Cancelled(session_id="s1"), "=== Agent cancelled by user ===", CompletionResult.CANCELLED),
        ],
    )
    def test_terminal_messages(self, session, msg, banner, result):
        settled = mock.MagicMock()
        session.on_settled = settled
        started(session)

        assert session.update(msg) == []

        assert not session.running
        assert session.handle is None
        assert session.output.lines()[-1] == banner
        assert session.last_result == result
        settled.assert_called_once_with("s1")

    def test_finished_keeps_channel_open_for_draining(self, session):
        started(session)
        session.update(Finished(session_id="s1", complete=True))

        assert not session.idle
        assert len(session.update(Output(line="trailing"))) == 1

    def test_cancelled_closes_channel(self, session):
        started(session)
        session.update(Cancelled(session_id="s1"))

        assert session.idle
        assert session.update(Output(line="late")) == []

    def test_idle_after_finished_and_drained(self, session):
        on_idle = mock.MagicMock()
        session.on_idle = on_idle
        started(session)

        session.update(Finished(session_id="s1", complete=True))
        on_idle.assert_not_called()

        session.update(OutputClosed(session_id="s1"))
        on_idle.assert_called_once_with("s1")

    def test_idle_when_drained_before_finished(self, session):
        on_idle = mock.MagicMock()
        session.on_idle = on_idle
        started(session)

        session.update(OutputClosed(session_id="s1"))
        on_idle.assert_not_called()

        session.update(Finished(session_id="s1", complete=True))
        on_idle.assert_called_once_with("s1")

    def test_callback_errors_are_contained(self, session):
        session.on_settled = mock.MagicMock(side_effect=RuntimeError("reload failed"))
        started(session)

        session.update(Finished(session_id="s1", complete=True))

        assert not session.running

    def test_on_output_sees_banners_and_lines(self, bridge):
        seen = []
        session = AgentSession(bridge, on_output=seen.append)
        session.launch("s1")
        session.update(Output(line="work", is_error=True))

        assert [(o.line, o.is_error) for o in seen] == [
            ("=== Starting agent for session: s1 ===", False),
            ("work", True),
        ]

    def test_history_cap(self, session):
        session.launch("s1")
        for i in range(10):
            session.update(Output(line=f"l{i}"))

        assert session.output.lines() == ["l5", "l6", "l7", "l8", "l9"]


class TestCancel:
    """cancel 测试。"""

    def test_nothing_running(self, session):
        assert session.cancel() == []
        assert session.message == "No agent running"

    def test_before_process_started_is_queued(self, session, bridge):
        session.launch("s1")
        assert session.update(CancelRequested()) == []
        assert session.message == "Cancelling agent..."

        handle = mock.MagicMock()
        commands = session.update(ProcessStarted(handle=handle, session_id="s1"))

        assert [c.func for c in commands] == [bridge.await_completion, bridge.cancel]
        assert commands[1].args == (handle,)

    def test_queued_cancel_dropped_when_launch_fails(self, session):
        session.launch("s1")
        session.cancel()
        session.update(Finished(session_id="s1", err=OSError("missing")))
        session.launch("s2")

        commands = session.update(ProcessStarted(handle=mock.MagicMock(), session_id="s2"))

        assert len(commands) == 1

    def test_returns_cancel_command(self, session, bridge):
        handle = started(session)

        commands = session.update(CancelRequested())

        assert len(commands) == 1
        assert commands[0].func == bridge.cancel
        assert commands[0].args == (handle,)
        # 终态由 await_completion 给出
        assert session.running


class TestListenCommand:
    """listen command 测试。"""

    @pytest.mark.asyncio
    async def test_delivers_output(self, session):
        commands = session.launch("s1")
        listen = commands[1]
        # 取出 launch 没用到的 sender，直接写入一条记录
        sender = commands[0].args[1]
        sender.send_nowait(OutputRecord(line="hi"))

        msg = await listen()

        assert isinstance(msg, Output)
        assert msg.line == "hi"
        sender.close()

    @pytest.mark.asyncio
    async def test_reports_drained_channel(self, session):
        commands = session.launch("s1")
        commands[0].args[1].close()

        msg = await commands[1]()

        assert msg == OutputClosed(session_id="s1")

    @pytest.mark.asyncio
    async def test_stale_channel_is_ignored(self, session):
        commands = session.launch("s1")
        session.update(Cancelled(session_id="s1"))
        commands[0].args[1].close()

        assert await commands[1]() is None

    @pytest.mark.asyncio
    async def test_close_cancels_running_handle(self, session):
        handle = started(session)
        session.bridge.cancel = mock.AsyncMock(return_value=None)

        await session.close()

        session.bridge.cancel.assert_awaited_once_with(handle)
        assert session._receiver is None
