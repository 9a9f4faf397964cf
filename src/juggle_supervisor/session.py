"""Agent 会话模型。

展示层对单个 agent 槽位的状态：运行状态、进程 handle、输出历史和活动日志。
只由展示循环（Program.run）调用，不需要加锁。

同一时刻最多一个运行中的 worker：launch() 在运行期间拒绝新的请求。
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterator
from functools import partial
from typing import Any

from .bridge import AgentBridge
from .messages import (
    DEFAULT_MAX_ITERATIONS,
    AgentStatus,
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
from .program import Command
from .runtime.output import OutputReceiver
from .runtime.process import ProcessHandle

__all__ = ["AgentSession", "OutputBuffer", "DEFAULT_OUTPUT_HISTORY"]

logger = logging.getLogger(__name__)

# 展示层保留的输出行数
DEFAULT_OUTPUT_HISTORY = 500
# 活动日志保留条数
MAX_ACTIVITY = 100


class OutputBuffer:
    """定长输出历史，超出上限时丢弃最旧的行。"""

    def __init__(self, max_lines: int = DEFAULT_OUTPUT_HISTORY) -> None:
        if max_lines < 1:
            raise ValueError(f"max_lines must be >= 1, got {max_lines}")
        self._lines: deque[Output] = deque(maxlen=max_lines)

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: Output) -> None:
        self._lines.append(line)

    def clear(self) -> None:
        self._lines.clear()

    def lines(self) -> list[str]:
        return [o.line for o in self._lines]

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[Output]:
        return iter(self._lines)


class AgentSession:
    """单个 agent 槽位的展示层状态。

    update() 接收消息并返回需要调度的 command 列表，交给 Program 执行。

    Attributes:
        status: 运行状态
        handle: 运行中的进程 handle（未运行时为 None）
        message: 状态栏文本
        activity: 活动日志
        output: 输出历史
        last_result: 最近一次运行的终态
    """

    def __init__(
        self,
        bridge: AgentBridge,
        *,
        max_output_lines: int = DEFAULT_OUTPUT_HISTORY,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        on_settled: Callable[[str], Any] | None = None,
        on_output: Callable[[Output], Any] | None = None,
        on_idle: Callable[[str], Any] | None = None,
    ) -> None:
        """初始化会话。

        Args:
            bridge: 事件循环桥接器
            max_output_lines: 输出历史上限
            max_iterations: 状态栏默认最大迭代次数
            on_settled: 运行进入终态后回调（参数为 session_id），
                上层据此重新加载记录
            on_output: 每追加一行输出时回调
            on_idle: 进入终态且输出通道耗尽后回调（参数为 session_id）
        """
        self.bridge = bridge
        self.max_iterations = max_iterations
        self.on_settled = on_settled
        self.on_output = on_output
        self.on_idle = on_idle

        self.status = AgentStatus(max_iterations=max_iterations)
        self.handle: ProcessHandle | None = None
        self.message = ""
        self.activity: deque[str] = deque(maxlen=MAX_ACTIVITY)
        self.output = OutputBuffer(max_output_lines)
        self.last_result: CompletionResult | None = None
        self._receiver: OutputReceiver | None = None
        # 进程尚未启动时收到的取消请求，等 ProcessStarted 再执行
        self._cancel_pending = False

    @property
    def running(self) -> bool:
        return self.status.running

    @property
    def idle(self) -> bool:
        """没有运行中的 worker，且输出通道已耗尽或已关闭。"""
        return not self.status.running and self._receiver is None

    # ------------------------------------------------------------------
    # 用户操作
    # ------------------------------------------------------------------

    def launch(self, session_id: str) -> list[Command]:
        """为 session_id 启动 agent。

        Returns:
            需要调度的 command（launch 与 listen）；被拒绝时返回空列表
        """
        if self.status.running:
            self.message = f"Agent already running for: {self.status.session_id}"
            self._add_activity(self.message)
            return []
        if not session_id:
            self.message = "No session selected"
            return []

        self.output.clear()
        self.last_result = None
        self._cancel_pending = False
        # 上一次运行的通道可能还没排空
        self._close_receiver()
        sender, receiver = self.bridge.open_channel()
        self._receiver = receiver

        self.status = AgentStatus(
            running=True,
            session_id=session_id,
            iteration=0,
            max_iterations=self.max_iterations,
        )
        self.message = "Starting agent..."
        self._add_activity(f"Agent started for session: {session_id}")
        self._add_output(f"=== Starting agent for session: {session_id} ===")

        return [
            partial(self.bridge.launch, session_id, sender),
            self._listen_command(),
        ]

    def cancel(self) -> list[Command]:
        """取消运行中的 agent。

        终态 Cancelled 消息由 await_completion 给出，cancel 本身不产生消息。
        进程还在启动中时请求会被挂起，收到 ProcessStarted 后再发出。
        """
        if not self.status.running:
            self.message = "No agent running"
            return []
        if self.handle is None:
            self._cancel_pending = True
            self.message = "Cancelling agent..."
            self._add_activity(f"Cancel queued until agent starts: {self.status.session_id}")
            return []

        self.message = "Cancelling agent..."
        self._add_activity(f"Cancelling agent for session: {self.status.session_id}")
        return [partial(self.bridge.cancel, self.handle)]

    async def close(self) -> None:
        """退出前清理：取消仍在运行的 worker 并关闭输出通道。"""
        if self.handle is not None and self.status.running:
            await self.bridge.cancel(self.handle)
        self._close_receiver()

    # ------------------------------------------------------------------
    # 消息处理
    # ------------------------------------------------------------------

    def update(self, msg: Any) -> list[Command]:
        """处理一条消息，返回后续 command。"""
        if isinstance(msg, Output):
            return self._on_output(msg)
        if isinstance(msg, OutputClosed):
            return self._on_output_closed(msg)
        if isinstance(msg, ProcessStarted):
            return self._on_started(msg)
        if isinstance(msg, Finished):
            return self._on_finished(msg)
        if isinstance(msg, Cancelled):
            return self._on_cancelled(msg)
        if isinstance(msg, Iteration):
            self.status.iteration = msg.iteration
            self.status.max_iterations = msg.max_iterations
            self._add_activity(f"Agent iteration {msg.iteration}/{msg.max_iterations}")
            return []
        if isinstance(msg, LaunchRequested):
            return self.launch(msg.session_id)
        if isinstance(msg, CancelRequested):
            return self.cancel()

        logger.debug(f"Ignoring message {type(msg).__name__}")
        return []

    def _on_output(self, msg: Output) -> list[Command]:
        self._add_output(msg.line, msg.is_error, timestamp=msg.timestamp)
        # 通道未耗尽就继续 listen（终态之后仍要排空缓冲）
        if self._receiver is not None:
            return [self._listen_command()]
        return []

    def _on_started(self, msg: ProcessStarted) -> list[Command]:
        self.handle = msg.handle
        self.message = "Agent running... (Ctrl+C to cancel)"
        self._add_activity(f"Agent process started for session: {msg.session_id}")
        commands = [partial(self.bridge.await_completion, msg.handle)]
        if self._cancel_pending:
            self._cancel_pending = False
            commands.extend(self.cancel())
        return commands

    def _on_finished(self, msg: Finished) -> list[Command]:
        self.status.running = False
        self.handle = None
        self._cancel_pending = False
        self.last_result = msg.result

        if msg.err is not None:
            self.message = f"Agent error: {msg.err}"
            self._add_activity(self.message)
            self._add_output(f"=== Agent Error: {msg.err} ===", is_error=True)
            # 启动失败时 listen 会在通道耗尽后自行结束
        elif msg.complete:
            self.message = "Agent complete!"
            self._add_activity(f"Agent completed: {msg.session_id}")
            self._add_output("=== Agent completed ===")
        elif msg.blocked:
            self.message = f"Agent blocked: {msg.blocked_reason}"
            self._add_activity(self.message)
            self._add_output(f"=== Agent blocked: {msg.blocked_reason} ===", is_error=True)
        else:
            self.message = "Agent finished (max iterations)"
            self._add_activity("Agent finished: max iterations reached")
            self._add_output("=== Agent finished (max iterations) ===")

        session_id = msg.session_id or self.status.session_id
        self._settled(session_id)
        self._check_idle(session_id)
        return []

    def _on_cancelled(self, msg: Cancelled) -> list[Command]:
        self.status.running = False
        self.handle = None
        self._cancel_pending = False
        self.last_result = msg.result
        self._close_receiver()

        self.message = "Agent cancelled"
        self._add_activity(f"Agent cancelled for session: {msg.session_id}")
        self._add_output("=== Agent cancelled by user ===", is_error=True)

        self._settled(msg.session_id)
        self._check_idle(msg.session_id)
        return []

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _listen_command(self) -> Command:
        return partial(self._listen, self._receiver, self.status.session_id)

    async def _listen(
        self, receiver: OutputReceiver | None, session_id: str
    ) -> Output | OutputClosed | None:
        msg = await self.bridge.listen_until_output(receiver)
        if receiver is not self._receiver:
            # 通道已被替换或关闭，丢弃旧通道的结果
            return None
        if msg is None:
            return OutputClosed(session_id=session_id)
        return msg

    def _on_output_closed(self, msg: OutputClosed) -> list[Command]:
        self._receiver = None
        logger.debug(f"Output channel drained for session {msg.session_id}")
        self._check_idle(msg.session_id)
        return []

    def _check_idle(self, session_id: str) -> None:
        if self.on_idle is None or not self.idle:
            return
        try:
            self.on_idle(session_id)
        except Exception as e:
            logger.warning(f"on_idle callback failed: {e}")

    def _close_receiver(self) -> None:
        if self._receiver is not None:
            self._receiver.close()
            self._receiver = None

    def _settled(self, session_id: str) -> None:
        if self.on_settled is None:
            return
        try:
            self.on_settled(session_id)
        except Exception as e:
            logger.warning(f"on_settled callback failed: {e}")

    def _add_activity(self, entry: str) -> None:
        self.activity.append(entry)
        logger.debug(f"[activity] {entry}")

    def _add_output(self, line: str, is_error: bool = False, **kwargs: Any) -> None:
        record = Output(line=line, is_error=is_error, **kwargs)
        self.output.append(record)
        if self.on_output is not None:
            self.on_output(record)
