"""展示循环消费的消息类型定义。

后台任务完成后只通过这些消息把结果交回单线程的展示循环，
不会直接修改展示层状态。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .runtime.output import OutputRecord
    from .runtime.process import ProcessHandle

__all__ = [
    "AgentStatus",
    "CancelRequested",
    "Cancelled",
    "CompletionResult",
    "Finished",
    "Iteration",
    "LaunchRequested",
    "Message",
    "Output",
    "OutputClosed",
    "ProcessStarted",
    "Quit",
    "DEFAULT_MAX_ITERATIONS",
]

# 状态栏显示的默认最大迭代次数
DEFAULT_MAX_ITERATIONS = 10


class CompletionResult(str, Enum):
    """一次运行的终态。"""

    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"
    BLOCKED = "blocked"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass(frozen=True)
class ProcessStarted:
    """worker 进程已启动，携带 handle 以便后续取消。"""

    handle: "ProcessHandle"
    session_id: str


@dataclass(frozen=True)
class Output:
    """一行 worker 输出。

    Attributes:
        line: 行内容（不含换行符）
        is_error: 是否来自 stderr
        timestamp: relay 读到该行的时间
    """

    line: str
    is_error: bool = False
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_record(cls, record: "OutputRecord") -> "Output":
        return cls(line=record.line, is_error=record.is_error, timestamp=record.timestamp)


@dataclass(frozen=True)
class OutputClosed:
    """输出通道已耗尽（两个 relay 都已退出且缓冲为空）。"""

    session_id: str


@dataclass(frozen=True)
class Finished:
    """运行结束（包括启动失败）。

    非零退出码不算错误：complete=True 且 exit_code 记录实际状态，
    由上层 orchestrator 解释其含义。err 仅在启动失败或等待失败时设置。

    Attributes:
        session_id: 会话 ID
        complete: 是否正常结束
        blocked: 是否被阻塞
        blocked_reason: 阻塞原因
        iterations: 已执行的迭代次数
        balls_complete: 已完成的任务数
        balls_total: 任务总数
        err: 启动或等待失败的异常
        exit_code: 进程退出码（未启动时为 None）
    """

    session_id: str
    complete: bool = False
    blocked: bool = False
    blocked_reason: str = ""
    iterations: int = 0
    balls_complete: int = 0
    balls_total: int = 0
    err: BaseException | None = None
    exit_code: int | None = None

    @property
    def result(self) -> CompletionResult:
        """按优先级推导终态：err > complete > blocked > 达到最大迭代。"""
        if self.err is not None:
            return CompletionResult.ERROR
        if self.complete:
            return CompletionResult.COMPLETE
        if self.blocked:
            return CompletionResult.BLOCKED
        return CompletionResult.MAX_ITERATIONS_REACHED


@dataclass(frozen=True)
class Cancelled:
    """运行被用户取消。"""

    session_id: str

    @property
    def result(self) -> CompletionResult:
        return CompletionResult.CANCELLED


@dataclass(frozen=True)
class Iteration:
    """进度消息：当前迭代 / 最大迭代。

    worker 的输出流里没有迭代信息，supervisor 自己不产生这条消息；
    由外层编排器（读取会话记录的一方）通过 Program.send / send_threadsafe 投递。
    """

    session_id: str
    iteration: int
    max_iterations: int


@dataclass(frozen=True)
class LaunchRequested:
    """外部请求为某会话启动 agent。"""

    session_id: str


@dataclass(frozen=True)
class CancelRequested:
    """外部请求取消正在运行的 agent（如 SIGINT）。"""


@dataclass(frozen=True)
class Quit:
    """停止展示循环。"""


@dataclass
class AgentStatus:
    """展示层读取的 agent 运行状态，仅由展示循环修改。"""

    running: bool = False
    session_id: str = ""
    iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS


Message = Union[
    ProcessStarted,
    Output,
    OutputClosed,
    Finished,
    Cancelled,
    Iteration,
    LaunchRequested,
    CancelRequested,
    Quit,
]
