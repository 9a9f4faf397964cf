"""JUGGLE 环境变量配置管理。

环境变量:
    JUGGLE_BIN: worker 命令前缀
        - 默认 "juggle"
        - 按 shell 规则拆分，例: "python -m juggle"
        - 实际执行 <JUGGLE_BIN> agent run <session_id>

    JUGGLE_KILL_TIMEOUT: 取消时等待进程退出的上限（秒）
        - 默认 5.0，限制在 0.1-60 范围
        - 超时后继续执行清理，不会卡住

    JUGGLE_LISTEN_TIMEOUT: 单次 listen 等待输出的上限（秒）
        - 默认 0.1，限制在 0.01-5 范围

    JUGGLE_OUTPUT_BUFFER: 输出通道容量（行）
        - 默认 100

    JUGGLE_OUTPUT_HISTORY: 展示层保留的输出行数
        - 默认 500，超出后丢弃最旧的行

    JUGGLE_MAX_ITERATIONS: 状态栏显示的默认最大迭代次数
        - 默认 10

    JUGGLE_LINE_LIMIT: 单行最大字节数
        - 默认 1048576 (1MB)，超长行被丢弃

    JUGGLE_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    JUGGLE_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 取消运行中的 agent（没有运行中的 agent 则退出）(默认)
        - exit = 直接退出
        - cancel_then_exit = 先取消 agent，第二次才退出

    JUGGLE_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode"]


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 只取消运行中的 agent，不退出（如果没有运行中的 agent 则退出）
    - EXIT: 直接退出
    - CANCEL_THEN_EXIT: 先取消 agent，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式。

        Args:
            value: 模式字符串 (cancel/exit/cancel_then_exit)

        Returns:
            对应的 SigintMode 枚举值，无效值返回 CANCEL
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL  # 默认值


DEFAULT_AGENT_COMMAND = ("juggle",)


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """解析浮点数环境变量，超出范围时截断，无效值返回默认值。"""
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return max(low, min(parsed, high))


def _parse_positive_int(value: str | None, default: int) -> int:
    """解析正整数环境变量，无效值或非正数返回默认值。"""
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_command(value: str | None) -> tuple[str, ...]:
    """解析 worker 命令前缀。

    Args:
        value: JUGGLE_BIN 环境变量值

    Returns:
        argv 前缀，空值或无法解析时返回默认命令
    """
    if not value or not value.strip():
        return DEFAULT_AGENT_COMMAND
    try:
        parts = shlex.split(value, posix=os.name != "nt")
    except ValueError:
        return DEFAULT_AGENT_COMMAND
    return tuple(parts) or DEFAULT_AGENT_COMMAND


@dataclass
class Config:
    """JUGGLE 配置。

    Attributes:
        agent_command: worker 命令前缀
        kill_timeout: 取消时等待进程退出的上限（秒）
        listen_timeout: 单次 listen 的等待上限（秒）
        output_buffer: 输出通道容量
        output_history: 展示层保留的输出行数
        max_iterations: 默认最大迭代次数
        line_limit: 单行最大字节数
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    agent_command: tuple[str, ...] = field(default=DEFAULT_AGENT_COMMAND)
    kill_timeout: float = 5.0
    listen_timeout: float = 0.1
    output_buffer: int = 100
    output_history: int = 500
    max_iterations: int = 10
    line_limit: int = 1024 * 1024
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(agent_command={' '.join(self.agent_command)}, "
            f"kill_timeout={self.kill_timeout}, "
            f"listen_timeout={self.listen_timeout}, "
            f"output_buffer={self.output_buffer}, "
            f"output_history={self.output_history}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "juggle-supervisor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"supervisor_debug_{timestamp}.log"

    return str(log_file.resolve())


def _parse_sigint_mode(value: str | None) -> SigintMode:
    """解析 SIGINT 模式环境变量。"""
    if not value:
        return SigintMode.CANCEL
    return SigintMode.from_string(value)


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("JUGGLE_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        agent_command=_parse_command(os.environ.get("JUGGLE_BIN")),
        kill_timeout=_parse_float(os.environ.get("JUGGLE_KILL_TIMEOUT"), 5.0, 0.1, 60.0),
        listen_timeout=_parse_float(os.environ.get("JUGGLE_LISTEN_TIMEOUT"), 0.1, 0.01, 5.0),
        output_buffer=_parse_positive_int(os.environ.get("JUGGLE_OUTPUT_BUFFER"), 100),
        output_history=_parse_positive_int(os.environ.get("JUGGLE_OUTPUT_HISTORY"), 500),
        max_iterations=_parse_positive_int(os.environ.get("JUGGLE_MAX_ITERATIONS"), 10),
        line_limit=_parse_positive_int(os.environ.get("JUGGLE_LINE_LIMIT"), 1024 * 1024),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=_parse_sigint_mode(os.environ.get("JUGGLE_SIGINT_MODE")),
        sigint_double_tap_window=_parse_float(
            os.environ.get("JUGGLE_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
