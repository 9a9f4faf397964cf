"""juggle-supervisor 应用入口。

启动一个 agent 会话，把 worker 的 stdout/stderr 逐行回显到终端，
并集成信号管理器：
- SIGINT: 取消运行中的 agent（而不是直接退出）
- SIGTERM: 取消 agent 后退出

退出码：
- 0: agent 正常结束（包括非零退出码，由 worker 自己报告）
- 130: 被取消或强制退出
- 1: 启动或等待失败
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Sequence

from . import __version__
from .bridge import AgentBridge
from .config import Config, get_config
from .messages import CancelRequested, CompletionResult, Output, Quit
from .program import Program
from .session import AgentSession
from .signal_manager import SignalManager

__all__ = ["run_session", "main", "exit_code_for"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130  # 128 + SIGINT(2)


def exit_code_for(result: CompletionResult | None, force_exit: bool = False) -> int:
    """把会话终态映射为进程退出码。"""
    if force_exit or result is None or result == CompletionResult.CANCELLED:
        return EXIT_CANCELLED
    if result == CompletionResult.ERROR:
        return EXIT_ERROR
    return EXIT_OK


def _echo(record: Output) -> None:
    """把一行输出写到对应的终端流。"""
    stream = sys.stderr if record.is_error or record.line.startswith("=== ") else sys.stdout
    print(record.line, file=stream, flush=True)


async def run_session(session_id: str, config: Config | None = None) -> int:
    """运行一个 agent 会话直到结束。

    使用展示循环架构：
    - Program: 串行处理消息
    - AgentSession: 会话状态，产出 launch/listen/wait/cancel command
    - SignalManager: 把信号转换为 CancelRequested / Quit 消息

    Returns:
        进程退出码
    """
    config = config or get_config()
    logger.info(f"Starting juggle-supervisor {__version__}: {config}")

    bridge = AgentBridge(config)
    session = AgentSession(
        bridge,
        max_output_lines=config.output_history,
        max_iterations=config.max_iterations,
        on_output=_echo,
    )
    program = Program(session)
    # 终态且输出排空后退出循环
    session.on_idle = lambda _sid: program.send(Quit())

    signal_manager = SignalManager(
        is_active=lambda: session.running,
        request_cancel=lambda: program.send(CancelRequested()),
        sigint_mode=config.sigint_mode,
        double_tap_window=config.sigint_double_tap_window,
        on_shutdown=lambda: program.send(Quit()),
    )

    try:
        await signal_manager.start()
        commands = session.launch(session_id)
        if not commands:
            logger.error(f"Launch refused: {session.message}")
            return EXIT_ERROR
        program.dispatch(*commands)
        await program.run()
    finally:
        # SIGTERM / 强制退出时 worker 可能仍在运行
        await session.close()
        await signal_manager.stop()
        logger.info(f"Session {session_id} ended: result={session.last_result}")

    if signal_manager.is_force_exit:
        logger.warning("Force exit requested, terminating with exit code 130")
    return exit_code_for(session.last_result, signal_manager.is_force_exit)


class JsonSerializingFormatter(logging.Formatter):
    """调试日志格式化器：尝试把日志参数中的对象 JSON 序列化。"""

    def format(self, record: logging.LogRecord) -> str:
        if record.args and isinstance(record.args, tuple):
            new_args = []
            for arg in record.args:
                try:
                    if isinstance(arg, dict):
                        new_args.append(json.dumps(arg, ensure_ascii=False, default=str))
                    elif hasattr(arg, "__dict__") and not isinstance(arg, (str, int, float, bool, type(None))):
                        new_args.append(json.dumps(vars(arg), ensure_ascii=False, default=str))
                    else:
                        new_args.append(arg)
                except (TypeError, ValueError):
                    new_args.append(arg)
            record.args = tuple(new_args)
        return super().format(record)


def setup_logging(config: Config) -> None:
    """配置日志输出。

    LOG_DEBUG 模式输出到临时文件（DEBUG），否则输出到 stderr（INFO）。
    root logger 保持 WARNING，只对 juggle_supervisor 命名空间启用详细日志。
    """
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(JsonSerializingFormatter(fmt))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(fmt))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    logging.basicConfig(level=logging.WARNING, handlers=log_handlers, force=True)
    logging.getLogger("juggle_supervisor").setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="juggle-supervisor",
        description="Run `<tool> agent run <session>` and stream its output.",
    )
    parser.add_argument("session_id", help="Session to run the agent on")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """主入口点。"""
    args = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config)
    if config.log_debug and config.log_file:
        print(f"Debug log: {config.log_file}", file=sys.stderr)

    return asyncio.run(run_session(args.session_id, config))


if __name__ == "__main__":
    sys.exit(main())
