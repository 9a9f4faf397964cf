"""juggle-supervisor - agent 进程监督器。

启动 `<tool> agent run <session_id>`，把 stdout/stderr 逐行流式送入单线程
展示循环，并提供有上限时间的幂等取消。

环境变量:
    JUGGLE_BIN: worker 命令前缀 (默认 juggle)
    JUGGLE_KILL_TIMEOUT: 取消时等待退出的上限 (默认 5 秒)
    JUGGLE_SIGINT_MODE: Ctrl+C 处理模式 (默认 cancel)

用法:
    juggle-supervisor <session_id>
"""

__version__ = "0.1.0"

from .app import main  # noqa: E402

__all__ = ["__version__", "main"]
