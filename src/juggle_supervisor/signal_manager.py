"""信号管理模块。

把 OS 信号转换为对 agent 会话的操作，而不是直接杀掉 supervisor：
- SIGINT: 取消运行中的 agent（没有运行中的 agent 时退出）
- SIGTERM: 取消运行中的 agent 并退出

worker 运行在独立的进程组里，终端的 Ctrl+C 只会到达 supervisor，
由这里决定是取消 worker 还是退出。

支持的配置：
- JUGGLE_SIGINT_MODE: cancel | exit | cancel_then_exit
- JUGGLE_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    不直接持有会话，而是通过三个回调与展示循环交互：
    is_active 查询是否有运行中的 agent，request_cancel 投递取消请求，
    on_shutdown 投递退出请求。回调都在事件循环线程内调用。

    Example:
        ```python
        signal_manager = SignalManager(
            is_active=lambda: session.running,
            request_cancel=lambda: program.send(CancelRequested()),
            on_shutdown=lambda: program.send(Quit()),
        )
        await signal_manager.start()
        try:
            await program.run()
        finally:
            await signal_manager.stop()
        ```

    Attributes:
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        is_active: Callable[[], bool],
        request_cancel: Callable[[], None],
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            is_active: 返回当前是否有运行中的 agent
            request_cancel: 请求取消运行中的 agent
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击退出窗口时间（默认从配置读取）
            on_shutdown: 请求退出时的回调
        """
        self._is_active = is_active
        self._request_cancel = request_cancel

        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False  # 双击 SIGINT 触发
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler: Optional[signal.Handlers] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """安装 SIGINT / SIGTERM 处理器。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (mode={self.sigint_mode.value}, "
                f"double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows 没有 add_signal_handler，处理器在主线程被调用，需切回事件循环
            loop = self._loop
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug(f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})")

    async def stop(self) -> None:
        """恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭请求。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 双击窗口内再次收到 SIGINT 且已请求关闭：强制退出
        - EXIT 模式：请求关闭
        - CANCEL 模式：有运行中的 agent 则取消，否则请求关闭
        - CANCEL_THEN_EXIT 模式：取消 agent 并标记关闭，第二次 SIGINT 才退出
        """
        current_time = time.monotonic()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if time_since_last < self.double_tap_window and self._shutdown_requested:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        if self.sigint_mode == SigintMode.EXIT:
            logger.info("SIGINT received (mode=exit), requesting shutdown")
            self._request_shutdown()

        elif self.sigint_mode == SigintMode.CANCEL:
            if self._cancel_active():
                logger.info("SIGINT received (mode=cancel), cancelling agent")
            else:
                logger.info("SIGINT received (mode=cancel), no agent running, requesting shutdown")
                self._request_shutdown()

        elif self.sigint_mode == SigintMode.CANCEL_THEN_EXIT:
            if self._cancel_active():
                logger.info(
                    f"SIGINT received (mode=cancel_then_exit), cancelling agent. "
                    f"Press Ctrl+C again within {self.double_tap_window}s to exit."
                )
                # 只标记，不触发关闭
                self._shutdown_requested = True
            else:
                logger.info(
                    "SIGINT received (mode=cancel_then_exit), no agent running, requesting shutdown"
                )
                self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：取消 agent 并请求关闭。"""
        logger.info("SIGTERM received, initiating graceful shutdown")
        if self._cancel_active():
            logger.info("Cancelling running agent for shutdown")
        self._request_shutdown()

    def _cancel_active(self) -> bool:
        """有运行中的 agent 时请求取消，返回是否发出了请求。"""
        if not self._is_active():
            return False
        try:
            self._request_cancel()
        except Exception as e:
            logger.warning(f"Error requesting cancel: {e}")
        return True

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True
        self._notify_shutdown()

    def _force_shutdown(self) -> None:
        """强制退出。

        设置 force_exit 标志，退出码由入口根据该标志决定。
        """
        logger.warning("Forcing immediate shutdown")
        self._force_exit = True
        self._shutdown_requested = True
        self._cancel_active()
        self._notify_shutdown()

    def _notify_shutdown(self) -> None:
        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        self._cancel_active()
        self._request_shutdown()
