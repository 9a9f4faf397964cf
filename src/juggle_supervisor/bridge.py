"""事件循环桥接模块。

把 runtime 的阻塞操作包装成「现在发起、稍后得到一条消息」的协程，
供单线程展示循环以任务形式调度：

- launch: 启动 worker，返回 ProcessStarted 或 Finished(err)
- listen: 在短时间窗口内取一条输出，返回 Output 或 None
- await_completion: 等待退出，返回 Cancelled 或 Finished
- cancel: 调用取消控制器，终态消息由 await_completion 给出

状态机（单个进程）:
    NotStarted --launch ok--> Running --await_completion--> Completed | Cancelled | Failed
    NotStarted --launch 失败--> Failed
"""

from __future__ import annotations

import asyncio
import logging

import anyio

from .config import Config, get_config
from .messages import Cancelled, Finished, Output, ProcessStarted
from .runtime.output import OutputReceiver, OutputSender, open_output_channel
from .runtime.process import ProcessHandle, spawn_agent

__all__ = ["AgentBridge"]

logger = logging.getLogger(__name__)

# listen 内部标记：通道已耗尽或已关闭
_CLOSED = object()


class AgentBridge:
    """runtime 与展示循环之间的适配器。

    每个方法都是一个独立的协程，由展示循环作为任务调度；
    方法之间不共享可变状态，可以并发执行。

    Example:
        ```python
        bridge = AgentBridge()
        sender, receiver = bridge.open_channel()

        started = await bridge.launch("my-feature", sender)
        if isinstance(started, ProcessStarted):
            msg = await bridge.listen_until_output(receiver)
            final = await bridge.await_completion(started.handle)
        ```
    """

    def __init__(self, config: Config | None = None) -> None:
        """初始化桥接器。

        Args:
            config: 配置（默认使用全局配置）
        """
        self.config = config or get_config()

    def open_channel(self) -> tuple[OutputSender, OutputReceiver]:
        """按配置容量创建一个新的输出通道。"""
        return open_output_channel(self.config.output_buffer)

    async def launch(self, session_id: str, sender: OutputSender) -> ProcessStarted | Finished:
        """启动 worker。

        Args:
            session_id: 会话 ID
            sender: 输出通道发送端（所有权转交给 runtime）

        Returns:
            成功时 ProcessStarted，启动失败时 Finished(err=...)
        """
        try:
            handle = await spawn_agent(
                session_id,
                sender,
                command=self.config.agent_command,
                kill_timeout=self.config.kill_timeout,
                line_limit=self.config.line_limit,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to launch agent for session {session_id}: {e}")
            return Finished(session_id=session_id, err=e)

        logger.info(f"Agent started for session {session_id} (pid={handle.pid})")
        return ProcessStarted(handle=handle, session_id=session_id)

    async def _poll(self, receiver: OutputReceiver) -> Output | None | object:
        """取一条输出；超时返回 None，通道耗尽或已关闭返回 _CLOSED。"""
        with anyio.move_on_after(self.config.listen_timeout):
            try:
                record = await receiver.receive()
            except (anyio.EndOfStream, anyio.ClosedResourceError):
                return _CLOSED
            return Output.from_record(record)
        return None

    async def listen(self, receiver: OutputReceiver | None) -> Output | None:
        """在 listen_timeout 内取一条输出。

        Returns:
            Output；超时、通道已关闭或 receiver 为 None 时返回 None
        """
        if receiver is None:
            return None

        result = await self._poll(receiver)
        if result is _CLOSED:
            return None
        return result  # type: ignore[return-value]

    async def listen_until_output(self, receiver: OutputReceiver | None) -> Output | None:
        """超时后重新 listen，直到拿到一条输出或通道耗尽。

        通道耗尽（所有 relay 已退出且缓冲为空）时关闭 receiver 并返回 None，
        调用方据此停止 listen。
        """
        if receiver is None:
            return None

        while True:
            result = await self._poll(receiver)
            if result is _CLOSED:
                receiver.close()
                return None
            if result is not None:
                return result  # type: ignore[return-value]

    async def await_completion(self, handle: ProcessHandle | None) -> Cancelled | Finished:
        """等待 worker 退出并给出唯一的终态消息。

        判定顺序：
        1. 已取消 -> Cancelled
        2. 等待失败 -> Finished(err=...)
        3. 任意退出码（包括非零和被信号终止）-> Finished(complete=True)

        正常退出时先限时等待 relay 结束（最多 kill_timeout 秒），
        因此返回时 handle 不再持有任何运行中的 relay。
        """
        if handle is None:
            return Finished(session_id="", complete=True)

        error: Exception | None = None
        returncode: int | None = None
        try:
            returncode = await handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        else:
            if not handle.cancelled:
                # 子孙进程可能仍持有管道，限时等待 relay 退出
                await handle.drain()

        if handle.cancelled:
            logger.info(f"Agent cancelled for session {handle.session_id}")
            return Cancelled(session_id=handle.session_id)

        if error is not None:
            logger.warning(f"Waiting for agent failed (session={handle.session_id}): {error}")
            return Finished(session_id=handle.session_id, err=error)

        if returncode:
            logger.info(f"Agent exited with code {returncode} (session={handle.session_id})")
        else:
            logger.info(f"Agent completed for session {handle.session_id}")
        return Finished(session_id=handle.session_id, complete=True, exit_code=returncode)

    async def cancel(self, handle: ProcessHandle | None) -> None:
        """取消 worker。

        终止错误只记录日志；取消本身总是视为成功。
        """
        if handle is None:
            return None

        logger.info(f"Cancelling agent for session {handle.session_id} (pid={handle.pid})")
        kill_error = await handle.cancel()
        if kill_error is not None:
            logger.info(f"Kill reported for session {handle.session_id}: {kill_error}")
        return None
