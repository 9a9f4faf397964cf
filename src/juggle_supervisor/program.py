"""单线程展示循环。

所有展示层状态只在 run() 所在的任务里修改；后台工作以 command 的形式调度，
完成后把结果作为消息投递回 inbox，由 model.update() 串行处理。

- Command: 无参协程工厂，返回一条消息或 None
- Model: 实现 update(msg) -> list[Command]
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

from .messages import Quit

__all__ = ["Command", "Model", "Program"]

logger = logging.getLogger(__name__)

Command = Callable[[], Awaitable[Any]]


class Model(Protocol):
    """展示层模型接口。"""

    def update(self, msg: Any) -> Iterable[Command] | None: ...


class Program:
    """消息驱动的展示循环。

    Example:
        ```python
        program = Program(session)
        program.dispatch(*session.launch("my-feature"))
        await program.run()
        ```
    """

    def __init__(self, model: Model) -> None:
        self.model = model
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """尚未完成的 command 数量。"""
        return len(self._tasks)

    def send(self, msg: Any) -> None:
        """投递一条消息（必须在事件循环线程内调用）。"""
        self._inbox.put_nowait(msg)

    def send_threadsafe(self, msg: Any) -> None:
        """从其他线程投递消息。

        循环尚未启动时直接入队。
        """
        if self._loop is None:
            self._inbox.put_nowait(msg)
            return
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, msg)

    def dispatch(self, *commands: Command | None) -> None:
        """把 command 调度为后台任务，结果非 None 时投递回 inbox。"""
        for command in commands:
            if command is None:
                continue
            task = asyncio.create_task(self._run_command(command))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_command(self, command: Command) -> None:
        try:
            msg = await command()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Command {getattr(command, '__name__', command)!r} failed: {e}")
            return
        if msg is not None:
            self._inbox.put_nowait(msg)

    async def run(self) -> None:
        """串行处理消息，直到收到 Quit。

        退出前取消所有未完成的 command。
        """
        self._loop = asyncio.get_running_loop()
        self._running = True
        logger.debug("Program loop started")
        try:
            while True:
                msg = await self._inbox.get()
                if isinstance(msg, Quit):
                    logger.debug("Quit received, stopping program loop")
                    break
                try:
                    commands = self.model.update(msg)
                except Exception as e:
                    logger.exception(f"update() failed for {type(msg).__name__}: {e}")
                    continue
                if commands:
                    self.dispatch(*commands)
        finally:
            self._running = False
            await self._cancel_pending()

    async def _cancel_pending(self) -> None:
        tasks = list(self._tasks)
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"Cancelled {len(tasks)} pending command(s)")
