"""Worker process handle with streaming output and bounded-time cancellation.

juggle-supervisor runtime module

This module provides:
- spawn_agent(): start ``<tool> agent run <session>`` with both streams piped
- ProcessHandle: owns the OS process, the two relays, the cancellation
  token and the completion barrier
- ProcessHandle.wait(): single authoritative wait-for-exit, safe to call
  from any number of tasks
- ProcessHandle.drain(): bounded wait for the relays after a natural exit
- ProcessHandle.cancel(): idempotent kill with a hard cap on waiting for
  the process to die

Key design points:
- POSIX: start_new_session=True so the worker has its own process group
  and terminal Ctrl+C reaches the supervisor only
- Windows: CREATE_NEW_PROCESS_GROUP for the same isolation
- Cancellation kills the whole group, not just the direct child
- The process's ``wait()`` is invoked at most once per handle
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Sequence
from typing import Any, Protocol

from .output import OutputSender
from .relay import relay_stream
from .sync import CancelToken, JoinGroup, OnceResult

__all__ = [
    "DEFAULT_KILL_TIMEOUT",
    "DEFAULT_LINE_LIMIT",
    "IS_WINDOWS",
    "ProcessHandle",
    "WorkerProcess",
    "build_agent_argv",
    "spawn_agent",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default limits
DEFAULT_KILL_TIMEOUT = 5.0  # seconds to wait for exit after kill
DEFAULT_LINE_LIMIT = 1024 * 1024  # bytes per line before a line is dropped
EXIT_POLL_INTERVAL = 0.1  # seconds between return code checks while waiting


class WorkerProcess(Protocol):
    """What a handle needs from a process.

    ``asyncio.subprocess.Process`` satisfies it; tests substitute fakes.
    """

    pid: int
    returncode: int | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class ProcessHandle:
    """A launched worker process and everything needed to supervise it.

    Only the cancellation controller mutates a handle after construction
    (cancelled flag, kill); the relays only decrement the join group.

    Example:
        sender, receiver = open_output_channel()
        handle = await spawn_agent("my-feature", sender, command=["juggle"])
        ...
        await handle.cancel()
        assert handle.cancelled and handle.relays_active == 0
    """

    def __init__(
        self,
        session_id: str,
        process: WorkerProcess | None = None,
        *,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        kill_group: bool = False,
    ) -> None:
        self.session_id = session_id
        self.kill_timeout = kill_timeout
        self._process = process
        self._kill_group = kill_group
        self._token = CancelToken()
        self._relays = JoinGroup()
        self._relay_tasks: list[asyncio.Task[None]] = []
        self._cancelled = False
        self._exit: OnceResult[int] = OnceResult(self._wait_for_exit)
        self._cancellation: OnceResult[OSError | None] = OnceResult(self._cancel_once)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def attach(
        cls,
        process: WorkerProcess,
        session_id: str,
        sender: OutputSender,
        *,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        kill_group: bool = False,
    ) -> "ProcessHandle":
        """Wrap an already started process and start its two relays.

        Takes ownership of ``sender``: stdout gets a clone, stderr gets the
        original, so the channel closes once both relays are done.
        """
        handle = cls(
            session_id,
            process,
            kill_timeout=kill_timeout,
            kill_group=kill_group,
        )
        handle._start_relays(sender)
        return handle

    @classmethod
    def detached(cls, session_id: str) -> "ProcessHandle":
        """A handle whose process never started."""
        return cls(session_id)

    def _start_relays(self, sender: OutputSender) -> None:
        assert self._process is not None
        streams = [
            (self._process.stdout, False, "stdout"),
            (self._process.stderr, True, "stderr"),
        ]
        senders = [sender.clone(), sender]

        for (stream, is_error, name), relay_sender in zip(streams, senders):
            if stream is None:
                relay_sender.close()
                continue
            self._relays.add()
            self._relay_tasks.append(
                asyncio.create_task(
                    relay_stream(
                        stream,
                        relay_sender,
                        self._token,
                        self._relays,
                        is_error=is_error,
                        name=f"{self.session_id}:{name}",
                    ),
                    name=f"{self.session_id}-{name}",
                )
            )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def started(self) -> bool:
        return self._process is not None

    @property
    def cancelled(self) -> bool:
        """True once cancel() has run its first step."""
        return self._cancelled

    @property
    def relays_active(self) -> int:
        """Number of relay loops that have not exited yet."""
        return self._relays.count

    @property
    def exited(self) -> bool:
        return self._exit.done

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(session={self.session_id}, pid={self.pid}, "
            f"cancelled={self._cancelled}, relays={self._relays.count})"
        )

    # ------------------------------------------------------------------
    # Completion waiter
    # ------------------------------------------------------------------

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit status.

        Safe to call concurrently: only the first call performs the real
        wait, every caller receives the same status or the same exception.

        Returns:
            The return code, or None for a handle that never started
        """
        if self._process is None:
            return None
        return await self._exit.get()

    async def _wait_for_exit(self) -> int:
        """Await ``process.wait()``, or notice the return code first.

        ``Process.wait()`` returns only after the pipes are closed too, and a
        descendant holding them can delay that indefinitely.
        """
        process = self._process
        assert process is not None

        wait_task = asyncio.ensure_future(process.wait())
        try:
            while True:
                done, _ = await asyncio.wait({wait_task}, timeout=EXIT_POLL_INTERVAL)
                if done or process.returncode is not None:
                    break
        except BaseException:
            wait_task.cancel()
            raise

        if wait_task.done():
            returncode = wait_task.result()
        else:
            wait_task.cancel()
            returncode = process.returncode
        logger.debug(
            f"Worker exited session={self.session_id} pid={self.pid} "
            f"returncode={returncode}"
        )
        return returncode

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for the relays after the process has exited.

        A descendant that inherited stdout/stderr can hold the pipes open
        after the worker itself is gone. The relays get ``timeout`` seconds
        (default ``kill_timeout``) to reach EOF; after that the token is
        fired and they are joined.

        Returns:
            True if the relays reached EOF on their own
        """
        if self._process is None:
            return True
        if timeout is None:
            timeout = self.kill_timeout

        try:
            await asyncio.wait_for(self._relays.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Output pipes still open {timeout}s after worker exit "
                f"session={self.session_id} pid={self.pid}, stopping relays"
            )

        self._token.cancel()
        await self._relays.wait()
        return False

    # ------------------------------------------------------------------
    # Cancellation controller
    # ------------------------------------------------------------------

    async def cancel(self) -> OSError | None:
        """Cancel the worker. Idempotent.

        Steps:
        1. Set the cancelled flag
        2. Fire the token so relays stop sending and reading
        3. Kill the process (group)
        4. Wait for exit, at most ``kill_timeout`` seconds
        5. Wait for both relays to exit

        Concurrent and repeated calls share the first call's run and all
        return its result.

        Returns:
            The error raised by the kill request, if any. It is diagnostic
            only; cancellation counts as done either way.
        """
        if self._process is None:
            return None
        return await self._cancellation.get()

    async def _cancel_once(self) -> OSError | None:
        self._cancelled = True
        self._token.cancel()

        kill_error = self._kill()

        try:
            await asyncio.wait_for(self.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Worker did not exit within {self.kill_timeout}s after kill "
                f"session={self.session_id} pid={self.pid}, continuing"
            )
        except Exception as e:
            # Reported to the completion path by wait(); nothing to add here
            logger.debug(f"Wait failed during cancel session={self.session_id}: {e}")

        await self._relays.wait()

        logger.info(
            f"Worker cancelled session={self.session_id} pid={self.pid} "
            f"returncode={self._process.returncode if self._process else None}"
        )
        return kill_error

    def _kill(self) -> OSError | None:
        """Request termination. Returns the OS error instead of raising."""
        process = self._process
        assert process is not None
        pid = process.pid

        if process.returncode is not None:
            return ProcessLookupError(f"process {pid} already finished")

        try:
            if self._kill_group and not IS_WINDOWS:
                try:
                    pgid = os.getpgid(pid)
                    os.killpg(pgid, signal.SIGKILL)
                    logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
                    return None
                except ProcessLookupError:
                    raise
                except OSError as e:
                    logger.debug(f"killpg failed, falling back to kill: {e}")
            process.kill()
            logger.debug(f"Called kill() on pid={pid}")
            return None
        except OSError as e:
            logger.debug(f"Kill request failed pid={pid}: {e}")
            return e


def build_agent_argv(command: Sequence[str], session_id: str) -> list[str]:
    """Full argv for running the agent on ``session_id``."""
    if not command:
        raise ValueError("agent command must not be empty")
    return [*command, "agent", "run", session_id]


def _isolation_kwargs() -> dict[str, Any]:
    """Platform-specific kwargs that give the worker its own process group."""
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


async def spawn_agent(
    session_id: str,
    sender: OutputSender,
    *,
    command: Sequence[str] = ("juggle",),
    kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    line_limit: int = DEFAULT_LINE_LIMIT,
) -> ProcessHandle:
    """Launch the agent worker for a session.

    Environment and working directory are inherited from the caller. stdin
    is DEVNULL so the worker cannot consume the supervisor's terminal input.

    Args:
        session_id: Session to run
        sender: Send side of the output channel (ownership is taken)
        command: Worker command prefix, e.g. ``["juggle"]``
        kill_timeout: Bound on waiting for exit during cancel()
        line_limit: Longest line the relays will accept, in bytes

    Returns:
        A handle whose relays are already running

    Raises:
        OSError: The process could not be started (not found, permission
            denied, pipe creation failed).
        ValueError: The argv is unusable (empty command, NUL byte in an
            argument).

        In both cases ``sender`` is closed and no relay is started.
    """
    try:
        argv = build_agent_argv(command, session_id)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=line_limit,
            **_isolation_kwargs(),
        )
    except BaseException:
        sender.close()
        raise

    logger.debug(f"Started worker pid={process.pid} argv={argv}")

    return ProcessHandle.attach(
        process,
        session_id,
        sender,
        kill_timeout=kill_timeout,
        kill_group=True,
    )
