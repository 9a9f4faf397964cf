"""Stream relay: pump one worker pipe into the output channel, line by line.

Two relays run per worker process, one for stdout and one for stderr. They
share nothing except the output channel and the cancellation token.

Key design points:
- Every suspension point (pipe read, channel send) races the cancellation
  token, so a full or abandoned channel never holds up shutdown
- The join group is decremented from ``finally``, exactly once per relay
- Read failures end this relay only; the sibling relay and the process
  are unaffected
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable
from typing import Any

import anyio

from .output import OutputRecord, OutputSender
from .sync import CancelToken, JoinGroup

__all__ = ["relay_stream"]

logger = logging.getLogger(__name__)

# Returned by _until_cancelled when the token won the race
_CANCELLED: Any = object()


async def _until_cancelled(awaitable: Awaitable[Any], token: CancelToken) -> Any:
    """Await ``awaitable`` unless the token fires first.

    Returns the awaitable's result, or ``_CANCELLED`` if cancellation was
    observed before it completed. When both finish in the same iteration
    the operation's result wins.
    """
    op_task = asyncio.ensure_future(awaitable)
    stop_task = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            [op_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (op_task, stop_task):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    if op_task in done:
        return op_task.result()
    return _CANCELLED


async def _read_line(stream: asyncio.StreamReader, label: str) -> bytes:
    """Read one line, skipping lines longer than the reader limit.

    An oversized line is consumed up to and including its newline, even when
    it arrives over several pipe reads, so no fragment of it surfaces as a
    line of its own. Returns ``b""`` at EOF.
    """
    discarding = False
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            # EOF: the unterminated tail is a line unless it belongs to a dropped one
            return b"" if discarding else e.partial
        except asyncio.LimitOverrunError as e:
            if not discarding:
                logger.warning(f"[{label}] dropping line over reader limit")
                discarding = True
            await stream.readexactly(e.consumed)
            continue

        if not discarding:
            return raw
        discarding = False


def _decode(raw: bytes) -> str:
    """Decode one raw line and strip its terminator (``\\n`` or ``\\r\\n``)."""
    if raw.endswith(b"\n"):
        raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


async def relay_stream(
    stream: asyncio.StreamReader,
    sender: OutputSender,
    token: CancelToken,
    group: JoinGroup,
    *,
    is_error: bool,
    name: str = "",
) -> None:
    """Relay ``stream`` into ``sender`` until EOF or cancellation.

    The caller must have called ``group.add()`` for this relay before
    scheduling it. The relay owns ``sender`` and closes it on exit.

    Args:
        stream: Pipe reader of the worker process
        sender: This relay's clone of the output channel's send side
        token: Cancellation signal shared with the process handle
        group: Join group tracking live relays
        is_error: Tag for every record (True for stderr)
        name: Label used in log messages
    """
    label = name or ("stderr" if is_error else "stdout")
    lines = 0
    try:
        async with sender:
            while not token.cancelled:
                try:
                    raw = await _until_cancelled(_read_line(stream, label), token)
                except (ConnectionError, OSError) as e:
                    logger.debug(f"[{label}] read failed, relay stopping: {e}")
                    break

                if raw is _CANCELLED or not raw:
                    break

                record = OutputRecord(line=_decode(raw), is_error=is_error)
                try:
                    sender.send_nowait(record)
                except anyio.WouldBlock:
                    if await _until_cancelled(sender.send(record), token) is _CANCELLED:
                        break
                lines += 1
    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
        logger.debug(f"[{label}] output channel closed by reader, relay stopping")
    finally:
        group.done()
        logger.debug(
            f"[{label}] relay exited: lines={lines} cancelled={token.cancelled}"
        )
