"""Output channel between the relay loops and the listen loop.

The channel is an anyio memory object stream. Each relay owns one clone of
the send side; once both relays have closed their clone and the buffer is
empty, the receive side reports ``anyio.EndOfStream``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

__all__ = [
    "DEFAULT_BUFFER_SIZE",
    "OutputRecord",
    "OutputSender",
    "OutputReceiver",
    "open_output_channel",
]

# Capacity of the channel; relays wait (racing cancellation) once it is full
DEFAULT_BUFFER_SIZE = 100

OutputSender = MemoryObjectSendStream["OutputRecord"]
OutputReceiver = MemoryObjectReceiveStream["OutputRecord"]


@dataclass(frozen=True)
class OutputRecord:
    """One line of worker output.

    Attributes:
        line: Line text without the trailing newline
        is_error: True when the line came from stderr
        timestamp: Wall-clock time the relay read the line
    """

    line: str
    is_error: bool = False
    timestamp: float = field(default_factory=time.time)


def open_output_channel(
    max_buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> tuple[OutputSender, OutputReceiver]:
    """Create a bounded (sender, receiver) pair for output records."""
    if max_buffer_size < 1:
        raise ValueError(f"max_buffer_size must be >= 1, got {max_buffer_size}")
    return anyio.create_memory_object_stream[OutputRecord](max_buffer_size)

