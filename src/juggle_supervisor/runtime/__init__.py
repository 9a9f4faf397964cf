"""Runtime module for worker process supervision and output streaming.

This module provides process launch with group isolation, line relays that
race cancellation, and a single-fire wait / idempotent cancel pair on the
process handle.
"""

from __future__ import annotations

from .output import OutputReceiver, OutputRecord, OutputSender, open_output_channel
from .process import ProcessHandle, WorkerProcess, spawn_agent
from .sync import CancelToken, JoinGroup, OnceResult

__all__ = [
    "CancelToken",
    "JoinGroup",
    "OnceResult",
    "OutputReceiver",
    "OutputRecord",
    "OutputSender",
    "ProcessHandle",
    "WorkerProcess",
    "open_output_channel",
    "spawn_agent",
]
