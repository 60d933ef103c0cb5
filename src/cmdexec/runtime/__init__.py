"""Runtime module for child process creation and output streaming.

This module provides shell-routed process creation with explicit pipe
ownership, and chunk/line/capture streaming of a child's merged output.
The async facade lives in ``cmdexec.runtime.aio``.
"""

from __future__ import annotations

from .process_runner import PipeEndpoints, ProcessHandle, ProcessRunner, ProcessSpec, SpawnMode
from .streaming import ExitCodeAndOutput, LineSplitter, capture, stream, stream_lines

__all__ = [
    "ExitCodeAndOutput",
    "LineSplitter",
    "PipeEndpoints",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
    "SpawnMode",
    "capture",
    "stream",
    "stream_lines",
]
