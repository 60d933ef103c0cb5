"""Async facade over the blocking command front-end.

Each call runs in an anyio worker thread, so several children may block
at once; the interrupt coordinator counts them all. Callbacks are sent
back to the event loop thread and run there one at a time, in output
order.

Cancelling the awaiting task does not kill the child: the worker thread
is not abandoned, so the cancellation takes effect once the child exits.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import anyio
import anyio.from_thread
import anyio.to_thread

from .. import commands
from ..environment import Environment
from .streaming import ChunkCallback, ExitCodeAndOutput, LineCallback

__all__ = [
    "capture",
    "execute",
    "stream",
    "stream_lines",
]


T = TypeVar("T")


def _on_loop(callback: Callable[[T], None]) -> Callable[[T], None]:
    """Wrap ``callback`` so a worker thread runs it on the event loop."""

    def forward(value: T) -> None:
        anyio.from_thread.run_sync(callback, value)

    return forward


async def execute(
    cmd_line: str,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
    limiter: anyio.CapacityLimiter | None = None,
) -> int:
    """Run ``cmd_line`` in the foreground; returns its exit code."""
    return await anyio.to_thread.run_sync(
        functools.partial(commands.cmd_execute, cmd_line, env, cwd=cwd),
        limiter=limiter,
    )


async def stream(
    cmd_line: str,
    on_chunk: ChunkCallback,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
    limiter: anyio.CapacityLimiter | None = None,
) -> int:
    """Run ``cmd_line``; ``on_chunk`` receives raw output on the event loop."""
    return await anyio.to_thread.run_sync(
        functools.partial(
            commands.cmd_execute_and_stream_data, cmd_line, _on_loop(on_chunk), env, cwd=cwd
        ),
        limiter=limiter,
    )


async def stream_lines(
    cmd_line: str,
    on_line: LineCallback,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
    limiter: anyio.CapacityLimiter | None = None,
) -> int:
    """Run ``cmd_line``; ``on_line`` receives each output line on the event loop."""
    return await anyio.to_thread.run_sync(
        functools.partial(
            commands.cmd_execute_and_stream_lines, cmd_line, _on_loop(on_line), env, cwd=cwd
        ),
        limiter=limiter,
    )


async def capture(
    cmd_line: str,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
    limiter: anyio.CapacityLimiter | None = None,
) -> ExitCodeAndOutput:
    """Run ``cmd_line`` and collect its combined output."""
    return await anyio.to_thread.run_sync(
        functools.partial(commands.cmd_execute_and_capture_output, cmd_line, env, cwd=cwd),
        limiter=limiter,
    )
