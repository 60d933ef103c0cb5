"""Output streaming for redirected children.

A redirected child writes stdout and stderr into one pipe. ``stream()``
reads that pipe block by block and hands every block to a callback on the
calling thread, in order, without decoding. ``stream_lines()`` and
``capture()`` are thin layers on top of it.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..config import get_config
from ..environment import Environment
from .process_runner import ProcessRunner, ProcessSpec, SpawnMode

__all__ = [
    "ChunkCallback",
    "ExitCodeAndOutput",
    "LineCallback",
    "LineSplitter",
    "capture",
    "decode_output",
    "stream",
    "stream_lines",
    "READ_CHUNK_SIZE",
    "READ_ERROR_EXIT_CODE",
]

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 1024

# Exit code reported when reading the child's output fails
READ_ERROR_EXIT_CODE = 1

ChunkCallback = Callable[[bytes], None]
LineCallback = Callable[[str], None]


@dataclass(frozen=True)
class ExitCodeAndOutput:
    """Exit code and combined stdout+stderr of a captured child."""

    exit_code: int
    output: str


def decode_output(data: bytes, encoding: str | None = None) -> str:
    """Decode child output with the configured encoding, replacing bad bytes."""
    return data.decode(encoding or get_config().output_encoding, errors="replace")


class LineSplitter:
    """Turns arbitrary chunks into lines.

    Every ``\\n`` ends a line (terminator stripped). ``finish()`` emits
    whatever follows the last terminator, even if empty, so N terminators
    always produce N+1 lines.
    """

    def __init__(self, on_line: Callable[[bytes], None]) -> None:
        self._on_line = on_line
        self._buffer = bytearray()
        self._finished = False

    def feed(self, chunk: bytes) -> None:
        if self._finished:
            raise RuntimeError("LineSplitter already finished")

        search_from = len(self._buffer)
        self._buffer += chunk

        start = 0
        end = self._buffer.find(b"\n", search_from)
        while end >= 0:
            self._on_line(bytes(self._buffer[start:end]))
            start = end + 1
            end = self._buffer.find(b"\n", start)

        if start:
            del self._buffer[:start]

    def finish(self) -> None:
        """Emit the trailing fragment; later calls do nothing."""
        if self._finished:
            return
        self._finished = True
        tail = bytes(self._buffer)
        self._buffer.clear()
        self._on_line(tail)


def _read_until_eof(fd: int, on_chunk: ChunkCallback) -> None:
    while True:
        chunk = os.read(fd, READ_CHUNK_SIZE)
        if not chunk:
            return
        on_chunk(chunk)


def stream(
    cmd_line: str,
    env: Environment,
    on_chunk: ChunkCallback,
    *,
    runner: ProcessRunner | None = None,
    cwd: Path | None = None,
) -> int:
    """Run ``cmd_line`` and deliver its merged stdout/stderr as raw chunks.

    Chunk boundaries carry no meaning; only order and completeness are
    guaranteed. A read error ends the stream: the child is still waited
    on and ``READ_ERROR_EXIT_CODE`` is returned.

    Args:
        cmd_line: Command line for the platform shell
        env: Environment block for the child
        on_chunk: Called once per block read, on this thread
        runner: Process runner (a default one if omitted)
        cwd: Working directory for the child

    Returns:
        The child's exit code
    """
    runner = runner or ProcessRunner()
    start = time.perf_counter()

    handle = runner.spawn_with_pipes(
        ProcessSpec(cmd_line, env=env, mode=SpawnMode.REDIRECTED, cwd=cwd)
    )
    pipes = handle.pipes
    if pipes is None or pipes.stdout_read is None:
        handle.close()
        raise RuntimeError(f"Process handle pid={handle.pid} has no output pipe")

    # No input is ever sent
    pipes.close_stdin()

    read_failed = False
    try:
        _read_until_eof(pipes.stdout_read, on_chunk)
    except OSError as e:
        logger.warning(f"Error reading output of pid={handle.pid}: {e}")
        read_failed = True
    finally:
        # Closing first unblocks a child still writing into a full pipe
        pipes.close_stdout()
        exit_code = handle.wait()

    if read_failed:
        exit_code = READ_ERROR_EXIT_CODE

    elapsed_us = int((time.perf_counter() - start) * 1_000_000)
    logger.debug(f"stream() returned {exit_code} after {elapsed_us:8d} us")
    return exit_code


def stream_lines(
    cmd_line: str,
    env: Environment,
    on_line: LineCallback,
    *,
    runner: ProcessRunner | None = None,
    cwd: Path | None = None,
) -> int:
    """Run ``cmd_line`` and deliver its output line by line.

    The final fragment after the last ``\\n`` is delivered too, exactly
    once and possibly empty.
    """
    encoding = get_config().output_encoding
    splitter = LineSplitter(lambda raw: on_line(decode_output(raw, encoding)))

    exit_code = stream(cmd_line, env, splitter.feed, runner=runner, cwd=cwd)
    splitter.finish()
    return exit_code


def capture(
    cmd_line: str,
    env: Environment,
    *,
    runner: ProcessRunner | None = None,
    cwd: Path | None = None,
) -> ExitCodeAndOutput:
    """Run ``cmd_line`` and collect its entire merged output."""
    buffer = bytearray()
    exit_code = stream(cmd_line, env, buffer.extend, runner=runner, cwd=cwd)
    return ExitCodeAndOutput(exit_code, decode_output(bytes(buffer)))
