"""Process spawner with shell routing and explicit pipe ownership.

cmdexec runtime module

This module provides:
- Shell routing: every command line runs through the platform interpreter
- Three spawn modes: detached (fire-and-forget), foreground, redirected
- Merged stdout/stderr pipe plus a stdin pipe for redirected children
- Fatal launch failures (a child that cannot be created ends the run)

Key design points:
- POSIX: /bin/sh -c <cmd_line>
- Windows: cmd.exe /c "<cmd_line>" (one set of quotes around the whole line)
- Parent-side pipe ends are made non-inheritable before the child exists
- The child's pipe ends are closed in the parent right after creation
- Handles own their descriptors and release them on every exit path
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..checks import exit_fail, flush_stdio
from ..environment import Environment

__all__ = [
    "PipeEndpoints",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
    "SpawnMode",
    "build_shell_command",
    "decode_exit_code",
    "signal_name",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

POSIX_SHELL = "/bin/sh"


class SpawnMode(Enum):
    """How a child is created.

    - DETACHED: fire-and-forget, nobody waits, handles released at once
    - FOREGROUND: caller blocks in wait(), streams are inherited
    - REDIRECTED: merged stdout+stderr pipe and a stdin pipe
    """

    DETACHED = "detached"
    FOREGROUND = "foreground"
    REDIRECTED = "redirected"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a child process.

    Attributes:
        cmd_line: Already-quoted command line for the platform shell
        env: Environment block (inherit sentinel by default)
        mode: Spawn mode
        cwd: Working directory (None = current directory)
    """

    cmd_line: str
    env: Environment = field(default_factory=Environment.inherit)
    mode: SpawnMode = SpawnMode.FOREGROUND
    cwd: Path | None = None


@dataclass
class PipeEndpoints:
    """Parent-owned pipe ends of a redirected child.

    Attributes:
        stdout_read: Read end of the merged stdout/stderr pipe
        stdin_write: Write end of the child's stdin pipe
    """

    stdout_read: int | None = None
    stdin_write: int | None = None

    def close_stdin(self) -> None:
        """Close the child's stdin; it sees end-of-file."""
        if self.stdin_write is not None:
            fd, self.stdin_write = self.stdin_write, None
            _close_fd(fd)

    def close_stdout(self) -> None:
        if self.stdout_read is not None:
            fd, self.stdout_read = self.stdout_read, None
            _close_fd(fd)

    def close(self) -> None:
        self.close_stdin()
        self.close_stdout()


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError as e:
        logger.debug(f"Error closing fd={fd}: {e}")


def build_shell_command(cmd_line: str) -> str | list[str]:
    """Wrap ``cmd_line`` so the platform shell interprets it.

    Returns:
        A command string on Windows (handed to CreateProcess as-is),
        an argv list elsewhere.
    """
    if IS_WINDOWS:
        return f'cmd.exe /c "{cmd_line}"'
    return [POSIX_SHELL, "-c", cmd_line]


def decode_exit_code(returncode: int) -> int:
    """Map a ``Popen.returncode`` to the shell's exit status convention.

    On POSIX a child killed by signal N reports ``-N``; shells report
    ``128 + N``.
    """
    if returncode < 0 and not IS_WINDOWS:
        return 128 - returncode
    return returncode


class ProcessHandle:
    """A live or exited child owned by the call that spawned it.

    ``wait()`` may be called once; afterwards the handle is released and
    must not be used again.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        cmd_line: str,
        pipes: PipeEndpoints | None = None,
    ) -> None:
        self._process = process
        self._cmd_line = cmd_line
        self._pipes = pipes
        self._released = False
        self._start_time = time.perf_counter()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def pipes(self) -> PipeEndpoints | None:
        return self._pipes

    @property
    def released(self) -> bool:
        return self._released

    @property
    def elapsed_us(self) -> int:
        return int((time.perf_counter() - self._start_time) * 1_000_000)

    def wait(self) -> int:
        """Block until the child exits, release the handle, return its exit code.

        Raises:
            RuntimeError: If the handle was already waited on or closed
        """
        if self._released:
            raise RuntimeError(f"Process handle pid={self.pid} already released")

        try:
            returncode = self._process.wait()
        finally:
            self._release()

        exit_code = decode_exit_code(returncode)
        logger.debug(
            f"Subprocess completed pid={self.pid} "
            f"exit_code={exit_code} after {self.elapsed_us} us"
        )
        return exit_code

    def __repr__(self) -> str:
        status = "released" if self._released else "live"
        return f"ProcessHandle(pid={self.pid}, status={status}, cmd={self._cmd_line!r})"

    def close(self) -> None:
        """Release the handle without waiting for the child."""
        if not self._released:
            self._release()

    def _release(self) -> None:
        self._released = True
        if self._pipes is not None:
            self._pipes.close()


@dataclass
class ProcessRunner:
    """Creates child processes through the platform shell.

    Example:
        runner = ProcessRunner()
        handle = runner.spawn(ProcessSpec("make all", env=get_clean_environment()))
        exit_code = handle.wait()

        handle = runner.spawn_with_pipes(ProcessSpec("cl /?", mode=SpawnMode.REDIRECTED))
        handle.pipes.close_stdin()
        ...  # read handle.pipes.stdout_read until EOF
        exit_code = handle.wait()
    """

    def spawn(self, spec: ProcessSpec) -> ProcessHandle:
        """Create a detached or foreground child.

        Detached children are reaped in the background; the returned
        handle is already released.

        Raises:
            ValueError: If ``spec.mode`` is REDIRECTED (use spawn_with_pipes)
        """
        if spec.mode is SpawnMode.REDIRECTED:
            raise ValueError("Redirected children must be created with spawn_with_pipes()")

        process = self._create_process(spec)
        handle = ProcessHandle(process, spec.cmd_line)

        if spec.mode is SpawnMode.DETACHED:
            reaper = threading.Thread(
                target=process.wait,
                name=f"cmdexec-reaper-{process.pid}",
                daemon=True,
            )
            reaper.start()
            handle.close()

        return handle

    def spawn_with_pipes(self, spec: ProcessSpec) -> ProcessHandle:
        """Create a child whose stdout and stderr share one pipe.

        The child's stdin is a pipe too; callers that have no input close
        it right away with ``handle.pipes.close_stdin()``.
        """
        stdout_read, stdout_write = os.pipe()
        stdin_read, stdin_write = os.pipe()
        pipes = PipeEndpoints(stdout_read=stdout_read, stdin_write=stdin_write)
        child_ends = (stdin_read, stdout_write)

        try:
            # Only the child's ends may cross into the child
            os.set_inheritable(stdout_read, False)
            os.set_inheritable(stdin_write, False)
            inheritable = os.get_inheritable(stdout_read) or os.get_inheritable(stdin_write)
        except OSError as e:
            self._close_all(pipes, child_ends)
            exit_fail(f"Could not mark pipe handles non-inheritable: error code {e.errno}")

        if inheritable:
            self._close_all(pipes, child_ends)
            exit_fail("Could not mark pipe handles non-inheritable")

        try:
            process = self._create_process(
                spec,
                stdin=stdin_read,
                stdout=stdout_write,
                stderr=subprocess.STDOUT,
                on_failure=pipes.close,
            )
        finally:
            for fd in child_ends:
                _close_fd(fd)

        return ProcessHandle(process, spec.cmd_line, pipes)

    def _close_all(self, pipes: PipeEndpoints, child_ends: tuple[int, int]) -> None:
        pipes.close()
        for fd in child_ends:
            _close_fd(fd)

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific Popen kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for subprocess.Popen
        """
        kwargs: dict[str, Any] = {}

        env = spec.env.as_dict()
        if env is not None:
            kwargs["env"] = env

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        if IS_WINDOWS:
            flags = subprocess.IDLE_PRIORITY_CLASS
            if spec.mode is SpawnMode.DETACHED:
                flags |= subprocess.DETACHED_PROCESS
            kwargs["creationflags"] = flags
        elif spec.mode is SpawnMode.DETACHED:
            # POSIX: leave our session so terminal signals do not reach it
            kwargs["start_new_session"] = True

        return kwargs

    def _create_process(
        self,
        spec: ProcessSpec,
        *,
        on_failure: Callable[[], None] | None = None,
        **io_kwargs: Any,
    ) -> subprocess.Popen[bytes]:
        command = build_shell_command(spec.cmd_line)
        kwargs = self._build_subprocess_kwargs(spec)
        kwargs.update(io_kwargs)

        logger.debug(f"CreateProcess({command!r}) mode={spec.mode.value}")

        # Our buffered output must not be interleaved with the child's
        flush_stdio()

        try:
            process = subprocess.Popen(command, **kwargs)
        except OSError as e:
            if on_failure is not None:
                on_failure()
            error_code = getattr(e, "winerror", None) or e.errno
            exit_fail(f"Process creation failed with error code: {error_code} ({e.strerror})")

        logger.debug(f"Started subprocess pid={process.pid} cwd={spec.cwd or os.getcwd()}")
        return process


def signal_name(exit_code: int) -> str | None:
    """Name of the signal encoded in a decoded POSIX exit code, if any."""
    if IS_WINDOWS or exit_code <= 128:
        return None
    try:
        return signal.Signals(exit_code - 128).name
    except ValueError:
        return None
