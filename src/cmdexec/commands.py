"""Command execution front-end.

Every blocking entry point here runs its child between the interrupt
coordinator's two transitions, so an interrupt never ends the process
while the child is still running:

    cmd_execute()                      -> exit code, streams inherited
    cmd_execute_and_stream_data()      -> exit code, raw output chunks
    cmd_execute_and_stream_lines()     -> exit code, output lines
    cmd_execute_and_capture_output()   -> exit code and combined output
    cmd_execute_modify_env()           -> environment left by a setup command
    cmd_execute_no_wait()              -> nothing, child detached

``env=None`` means the process-wide clean environment.
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

from .checks import check_exit, exit_fail
from .environment import Environment, get_clean_environment, parse_environment_dump
from .interrupt import get_coordinator
from .runtime.process_runner import ProcessRunner, ProcessSpec, SpawnMode
from .runtime.streaming import (
    ChunkCallback,
    ExitCodeAndOutput,
    LineCallback,
    capture,
    stream,
    stream_lines,
)

__all__ = [
    "cmd_execute",
    "cmd_execute_no_wait",
    "cmd_execute_and_stream_data",
    "cmd_execute_and_stream_lines",
    "cmd_execute_and_capture_output",
    "cmd_execute_modify_env",
    "ENV_DUMP_SENTINEL",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Marks where a setup command's own output ends and the variable dump starts
ENV_DUMP_SENTINEL = "cdARN4xjKueKScMy9C6H"


def _resolve_env(env: Environment | None) -> Environment:
    return get_clean_environment() if env is None else env


def _elapsed_us(start: float) -> int:
    return int((time.perf_counter() - start) * 1_000_000)


def cmd_execute_no_wait(cmd_line: str, *, cwd: Path | None = None) -> None:
    """Start ``cmd_line`` detached, with the inherited environment, and return."""
    start = time.perf_counter()
    ProcessRunner().spawn(ProcessSpec(cmd_line, mode=SpawnMode.DETACHED, cwd=cwd))
    logger.debug(f"cmd_execute_no_wait() took {_elapsed_us(start)} us")


def cmd_execute(
    cmd_line: str,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
) -> int:
    """Run ``cmd_line`` in the foreground and return its exit code."""
    start = time.perf_counter()
    spec = ProcessSpec(cmd_line, env=_resolve_env(env), mode=SpawnMode.FOREGROUND, cwd=cwd)

    with get_coordinator().blocking_child():
        exit_code = ProcessRunner().spawn(spec).wait()

    logger.debug(f"cmd_execute() returned {exit_code} after {_elapsed_us(start)} us")
    return exit_code


def cmd_execute_and_stream_data(
    cmd_line: str,
    on_chunk: ChunkCallback,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
) -> int:
    """Run ``cmd_line`` and pass its merged output to ``on_chunk`` block by block."""
    with get_coordinator().blocking_child():
        return stream(cmd_line, _resolve_env(env), on_chunk, cwd=cwd)


def cmd_execute_and_stream_lines(
    cmd_line: str,
    on_line: LineCallback,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
) -> int:
    """Run ``cmd_line`` and pass its merged output to ``on_line`` line by line."""
    with get_coordinator().blocking_child():
        return stream_lines(cmd_line, _resolve_env(env), on_line, cwd=cwd)


def cmd_execute_and_capture_output(
    cmd_line: str,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
) -> ExitCodeAndOutput:
    """Run ``cmd_line`` and return its exit code with the combined output."""
    with get_coordinator().blocking_child():
        return capture(cmd_line, _resolve_env(env), cwd=cwd)


def _env_dump_command(cmd_line: str) -> str:
    if IS_WINDOWS:
        return f"{cmd_line} && echo {ENV_DUMP_SENTINEL}&& set"
    return f"{cmd_line} && echo {ENV_DUMP_SENTINEL} && env"


def cmd_execute_modify_env(
    cmd_line: str,
    env: Environment | None = None,
    *,
    cwd: Path | None = None,
) -> Environment:
    """Run a setup command and return the environment it leaves behind.

    The command line is extended with the sentinel and a full variable
    dump; the Environment is built from the dump. A non-zero exit code or
    a missing sentinel is fatal.
    """
    result = cmd_execute_and_capture_output(_env_dump_command(cmd_line), env, cwd=cwd)
    check_exit(
        result.exit_code == 0,
        f"Environment setup command failed with exit code {result.exit_code}: {cmd_line}",
    )

    newline = "\r\n" if IS_WINDOWS else "\n"
    try:
        variables = parse_environment_dump(result.output, ENV_DUMP_SENTINEL, newline)
    except ValueError as e:
        exit_fail(f"Could not read the environment of {cmd_line!r}: {e}")

    logger.debug(f"cmd_execute_modify_env() captured {len(variables)} variables")
    return Environment.from_mapping(variables)
