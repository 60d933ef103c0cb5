"""Fatal-exit helpers.

Infrastructure failures (a child cannot be created, pipes cannot be set up,
an environment dump cannot be parsed) have no degraded mode to offer a
caller, so they never come back as return values: they go through
``exit_fail()``, which logs the diagnostic, runs the registered cleanup
hooks exactly once and terminates the process.

Failures of the child itself (non-zero exit codes) are not handled here;
they are ordinary return values.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from collections.abc import Callable
from typing import NoReturn

__all__ = [
    "check_exit",
    "exit_fail",
    "final_cleanup_and_exit",
    "flush_stdio",
    "register_cleanup",
    "unregister_cleanup",
]

logger = logging.getLogger(__name__)

_cleanup_lock = threading.Lock()
_cleanup_hooks: list[Callable[[], None]] = []
_cleanup_done = False


def register_cleanup(hook: Callable[[], None]) -> None:
    """Register a hook to run once before the process terminates.

    Hooks run in reverse registration order.
    """
    with _cleanup_lock:
        if hook not in _cleanup_hooks:
            _cleanup_hooks.append(hook)


def unregister_cleanup(hook: Callable[[], None]) -> None:
    with _cleanup_lock:
        if hook in _cleanup_hooks:
            _cleanup_hooks.remove(hook)


def _run_cleanup_hooks() -> None:
    global _cleanup_done
    with _cleanup_lock:
        if _cleanup_done:
            return
        _cleanup_done = True
        hooks = list(reversed(_cleanup_hooks))

    for hook in hooks:
        try:
            hook()
        except Exception as e:
            logger.warning(f"Error in cleanup hook {hook!r}: {e}")


def flush_stdio() -> None:
    for stream in (sys.stdout, sys.stderr):
        if stream is None:
            continue
        try:
            stream.flush()
        except (OSError, ValueError):
            # Closed or detached stream
            pass


def _hard_exit(exit_code: int) -> NoReturn:
    logging.shutdown()
    os._exit(exit_code)


def final_cleanup_and_exit(exit_code: int, *, immediate: bool = False) -> NoReturn:
    """Run cleanup hooks, flush stdio and terminate the process.

    On the main thread (and unless ``immediate`` is set) this raises
    ``SystemExit`` so interpreter-level cleanup still runs. Any other
    thread cannot end the process with ``SystemExit``, so it exits hard.

    Args:
        exit_code: Process exit status
        immediate: Always exit hard, without unwinding the main thread.
            Used by interrupt handling, where parked threads would
            otherwise keep the interpreter alive.
    """
    _run_cleanup_hooks()
    flush_stdio()

    if not immediate and threading.current_thread() is threading.main_thread():
        sys.exit(exit_code)

    _hard_exit(exit_code)


def exit_fail(message: str, exit_code: int = 1) -> NoReturn:
    """Log a fatal diagnostic and terminate the process."""
    logger.error(message)
    final_cleanup_and_exit(exit_code)


def check_exit(condition: bool, message: str) -> None:
    """Terminate the process with ``message`` unless ``condition`` holds."""
    if not condition:
        exit_fail(message)
