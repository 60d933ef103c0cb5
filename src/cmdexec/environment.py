"""Environment blocks for child processes.

On Windows a child never sees the caller's full environment.
``get_environment()`` starts from a fixed allow-list of inheritable names
(profile/locale, proxy settings and the variables toolchain discovery relies
on), adds the names listed in ``CMDEXEC_KEEP_ENV_VARS``, synthesizes the
executable search path and finally applies the caller's extra variables.

Elsewhere the child inherits the caller's environment. Without extras the
block is ``Environment.inherit()``; with extras it is the current
environment with ``PATH`` recomposed and the extras applied on top.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from .checks import exit_fail
from .config import current_keep_env_vars

__all__ = [
    "Environment",
    "get_environment",
    "get_clean_environment",
    "parse_environment_dump",
    "BASE_ENV_VARS",
    "PATH_VAR",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Toolchain and proxy variables
_COMMON_ENV_VARS = (
    # Proxy information for download tools (curl inside cmake, etc.)
    "http_proxy",
    "https_proxy",
    # find_package(CUDA) and enable_language(CUDA)
    "CUDA_PATH",
    "CUDA_PATH_V9_0",
    "CUDA_PATH_V9_1",
    "CUDA_PATH_V10_0",
    "CUDA_PATH_V10_1",
    "CUDA_TOOLKIT_ROOT_DIR",
    # Set by the CUDA installer
    "NVCUDASAMPLES_ROOT",
    # find_package(Vulkan); set by the Vulkan SDK installer
    "VULKAN_SDK",
    # Targeted Android NDK
    "ANDROID_NDK_HOME",
)

_WINDOWS_ENV_VARS = (
    "ALLUSERSPROFILE",
    "APPDATA",
    "CommonProgramFiles",
    "CommonProgramFiles(x86)",
    "CommonProgramW6432",
    "COMPUTERNAME",
    "ComSpec",
    "HOMEDRIVE",
    "HOMEPATH",
    "LOCALAPPDATA",
    "LOGONSERVER",
    "NUMBER_OF_PROCESSORS",
    "OS",
    "PATHEXT",
    "PROCESSOR_ARCHITECTURE",
    "PROCESSOR_ARCHITEW6432",
    "PROCESSOR_IDENTIFIER",
    "PROCESSOR_LEVEL",
    "PROCESSOR_REVISION",
    "ProgramData",
    "ProgramFiles",
    "ProgramFiles(x86)",
    "ProgramW6432",
    "PROMPT",
    "PSModulePath",
    "PUBLIC",
    "SystemDrive",
    "SystemRoot",
    "TEMP",
    "TMP",
    "USERDNSDOMAIN",
    "USERDOMAIN",
    "USERDOMAIN_ROAMINGPROFILE",
    "USERNAME",
    "USERPROFILE",
    "windir",
)

# Allow-list for curated (Windows) blocks
BASE_ENV_VARS: tuple[str, ...] = _WINDOWS_ENV_VARS + _COMMON_ENV_VARS

PATH_VAR = "Path" if IS_WINDOWS else "PATH"
PATH_SEPARATOR = ";" if IS_WINDOWS else ":"

# Key of the caller-supplied search path override, whatever the platform
_EXTRA_PATH_KEY = "PATH"

# Search path used when the caller has none
_POSIX_DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def _normalize_key(name: str) -> str:
    # Windows environment names are case-insensitive
    return name.upper() if IS_WINDOWS else name


@dataclass(frozen=True)
class Environment:
    """Immutable environment block for a child process.

    ``variables`` is ``None`` for the inherit sentinel, otherwise the
    ordered ``(name, value)`` pairs of the block. Names are unique under
    the platform's case rules.
    """

    variables: tuple[tuple[str, str], ...] | None = None

    @classmethod
    def inherit(cls) -> "Environment":
        """The child inherits the current process environment unchanged."""
        return cls()

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "Environment":
        """Build a block from ``mapping``; later duplicates win."""
        merged: dict[str, tuple[str, str]] = {}
        for name, value in mapping.items():
            merged[_normalize_key(name)] = (name, value)
        return cls(tuple(merged.values()))

    @property
    def is_inherit(self) -> bool:
        return self.variables is None

    def as_dict(self) -> dict[str, str] | None:
        """Mapping for ``subprocess`` (``None`` means inherit)."""
        if self.variables is None:
            return None
        return dict(self.variables)

    def get(self, name: str, default: str | None = None) -> str | None:
        key = _normalize_key(name)
        for var_name, value in self.variables or ():
            if _normalize_key(var_name) == key:
                return value
        return default

    def names(self) -> list[str]:
        return [name for name, _ in self.variables or ()]

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self.get(name) is not None

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.variables or ())

    def __len__(self) -> int:
        return len(self.variables or ())

    def __repr__(self) -> str:
        if self.variables is None:
            return "Environment(inherit)"
        return f"Environment({len(self.variables)} vars)"


def _windows_system_path() -> str:
    system_root = os.environ.get("SystemRoot")
    if not system_root:
        exit_fail("Environment variable SystemRoot is not set")
    system32 = system_root + "\\system32"
    return f"{system32};{system_root};{system32}\\Wbem;{system32}\\WindowsPowerShell\\v1.0\\"


def _apply_extras(
    block: dict[str, tuple[str, str]],
    new_path: str,
    extra_env: Mapping[str, str],
) -> Environment:
    if _EXTRA_PATH_KEY in extra_env:
        new_path += PATH_SEPARATOR + extra_env[_EXTRA_PATH_KEY]
    block[_normalize_key(PATH_VAR)] = (PATH_VAR, new_path)

    for name, value in extra_env.items():
        if name == _EXTRA_PATH_KEY:
            continue
        block[_normalize_key(name)] = (name, value)

    return Environment(tuple(block.values()))


def _curated_environment(extra_env: Mapping[str, str], prepend_to_path: str) -> Environment:
    block: dict[str, tuple[str, str]] = {}

    names = list(BASE_ENV_VARS)
    for name in current_keep_env_vars():
        if name not in names:
            names.append(name)

    for name in names:
        value = os.environ.get(name)
        if not value:
            continue
        block[_normalize_key(name)] = (name, value)

    # English diagnostics from MSVC tools
    block[_normalize_key("VSLANG")] = ("VSLANG", "1033")

    return _apply_extras(block, prepend_to_path + _windows_system_path(), extra_env)


def _inherited_environment(extra_env: Mapping[str, str], prepend_to_path: str) -> Environment:
    if not extra_env and not prepend_to_path:
        return Environment.inherit()

    block = {_normalize_key(name): (name, value) for name, value in os.environ.items()}
    current_path = os.environ.get(PATH_VAR) or _POSIX_DEFAULT_PATH
    return _apply_extras(block, prepend_to_path + current_path, extra_env)


def get_environment(
    extra_env: Mapping[str, str] | None = None,
    prepend_to_path: str = "",
) -> Environment:
    """Build the environment block for a child process.

    On Windows the block is curated: allow-listed variables plus the
    system search path. Elsewhere the current environment is inherited,
    and without extras the result is ``Environment.inherit()``.

    Args:
        extra_env: Variables to add; they override inherited ones.
            ``PATH`` is not added verbatim but appended to the
            search path.
        prepend_to_path: Prefix for the search path, including its
            trailing separator.

    Returns:
        A new, immutable Environment
    """
    extra_env = extra_env or {}
    if IS_WINDOWS:
        return _curated_environment(extra_env, prepend_to_path)
    return _inherited_environment(extra_env, prepend_to_path)


_clean_env: Environment | None = None
_clean_env_lock = threading.Lock()


def get_clean_environment() -> Environment:
    """Process-wide baseline environment (no extras, no path prefix).

    Built on first use, at most once, and never modified afterwards;
    safe to share between threads.
    """
    global _clean_env
    if _clean_env is None:
        with _clean_env_lock:
            if _clean_env is None:
                _clean_env = get_environment()
                logger.debug(f"Clean environment initialized: {_clean_env!r}")
    return _clean_env


def parse_environment_dump(output: str, sentinel: str, newline: str) -> dict[str, str]:
    """Parse the variable dump that follows ``sentinel`` in ``output``.

    Lines after ``sentinel + newline`` are read as ``NAME=VALUE``; parsing
    stops at the first line without ``=`` or without a terminator.

    Raises:
        ValueError: If ``sentinel + newline`` does not occur in ``output``
    """
    marker = sentinel + newline
    start = output.find(marker)
    if start < 0:
        raise ValueError(f"Sentinel {sentinel!r} not found in command output")

    pos = start + len(marker)
    variables: dict[str, str] = {}
    while True:
        end = output.find(newline, pos)
        if end < 0:
            break
        line = output[pos:end]
        name, sep, value = line.partition("=")
        if not sep:
            break
        variables[name] = value
        pos = end + len(newline)

    return variables
