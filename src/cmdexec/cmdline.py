"""CMake command-line construction."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import PurePath

__all__ = ["CMakeVariable", "make_cmake_cmd"]


@dataclass(frozen=True)
class CMakeVariable:
    """A quoted ``-D<name>=<value>`` argument for ``cmake -P``.

    Path values are written with forward slashes, which CMake accepts on
    every platform.
    """

    name: str
    value: str | PurePath

    @property
    def argument(self) -> str:
        value = self.value.as_posix() if isinstance(self.value, PurePath) else self.value
        return f'"-D{self.name}={value}"'

    def __str__(self) -> str:
        return self.argument


def make_cmake_cmd(
    cmake_exe: str | PurePath,
    cmake_script: str | PurePath,
    variables: Iterable[CMakeVariable] = (),
) -> str:
    """Command line running ``cmake_script`` in script mode."""
    script = cmake_script.as_posix() if isinstance(cmake_script, PurePath) else cmake_script
    parts = [f'"{cmake_exe}"', *(v.argument for v in variables), "-P", f'"{script}"']
    return " ".join(parts)
