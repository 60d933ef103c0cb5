"""Environment builder tests.

Test coverage:
- Windows: allow-list inheritance (unset/empty skipped, nothing else leaks)
- Windows: CMDEXEC_KEEP_ENV_VARS extension and system search path
- POSIX: full inheritance, caller PATH kept behind the prefix
- Extra variables override inherited ones
- Clean environment is built once and shared
- Environment dump parsing
"""

from __future__ import annotations

import os
import sys
import threading
from unittest import mock

import pytest

from cmdexec import environment
from cmdexec.environment import (
    BASE_ENV_VARS,
    PATH_VAR,
    Environment,
    get_clean_environment,
    get_environment,
    parse_environment_dump,
)

IS_WINDOWS = sys.platform == "win32"

posix_only = pytest.mark.skipif(IS_WINDOWS, reason="POSIX inherits the environment")
windows_only = pytest.mark.skipif(not IS_WINDOWS, reason="Windows curated environment")


def _env_with(**overrides: str) -> dict[str, str]:
    """Current environment minus CMDEXEC_* settings, plus overrides."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("CMDEXEC_")}
    env.update(overrides)
    return env


# =============================================================================
# Environment value type
# =============================================================================


class TestEnvironmentType:
    """Test the Environment value type."""

    def test_inherit_sentinel(self):
        env = Environment.inherit()
        assert env.is_inherit
        assert env.as_dict() is None
        assert len(env) == 0
        assert repr(env) == "Environment(inherit)"

    def test_from_mapping(self):
        env = Environment.from_mapping({"A": "1", "B": "2"})
        assert not env.is_inherit
        assert env.as_dict() == {"A": "1", "B": "2"}
        assert env.get("A") == "1"
        assert env.get("MISSING") is None
        assert "B" in env
        assert "MISSING" not in env
        assert env.names() == ["A", "B"]

    def test_immutable(self):
        env = Environment.from_mapping({"A": "1"})
        with pytest.raises(AttributeError):
            env.variables = ()  # type: ignore[misc]

    @pytest.mark.skipif(not IS_WINDOWS, reason="Windows names are case-insensitive")
    def test_windows_keys_case_insensitive(self):
        env = Environment.from_mapping({"Path": "a", "PATH": "b"})
        assert len(env) == 1
        assert env.get("path") == "b"

    @posix_only
    def test_posix_keys_case_sensitive(self):
        env = Environment.from_mapping({"Path": "a", "PATH": "b"})
        assert len(env) == 2
        assert env.get("Path") == "a"
        assert env.get("PATH") == "b"


# =============================================================================
# get_environment
# =============================================================================


class TestCuratedEnvironment:
    """Test the curated (Windows) environment block."""

    pytestmark = windows_only

    def test_only_allow_listed_names_inherited(self):
        """Nothing outside the allow-list (plus the search path) leaks through."""
        with mock.patch.dict(
            os.environ, _env_with(CMDEXEC_TEST_SECRET="leak"), clear=True
        ):
            env = get_environment()

        allowed = {name.upper() for name in BASE_ENV_VARS} | {PATH_VAR.upper(), "VSLANG"}
        for name in env.names():
            assert name.upper() in allowed
        assert "CMDEXEC_TEST_SECRET" not in env

    def test_inherits_set_allow_listed_value(self):
        with mock.patch.dict(os.environ, _env_with(VULKAN_SDK="C:\\VulkanSDK"), clear=True):
            env = get_environment()
        assert env.get("VULKAN_SDK") == "C:\\VulkanSDK"

    def test_empty_value_skipped(self):
        with mock.patch.dict(os.environ, _env_with(VULKAN_SDK=""), clear=True):
            env = get_environment()
        assert "VULKAN_SDK" not in env

    def test_unset_value_skipped(self):
        base = _env_with()
        base.pop("ANDROID_NDK_HOME", None)
        with mock.patch.dict(os.environ, base, clear=True):
            env = get_environment()
        assert "ANDROID_NDK_HOME" not in env

    def test_keep_env_vars_extends_allow_list(self):
        with mock.patch.dict(
            os.environ,
            _env_with(CMDEXEC_KEEP_ENV_VARS="MY_TOOL_HOME;OTHER", MY_TOOL_HOME="C:\\x"),
            clear=True,
        ):
            env = get_environment()
        assert env.get("MY_TOOL_HOME") == "C:\\x"
        # Listed but unset
        assert "OTHER" not in env

    def test_keep_env_vars_read_on_each_build(self):
        with mock.patch.dict(os.environ, _env_with(MY_TOOL_HOME="C:\\x"), clear=True):
            assert "MY_TOOL_HOME" not in get_environment()
            os.environ["CMDEXEC_KEEP_ENV_VARS"] = "MY_TOOL_HOME"
            assert get_environment().get("MY_TOOL_HOME") == "C:\\x"

    def test_windows_search_path(self):
        with mock.patch.dict(os.environ, {"SystemRoot": "C:\\Windows"}):
            env = get_environment({"PATH": "C:\\tools"}, prepend_to_path="C:\\pre;")
        assert env.get("Path") == (
            "C:\\pre;C:\\Windows\\system32;C:\\Windows;C:\\Windows\\system32\\Wbem;"
            "C:\\Windows\\system32\\WindowsPowerShell\\v1.0\\;C:\\tools"
        )
        assert env.get("VSLANG") == "1033"


class TestInheritedEnvironment:
    """Test the inherited (POSIX) environment block."""

    pytestmark = posix_only

    def test_no_extras_is_inherit(self):
        """Without extras or a prefix the child inherits everything."""
        assert get_environment().is_inherit
        assert get_environment({}, "").is_inherit

    def test_clean_environment_is_inherit(self):
        with mock.patch.dict(os.environ, {"CMDEXEC_TEST_SECRET": "kept"}):
            assert get_clean_environment().is_inherit

    def test_extras_keep_caller_environment(self):
        """Every caller variable survives, including ones no allow-list names."""
        with mock.patch.dict(
            os.environ,
            _env_with(CMDEXEC_TEST_SECRET="kept", VIRTUAL_ENV="/venv", PATH="/home/me/bin"),
            clear=True,
        ):
            env = get_environment({"NEW_VAR": "v"})
        assert env.get("CMDEXEC_TEST_SECRET") == "kept"
        assert env.get("VIRTUAL_ENV") == "/venv"
        assert env.get("NEW_VAR") == "v"
        assert env.get("PATH") == "/home/me/bin"

    def test_keep_env_vars_not_needed(self):
        """The allow-list extension has no effect when everything is inherited."""
        with mock.patch.dict(
            os.environ,
            _env_with(CMDEXEC_KEEP_ENV_VARS="OTHER", MY_TOOL_HOME="/x"),
            clear=True,
        ):
            env = get_environment({"A": "1"})
        assert env.get("MY_TOOL_HOME") == "/x"
        assert "OTHER" not in env

    def test_search_path_keeps_caller_path(self):
        with mock.patch.dict(os.environ, _env_with(PATH="/home/me/bin:/usr/bin"), clear=True):
            env = get_environment({"PATH": "/opt/tools/bin"}, prepend_to_path="/prefix/bin:")
        assert env.get("PATH") == "/prefix/bin:/home/me/bin:/usr/bin:/opt/tools/bin"
        # PATH from extra_env is not added as a separate entry
        assert env.names().count("PATH") == 1

    def test_prefix_alone_builds_block(self):
        with mock.patch.dict(os.environ, _env_with(PATH="/usr/bin"), clear=True):
            env = get_environment(prepend_to_path="/prefix/bin:")
        assert not env.is_inherit
        assert env.get("PATH") == "/prefix/bin:/usr/bin"

    def test_default_search_path_when_unset(self):
        base = _env_with()
        base.pop("PATH", None)
        with mock.patch.dict(os.environ, base, clear=True):
            env = get_environment({"A": "1"})
        assert env.get("PATH") == "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class TestGetEnvironment:
    """Test behaviour shared by every platform."""

    def test_extra_env_overrides_inherited(self):
        with mock.patch.dict(os.environ, _env_with(VULKAN_SDK="/inherited"), clear=True):
            env = get_environment({"VULKAN_SDK": "/override", "NEW_VAR": "v"})
        assert env.get("VULKAN_SDK") == "/override"
        assert env.get("NEW_VAR") == "v"

    def test_result_independent_of_caller_mapping(self):
        extra = {"A": "1"}
        env = get_environment(extra)
        extra["A"] = "2"
        assert env.get("A") == "1"


# =============================================================================
# Clean environment
# =============================================================================


class TestCleanEnvironment:
    """Test the shared clean environment."""

    def test_same_instance(self):
        assert get_clean_environment() is get_clean_environment()

    def test_built_once_across_threads(self):
        results: list[Environment] = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(get_clean_environment())

        with mock.patch.object(
            environment, "get_environment", wraps=environment.get_environment
        ) as build:
            threads = [threading.Thread(target=worker) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert build.call_count == 1
        assert all(env is results[0] for env in results)

    def test_equals_plain_build(self):
        assert get_clean_environment() == get_environment()


# =============================================================================
# Environment dump parsing
# =============================================================================


class TestParseEnvironmentDump:
    """Test parsing of the variable dump after the sentinel."""

    SENTINEL = "cdARN4xjKueKScMy9C6H"

    def test_windows_style_dump(self):
        output = f"setup noise\r\n{self.SENTINEL}\r\nVAR1=A\r\nVAR2=B\r\n"
        assert parse_environment_dump(output, self.SENTINEL, "\r\n") == {
            "VAR1": "A",
            "VAR2": "B",
        }

    def test_posix_style_dump(self):
        output = f"{self.SENTINEL}\nHOME=/root\nEMPTY=\n"
        assert parse_environment_dump(output, self.SENTINEL, "\n") == {
            "HOME": "/root",
            "EMPTY": "",
        }

    def test_value_may_contain_equals(self):
        output = f"{self.SENTINEL}\nOPTS=a=b=c\n"
        assert parse_environment_dump(output, self.SENTINEL, "\n") == {"OPTS": "a=b=c"}

    def test_stops_at_line_without_equals(self):
        output = f"{self.SENTINEL}\nA=1\nnot a variable\nB=2\n"
        assert parse_environment_dump(output, self.SENTINEL, "\n") == {"A": "1"}

    def test_stops_at_unterminated_line(self):
        output = f"{self.SENTINEL}\nA=1\nB=2"
        assert parse_environment_dump(output, self.SENTINEL, "\n") == {"A": "1"}

    def test_missing_sentinel(self):
        with pytest.raises(ValueError, match="not found"):
            parse_environment_dump("A=1\n", self.SENTINEL, "\n")

    def test_sentinel_without_terminator(self):
        with pytest.raises(ValueError):
            parse_environment_dump(f"noise {self.SENTINEL}", self.SENTINEL, "\n")
