"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import shlex
import subprocess
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 模拟工具脚本
FAKE_TOOL = Path(__file__).parent / "fixtures" / "fake_tool.py"


def tool_command(*args: str) -> str:
    """构造运行 fake_tool.py 的命令行（已按平台 shell 转义）。"""
    argv = [sys.executable, str(FAKE_TOOL), *args]
    if sys.platform == "win32":
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


@pytest.fixture
def fake_tool():
    """返回命令行构造函数。"""
    return tool_command


@pytest.fixture(autouse=True)
def reset_process_state(monkeypatch):
    """重置模块级全局状态（配置、clean 环境、清理钩子、中断协调器）。"""
    from cmdexec import checks, config, environment, interrupt

    monkeypatch.setattr(config, "_config", None)
    monkeypatch.setattr(environment, "_clean_env", None)
    monkeypatch.setattr(checks, "_cleanup_hooks", [])
    monkeypatch.setattr(checks, "_cleanup_done", False)
    monkeypatch.setattr(interrupt, "_coordinator", None)
    yield
