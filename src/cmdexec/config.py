"""CMDEXEC 环境变量配置管理。

环境变量:
    CMDEXEC_KEEP_ENV_VARS: 额外保留（继承给子进程）的环境变量名（仅 Windows）
        - 分号分割，例: "CC;CXX;VCPKG_ROOT"
        - 追加到内置白名单之后
        - 每次构建环境时由 current_keep_env_vars() 重新读取，不进入 Config

    CMDEXEC_DEBUG: 调试通道
        - true/1/yes = 开启 (输出命令行回显和耗时)
        - false/0/no = 关闭 (默认)

    CMDEXEC_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    CMDEXEC_WAIT_NOTICE_INTERVAL: 等待子进程退出时的提示间隔（秒）
        - 默认 10.0 秒
        - 限制在 0.1-600 秒范围

    CMDEXEC_OUTPUT_ENCODING: 子进程输出的解码方式
        - 默认 utf-8，无法解码的字节以替换字符表示
"""

from __future__ import annotations

import codecs
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "current_keep_env_vars",
    "KEEP_ENV_VARS_SEPARATOR",
]

# CMDEXEC_KEEP_ENV_VARS 的分隔符
KEEP_ENV_VARS_SEPARATOR = ";"

DEFAULT_WAIT_NOTICE_INTERVAL = 10.0
DEFAULT_OUTPUT_ENCODING = "utf-8"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_name_list(value: str | None) -> tuple[str, ...]:
    """解析变量名列表环境变量。

    Args:
        value: 环境变量值，分号分割

    Returns:
        变量名元组（保持顺序，去除空项和重复项）
    """
    if not value or not value.strip():
        return ()

    names: list[str] = []
    for item in value.split(KEEP_ENV_VARS_SEPARATOR):
        name = item.strip()
        if name and name not in names:
            names.append(name)

    return tuple(names)


def current_keep_env_vars() -> tuple[str, ...]:
    """读取当前进程的 CMDEXEC_KEEP_ENV_VARS（每次调用重新读取，不走缓存）。"""
    return _parse_name_list(os.environ.get("CMDEXEC_KEEP_ENV_VARS"))


def _parse_wait_notice_interval(value: str | None) -> float:
    """解析等待提示间隔环境变量。"""
    if not value:
        return DEFAULT_WAIT_NOTICE_INTERVAL
    try:
        interval = float(value)
        return max(0.1, min(interval, 600.0))  # 限制在 0.1-600 秒范围
    except ValueError:
        return DEFAULT_WAIT_NOTICE_INTERVAL


def _parse_encoding(value: str | None) -> str:
    """解析输出编码环境变量，未知编码回退到 utf-8。"""
    if not value or not value.strip():
        return DEFAULT_OUTPUT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_OUTPUT_ENCODING


@dataclass
class Config:
    """CMDEXEC 配置。

    Attributes:
        debug: 调试通道（命令行回显和耗时）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        wait_notice_interval: 等待子进程退出时的提示间隔（秒）
        output_encoding: 子进程输出的解码方式
    """

    debug: bool = False
    log_debug: bool = False
    log_file: str | None = None
    wait_notice_interval: float = DEFAULT_WAIT_NOTICE_INTERVAL
    output_encoding: str = DEFAULT_OUTPUT_ENCODING

    def __repr__(self) -> str:
        return (
            f"Config(debug={self.debug}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"wait_notice_interval={self.wait_notice_interval}, "
            f"output_encoding={self.output_encoding})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "cmdexec"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cmdexec_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("CMDEXEC_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        debug=_parse_bool(os.environ.get("CMDEXEC_DEBUG"), default=False),
        log_debug=log_debug,
        log_file=log_file,
        wait_notice_interval=_parse_wait_notice_interval(
            os.environ.get("CMDEXEC_WAIT_NOTICE_INTERVAL")
        ),
        output_encoding=_parse_encoding(os.environ.get("CMDEXEC_OUTPUT_ENCODING")),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
