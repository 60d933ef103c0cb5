"""cmdexec 命令行入口。

包含日志配置、参数解析和主入口点。

用法:
    cmdexec [--mode MODE] [--clean-env | --set NAME=VALUE ...] [--path-prefix P] -- <程序> [参数 ...]
    cmdexec [--mode MODE] ... -c "<已转义的命令行>"

位置参数逐个按平台 shell 规则转义后拼接；-c 的值原样交给 shell。

模式:
    execute  前台运行，继承标准输入输出（默认）
    capture  捕获合并后的 stdout+stderr，结束后一次性输出
    stream   按块转发输出
    lines    按行转发输出（每行加行号前缀）
    no-wait  分离启动后立即返回
    env      运行环境设置命令，输出其留下的环境变量
"""

from __future__ import annotations

import argparse
import logging
import shlex
import subprocess
import sys
from collections.abc import Sequence

from . import __version__
from .commands import (
    cmd_execute,
    cmd_execute_and_capture_output,
    cmd_execute_and_stream_data,
    cmd_execute_and_stream_lines,
    cmd_execute_modify_env,
    cmd_execute_no_wait,
)
from .config import get_config
from .environment import Environment, get_clean_environment, get_environment
from .interrupt import get_coordinator
from .runtime.process_runner import signal_name

__all__ = ["build_parser", "configure_logging", "main", "quote_command", "run"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

MODES = ("execute", "capture", "stream", "lines", "no-wait", "env")


def configure_logging() -> None:
    """配置日志输出。

    - 默认：输出到 stderr，INFO 级别（CMDEXEC_DEBUG 时为 DEBUG）
    - CMDEXEC_LOG_DEBUG：输出到临时文件，DEBUG 级别
    """
    config = get_config()
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if config.debug else logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 cmdexec 命名空间启用详细日志
    logging.getLogger("cmdexec").setLevel(log_level)


def _parse_assignment(value: str) -> tuple[str, str]:
    name, sep, var_value = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {value!r}")
    return name, var_value


def build_parser() -> argparse.ArgumentParser:
    """构建命令行参数解析器。"""
    parser = argparse.ArgumentParser(
        prog="cmdexec",
        description="Run a command line through the platform shell.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--mode", choices=MODES, default="execute", help="Execution mode")
    parser.add_argument(
        "--clean-env",
        action="store_true",
        help="Use the shared clean environment (no extra variables)",
    )
    parser.add_argument(
        "--inherit-env",
        action="store_true",
        help="Let the child inherit this process's environment unchanged",
    )
    parser.add_argument(
        "--set",
        dest="assignments",
        metavar="NAME=VALUE",
        type=_parse_assignment,
        action="append",
        default=[],
        help="Extra environment variable (repeatable; PATH is appended to the search path)",
    )
    parser.add_argument("--path-prefix", default="", help="Prefix for the search path")
    parser.add_argument(
        "--no-interrupt-guard",
        action="store_true",
        help="Do not install the Ctrl+C handler",
    )
    parser.add_argument(
        "-c",
        "--command-line",
        dest="cmd_line",
        metavar="CMD_LINE",
        help="Already-quoted command line, handed to the shell verbatim",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Program and arguments; each argument is quoted for the shell",
    )
    return parser


def _select_environment(args: argparse.Namespace) -> Environment:
    if args.inherit_env:
        return Environment.inherit()
    if args.clean_env or (not args.assignments and not args.path_prefix):
        return get_clean_environment()
    return get_environment(dict(args.assignments), args.path_prefix)


def quote_command(argv: Sequence[str]) -> str:
    """把已拆分的参数按平台 shell 规则转义后拼接为一条命令行。"""
    if IS_WINDOWS:
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


def _resolve_command_line(args: argparse.Namespace) -> str:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]

    if args.cmd_line is not None:
        if command:
            raise ValueError("Give either -c CMD_LINE or program arguments, not both")
        return args.cmd_line
    if not command:
        raise ValueError("No command line given")
    return quote_command(command)


def _write_chunk(chunk: bytes) -> None:
    sys.stdout.buffer.write(chunk)
    sys.stdout.buffer.flush()


def run(args: argparse.Namespace) -> int:
    """按模式执行命令，返回退出码。"""
    cmd_line = _resolve_command_line(args)
    env = _select_environment(args)
    logger.debug(f"Running mode={args.mode} env={env!r} cmd_line={cmd_line!r}")

    if args.mode == "no-wait":
        cmd_execute_no_wait(cmd_line)
        return 0

    if args.mode == "capture":
        result = cmd_execute_and_capture_output(cmd_line, env)
        sys.stdout.write(result.output)
        exit_code = result.exit_code
    elif args.mode == "stream":
        exit_code = cmd_execute_and_stream_data(cmd_line, _write_chunk, env)
    elif args.mode == "lines":
        line_number = 0

        def print_line(line: str) -> None:
            nonlocal line_number
            line_number += 1
            print(f"{line_number:5d} | {line}")

        exit_code = cmd_execute_and_stream_lines(cmd_line, print_line, env)
    elif args.mode == "env":
        derived = cmd_execute_modify_env(cmd_line, env)
        for name, value in derived:
            print(f"{name}={value}")
        exit_code = 0
    else:
        exit_code = cmd_execute(cmd_line, env)

    name = signal_name(exit_code)
    if name:
        logger.warning(f"Command terminated by {name}")
    return exit_code


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)

    logger.debug(f"Starting cmdexec {__version__}: {get_config()}")

    coordinator = get_coordinator()
    if not args.no_interrupt_guard:
        coordinator.install()

    try:
        exit_code = run(args)
    except ValueError as e:
        parser.error(str(e))
    finally:
        coordinator.uninstall()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
