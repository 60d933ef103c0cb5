"""cmdexec - 通过平台 shell 执行命令行，并协调 Ctrl+C 中断。

环境变量:
    CMDEXEC_KEEP_ENV_VARS: Windows 上额外保留给子进程的变量名（分号分隔）
    CMDEXEC_DEBUG: 回显每条命令并输出调试日志 (默认 false)
    CMDEXEC_LOG_DEBUG: 调试日志写入临时文件 (默认 false)
    CMDEXEC_WAIT_NOTICE_INTERVAL: 中断后等待子进程时的提示间隔秒数 (默认 10)
    CMDEXEC_OUTPUT_ENCODING: 解码子进程输出的编码 (默认 utf-8)

用法:
    cmdexec --mode capture -- echo hello
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
