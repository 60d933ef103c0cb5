"""中断协调模块。

在子进程运行期间收到 SIGINT (Ctrl+C) 时，保证：
- 不会在仍有子进程运行时退出（避免孤儿进程和被破坏的共享资源）
- 退出只发生一次，由最后一个结束的子进程所在线程负责
- 没有子进程运行时，立即退出

状态编码在一个共享的有符号计数器 C 中：
- C == 0: 空闲，没有子进程，也没有中断请求
- C > 0: 有 C 个子进程正在阻塞调用线程
- C < 0: 已请求中断，C 与 INTERRUPT_BASE 的距离是中断时仍未结束的子进程数

信号处理函数本身只把信号编号放入 queue.SimpleQueue（可重入安全），
真正的状态迁移在专用线程或普通调用线程上完成，信号上下文中从不加锁。
"""

from __future__ import annotations

import functools
import logging
import queue
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, NoReturn, Optional

from .checks import final_cleanup_and_exit
from .config import get_config

__all__ = [
    "AtomicCounter",
    "InterruptCoordinator",
    "get_coordinator",
    "install_interrupt_handler",
    "INTERRUPT_BASE",
    "INTERRUPT_EXIT_CODE",
]

logger = logging.getLogger(__name__)

# 中断标记基数（与 32 位 INT_MIN 相同）
INTERRUPT_BASE = -(2**31)

# 128 + SIGINT(2)
INTERRUPT_EXIT_CODE = 130

_STOP_WATCHER = None


class AtomicCounter:
    """线程安全的整数计数器。

    提供 compare_exchange / fetch_add 两个原语，所有状态迁移都通过它们完成。
    内部锁只在普通线程上获取，从不在信号处理函数中获取。
    """

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def load(self) -> int:
        with self._lock:
            return self._value

    def compare_exchange(self, expected: int, desired: int) -> tuple[bool, int]:
        """若当前值等于 expected，则替换为 desired。

        Returns:
            (是否替换成功, 替换前观察到的值)
        """
        with self._lock:
            current = self._value
            if current == expected:
                self._value = desired
                return True, current
            return False, current

    def fetch_add(self, delta: int) -> int:
        """加上 delta，返回修改前的值。"""
        with self._lock:
            previous = self._value
            self._value = previous + delta
            return previous


class InterruptCoordinator:
    """中断协调器。

    调用方在启动会阻塞的子进程前后调用
    transition_to_spawn_process() / transition_from_spawn_process()
    （或使用 blocking_child() 上下文管理器）；
    install() 之后，SIGINT 会触发 transition_handle_interrupt()。

    Example:
        ```python
        coordinator = get_coordinator()
        coordinator.install()

        with coordinator.blocking_child():
            exit_code = handle.wait()
        ```

    Attributes:
        notice_interval: 等待其他子进程退出时的提示间隔（秒）
    """

    def __init__(
        self,
        terminate: Optional[Callable[[int], NoReturn]] = None,
        notice_interval: Optional[float] = None,
    ) -> None:
        """初始化中断协调器。

        Args:
            terminate: 终止进程的函数（默认清理后立即退出）
            notice_interval: 等待提示间隔（默认从配置读取）
        """
        self._counter = AtomicCounter()
        self._terminate = terminate or functools.partial(final_cleanup_and_exit, immediate=True)
        self.notice_interval = (
            notice_interval if notice_interval is not None else get_config().wait_notice_interval
        )

        # 信号处理函数与处理线程之间的通道
        self._signals: queue.SimpleQueue[Optional[int]] = queue.SimpleQueue()
        self._watcher: Optional[threading.Thread] = None
        self._original_handlers: dict[int, Any] = {}
        self._installed: bool = False

    @property
    def value(self) -> int:
        """计数器原始值（诊断用）。"""
        return self._counter.load()

    @property
    def is_interrupt_requested(self) -> bool:
        """是否已请求中断。"""
        return self._counter.load() < 0

    @property
    def outstanding(self) -> int:
        """当前仍在阻塞的子进程数量。"""
        value = self._counter.load()
        return value - INTERRUPT_BASE if value < 0 else value

    @property
    def is_installed(self) -> bool:
        return self._installed

    # ------------------------------------------------------------------
    # 状态迁移
    # ------------------------------------------------------------------

    def transition_to_spawn_process(self) -> None:
        """启动阻塞子进程之前调用。

        若中断已在进行中，当前线程永久等待：其他线程的子进程结束时会终止进程。
        """
        self._process_pending_signals()

        expected = 0
        while True:
            swapped, observed = self._counter.compare_exchange(expected, expected + 1)
            if swapped:
                return
            if observed < 0:
                logger.debug("Interrupt in flight, not starting a new child process")
                self._park_forever()
            expected = observed

    def transition_from_spawn_process(self) -> None:
        """阻塞子进程结束之后调用。

        若中断已在进行中：最后一个结束的子进程所在线程负责终止进程，
        其余线程永久等待。
        """
        self._process_pending_signals()

        previous = self._counter.fetch_add(-1)
        if previous == INTERRUPT_BASE + 1:
            logger.info("Last child process exited after interrupt, terminating")
            self._terminate(INTERRUPT_EXIT_CODE)
        elif previous < 0:
            self._park_forever()

    def transition_handle_interrupt(self) -> None:
        """处理一次中断请求。

        - 重复的中断直接忽略
        - 没有子进程时立即终止进程
        - 有子进程时记录数量并返回，由 transition_from_spawn_process() 负责终止
        """
        expected = 0
        while True:
            swapped, observed = self._counter.compare_exchange(
                expected, expected + INTERRUPT_BASE
            )
            if swapped:
                break
            if observed < 0:
                logger.debug("Repeated interrupt ignored, a previous one is being handled")
                return
            expected = observed

        if expected == 0:
            logger.info("Interrupt received with no child process running, terminating")
            self._terminate(INTERRUPT_EXIT_CODE)
        else:
            logger.warning(
                f"Interrupt received, waiting for {expected} child process(es) to exit"
            )

    @contextmanager
    def blocking_child(self) -> Iterator[None]:
        """把一个阻塞子进程的生命周期包在两次状态迁移之间。"""
        self.transition_to_spawn_process()
        try:
            yield
        finally:
            self.transition_from_spawn_process()

    def _park_forever(self) -> NoReturn:
        """永久等待，周期性输出提示；进程由其他线程终止。"""
        while True:
            time.sleep(self.notice_interval)
            logger.warning("Waiting for child processes to exit...")

    # ------------------------------------------------------------------
    # 信号投递
    # ------------------------------------------------------------------

    def install(self) -> None:
        """安装 SIGINT 处理器并启动处理线程。

        必须在主线程中调用。
        """
        if self._installed:
            logger.warning("InterruptCoordinator already installed")
            return

        signums = [signal.SIGINT]
        if sys.platform == "win32":
            signums.append(signal.SIGBREAK)

        for signum in signums:
            self._original_handlers[signum] = signal.signal(signum, self._on_signal)

        self._watcher = threading.Thread(
            target=self._watch_signals,
            name="cmdexec-interrupt",
            daemon=True,
        )
        self._watcher.start()
        self._installed = True
        logger.debug(f"Interrupt handler installed for signals {signums}")

    def uninstall(self) -> None:
        """恢复原始信号处理器并停止处理线程。"""
        if not self._installed:
            return

        self._installed = False
        for signum, handler in self._original_handlers.items():
            try:
                signal.signal(signum, handler)
            except (ValueError, OSError) as e:
                logger.debug(f"Error restoring handler for signal {signum}: {e}")
        self._original_handlers.clear()

        self._signals.put(_STOP_WATCHER)
        if self._watcher is not None:
            self._watcher.join(timeout=5.0)
            self._watcher = None

        logger.debug("Interrupt handler removed")

    def _on_signal(self, signum: int, frame: object) -> None:
        # 信号上下文：只入队，不加锁、不输出
        self._signals.put(signum)

    def _watch_signals(self) -> None:
        while True:
            signum = self._signals.get()
            if signum is _STOP_WATCHER:
                return
            self._handle_signal(signum)

    def _process_pending_signals(self) -> None:
        """在普通线程上处理已入队但尚未处理的信号。

        主线程从 wait() 返回前信号处理函数已经执行，这里保证该信号
        先于计数器递减生效。
        """
        if not self._installed:
            return

        while True:
            try:
                signum = self._signals.get_nowait()
            except queue.Empty:
                return
            if signum is _STOP_WATCHER:
                # 留给处理线程
                self._signals.put(_STOP_WATCHER)
                return
            self._handle_signal(signum)

    def _handle_signal(self, signum: int) -> None:
        logger.debug(f"Signal {signum} received")
        self.transition_handle_interrupt()


# 全局协调器实例（延迟创建）
_coordinator: Optional[InterruptCoordinator] = None
_coordinator_lock = threading.Lock()


def get_coordinator() -> InterruptCoordinator:
    """获取全局中断协调器实例。"""
    global _coordinator
    if _coordinator is None:
        with _coordinator_lock:
            if _coordinator is None:
                _coordinator = InterruptCoordinator()
    return _coordinator


def install_interrupt_handler() -> InterruptCoordinator:
    """为全局协调器安装信号处理器（必须在主线程中调用）。"""
    coordinator = get_coordinator()
    coordinator.install()
    return coordinator
