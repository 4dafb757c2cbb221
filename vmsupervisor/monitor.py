"""Process-exit monitor for running domains."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable, Optional

import psutil

from vmsupervisor.utils import log

if TYPE_CHECKING:
    from vmsupervisor.domain import Domain

ExitCallback = Callable[["Domain", int], None]


class ProcessMonitor:
    """Watches one hypervisor process and reports its exit once.

    The callback runs on the monitor thread without any lock held. It is
    never invoked after ``close()``.
    """

    def __init__(self, domain: "Domain", pid: int, on_exit: ExitCallback, interval: float = 0.5) -> None:
        self.domain = domain
        self.pid = pid
        self.on_exit = on_exit
        self.interval = interval
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ProcessMonitor":
        self._thread = threading.Thread(
            target=self._watch,
            name=f"monitor-{self.domain.name}",
            daemon=True,
        )
        self._thread.start()
        return self

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _wait_for_exit(self) -> bool:
        try:
            proc = psutil.Process(self.pid)
        except psutil.NoSuchProcess:
            return True
        while not self._closed.is_set():
            try:
                proc.wait(timeout=self.interval)
            except psutil.TimeoutExpired:
                continue
            except psutil.NoSuchProcess:
                return True
            return True
        return False

    def _watch(self) -> None:
        if not self._wait_for_exit() or self._closed.is_set():
            return
        log("INFO", f"Domain '{self.domain.name}' process {self.pid} exited")
        try:
            self.on_exit(self.domain, self.pid)
        except Exception as exc:  # noqa: BLE001
            log("ERROR", f"Failed to handle exit of domain '{self.domain.name}': {exc}")


def open_monitor(domain: "Domain", on_exit: ExitCallback) -> ProcessMonitor:
    return ProcessMonitor(domain, domain.pid, on_exit).start()
