"""Kernel process-table access.

``ProcessTable`` is an explicit handle over psutil that is opened for one
pass and closed afterwards. Lookups go through ``get_procs`` so the caller
can insist on exactly one match, mirroring kvm_getprocs(3).
"""

from __future__ import annotations

from typing import List, Optional

import psutil

from vmsupervisor.exceptions import ProcessError


class ProcessTable:
    def __init__(self) -> None:
        self._open = False

    def open(self) -> "ProcessTable":
        try:
            psutil.pids()
        except (OSError, psutil.Error) as exc:
            raise ProcessError(f"Unable to get process table descriptor: {exc}") from exc
        self._open = True
        return self

    def close(self) -> None:
        self._open = False

    def __enter__(self) -> "ProcessTable":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _check_open(self) -> None:
        if not self._open:
            raise ProcessError("Process table handle is closed")

    def get_procs(self, pid: int) -> List[psutil.Process]:
        self._check_open()
        if pid <= 0:
            return []
        try:
            return [psutil.Process(pid)]
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return []

    def get_argv(self, proc: psutil.Process) -> Optional[List[str]]:
        """Return the process argv, or None if it cannot be read."""
        self._check_open()
        try:
            return proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def get_runtime_ns(self, pid: int) -> int:
        procs = self.get_procs(pid)
        if len(procs) != 1:
            raise ProcessError(f"Unable to obtain information about pid: {pid}")
        try:
            times = procs[0].cpu_times()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            raise ProcessError(f"Unable to obtain information about pid: {pid}") from exc
        return int((times.user + times.system) * 1_000_000_000)
