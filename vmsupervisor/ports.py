"""Display port allocation."""

from __future__ import annotations

import socket
import threading
from typing import Set

from vmsupervisor.exceptions import PortAllocationError
from vmsupervisor.utils import log


class PortAllocator:
    """Thread-safe allocator for a contiguous TCP port range."""

    def __init__(self, name: str, start: int, end: int, check_bind: bool = True) -> None:
        if start > end:
            raise PortAllocationError(f"Invalid {name} port range {start}-{end}")
        self.name = name
        self.start = start
        self.end = end
        self.check_bind = check_bind
        self._used: Set[int] = set()
        self._lock = threading.Lock()

    def _in_range(self, port: int) -> bool:
        return self.start <= port <= self.end

    def _bindable(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("0.0.0.0", port))
            except OSError:
                return False
        return True

    def allocate(self) -> int:
        with self._lock:
            for port in range(self.start, self.end + 1):
                if port in self._used:
                    continue
                if self.check_bind and not self._bindable(port):
                    continue
                self._used.add(port)
                log("DEBUG", f"Allocated {self.name} port {port}")
                return port
        raise PortAllocationError(f"Unable to find an unused {self.name} port in range {self.start}-{self.end}")

    def release(self, port: int) -> None:
        if port == 0:
            return
        with self._lock:
            if not self._in_range(port):
                raise PortAllocationError(f"{self.name} port {port} is outside {self.start}-{self.end}")
            if port not in self._used:
                raise PortAllocationError(f"{self.name} port {port} was not allocated")
            self._used.discard(port)
        log("DEBUG", f"Released {self.name} port {port}")

    def set_used(self, port: int) -> None:
        if port == 0:
            return
        with self._lock:
            if not self._in_range(port):
                raise PortAllocationError(f"{self.name} port {port} is outside {self.start}-{self.end}")
            if port in self._used:
                raise PortAllocationError(f"{self.name} port {port} is already in use")
            self._used.add(port)

    def is_used(self, port: int) -> bool:
        with self._lock:
            return port in self._used
