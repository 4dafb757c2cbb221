"""Custom exceptions for vm-supervisor."""

from __future__ import annotations

from typing import Optional


class SupervisorError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(SupervisorError):
    """Invalid driver configuration."""


class ProcessError(SupervisorError):
    """Spawning, signalling or talking to an OS process failed."""

    def __init__(self, message: str, errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.errno = errno


class InvalidStateError(SupervisorError):
    """The domain is in the wrong lifecycle state for the operation."""


class PortAllocationError(SupervisorError):
    """A display port could not be allocated, released or reserved."""


class HookError(SupervisorError):
    """A hook script failed."""


class OperationUnsupportedError(SupervisorError):
    """The hypervisor does not implement the requested operation."""
