"""In-memory domain objects and the process-wide domain registry."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional

from vmsupervisor.exceptions import InvalidStateError
from vmsupervisor.models import DomainDef, DomainState, ShutoffReason, StateReason

if TYPE_CHECKING:
    from vmsupervisor.monitor import ProcessMonitor


class Domain:
    """One virtual machine.

    Every read or write of the mutable lifecycle fields (``state``,
    ``reason``, ``pid``, ``monitor``, the autostart flags) must happen while
    holding ``locked()``.
    """

    def __init__(self, definition: DomainDef, persistent: bool = True) -> None:
        self.definition = definition
        self.persistent = persistent
        self.state: DomainState = DomainState.SHUTOFF
        self.reason: StateReason = ShutoffReason.UNKNOWN
        self.pid = 0
        self.autostart = False
        self.autostart_once = False
        self.autostart_once_link: Optional[Path] = None
        self.autodestroy_client: Optional[object] = None
        self.monitor: Optional["ProcessMonitor"] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Domain {self.name} state={self.state.value} pid={self.pid}>"

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def uuid(self) -> str:
        return self.definition.uuid

    @contextmanager
    def locked(self) -> Iterator["Domain"]:
        with self._lock:
            yield self

    def is_locked(self) -> bool:
        return self._lock.locked()

    def is_active(self) -> bool:
        return self.state in (DomainState.RUNNING, DomainState.PAUSED)

    def set_state(self, state: DomainState, reason: StateReason) -> None:
        self.state = state
        self.reason = reason


class DomainList:
    """Name-indexed registry of domains.

    The list lock only guards membership; callbacks run by ``for_each`` are
    invoked after it has been released so they may block on I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_name: Dict[str, Domain] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_name)

    def add(self, domain: Domain) -> Domain:
        with self._lock:
            existing = self._by_name.get(domain.name)
            if existing is not None and existing is not domain:
                raise InvalidStateError(f"Domain '{domain.name}' already exists")
            for other in self._by_name.values():
                if other.uuid == domain.uuid and other is not domain:
                    raise InvalidStateError(f"Domain '{other.name}' already has uuid {domain.uuid}")
            self._by_name[domain.name] = domain
        return domain

    def remove(self, domain: Domain) -> None:
        with self._lock:
            if self._by_name.get(domain.name) is domain:
                del self._by_name[domain.name]

    def find_by_name(self, name: str) -> Optional[Domain]:
        with self._lock:
            return self._by_name.get(name)

    def find_by_uuid(self, uuid: str) -> Optional[Domain]:
        with self._lock:
            for domain in self._by_name.values():
                if domain.uuid == uuid:
                    return domain
        return None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._by_name)

    def snapshot(self, active_only: bool = False) -> List[Domain]:
        with self._lock:
            domains = sorted(self._by_name.values(), key=lambda d: d.name)
        if not active_only:
            return domains
        active = []
        for domain in domains:
            with domain.locked():
                if domain.is_active():
                    active.append(domain)
        return active

    def for_each(self, callback: Callable[[Domain], None], active_only: bool = False) -> None:
        for domain in self.snapshot(active_only=active_only):
            callback(domain)
