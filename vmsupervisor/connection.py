"""Connections consumed by the shutdown orchestrator.

``LocalConnection`` talks to an in-process ``BhyveDriver``; ``LibvirtConnection``
adapts a libvirt URI so the same orchestrator can drive a remote daemon.
Both hand out domain handles with the same small surface.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from vmsupervisor.domain import Domain
from vmsupervisor.exceptions import OperationUnsupportedError, SupervisorError
from vmsupervisor.models import DomainState, SaveFlags
from vmsupervisor.utils import log

if TYPE_CHECKING:
    from vmsupervisor.driver import BhyveDriver


class LocalDomainHandle:
    def __init__(self, driver: "BhyveDriver", domain: Domain) -> None:
        self.driver = driver
        self.domain = domain

    @property
    def name(self) -> str:
        return self.domain.name

    def is_persistent(self) -> bool:
        return self.domain.persistent

    def get_state(self) -> DomainState:
        with self.domain.locked():
            return self.domain.state

    def is_active(self) -> bool:
        with self.domain.locked():
            return self.domain.is_active()

    def suspend(self) -> None:
        raise OperationUnsupportedError("bhyve does not support suspending domains")

    def resume(self) -> None:
        raise OperationUnsupportedError("bhyve does not support resuming domains")

    def managed_save(self, flags: SaveFlags = SaveFlags.NONE) -> None:
        raise OperationUnsupportedError("bhyve does not support managed save")

    def shutdown(self) -> None:
        self.driver.shutdown(self.domain)

    def destroy(self) -> None:
        self.driver.destroy(self.domain)

    def set_autostart_once(self, flag: bool) -> None:
        self.driver.set_autostart_once(self.domain, flag)


class LocalConnection:
    def __init__(self, driver: "BhyveDriver") -> None:
        self.driver = driver

    def list_all_domains(self, active_only: bool = True) -> List[LocalDomainHandle]:
        return [LocalDomainHandle(self.driver, domain) for domain in self.driver.domains.snapshot(active_only)]

    def close(self) -> None:
        self.driver.close_client(self)


# libvirt's virDomainState values
_LIBVIRT_STATES = {
    1: DomainState.RUNNING,
    3: DomainState.PAUSED,
    5: DomainState.SHUTOFF,
    6: DomainState.CRASHED,
}


class LibvirtDomainHandle:
    def __init__(self, dom, error_cls: type) -> None:
        self.dom = dom
        self.error_cls = error_cls

    def _call(self, what: str, func, *args):
        try:
            return func(*args)
        except self.error_cls as exc:
            raise SupervisorError(f"{what} failed for '{self.name}': {exc}") from exc

    @property
    def name(self) -> str:
        return self.dom.name()

    def is_persistent(self) -> bool:
        return bool(self._call("isPersistent", self.dom.isPersistent))

    def get_state(self) -> DomainState:
        state, _reason = self._call("state", self.dom.state)
        return _LIBVIRT_STATES.get(state, DomainState.RUNNING)

    def is_active(self) -> bool:
        return bool(self._call("isActive", self.dom.isActive))

    def suspend(self) -> None:
        self._call("suspend", self.dom.suspend)

    def resume(self) -> None:
        self._call("resume", self.dom.resume)

    def managed_save(self, flags: SaveFlags = SaveFlags.NONE) -> None:
        # virDomainSaveRestoreFlags uses the same bit values as SaveFlags.
        self._call("managedSave", self.dom.managedSave, flags.value)

    def shutdown(self) -> None:
        self._call("shutdown", self.dom.shutdown)

    def destroy(self) -> None:
        self._call("destroy", self.dom.destroy)

    def set_autostart_once(self, flag: bool) -> None:
        self._call("setAutostartOnce", self.dom.setAutostartOnce, int(flag))


class LibvirtConnection:
    """Orchestrator connection over libvirt-python (optional dependency)."""

    def __init__(self, uri: str) -> None:
        self.uri = uri
        self._libvirt = None
        self._conn = None

    def open(self) -> "LibvirtConnection":
        try:
            import libvirt  # type: ignore
        except ImportError as exc:
            raise SupervisorError(f"libvirt python bindings not available: {exc}") from exc
        self._libvirt = libvirt
        try:
            self._conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise SupervisorError(f"Failed to open libvirt connection to {self.uri}: {exc}") from exc
        if self._conn is None:
            raise SupervisorError(f"Failed to open libvirt connection to {self.uri}")
        return self

    def __enter__(self) -> "LibvirtConnection":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def list_all_domains(self, active_only: bool = True) -> List[LibvirtDomainHandle]:
        if self._conn is None:
            raise SupervisorError("libvirt connection is not open")
        flags = self._libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE if active_only else 0
        try:
            doms = self._conn.listAllDomains(flags)
        except self._libvirt.libvirtError as exc:
            raise SupervisorError(f"Failed to list domains on {self.uri}: {exc}") from exc
        return [LibvirtDomainHandle(dom, self._libvirt.libvirtError) for dom in doms]

    def close(self) -> None:
        conn: Optional[object] = self._conn
        self._conn = None
        if conn is not None:
            try:
                conn.close()  # type: ignore[attr-defined]
            except self._libvirt.libvirtError as exc:
                log("DEBUG", f"Ignoring error closing libvirt connection: {exc}")
