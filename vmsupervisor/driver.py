"""The bhyve driver: owns the domain list and exposes the domain API."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

from vmsupervisor.autoshutdown import AutoShutdownReport, auto_shutdown
from vmsupervisor.autostart import autostart_all
from vmsupervisor.command import CommandBuilder
from vmsupervisor.config import DriverConfig
from vmsupervisor.connection import LocalConnection
from vmsupervisor.definition import config_file, parse_domain_xml, parse_status_xml, save_config
from vmsupervisor.domain import Domain, DomainList
from vmsupervisor.exceptions import ConfigError, InvalidStateError, SupervisorError
from vmsupervisor.hooks import HookSink, load_hook_sink
from vmsupervisor.models import (
    AutoShutdownConfig,
    AutoStartConfig,
    DomainDef,
    DomainState,
    RunningReason,
    ShutoffReason,
    StateReason,
)
from vmsupervisor.network import NetworkBackend, NetworkLeases
from vmsupervisor.ports import PortAllocator
from vmsupervisor.process import ProcessController
from vmsupervisor.reconcile import reconnect_all
from vmsupervisor.utils import ensure_directory, log, remove_file_quietly


class BhyveDriver:
    def __init__(
        self,
        config: DriverConfig,
        hooks: Optional[HookSink] = None,
        network: Optional[NetworkBackend] = None,
        builder: Optional[CommandBuilder] = None,
        check_ports: bool = True,
    ) -> None:
        self.config = config
        self.domains = DomainList()
        self.ports = PortAllocator("vnc", config.vnc_port_min, config.vnc_port_max, check_bind=check_ports)
        self.hooks = hooks if hooks is not None else load_hook_sink(config.hooks_dir)
        self.leases = NetworkLeases(config.networks)
        self.controller = ProcessController(
            config,
            self.ports,
            hooks=self.hooks,
            network=network,
            leases=self.leases,
            builder=builder,
            on_exit=self._handle_process_exit,
        )

    # Startup

    def _ensure_directories(self) -> None:
        for path in (
            self.config.config_dir,
            self.config.state_dir,
            self.config.log_dir,
            self.config.lib_dir,
            self.config.autostart_dir,
            self.config.autostart_once_dir,
        ):
            ensure_directory(path)

    def _load_status_files(self) -> None:
        for path in sorted(self.config.state_dir.glob("*.xml")):
            try:
                status = parse_status_xml(path.read_text())
            except (OSError, ConfigError) as exc:
                log("WARN", f"Ignoring unreadable status file {path}: {exc}")
                continue
            domain = Domain(status.definition, persistent=False)
            domain.set_state(status.state, status.reason)
            domain.pid = status.pid
            try:
                self.domains.add(domain)
            except InvalidStateError as exc:
                log("WARN", f"Ignoring status file {path}: {exc}")

    def _load_config_files(self) -> None:
        for path in sorted(self.config.config_dir.glob("*.xml")):
            try:
                definition = parse_domain_xml(path.read_text())
            except (OSError, ConfigError) as exc:
                log("WARN", f"Ignoring unreadable domain config {path}: {exc}")
                continue
            domain = self.domains.find_by_name(definition.name)
            if domain is None:
                domain = Domain(definition)
                try:
                    self.domains.add(domain)
                except InvalidStateError as exc:
                    log("WARN", f"Ignoring domain config {path}: {exc}")
                    continue
            domain.persistent = True
            domain.autostart = self._autostart_link(domain.name).exists()
            once_link = self._autostart_once_link(domain.name)
            if once_link.exists():
                domain.autostart_once = True
                domain.autostart_once_link = once_link

    def _prune_inactive_transients(self) -> None:
        for domain in self.domains.snapshot():
            with domain.locked():
                if domain.persistent or domain.is_active():
                    continue
                remove_file_quietly(config_file(self.config.state_dir, domain.name), "domain status")
            self.domains.remove(domain)

    def startup(self, autostart: bool = True) -> None:
        """Load domains, reconcile them with the host, then autostart."""
        self._ensure_directories()
        self._load_status_files()
        self._load_config_files()
        reconnected = reconnect_all(self.domains, self.controller)
        log("INFO", f"Loaded {len(self.domains)} domains ({reconnected} running)")
        self._prune_inactive_transients()
        if autostart:
            autostart_all(
                self.domains,
                AutoStartConfig(state_dir=self.config.state_dir, delay_ms=self.config.autostart_delay_ms),
                self._autostart_domain,
            )

    def _autostart_domain(self, domain: Domain) -> None:
        self.controller.start(domain, RunningReason.BOOTED)
        log("SUCCESS", f"Autostarted domain '{domain.name}'")

    def close(self) -> None:
        """Detach from running domains without stopping them."""
        for domain in self.domains.snapshot(active_only=True):
            with domain.locked():
                monitor = domain.monitor
                domain.monitor = None
            if monitor is not None:
                monitor.close()
                monitor.join(timeout=1.0)

    # Lookup

    def lookup(self, name: str) -> Domain:
        domain = self.domains.find_by_name(name)
        if domain is None:
            raise InvalidStateError(f"no domain with matching name '{name}'")
        return domain

    @staticmethod
    def _require_active(domain: Domain) -> None:
        if not domain.is_active():
            raise InvalidStateError(f"Domain '{domain.name}' is not running")

    def _remove_if_transient(self, domain: Domain) -> None:
        if not domain.persistent:
            self.domains.remove(domain)

    # Definitions

    def define_domain(self, definition: DomainDef) -> Domain:
        domain = self.domains.find_by_name(definition.name)
        if domain is None:
            domain = self.domains.add(Domain(definition))
            save_config(self.config.config_dir, definition)
            log("INFO", f"Defined domain '{definition.name}'")
            return domain
        with domain.locked():
            if domain.is_active():
                raise InvalidStateError(f"Domain '{domain.name}' is running; stop it before redefining")
            if domain.uuid != definition.uuid:
                raise InvalidStateError(f"Domain '{domain.name}' already exists with uuid {domain.uuid}")
            domain.definition = definition
            domain.persistent = True
            save_config(self.config.config_dir, definition)
        log("INFO", f"Redefined domain '{definition.name}'")
        return domain

    def undefine_domain(self, name: str) -> None:
        domain = self.lookup(name)
        with domain.locked():
            if not domain.persistent:
                raise InvalidStateError(f"Cannot undefine transient domain '{name}'")
            remove_file_quietly(config_file(self.config.config_dir, name), "domain config")
            remove_file_quietly(self._autostart_link(name), "autostart link")
            remove_file_quietly(self._autostart_once_link(name), "autostart-once link")
            domain.autostart = False
            domain.autostart_once = False
            domain.autostart_once_link = None
            domain.persistent = False
            active = domain.is_active()
        if not active:
            self.domains.remove(domain)
        log("INFO", f"Undefined domain '{name}'")

    # Lifecycle

    def create_domain(self, name: str, autodestroy: bool = False, client: Optional[object] = None) -> Domain:
        if autodestroy and client is None:
            raise InvalidStateError("autodestroy requires a client connection")
        domain = self.lookup(name)
        with domain.locked():
            self.controller.start(domain, RunningReason.BOOTED, autodestroy_client=client if autodestroy else None)
        return domain

    def create_transient(
        self,
        definition: DomainDef,
        autodestroy: bool = False,
        client: Optional[object] = None,
    ) -> Domain:
        if autodestroy and client is None:
            raise InvalidStateError("autodestroy requires a client connection")
        domain = self.domains.add(Domain(definition, persistent=False))
        try:
            with domain.locked():
                self.controller.start(domain, RunningReason.BOOTED, autodestroy_client=client if autodestroy else None)
        except Exception:
            self.domains.remove(domain)
            raise
        return domain

    def destroy(self, domain: Domain) -> None:
        with domain.locked():
            self._require_active(domain)
            try:
                self.controller.stop(domain, ShutoffReason.DESTROYED)
            finally:
                if not domain.is_active():
                    self._remove_if_transient(domain)

    def destroy_domain(self, name: str) -> None:
        self.destroy(self.lookup(name))

    def shutdown(self, domain: Domain) -> None:
        with domain.locked():
            self._require_active(domain)
            self.controller.shutdown(domain)

    def shutdown_domain(self, name: str) -> None:
        self.shutdown(self.lookup(name))

    def reboot_domain(self, name: str) -> None:
        domain = self.lookup(name)
        with domain.locked():
            self._require_active(domain)
            self.controller.restart(domain)

    def get_state(self, name: str) -> Tuple[DomainState, StateReason]:
        domain = self.lookup(name)
        with domain.locked():
            return domain.state, domain.reason

    def get_cpu_stats(self, name: str) -> int:
        domain = self.lookup(name)
        with domain.locked():
            self._require_active(domain)
            return self.controller.get_total_cpu_stats(domain)

    def _handle_process_exit(self, domain: Domain, pid: int) -> None:
        with domain.locked():
            if domain.monitor is None or domain.monitor.closed or domain.pid != pid:
                return
            if not domain.is_active():
                return
            try:
                self.controller.stop(domain, ShutoffReason.SHUTDOWN)
            except SupervisorError as exc:
                log("ERROR", f"Failed to clean up after domain '{domain.name}' exited: {exc}")
                return
            self._remove_if_transient(domain)

    # Autostart flags

    def _autostart_link(self, name: str) -> Path:
        return self.config.autostart_dir / f"{name}.xml"

    def _autostart_once_link(self, name: str) -> Path:
        return self.config.autostart_once_dir / f"{name}.xml"

    def _set_link(self, link: Path, name: str, enabled: bool) -> None:
        if enabled:
            ensure_directory(link.parent)
            if not link.is_symlink():
                os.symlink(config_file(self.config.config_dir, name), link)
        else:
            remove_file_quietly(link, "autostart link")

    def set_autostart(self, name: str, enabled: bool) -> None:
        domain = self.lookup(name)
        with domain.locked():
            if not domain.persistent:
                raise InvalidStateError("cannot set autostart for transient domain")
            self._set_link(self._autostart_link(name), name, enabled)
            domain.autostart = enabled

    def set_autostart_once(self, domain: Domain, enabled: bool) -> None:
        with domain.locked():
            if not domain.persistent:
                raise InvalidStateError("cannot set autostart for transient domain")
            link = self._autostart_once_link(domain.name)
            self._set_link(link, domain.name, enabled)
            domain.autostart_once = enabled
            domain.autostart_once_link = link if enabled else None

    # Clients

    def connect(self) -> LocalConnection:
        return LocalConnection(self)

    def close_client(self, client: object) -> None:
        """Destroy every domain started with autodestroy by ``client``."""
        for domain in self.domains.snapshot():
            with domain.locked():
                if domain.autodestroy_client is not client:
                    continue
                log("DEBUG", f"Auto-destroying domain '{domain.name}' for closed client")
                try:
                    self.controller.stop(domain, ShutoffReason.DESTROYED)
                except SupervisorError as exc:
                    log("WARN", f"Failed to auto-destroy domain '{domain.name}': {exc}")
                    continue
                self._remove_if_transient(domain)

    def auto_shutdown(self, config: Optional[AutoShutdownConfig] = None) -> AutoShutdownReport:
        return auto_shutdown(config or self.config.auto_shutdown, self.connect())

