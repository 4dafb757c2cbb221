"""bhyve process management.

``ProcessController`` starts, stops and restarts the hypervisor process of
a single domain. Every public method expects the caller to hold the
domain's lock.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
from pathlib import Path
from typing import IO, Dict, List, Optional

import psutil

from vmsupervisor.command import CommandBuilder, devmap_path
from vmsupervisor.config import DriverConfig
from vmsupervisor.constants import PIDFILE_READ_TIMEOUT
from vmsupervisor.definition import config_file, format_domain_xml, remove_status, save_status
from vmsupervisor.devices import assign_addresses
from vmsupervisor.domain import Domain
from vmsupervisor.exceptions import (
    ConfigError,
    HookError,
    InvalidStateError,
    PortAllocationError,
    ProcessError,
)
from vmsupervisor.hooks import HookSink, NullHook
from vmsupervisor.models import (
    DomainState,
    HookOp,
    HookSubOp,
    RunningReason,
    ShutoffReason,
)
from vmsupervisor.monitor import ExitCallback, open_monitor
from vmsupervisor.network import (
    NetworkBackend,
    NetworkLeases,
    cleanup_domain_networks,
    setup_domain_networks,
)
from vmsupervisor.pidfile import delete_pidfile, pidfile_path, read_pidfile, remove_stale_pidfile, write_pidfile
from vmsupervisor.ports import PortAllocator
from vmsupervisor.proctable import ProcessTable
from vmsupervisor.utils import ensure_directory, format_command, log, remove_file, remove_file_quietly, run


def _write_arg_log(logfile: IO[str], cmd: List[str]) -> None:
    logfile.write(format_command(cmd) + "\n")
    logfile.flush()


class ProcessController:
    def __init__(
        self,
        config: DriverConfig,
        ports: PortAllocator,
        hooks: Optional[HookSink] = None,
        network: Optional[NetworkBackend] = None,
        leases: Optional[NetworkLeases] = None,
        builder: Optional[CommandBuilder] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        self.config = config
        self.ports = ports
        self.hooks = hooks or NullHook()
        self.network = network or NetworkBackend()
        self.leases = leases
        self.builder = builder or CommandBuilder()
        self.on_exit = on_exit
        self.pidfile_timeout = PIDFILE_READ_TIMEOUT
        self._children: Dict[str, subprocess.Popen] = {}

    # Hooks

    def _start_hook(self, domain: Domain, op: HookOp) -> None:
        xml = format_domain_xml(domain.definition, live=True)
        self.hooks.call(domain.name, op, HookSubOp.BEGIN, xml)

    def _stop_hook(self, domain: Domain, op: HookOp) -> None:
        xml = format_domain_xml(domain.definition, live=True)
        try:
            self.hooks.call(domain.name, op, HookSubOp.END, xml)
        except HookError as exc:
            log("WARN", str(exc))

    # Paths

    def log_path(self, name: str) -> Path:
        return self.config.log_dir / f"{name}.log"

    def pidfile(self, name: str) -> Path:
        return pidfile_path(self.config.state_dir, name)

    def save_status(self, domain: Domain) -> None:
        save_status(self.config.state_dir, domain.definition, domain.state, domain.reason, domain.pid)

    # Start

    def fill_firmware(self, domain: Domain) -> None:
        """Resolve bare firmware file names and default the NVRAM path."""
        loader = domain.definition.loader
        if loader is None:
            return
        if not loader.path.is_absolute():
            loader.path = self.config.firmware_dir / loader.path
        if loader.nvram_template is not None and not loader.nvram_template.is_absolute():
            loader.nvram_template = self.config.firmware_dir / loader.nvram_template
        if loader.nvram is None and loader.nvram_template is not None:
            loader.nvram = self.config.nvram_dir / f"{domain.name}_VARS.fd"

    def prepare_nvram(self, domain: Domain) -> None:
        loader = domain.definition.loader
        if loader is None or loader.nvram is None:
            return
        log("DEBUG", f"nvram='{loader.nvram}'")
        if loader.nvram.exists():
            return
        if loader.nvram_template is None:
            raise ConfigError(f"unable to find any master var store for loader: {loader.path}")
        try:
            ensure_directory(loader.nvram.parent)
            shutil.copyfile(loader.nvram_template, loader.nvram)
            os.chmod(loader.nvram, 0o600)
        except OSError as exc:
            raise ProcessError(
                f"Failed to copy NVRAM template {loader.nvram_template} to {loader.nvram}: {exc}",
                errno=exc.errno,
            ) from exc

    def start(self, domain: Domain, reason: RunningReason, autodestroy_client: Optional[object] = None) -> None:
        if domain.is_active():
            raise InvalidStateError(f"Domain '{domain.name}' is already running")

        # Early hook so operators can set up devices the domain needs.
        self._start_hook(domain, HookOp.PREPARE)

        self.fill_firmware(domain)
        self.prepare_nvram(domain)

        if autodestroy_client is not None:
            domain.autodestroy_client = autodestroy_client
        self._start_impl(domain, reason)

    def _open_log(self, name: str) -> IO[str]:
        path = self.log_path(name)
        try:
            ensure_directory(path.parent)
            return open(path, "a", opener=lambda p, flags: os.open(p, flags, 0o600))
        except OSError as exc:
            raise ProcessError(f"Failed to open '{path}': {exc}", errno=exc.errno) from exc

    def _run_loader(self, cmd: List[str], logfile: IO[str]) -> None:
        timeout = self.config.bhyveload_timeout
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=logfile, stderr=logfile)
        except OSError as exc:
            raise ProcessError(f"Failed to run {cmd[0]}: {exc}", errno=exc.errno) from exc
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            log("WARN", f"{cmd[0]} did not finish within {timeout}s; terminating")
            proc.terminate()
            try:
                proc.wait(timeout=self.config.bhyveload_timeout_kill)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            raise ProcessError(f"{cmd[0]} timed out after {timeout}s")
        if returncode != 0:
            raise ProcessError(f"{cmd[0]} exited with status {returncode}")

    def _spawn_daemon(self, name: str, cmd: List[str], logfile: IO[str], pidfile: Path) -> None:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=logfile,
                stderr=logfile,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessError(f"Failed to start {cmd[0]}: {exc}", errno=exc.errno) from exc
        self._children[name] = proc
        write_pidfile(pidfile, proc.pid)

    def _destroy_quietly(self, domain: Domain, logfile: Optional[IO[str]]) -> None:
        cmd = self.builder.build_destroy_cmd(domain.definition)
        try:
            subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=logfile or subprocess.DEVNULL,
                stderr=logfile or subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            log("DEBUG", f"Ignoring destroy failure for '{domain.name}': {exc}")

    def _start_impl(self, domain: Domain, reason: RunningReason) -> None:
        definition = domain.definition
        assign_addresses(definition)

        graphics = definition.vnc_graphics()
        allocated_port = 0
        if graphics is not None and graphics.autoport:
            allocated_port = self.ports.allocate()
            graphics.port = allocated_port

        devmap_file = devmap_path(self.config.state_dir, domain.name)
        devicemap: Optional[str] = None
        logfile: Optional[IO[str]] = None
        try:
            logfile = self._open_log(domain.name)
            pidfile = self.pidfile(domain.name)
            remove_stale_pidfile(pidfile)

            setup_domain_networks(definition, self.network, self.leases)
            cmd = self.builder.build_bhyve_cmd(definition)

            if definition.loader is None:
                load_cmd, devicemap = self.builder.build_load_cmd(definition, devmap_file)
                if devicemap is not None:
                    try:
                        ensure_directory(devmap_file.parent)
                        devmap_file.write_text(devicemap)
                    except OSError as exc:
                        raise ProcessError(f"Cannot write device.map '{devmap_file}': {exc}", errno=exc.errno) from exc
                _write_arg_log(logfile, load_cmd)
                log("DEBUG", f"Loading domain '{domain.name}'")
                self._run_loader(load_cmd, logfile)

            self._start_hook(domain, HookOp.START)

            log("DEBUG", f"Starting domain '{domain.name}'")
            _write_arg_log(logfile, cmd)
            self._spawn_daemon(domain.name, cmd, logfile, pidfile)
            try:
                pid = read_pidfile(pidfile, timeout=self.pidfile_timeout)
            except ProcessError as exc:
                raise ProcessError(f"Domain {domain.name} didn't show up") from exc

            domain.pid = pid
            definition.id = pid
            domain.set_state(DomainState.RUNNING, reason)
            if self.on_exit is not None:
                domain.monitor = open_monitor(domain, self.on_exit)

            self.save_status(domain)
            self._start_hook(domain, HookOp.STARTED)
        except Exception:
            self._abort_start(domain, logfile, allocated_port)
            raise
        finally:
            if devicemap is not None:
                try:
                    remove_file(devmap_file)
                except OSError as exc:
                    log("WARN", f"cannot unlink file '{devmap_file}': {exc}")
            if logfile is not None:
                logfile.close()
        log("SUCCESS", f"Domain {domain.name} started (pid {domain.pid})")

    def _abort_start(self, domain: Domain, logfile: Optional[IO[str]], allocated_port: int) -> None:
        """Undo a partial start so no process, tap or port outlives it."""
        if domain.monitor is not None:
            domain.monitor.close()
            domain.monitor = None
        self._destroy_quietly(domain, logfile)
        self._reap_child(domain.name)
        cleanup_domain_networks(domain.definition, self.network, self.leases)
        if allocated_port:
            graphics = domain.definition.vnc_graphics()
            try:
                self.ports.release(allocated_port)
            except PortAllocationError as exc:
                log("WARN", f"Failed to release VNC port for '{domain.name}': {exc}")
            if graphics is not None:
                graphics.port = 0
        if domain.pid:
            domain.pid = 0
            domain.definition.id = -1
            domain.set_state(DomainState.SHUTOFF, ShutoffReason.FAILED)
            remove_file_quietly(config_file(self.config.state_dir, domain.name), "domain status")
        delete_pidfile(self.config.state_dir, domain.name)
        domain.autodestroy_client = None

    def _reap_child(self, name: str) -> None:
        proc = self._children.pop(name, None)
        if proc is None:
            return
        if proc.poll() is None:
            try:
                proc.kill()
            except OSError:
                return
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            log("WARN", f"Process {proc.pid} for '{name}' did not exit after SIGKILL")

    # Stop

    def _process_gone(self, pid: int) -> bool:
        try:
            return not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return True

    def stop(self, domain: Domain, reason: ShutoffReason) -> None:
        if not domain.is_active():
            log("DEBUG", f"VM '{domain.name}' not active")
            return

        if domain.pid == 0:
            raise InvalidStateError(f"Invalid PID {domain.pid} for VM '{domain.name}'")

        cmd = self.builder.build_destroy_cmd(domain.definition)
        try:
            try:
                run(cmd, capture_output=True)
            except (OSError, subprocess.CalledProcessError) as exc:
                if not self._process_gone(domain.pid):
                    cleanup_domain_networks(domain.definition, self.network, self.leases)
                    raise ProcessError(f"Failed to destroy domain '{domain.name}': {exc}") from exc
                log("DEBUG", f"Destroy of '{domain.name}' failed but its process is gone: {exc}")

            if domain.monitor is not None:
                domain.monitor.close()
                domain.monitor = None
            self._reap_child(domain.name)

            self._stop_hook(domain, HookOp.STOPPED)

            cleanup_domain_networks(domain.definition, self.network, self.leases)

            graphics = domain.definition.vnc_graphics()
            if graphics is not None and graphics.autoport and graphics.port:
                try:
                    self.ports.release(graphics.port)
                except PortAllocationError as exc:
                    log("WARN", f"Failed to release VNC port for '{domain.name}': {exc}")
                graphics.port = 0

            domain.autodestroy_client = None
            domain.set_state(DomainState.SHUTOFF, reason)
            domain.pid = 0
            domain.definition.id = -1

            self._stop_hook(domain, HookOp.RELEASE)
        finally:
            delete_pidfile(self.config.state_dir, domain.name)
            try:
                remove_status(self.config.state_dir, domain.name)
            except OSError as exc:
                log("WARN", f"Failed to remove domain XML for {domain.name}: {exc}")
        log("INFO", f"Domain {domain.name} stopped ({reason.value})")

    def restart(self, domain: Domain) -> None:
        self.stop(domain, ShutoffReason.SHUTDOWN)
        self._start_impl(domain, RunningReason.BOOTED)

    def shutdown(self, domain: Domain) -> None:
        """Ask the guest to power off; the monitor observes the exit."""
        if domain.pid == 0:
            raise InvalidStateError(f"Invalid PID {domain.pid} for VM '{domain.name}'")
        # bhyve performs an ACPI shutdown when it receives SIGTERM.
        try:
            os.kill(domain.pid, signal.SIGTERM)
        except OSError as exc:
            log("WARN", f"Failed to terminate bhyve process for VM '{domain.name}': {exc}")
            raise ProcessError(
                f"Failed to terminate bhyve process for VM '{domain.name}': {exc}",
                errno=exc.errno,
            ) from exc

    def get_total_cpu_stats(self, domain: Domain) -> int:
        """Total CPU time consumed by the domain's process, in nanoseconds."""
        with ProcessTable() as table:
            return table.get_runtime_ns(domain.pid)
