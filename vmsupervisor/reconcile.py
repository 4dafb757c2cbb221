"""Re-attach to hypervisor processes that outlived a supervisor restart."""

from __future__ import annotations

from vmsupervisor.constants import PROCTITLE_FORMAT
from vmsupervisor.domain import Domain, DomainList
from vmsupervisor.exceptions import PortAllocationError, ProcessError, SupervisorError
from vmsupervisor.models import DomainState, ShutoffReason
from vmsupervisor.monitor import open_monitor
from vmsupervisor.network import notify_domain_networks, release_domain_leases
from vmsupervisor.process import ProcessController
from vmsupervisor.proctable import ProcessTable
from vmsupervisor.utils import log


def expected_proctitle(name: str) -> str:
    return PROCTITLE_FORMAT.format(name=name)


def _process_matches(domain: Domain, table: ProcessTable) -> bool:
    procs = table.get_procs(domain.pid)
    if len(procs) != 1:
        log("DEBUG", f"No process with pid {domain.pid} for domain '{domain.name}'")
        return False
    argv = table.get_argv(procs[0])
    if not argv:
        log("DEBUG", f"Unable to read argv of pid {domain.pid} for domain '{domain.name}'")
        return False
    if argv[0] != expected_proctitle(domain.name):
        log("DEBUG", f"Pid {domain.pid} belongs to '{argv[0]}', not domain '{domain.name}'")
        return False
    return True


def _reattach(domain: Domain, controller: ProcessController) -> None:
    if controller.on_exit is not None:
        domain.monitor = open_monitor(domain, controller.on_exit)
    graphics = domain.definition.vnc_graphics()
    if graphics is not None and graphics.autoport and graphics.port:
        try:
            controller.ports.set_used(graphics.port)
        except PortAllocationError as exc:
            log("WARN", f"Failed to mark VNC port '{graphics.port}' as used by '{domain.name}': {exc}")


def _mark_gone(domain: Domain, controller: ProcessController) -> None:
    # The recorded process is gone or was replaced by an unrelated one.
    domain.pid = 0
    domain.definition.id = -1
    domain.set_state(DomainState.SHUTOFF, ShutoffReason.UNKNOWN)
    try:
        controller.save_status(domain)
    except OSError as exc:
        log("WARN", f"Failed to save status of domain '{domain.name}': {exc}")


def reconnect_domain(domain: Domain, table: ProcessTable, controller: ProcessController) -> bool:
    """Reconcile one domain against the process table.

    Returns True when the recorded process is still alive and was
    re-attached. Never raises for a missing or mismatched process.
    """
    with domain.locked():
        if not domain.is_active() or domain.pid == 0:
            return False

        try:
            matched = _process_matches(domain, table)
        except ProcessError as exc:
            log("WARN", f"Unable to inspect pid {domain.pid} of domain '{domain.name}': {exc}")
            matched = False

        if matched:
            _reattach(domain, controller)
            log("INFO", f"Reconnected to domain '{domain.name}' (pid {domain.pid})")

        notify_domain_networks(domain.definition, controller.leases)

        if not matched:
            log("INFO", f"Domain '{domain.name}' is no longer running; marking it shut off")
            _mark_gone(domain, controller)
            release_domain_leases(domain.definition, controller.leases)
        return matched


def reconnect_all(domains: DomainList, controller: ProcessController) -> int:
    """Run one reconciliation pass; return the number of re-attached domains."""
    try:
        table = ProcessTable().open()
    except ProcessError as exc:
        log("ERROR", f"Unable to get process table descriptor: {exc}")
        return 0

    reconnected = 0
    try:
        for domain in domains.snapshot():
            try:
                if reconnect_domain(domain, table, controller):
                    reconnected += 1
            except SupervisorError as exc:
                log("ERROR", f"Failed to reconcile domain '{domain.name}': {exc}")
    finally:
        table.close()
    return reconnected
