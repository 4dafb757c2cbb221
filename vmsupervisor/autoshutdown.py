"""Host-shutdown handling of running domains.

The orchestrator runs three phases across the whole set of active domains,
strictly in order: managed save, graceful shutdown, and forced poweroff. Each
domain carries a ``ShutdownMode`` for the duration of one pass; a phase
clears the bits it has dealt with. One domain's failure never stops the
pass.

The connection is duck-typed: anything with ``list_all_domains()`` returning
handles shaped like ``connection.DomainHandle`` works.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from typing import List, Sequence

from vmsupervisor.constants import DEFAULT_SHUTDOWN_WAIT_SECS, SHUTDOWN_POLL_INTERVAL
from vmsupervisor.exceptions import SupervisorError
from vmsupervisor.models import (
    PENDING_SHUTDOWN_ACTIONS,
    AutoShutdownConfig,
    AutoShutdownScope,
    DomainState,
    SaveFlags,
    ShutdownMode,
)
from vmsupervisor.utils import log


@dataclass
class AutoShutdownReport:
    processed: int = 0
    # Domains no phase managed to shut off.
    unhandled: List[str] = field(default_factory=list)


def effective_config(cfg: AutoShutdownConfig) -> AutoShutdownConfig:
    """Apply the wait-time default and drop managed save for transient domains."""
    if cfg.wait_shutdown_secs <= 0:
        cfg = dataclasses.replace(cfg, wait_shutdown_secs=DEFAULT_SHUTDOWN_WAIT_SECS)
    if cfg.try_save in (AutoShutdownScope.ALL, AutoShutdownScope.TRANSIENT):
        log("WARN", "auto-shutdown: managed save not supported for transient VMs")
        downgraded = AutoShutdownScope.PERSISTENT if cfg.try_save == AutoShutdownScope.ALL else AutoShutdownScope.NONE
        cfg = dataclasses.replace(cfg, try_save=downgraded)
    return cfg


def get_mode(handle, cfg: AutoShutdownConfig) -> ShutdownMode:
    mode = ShutdownMode.NONE
    if handle.is_persistent():
        if cfg.try_save.covers_persistent():
            mode |= ShutdownMode.SAVE
        if cfg.try_shutdown.covers_persistent():
            mode |= ShutdownMode.SHUTDOWN
        if cfg.poweroff.covers_persistent():
            mode |= ShutdownMode.POWEROFF
        # Only restore domains that were selected for some action.
        if mode and cfg.auto_restore:
            mode |= ShutdownMode.RESTORE
    else:
        if cfg.try_shutdown.covers_transient():
            mode |= ShutdownMode.SHUTDOWN
        if cfg.poweroff.covers_transient():
            mode |= ShutdownMode.POWEROFF
        if cfg.auto_restore:
            log("DEBUG", f"Cannot auto-restore transient VM '{handle.name}'")
    return mode


def do_save(handles: Sequence, modes: List[ShutdownMode], cfg: AutoShutdownConfig) -> None:
    flags = [SaveFlags.NONE] * len(handles)
    has_save = False

    for i, handle in enumerate(handles):
        if not modes[i] & ShutdownMode.SAVE:
            continue
        has_save = True
        log("INFO", f"Suspending '{handle.name}' ({i + 1} of {len(handles)})")

        # Pause running domains so they stop dirtying memory before the save.
        flags[i] = SaveFlags.RUNNING
        try:
            if handle.get_state() == DomainState.PAUSED:
                flags[i] = SaveFlags.PAUSED
        except SupervisorError as exc:
            log("DEBUG", f"Unable to query state of '{handle.name}': {exc}")
        if cfg.save_bypass_cache:
            flags[i] |= SaveFlags.BYPASS_CACHE

        if flags[i] & SaveFlags.RUNNING:
            try:
                handle.suspend()
            except SupervisorError as exc:
                log("WARN", f"auto-shutdown: unable to suspend '{handle.name}': {exc}")

    if not has_save:
        return

    for i, handle in enumerate(handles):
        if not modes[i] & ShutdownMode.SAVE:
            continue
        log("INFO", f"Saving '{handle.name}' ({i + 1} of {len(handles)})")
        try:
            handle.managed_save(flags[i])
        except SupervisorError as exc:
            log("WARN", f"auto-shutdown: unable to perform managed save of '{handle.name}': {exc}")
            if flags[i] & SaveFlags.RUNNING:
                try:
                    handle.resume()
                except SupervisorError as resume_exc:
                    log("WARN", f"auto-shutdown: unable to resume '{handle.name}': {resume_exc}")
            continue
        modes[i] = ShutdownMode.NONE


def do_shutdown(
    handles: Sequence,
    modes: List[ShutdownMode],
    cfg: AutoShutdownConfig,
    poll_interval: float = SHUTDOWN_POLL_INTERVAL,
) -> None:
    requested = [False] * len(handles)

    for i, handle in enumerate(handles):
        if not modes[i] & ShutdownMode.SHUTDOWN:
            continue
        log("INFO", f"Shutting down '{handle.name}' ({i + 1} of {len(handles)})")
        try:
            handle.shutdown()
        except SupervisorError as exc:
            # A failing request usually means the daemon itself is failing.
            log("WARN", f"auto-shutdown: unable to request graceful shutdown of '{handle.name}': {exc}")
            break
        requested[i] = True

    if not any(requested):
        return

    log("INFO", f"Waiting {cfg.wait_shutdown_secs} secs for VM shutdown completion")
    deadline = time.monotonic() + cfg.wait_shutdown_secs
    while True:
        any_running = False
        for i, handle in enumerate(handles):
            if not requested[i] or not modes[i] & ShutdownMode.SHUTDOWN:
                continue
            try:
                active = handle.is_active()
            except SupervisorError as exc:
                log("DEBUG", f"Unable to query '{handle.name}': {exc}")
                active = True
            if active:
                any_running = True
            else:
                modes[i] = ShutdownMode.NONE

        if not any_running or time.monotonic() > deadline:
            break
        time.sleep(poll_interval)


def do_poweroff(handles: Sequence, modes: List[ShutdownMode]) -> None:
    for i, handle in enumerate(handles):
        if not modes[i] & ShutdownMode.POWEROFF:
            continue
        log("INFO", f"Destroying '{handle.name}' ({i + 1} of {len(handles)})")
        # May fail when a shutdown we stopped waiting for completed anyway.
        try:
            handle.destroy()
        except SupervisorError as exc:
            log("DEBUG", f"Ignoring destroy failure for '{handle.name}': {exc}")
        modes[i] = ShutdownMode.NONE


def auto_shutdown(cfg: AutoShutdownConfig, conn, poll_interval: float = SHUTDOWN_POLL_INTERVAL) -> AutoShutdownReport:
    report = AutoShutdownReport()
    log(
        "DEBUG",
        f"Run autoshutdown try_save={cfg.try_save.value} try_shutdown={cfg.try_shutdown.value} "
        f"poweroff={cfg.poweroff.value} wait_shutdown_secs={cfg.wait_shutdown_secs} "
        f"save_bypass_cache={cfg.save_bypass_cache} auto_restore={cfg.auto_restore}",
    )
    if not cfg.is_active():
        return report

    cfg = effective_config(cfg)
    if not cfg.is_active():
        return report

    try:
        handles = list(conn.list_all_domains(active_only=True))
    except SupervisorError as exc:
        log("ERROR", f"auto-shutdown: unable to list domains: {exc}")
        return report

    log("DEBUG", f"Auto shutdown with {len(handles)} running domains")
    modes: List[ShutdownMode] = []
    for handle in handles:
        mode = get_mode(handle, cfg)
        if not mode:
            log("WARN", f"auto-shutdown: domain '{handle.name}' not successfully shut off by any action")
            report.unhandled.append(handle.name)
        if mode & ShutdownMode.RESTORE:
            log("DEBUG", f"Mark '{handle.name}' for autostart on next boot")
            try:
                handle.set_autostart_once(True)
            except SupervisorError as exc:
                log("WARN", f"Unable to mark domain '{handle.name}' for auto restore: {exc}")
        modes.append(mode)

    do_save(handles, modes, cfg)
    do_shutdown(handles, modes, cfg, poll_interval=poll_interval)
    do_poweroff(handles, modes)

    for handle, mode in zip(handles, modes):
        if mode & PENDING_SHUTDOWN_ACTIONS:
            log("WARN", f"auto-shutdown: domain '{handle.name}' was left running ({mode})")
            report.unhandled.append(handle.name)

    report.processed = len(handles)
    log("INFO", f"Processed {report.processed} domains")
    return report
