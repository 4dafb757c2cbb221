"""Boot-time autostart of domains."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable

from vmsupervisor.constants import AUTOSTARTED_MARKER_NAME
from vmsupervisor.domain import Domain, DomainList
from vmsupervisor.exceptions import ProcessError, SupervisorError
from vmsupervisor.models import AutoStartConfig
from vmsupervisor.utils import ensure_directory, log, remove_file_quietly

AutoStartCallback = Callable[[Domain], None]


def should_autostart(state_dir: Path) -> bool:
    """Return True the first time it is called after a host boot.

    The state directory lives on a filesystem that is emptied at boot, so
    the marker file records that this boot's autostart already ran.
    """
    marker = state_dir / AUTOSTARTED_MARKER_NAME
    try:
        ensure_directory(state_dir)
        fd = os.open(marker, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        return False
    except OSError as exc:
        raise ProcessError(f"Failed to create '{marker}': {exc}", errno=exc.errno) from exc
    os.close(fd)
    return True


class _AutoStartPass:
    def __init__(self, config: AutoStartConfig, callback: AutoStartCallback) -> None:
        self.config = config
        self.callback = callback
        self.first = True
        self.started = 0

    def __call__(self, domain: Domain) -> None:
        with domain.locked():
            log(
                "DEBUG",
                f"Autostart {domain.name}: autostart={domain.autostart} "
                f"autostart_once={domain.autostart_once} link={domain.autostart_once_link}",
            )
            if (domain.autostart or domain.autostart_once) and not domain.is_active():
                if self.config.delay_ms:
                    if self.first:
                        self.first = False
                    else:
                        time.sleep(self.config.delay_ms / 1000.0)
                try:
                    self.callback(domain)
                    self.started += 1
                except SupervisorError as exc:
                    log("ERROR", f"Failed to autostart VM '{domain.name}': {exc}")
                domain.autostart_once = False

            if domain.autostart_once_link is not None:
                remove_file_quietly(domain.autostart_once_link, "autostart-once link")
                domain.autostart_once_link = None


def autostart_all(domains: DomainList, config: AutoStartConfig, callback: AutoStartCallback) -> int:
    """Start every domain flagged for autostart; return how many started.

    ``callback`` runs with the domain lock held.
    """
    log("DEBUG", f"Run autostart state_dir={config.state_dir}")
    try:
        if not should_autostart(config.state_dir):
            log("DEBUG", "Autostart already processed")
            return 0
    except ProcessError as exc:
        log("ERROR", str(exc))
        return 0

    autostart_pass = _AutoStartPass(config, callback)
    domains.for_each(autostart_pass)
    return autostart_pass.started
