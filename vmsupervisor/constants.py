"""Global constants and path configuration for vm-supervisor."""

from __future__ import annotations

import os
from pathlib import Path

# VMSUP_ROOT relocates every runtime directory under a single prefix, which
# is how the test-suite and embedded deployments run the supervisor.
_ROOT = os.environ.get("VMSUP_ROOT")
if _ROOT:
    _root = Path(_ROOT)
    CONFIG_DIR = _root / "etc"
    STATE_DIR = _root / "run"
    LOG_DIR = _root / "log"
    LIB_DIR = _root / "lib"
else:
    CONFIG_DIR = Path("/etc/vmsupervisor/bhyve")
    STATE_DIR = Path("/var/run/vmsupervisor/bhyve")
    LOG_DIR = Path("/var/log/vmsupervisor/bhyve")
    LIB_DIR = Path("/var/lib/vmsupervisor/bhyve")

DEFAULT_CONFIG_PATH = Path(os.environ.get("VMSUP_CONFIG", "/etc/vmsupervisor/bhyve.yaml"))
AUTOSTART_DIR_NAME = "autostart"
AUTOSTART_ONCE_DIR_NAME = "autostart-once"
AUTOSTARTED_MARKER_NAME = "autostarted"
HOOKS_DIR = Path("/etc/vmsupervisor/hooks")
HOOK_DRIVER_NAME = "bhyve"

DEFAULT_FIRMWARE_DIR = Path("/usr/local/share/uefi-firmware")

BHYVE_BIN = "bhyve"
BHYVELOAD_BIN = "bhyveload"
BHYVECTL_BIN = "bhyvectl"
GRUB_BHYVE_BIN = "grub-bhyve"
IFCONFIG_BIN = "ifconfig"

# bhyve rewrites its argv[0] to this title once the guest is running.
PROCTITLE_FORMAT = "bhyve: {name}"

DEFAULT_BHYVELOAD_TIMEOUT = 300
DEFAULT_BHYVELOAD_TIMEOUT_KILL = 15
PIDFILE_READ_TIMEOUT = 10.0

DEFAULT_SHUTDOWN_WAIT_SECS = 30
SHUTDOWN_POLL_INTERVAL = 0.5

VNC_PORT_MIN = 5900
VNC_PORT_MAX = 65535

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}
