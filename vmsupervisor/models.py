"""Data models for vm-supervisor."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from vmsupervisor.constants import DEFAULT_SHUTDOWN_WAIT_SECS
from vmsupervisor.exceptions import ConfigError


class DomainState(str, enum.Enum):
    SHUTOFF = "shutoff"
    RUNNING = "running"
    PAUSED = "paused"
    CRASHED = "crashed"


class ShutoffReason(str, enum.Enum):
    UNKNOWN = "unknown"
    SHUTDOWN = "shutdown"
    DESTROYED = "destroyed"
    CRASHED = "crashed"
    SAVED = "saved"
    FAILED = "failed"


class RunningReason(str, enum.Enum):
    UNKNOWN = "unknown"
    BOOTED = "booted"
    RESTORED = "restored"
    UNPAUSED = "unpaused"


class PausedReason(str, enum.Enum):
    UNKNOWN = "unknown"
    USER = "user"


StateReason = Union[ShutoffReason, RunningReason, PausedReason]

_REASONS_BY_STATE = {
    DomainState.SHUTOFF: ShutoffReason,
    DomainState.RUNNING: RunningReason,
    DomainState.PAUSED: PausedReason,
    DomainState.CRASHED: ShutoffReason,
}


def parse_reason(state: DomainState, raw: str) -> StateReason:
    reason_cls = _REASONS_BY_STATE[state]
    try:
        return reason_cls(raw)
    except ValueError:
        return reason_cls("unknown")


class AutoShutdownScope(str, enum.Enum):
    NONE = "none"
    PERSISTENT = "persistent"
    TRANSIENT = "transient"
    ALL = "all"

    @classmethod
    def parse(cls, raw: str) -> "AutoShutdownScope":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            allowed = ", ".join(scope.value for scope in cls)
            raise ConfigError(f"Unknown auto-shutdown scope '{raw}'. Supported: {allowed}")

    def covers_persistent(self) -> bool:
        return self in (AutoShutdownScope.ALL, AutoShutdownScope.PERSISTENT)

    def covers_transient(self) -> bool:
        return self in (AutoShutdownScope.ALL, AutoShutdownScope.TRANSIENT)


class ShutdownMode(enum.Flag):
    NONE = 0
    SAVE = enum.auto()
    SHUTDOWN = enum.auto()
    POWEROFF = enum.auto()
    RESTORE = enum.auto()


# Modes that still describe pending work once restore marking is done.
PENDING_SHUTDOWN_ACTIONS = ShutdownMode.SAVE | ShutdownMode.SHUTDOWN | ShutdownMode.POWEROFF


class SaveFlags(enum.Flag):
    NONE = 0
    BYPASS_CACHE = enum.auto()
    RUNNING = enum.auto()
    PAUSED = enum.auto()


class HookOp(str, enum.Enum):
    PREPARE = "prepare"
    START = "start"
    STARTED = "started"
    STOPPED = "stopped"
    RELEASE = "release"


class HookSubOp(str, enum.Enum):
    BEGIN = "begin"
    END = "end"


NET_TYPE_BRIDGE = "bridge"
NET_TYPE_NETWORK = "network"
NET_TYPE_ETHERNET = "ethernet"

GRAPHICS_TYPE_VNC = "vnc"


@dataclass
class NetDef:
    type: str
    source: str
    ifname: Optional[str] = None
    # True when the tap device was created by the supervisor rather than named by the user.
    ifname_managed: bool = False
    mac: Optional[str] = None
    model: str = "virtio-net"
    # Bridge chosen by the network manager for type=network attachments.
    actual_bridge: Optional[str] = None
    slot: Optional[int] = None

    def bridge_name(self) -> Optional[str]:
        if self.type == NET_TYPE_NETWORK:
            return self.actual_bridge
        if self.type == NET_TYPE_BRIDGE:
            return self.source
        return None


@dataclass
class DiskDef:
    path: str
    device: str = "disk"  # disk, cdrom
    bus: str = "virtio-blk"
    slot: Optional[int] = None


@dataclass
class GraphicsDef:
    type: str = GRAPHICS_TYPE_VNC
    port: int = 0
    autoport: bool = True
    listen: str = "127.0.0.1"


@dataclass
class LoaderDef:
    path: Path
    nvram: Optional[Path] = None
    nvram_template: Optional[Path] = None


@dataclass
class DomainDef:
    name: str
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    memory_mb: int = 512
    vcpus: int = 1
    id: int = -1
    loader: Optional[LoaderDef] = None
    bootloader: Optional[str] = None
    bootloader_args: Optional[str] = None
    disks: List[DiskDef] = field(default_factory=list)
    nets: List[NetDef] = field(default_factory=list)
    graphics: List[GraphicsDef] = field(default_factory=list)

    def vnc_graphics(self) -> Optional[GraphicsDef]:
        """Return the display when it is the single VNC device bhyve supports."""
        if len(self.graphics) == 1 and self.graphics[0].type == GRAPHICS_TYPE_VNC:
            return self.graphics[0]
        return None


@dataclass(frozen=True)
class AutoShutdownConfig:
    try_save: AutoShutdownScope = AutoShutdownScope.NONE
    try_shutdown: AutoShutdownScope = AutoShutdownScope.NONE
    poweroff: AutoShutdownScope = AutoShutdownScope.NONE
    wait_shutdown_secs: int = DEFAULT_SHUTDOWN_WAIT_SECS
    save_bypass_cache: bool = False
    auto_restore: bool = False

    def is_active(self) -> bool:
        return (
            self.try_save != AutoShutdownScope.NONE
            or self.try_shutdown != AutoShutdownScope.NONE
            or self.poweroff != AutoShutdownScope.NONE
        )


@dataclass(frozen=True)
class AutoStartConfig:
    state_dir: Path
    delay_ms: int = 0
