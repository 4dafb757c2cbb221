"""Driver configuration loading and environment variable parsing for vm-supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmsupervisor import constants
from vmsupervisor.exceptions import ConfigError
from vmsupervisor.models import AutoShutdownConfig, AutoShutdownScope
from vmsupervisor.utils import get_env, get_env_bool, log, parse_int, parse_int_env

_AUTO_SHUTDOWN_KEYS = {
    "try_save",
    "try_shutdown",
    "poweroff",
    "wait_shutdown_secs",
    "save_bypass_cache",
    "auto_restore",
}


@dataclass
class DriverConfig:
    config_dir: Path = field(default_factory=lambda: constants.CONFIG_DIR)
    state_dir: Path = field(default_factory=lambda: constants.STATE_DIR)
    log_dir: Path = field(default_factory=lambda: constants.LOG_DIR)
    lib_dir: Path = field(default_factory=lambda: constants.LIB_DIR)
    firmware_dir: Path = constants.DEFAULT_FIRMWARE_DIR
    hooks_dir: Path = constants.HOOKS_DIR
    bhyveload_timeout: int = constants.DEFAULT_BHYVELOAD_TIMEOUT
    bhyveload_timeout_kill: int = constants.DEFAULT_BHYVELOAD_TIMEOUT_KILL
    autostart_delay_ms: int = 0
    vnc_port_min: int = constants.VNC_PORT_MIN
    vnc_port_max: int = constants.VNC_PORT_MAX
    auto_shutdown: AutoShutdownConfig = field(default_factory=AutoShutdownConfig)
    # managed network name -> bridge interface
    networks: Dict[str, str] = field(default_factory=dict)

    @property
    def nvram_dir(self) -> Path:
        return self.lib_dir / "nvram"

    @property
    def autostart_dir(self) -> Path:
        return self.config_dir / constants.AUTOSTART_DIR_NAME

    @property
    def autostart_once_dir(self) -> Path:
        return self.config_dir / constants.AUTOSTART_ONCE_DIR_NAME


def _parse_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in constants.TRUTHY:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean (got '{raw}')")


def parse_auto_shutdown(data: Dict[str, Any]) -> AutoShutdownConfig:
    unknown = set(data) - _AUTO_SHUTDOWN_KEYS
    if unknown:
        raise ConfigError(f"Unknown auto_shutdown settings: {', '.join(sorted(unknown))}")
    try_save = AutoShutdownScope.parse(data.get("try_save", "none"))
    if try_save.covers_transient():
        # Managed save of a transient domain can never succeed.
        raise ConfigError("auto_shutdown.try_save cannot include transient domains (use 'persistent' or 'none')")
    return AutoShutdownConfig(
        try_save=try_save,
        try_shutdown=AutoShutdownScope.parse(data.get("try_shutdown", "none")),
        poweroff=AutoShutdownScope.parse(data.get("poweroff", "none")),
        wait_shutdown_secs=parse_int(
            "auto_shutdown.wait_shutdown_secs",
            data.get("wait_shutdown_secs", constants.DEFAULT_SHUTDOWN_WAIT_SECS),
        ),
        save_bypass_cache=_parse_bool("auto_shutdown.save_bypass_cache", data.get("save_bypass_cache", False)),
        auto_restore=_parse_bool("auto_shutdown.auto_restore", data.get("auto_restore", False)),
    )


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not os.access(path, os.R_OK):
        log("INFO", f"Could not read bhyve config file {path}")
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_driver_config(config_path: Optional[Path] = None) -> DriverConfig:
    if config_path is None:
        config_path = constants.DEFAULT_CONFIG_PATH
    data = _read_config_file(config_path)
    cfg = DriverConfig()

    if "firmware_dir" in data:
        cfg.firmware_dir = Path(data["firmware_dir"])
    if "hooks_dir" in data:
        cfg.hooks_dir = Path(data["hooks_dir"])
    if "bhyveload_timeout" in data:
        cfg.bhyveload_timeout = parse_int("bhyveload_timeout", data["bhyveload_timeout"], min_val=1)
    if "bhyveload_timeout_kill" in data:
        cfg.bhyveload_timeout_kill = parse_int("bhyveload_timeout_kill", data["bhyveload_timeout_kill"], min_val=1)
    if "autostart_delay_ms" in data:
        cfg.autostart_delay_ms = parse_int("autostart_delay_ms", data["autostart_delay_ms"])
    if "vnc_port_min" in data:
        cfg.vnc_port_min = parse_int("vnc_port_min", data["vnc_port_min"], min_val=1, max_val=65535)
    if "vnc_port_max" in data:
        cfg.vnc_port_max = parse_int("vnc_port_max", data["vnc_port_max"], min_val=1, max_val=65535)
    networks = data.get("networks") or {}
    if not isinstance(networks, dict):
        raise ConfigError("networks must be a mapping of network name to bridge")
    cfg.networks = {str(name): str(bridge) for name, bridge in networks.items()}
    auto_shutdown = data.get("auto_shutdown") or {}
    if not isinstance(auto_shutdown, dict):
        raise ConfigError("auto_shutdown must be a mapping")

    # Environment overrides
    firmware_env = get_env("VMSUP_FIRMWARE_DIR")
    if firmware_env:
        cfg.firmware_dir = Path(firmware_env)
    cfg.bhyveload_timeout = parse_int_env("VMSUP_BHYVELOAD_TIMEOUT", cfg.bhyveload_timeout, min_val=1)
    cfg.bhyveload_timeout_kill = parse_int_env("VMSUP_BHYVELOAD_TIMEOUT_KILL", cfg.bhyveload_timeout_kill, min_val=1)
    cfg.autostart_delay_ms = parse_int_env("VMSUP_AUTOSTART_DELAY_MS", cfg.autostart_delay_ms)
    auto_shutdown = dict(auto_shutdown)
    for key, env_name in (
        ("try_save", "VMSUP_AUTO_SHUTDOWN_TRY_SAVE"),
        ("try_shutdown", "VMSUP_AUTO_SHUTDOWN_TRY_SHUTDOWN"),
        ("poweroff", "VMSUP_AUTO_SHUTDOWN_POWEROFF"),
        ("wait_shutdown_secs", "VMSUP_AUTO_SHUTDOWN_WAIT"),
    ):
        raw = get_env(env_name)
        if raw is not None:
            auto_shutdown[key] = raw
    if get_env("VMSUP_AUTO_SHUTDOWN_BYPASS_CACHE") is not None:
        auto_shutdown["save_bypass_cache"] = get_env_bool("VMSUP_AUTO_SHUTDOWN_BYPASS_CACHE")
    if get_env("VMSUP_AUTO_SHUTDOWN_RESTORE") is not None:
        auto_shutdown["auto_restore"] = get_env_bool("VMSUP_AUTO_SHUTDOWN_RESTORE")
    cfg.auto_shutdown = parse_auto_shutdown(auto_shutdown)

    if cfg.vnc_port_min > cfg.vnc_port_max:
        raise ConfigError(f"vnc_port_min ({cfg.vnc_port_min}) must not exceed vnc_port_max ({cfg.vnc_port_max})")
    return cfg
