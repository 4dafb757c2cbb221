"""Utility functions for vm-supervisor."""

from __future__ import annotations

import errno
import os
import subprocess
from pathlib import Path
from typing import List, Optional

from vmsupervisor.constants import _LOG_VERBOSE, TRUTHY
from vmsupervisor.exceptions import ConfigError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw: object, min_val: int = 0, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_int_env(name: str, default: int, min_val: int = 0, max_val: Optional[int] = None) -> int:
    raw = get_env(name)
    if raw is None:
        return default
    return parse_int(name, raw, min_val=min_val, max_val=max_val)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def remove_file(path: Path) -> bool:
    """Unlink ``path``; return False if it was already gone.

    Errors other than "not found" propagate.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except NotADirectoryError:
        return False
    return True


def remove_file_quietly(path: Path, what: str) -> None:
    """Best-effort unlink used on cleanup paths."""
    try:
        remove_file(path)
    except OSError as exc:
        if exc.errno not in (errno.ENOENT, errno.ENOTDIR):
            log("WARN", f"Failed to remove {what} {path}: {exc}")


def format_command(cmd: List[str]) -> str:
    return " ".join(cmd)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {format_command(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
