"""PID file helpers."""

from __future__ import annotations

import os
import time
from pathlib import Path

from vmsupervisor.exceptions import ProcessError
from vmsupervisor.utils import ensure_directory, remove_file, remove_file_quietly


def pidfile_path(state_dir: Path, name: str) -> Path:
    return state_dir / f"{name}.pid"


def write_pidfile(path: Path, pid: int) -> None:
    ensure_directory(path.parent)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(f"{pid}\n")
    os.replace(tmp, path)


def read_pidfile(path: Path, timeout: float = 0.0, interval: float = 0.1) -> int:
    """Return the pid stored in ``path``, polling for up to ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            raw = path.read_text().strip()
        except FileNotFoundError:
            raw = ""
        except OSError as exc:
            raise ProcessError(f"Cannot read pid file {path}: {exc}", errno=exc.errno) from exc
        if raw:
            try:
                pid = int(raw)
            except ValueError:
                raise ProcessError(f"Pid file {path} contains garbage: {raw!r}")
            if pid > 0:
                return pid
        if time.monotonic() >= deadline:
            raise ProcessError(f"Pid file {path} was not written")
        time.sleep(interval)


def remove_stale_pidfile(path: Path) -> None:
    try:
        remove_file(path)
    except OSError as exc:
        raise ProcessError(f"Cannot remove stale PID file {path}: {exc}", errno=exc.errno) from exc


def delete_pidfile(state_dir: Path, name: str) -> None:
    remove_file_quietly(pidfile_path(state_dir, name), "pid file")
