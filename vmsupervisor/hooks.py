"""Lifecycle hook invocation.

A hook sink receives the domain name, the lifecycle operation and the
domain XML. ``NullHook`` is used when no hook script is installed;
``ScriptHook`` runs ``<hooks_dir>/bhyve <name> <op> <subop> -`` with the XML
on stdin, the same calling convention libvirt uses for its hook scripts.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from vmsupervisor.constants import HOOK_DRIVER_NAME
from vmsupervisor.exceptions import HookError
from vmsupervisor.models import HookOp, HookSubOp
from vmsupervisor.utils import log


class HookSink:
    def call(self, name: str, op: HookOp, subop: HookSubOp, xml: str) -> None:
        raise NotImplementedError


class NullHook(HookSink):
    def call(self, name: str, op: HookOp, subop: HookSubOp, xml: str) -> None:
        return None


class ScriptHook(HookSink):
    def __init__(self, script: Path, timeout: float = 30.0) -> None:
        self.script = script
        self.timeout = timeout

    def call(self, name: str, op: HookOp, subop: HookSubOp, xml: str) -> None:
        cmd = [str(self.script), name, op.value, subop.value, "-"]
        log("DEBUG", f"Running hook: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                input=xml,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise HookError(f"Hook {self.script} {op.value} for '{name}' failed: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or "").strip()
            raise HookError(
                f"Hook {self.script} {op.value} for '{name}' exited with status {result.returncode}"
                + (f": {detail}" if detail else "")
            )


def load_hook_sink(hooks_dir: Path) -> HookSink:
    script = hooks_dir / HOOK_DRIVER_NAME
    if script.is_file() and os.access(script, os.X_OK):
        log("INFO", f"Using lifecycle hook {script}")
        return ScriptHook(script)
    return NullHook()
