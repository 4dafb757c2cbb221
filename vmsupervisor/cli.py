"""CLI entry point for the vm-supervisor daemon."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import threading
from pathlib import Path
from typing import List, Optional

from vmsupervisor.config import DriverConfig, load_driver_config
from vmsupervisor.driver import BhyveDriver
from vmsupervisor.exceptions import SupervisorError
from vmsupervisor.utils import log


def show_config(cfg: DriverConfig) -> None:
    """Print the resolved driver configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                sub_value = getattr(value, sub_field.name)
                if hasattr(sub_value, "value"):
                    sub_value = sub_value.value
                print(f"    {sub_field.name}: {sub_value}")
        elif isinstance(value, dict):
            print(f"  {field.name}:")
            for key in sorted(value):
                print(f"    {key}: {value[key]}")
        else:
            print(f"  {field.name}: {value}")


def wait_for_termination(stop: Optional[threading.Event] = None) -> None:
    """Block until SIGTERM or SIGINT is received (or ``stop`` is set)."""
    if stop is None:
        stop = threading.Event()

    def _request_stop(signum, frame):
        log("INFO", f"{signal.Signals(signum).name} received, stopping supervisor")
        stop.set()

    prev_sigterm = signal.signal(signal.SIGTERM, _request_stop)
    prev_sigint = signal.signal(signal.SIGINT, _request_stop)
    try:
        while not stop.wait(1.0):
            pass
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="bhyve domain supervisor")
    parser.add_argument("--config", type=Path, default=None, help="Path to the driver YAML configuration")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--no-autostart", action="store_true", help="Do not autostart domains at startup")
    parser.add_argument(
        "--auto-shutdown-on-exit",
        action="store_true",
        help="Run the configured auto-shutdown actions before exiting",
    )
    args = parser.parse_args(argv)

    try:
        cfg = load_driver_config(args.config)
    except SupervisorError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    driver = BhyveDriver(cfg)
    try:
        driver.startup(autostart=not args.no_autostart)
        log("SUCCESS", f"Supervising {len(driver.domains)} domains")
        wait_for_termination()
        if args.auto_shutdown_on_exit:
            report = driver.auto_shutdown()
            if report.unhandled:
                log("WARN", f"Domains not shut off: {', '.join(report.unhandled)}")
        return 0
    except SupervisorError as exc:
        log("ERROR", str(exc))
        return 1
    finally:
        driver.close()
