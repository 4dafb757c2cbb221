"""Shared test fixtures."""

from __future__ import annotations

import time
from typing import List, Optional, Tuple

import pytest

from vmsupervisor.command import CommandBuilder
from vmsupervisor.config import DriverConfig
from vmsupervisor.domain import Domain
from vmsupervisor.exceptions import ProcessError
from vmsupervisor.models import DiskDef, DomainDef, GraphicsDef, NetDef
from vmsupervisor.network import NetworkBackend


class FakeBuilder(CommandBuilder):
    """Runs harmless local commands in place of bhyve and its helpers."""

    def __init__(self, loader_cmd: Optional[List[str]] = None, destroy_cmd: Optional[List[str]] = None) -> None:
        self.loader_cmd = loader_cmd or ["true"]
        self.destroy_cmd = destroy_cmd or ["true"]
        self.guest_cmd = ["sleep", "60"]

    def build_bhyve_cmd(self, definition: DomainDef) -> List[str]:
        # Exercise the real builder so invalid definitions still fail.
        super().build_bhyve_cmd(definition)
        return list(self.guest_cmd)

    def build_load_cmd(self, definition, devmap_file) -> Tuple[List[str], Optional[str]]:
        _real_cmd, devicemap = super().build_load_cmd(definition, devmap_file)
        return list(self.loader_cmd), devicemap

    def build_destroy_cmd(self, definition: DomainDef) -> List[str]:
        return list(self.destroy_cmd)


class FakeNetwork(NetworkBackend):
    def __init__(self) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.taps: List[str] = []
        self._next = 0
        self.fail_on: set = set()

    def _record(self, *call: str) -> None:
        self.calls.append(call)
        if call[0] in self.fail_on:
            raise ProcessError(f"{call[0]} failed")

    def tap_create(self) -> str:
        self._record("tap_create")
        name = f"tap{self._next}"
        self._next += 1
        self.taps.append(name)
        return name

    def bridge_add_port(self, bridge: str, ifname: str) -> None:
        self._record("bridge_add_port", bridge, ifname)

    def bridge_remove_port(self, bridge: str, ifname: str) -> None:
        self._record("bridge_remove_port", bridge, ifname)

    def tap_delete(self, ifname: str) -> None:
        self._record("tap_delete", ifname)
        if ifname in self.taps:
            self.taps.remove(ifname)


@pytest.fixture
def driver_config(tmp_path) -> DriverConfig:
    return DriverConfig(
        config_dir=tmp_path / "etc",
        state_dir=tmp_path / "run",
        log_dir=tmp_path / "log",
        lib_dir=tmp_path / "lib",
        hooks_dir=tmp_path / "hooks",
        bhyveload_timeout=5,
        bhyveload_timeout_kill=1,
        vnc_port_min=5900,
        vnc_port_max=5910,
        networks={"default": "bridge0"},
    )


@pytest.fixture
def domain_def() -> DomainDef:
    return DomainDef(
        name="guest1",
        uuid="c7a5fdbd-cdaf-9455-926a-d65c16db1809",
        memory_mb=256,
        vcpus=2,
        disks=[DiskDef(path="/vms/guest1.img")],
        nets=[NetDef(type="bridge", source="bridge0", mac="52:54:00:aa:bb:cc")],
        graphics=[GraphicsDef()],
    )


@pytest.fixture
def fake_builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def fake_network() -> FakeNetwork:
    return FakeNetwork()


def make_domain(name: str, persistent: bool = True) -> Domain:
    return Domain(DomainDef(name=name, disks=[DiskDef(path=f"/vms/{name}.img")]), persistent=persistent)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
