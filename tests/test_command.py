"""Tests for vmsupervisor.command module."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmsupervisor.command import CommandBuilder, devmap_path
from vmsupervisor.devices import assign_addresses
from vmsupervisor.exceptions import ConfigError
from vmsupervisor.models import DiskDef, DomainDef, LoaderDef


@pytest.fixture
def builder() -> CommandBuilder:
    return CommandBuilder()


class TestBuildBhyveCmd:
    def test_full_command(self, builder, domain_def):
        assign_addresses(domain_def)
        domain_def.nets[0].ifname = "tap0"
        domain_def.graphics[0].port = 5901
        cmd = builder.build_bhyve_cmd(domain_def)
        assert cmd[:10] == ["bhyve", "-c", "2", "-m", "256M", "-A", "-H", "-P", "-s", "0:0,hostbridge"]
        assert "2:0,virtio-blk,/vms/guest1.img" in cmd
        assert "3:0,virtio-net,tap0,mac=52:54:00:aa:bb:cc" in cmd
        assert "30:0,fbuf,tcp=127.0.0.1:5901" in cmd
        assert cmd[-3:] == ["-U", domain_def.uuid, "guest1"]

    def test_net_without_tap(self, builder, domain_def):
        assign_addresses(domain_def)
        with pytest.raises(ConfigError, match="no tap device"):
            builder.build_bhyve_cmd(domain_def)

    def test_bootrom(self, builder):
        definition = DomainDef(
            name="uefi",
            loader=LoaderDef(path=Path("/fw/CODE.fd"), nvram=Path("/nvram/uefi_VARS.fd")),
        )
        cmd = builder.build_bhyve_cmd(definition)
        assert cmd[cmd.index("-l") + 1] == "bootrom,/fw/CODE.fd,/nvram/uefi_VARS.fd"

    def test_cdrom_uses_ahci(self, builder):
        definition = DomainDef(name="cd", disks=[DiskDef(path="/iso/install.iso", device="cdrom", slot=4)])
        assert "4:0,ahci-cd,/iso/install.iso" in builder.build_bhyve_cmd(definition)


class TestBuildLoadCmd:
    def test_bhyveload_default(self, builder, domain_def, tmp_path):
        cmd, devicemap = builder.build_load_cmd(domain_def, devmap_path(tmp_path, "guest1"))
        assert cmd == ["bhyveload", "-m", "256M", "-d", "/vms/guest1.img", "guest1"]
        assert devicemap is None

    def test_bhyveload_custom_args(self, builder, domain_def, tmp_path):
        domain_def.bootloader_args = "-e autoboot_delay=0 -d /alt.img"
        cmd, _ = builder.build_load_cmd(domain_def, devmap_path(tmp_path, "guest1"))
        assert cmd == ["bhyveload", "-m", "256M", "-e", "autoboot_delay=0", "-d", "/alt.img", "guest1"]

    def test_bhyveload_without_disk(self, builder, tmp_path):
        with pytest.raises(ConfigError, match="no disk"):
            builder.build_load_cmd(DomainDef(name="empty"), devmap_path(tmp_path, "empty"))

    def test_grub_bhyve_device_map(self, builder, tmp_path):
        definition = DomainDef(
            name="linux",
            memory_mb=1024,
            bootloader="/usr/local/sbin/grub-bhyve",
            disks=[DiskDef(path="/vms/linux.img"), DiskDef(path="/iso/linux.iso", device="cdrom")],
        )
        devmap = devmap_path(tmp_path, "linux")
        cmd, devicemap = builder.build_load_cmd(definition, devmap)
        assert devmap.name == "grub_bhyve-linux-device.map"
        assert cmd == [
            "/usr/local/sbin/grub-bhyve",
            "--root",
            "hd0,msdos1",
            "--device-map",
            str(devmap),
            "--memory",
            "1024",
            "linux",
        ]
        assert devicemap == "(hd0) /vms/linux.img\n(cd0) /iso/linux.iso\n"

    def test_custom_bootloader(self, builder, tmp_path):
        definition = DomainDef(name="x", bootloader="/usr/local/bin/myloader", bootloader_args="--fast x")
        cmd, devicemap = builder.build_load_cmd(definition, devmap_path(tmp_path, "x"))
        assert cmd == ["/usr/local/bin/myloader", "--fast", "x"]
        assert devicemap is None


class TestBuildDestroyCmd:
    def test_destroy(self, builder, domain_def):
        assert builder.build_destroy_cmd(domain_def) == ["bhyvectl", "--destroy", "--vm=guest1"]
