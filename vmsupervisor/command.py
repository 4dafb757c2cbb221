"""Command line construction for bhyve, its boot loaders and bhyvectl."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import List, Optional, Tuple

from vmsupervisor import constants
from vmsupervisor.devices import FBUF_SLOT, HOSTBRIDGE_SLOT, LPC_SLOT
from vmsupervisor.exceptions import ConfigError
from vmsupervisor.models import DomainDef


def devmap_path(state_dir: Path, name: str) -> Path:
    return state_dir / f"grub_bhyve-{name}-device.map"


class CommandBuilder:
    """Builds argv lists; callers own spawning and output redirection."""

    def build_bhyve_cmd(self, definition: DomainDef) -> List[str]:
        cmd = [
            constants.BHYVE_BIN,
            "-c",
            str(definition.vcpus),
            "-m",
            f"{definition.memory_mb}M",
            "-A",
            "-H",
            "-P",
            "-s",
            f"{HOSTBRIDGE_SLOT}:0,hostbridge",
            "-s",
            f"{LPC_SLOT}:0,lpc",
        ]
        for disk in definition.disks:
            kind = "ahci-cd" if disk.device == "cdrom" else disk.bus
            cmd.extend(["-s", f"{disk.slot}:0,{kind},{disk.path}"])
        for net in definition.nets:
            if not net.ifname:
                raise ConfigError(f"Interface on '{definition.name}' has no tap device name")
            spec = f"{net.slot}:0,{net.model},{net.ifname}"
            if net.mac:
                spec += f",mac={net.mac}"
            cmd.extend(["-s", spec])
        graphics = definition.vnc_graphics()
        if graphics is not None:
            cmd.extend(["-s", f"{FBUF_SLOT}:0,fbuf,tcp={graphics.listen}:{graphics.port}"])
        if definition.loader is not None:
            bootrom = f"bootrom,{definition.loader.path}"
            if definition.loader.nvram is not None:
                bootrom += f",{definition.loader.nvram}"
            cmd.extend(["-l", bootrom])
        cmd.extend(["-U", definition.uuid, definition.name])
        return cmd

    def build_load_cmd(self, definition: DomainDef, devmap_file: Path) -> Tuple[List[str], Optional[str]]:
        """Return the boot loader argv and, for grub-bhyve, the device map contents."""
        bootloader = definition.bootloader or constants.BHYVELOAD_BIN
        extra_args = shlex.split(definition.bootloader_args or "")

        if bootloader == constants.BHYVELOAD_BIN:
            disks = [disk for disk in definition.disks if disk.device == "disk"]
            if not disks and not extra_args:
                raise ConfigError(f"Domain '{definition.name}' has no disk to load a kernel from")
            cmd = [constants.BHYVELOAD_BIN, "-m", f"{definition.memory_mb}M"]
            if extra_args:
                cmd.extend(extra_args)
            else:
                cmd.extend(["-d", disks[0].path])
            cmd.append(definition.name)
            return cmd, None

        if Path(bootloader).name == constants.GRUB_BHYVE_BIN:
            lines = []
            hd_index = cd_index = 0
            for disk in definition.disks:
                if disk.device == "cdrom":
                    lines.append(f"(cd{cd_index}) {disk.path}")
                    cd_index += 1
                else:
                    lines.append(f"(hd{hd_index}) {disk.path}")
                    hd_index += 1
            cmd = [bootloader]
            if extra_args:
                cmd.extend(extra_args)
            else:
                root = "cd0" if cd_index and not hd_index else "hd0,msdos1"
                cmd.extend(["--root", root])
            cmd.extend(["--device-map", str(devmap_file), "--memory", str(definition.memory_mb), definition.name])
            return cmd, "\n".join(lines) + "\n"

        return [bootloader] + extra_args, None

    def build_destroy_cmd(self, definition: DomainDef) -> List[str]:
        return [constants.BHYVECTL_BIN, "--destroy", f"--vm={definition.name}"]
