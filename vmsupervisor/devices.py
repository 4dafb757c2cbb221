"""PCI slot assignment for bhyve guests."""

from __future__ import annotations

from typing import Set

from vmsupervisor.exceptions import ConfigError
from vmsupervisor.models import DomainDef

HOSTBRIDGE_SLOT = 0
LPC_SLOT = 1
FBUF_SLOT = 30
MAX_SLOT = 31


def reserved_slots(definition: DomainDef) -> Set[int]:
    reserved = {HOSTBRIDGE_SLOT, LPC_SLOT}
    if definition.vnc_graphics() is not None:
        reserved.add(FBUF_SLOT)
    return reserved


def assign_addresses(definition: DomainDef) -> None:
    """Give every disk and NIC a unique PCI slot, keeping explicit ones."""
    used = reserved_slots(definition)
    devices = list(definition.disks) + list(definition.nets)

    for device in devices:
        if device.slot is None:
            continue
        if not 0 <= device.slot <= MAX_SLOT:
            raise ConfigError(f"PCI slot {device.slot} out of range for domain '{definition.name}'")
        if device.slot in used:
            raise ConfigError(f"PCI slot {device.slot} is already in use in domain '{definition.name}'")
        used.add(device.slot)

    next_slot = LPC_SLOT + 1
    for device in devices:
        if device.slot is not None:
            continue
        while next_slot in used:
            next_slot += 1
        if next_slot > MAX_SLOT:
            raise ConfigError(f"No free PCI slots left for domain '{definition.name}'")
        device.slot = next_slot
        used.add(next_slot)
