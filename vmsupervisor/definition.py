"""Domain definition and status XML for vm-supervisor."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import NamedTuple, Optional
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from vmsupervisor.exceptions import ConfigError
from vmsupervisor.models import (
    DiskDef,
    DomainDef,
    DomainState,
    GraphicsDef,
    LoaderDef,
    NetDef,
    StateReason,
    parse_reason,
)
from vmsupervisor.utils import ensure_directory, remove_file


class DomainStatus(NamedTuple):
    definition: DomainDef
    state: DomainState
    reason: StateReason
    pid: int


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _parse_int(what: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Malformed {what} value '{raw}'") from exc


def _optional_int(what: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    return _parse_int(what, raw)


def _build_domain_element(definition: DomainDef, live: bool = False) -> Element:
    attrs = {"type": "bhyve"}
    if live and definition.id >= 0:
        attrs["id"] = str(definition.id)
    root = Element("domain", **attrs)
    SubElement(root, "name").text = definition.name
    SubElement(root, "uuid").text = definition.uuid
    SubElement(root, "memory", unit="MiB").text = str(definition.memory_mb)
    SubElement(root, "vcpu").text = str(definition.vcpus)
    if definition.bootloader:
        SubElement(root, "bootloader").text = definition.bootloader
        if definition.bootloader_args:
            SubElement(root, "bootloader_args").text = definition.bootloader_args

    os_el = SubElement(root, "os")
    SubElement(os_el, "type").text = "hvm"
    if definition.loader is not None:
        SubElement(os_el, "loader", readonly="yes", type="pflash").text = str(definition.loader.path)
        if definition.loader.nvram is not None:
            nvram_attrs = {}
            if definition.loader.nvram_template is not None:
                nvram_attrs["template"] = str(definition.loader.nvram_template)
            SubElement(os_el, "nvram", **nvram_attrs).text = str(definition.loader.nvram)

    devices = SubElement(root, "devices")
    for disk in definition.disks:
        disk_el = SubElement(devices, "disk", type="file", device=disk.device)
        SubElement(disk_el, "source", file=disk.path)
        SubElement(disk_el, "target", bus=disk.bus)
        if disk.slot is not None:
            SubElement(disk_el, "address", type="pci", slot=str(disk.slot))
    for net in definition.nets:
        iface = SubElement(devices, "interface", type=net.type)
        if net.type == "network":
            source_attrs = {"network": net.source}
            if net.actual_bridge:
                source_attrs["bridge"] = net.actual_bridge
            SubElement(iface, "source", **source_attrs)
        else:
            SubElement(iface, "source", bridge=net.source)
        if net.mac:
            SubElement(iface, "mac", address=net.mac)
        if net.ifname:
            target_attrs = {"dev": net.ifname}
            if net.ifname_managed:
                target_attrs["managed"] = "yes"
            SubElement(iface, "target", **target_attrs)
        SubElement(iface, "model", type=net.model)
        if net.slot is not None:
            SubElement(iface, "address", type="pci", slot=str(net.slot))
    for graphics in definition.graphics:
        SubElement(
            devices,
            "graphics",
            type=graphics.type,
            port=str(graphics.port),
            autoport="yes" if graphics.autoport else "no",
            listen=graphics.listen,
        )
    return root


def format_domain_xml(definition: DomainDef, live: bool = False) -> str:
    return _element_to_str(_build_domain_element(definition, live=live))


def _parse_domain_element(root: Element) -> DomainDef:
    if root.tag != "domain":
        raise ConfigError(f"Expected <domain> root element, found <{root.tag}>")
    name = root.findtext("name")
    if not name:
        raise ConfigError("Domain definition is missing a name")
    definition = DomainDef(name=name.strip())
    uuid_text = root.findtext("uuid")
    if uuid_text:
        definition.uuid = uuid_text.strip()
    if root.get("id") is not None:
        definition.id = _parse_int("domain id", root.get("id", "-1"))
    memory = root.findtext("memory")
    if memory:
        definition.memory_mb = _parse_int("memory", memory)
    vcpu = root.findtext("vcpu")
    if vcpu:
        definition.vcpus = _parse_int("vcpu", vcpu)
    definition.bootloader = root.findtext("bootloader")
    definition.bootloader_args = root.findtext("bootloader_args")

    loader_el = root.find("os/loader")
    if loader_el is not None and loader_el.text:
        loader = LoaderDef(path=Path(loader_el.text.strip()))
        nvram_el = root.find("os/nvram")
        if nvram_el is not None and nvram_el.text:
            loader.nvram = Path(nvram_el.text.strip())
            template = nvram_el.get("template")
            if template:
                loader.nvram_template = Path(template)
        definition.loader = loader

    for disk_el in root.findall("devices/disk"):
        source = disk_el.find("source")
        target = disk_el.find("target")
        address = disk_el.find("address")
        definition.disks.append(
            DiskDef(
                path=source.get("file", "") if source is not None else "",
                device=disk_el.get("device", "disk"),
                bus=target.get("bus", "virtio-blk") if target is not None else "virtio-blk",
                slot=_optional_int("slot", address.get("slot")) if address is not None else None,
            )
        )
    for iface in root.findall("devices/interface"):
        net_type = iface.get("type", "bridge")
        source = iface.find("source")
        target = iface.find("target")
        mac = iface.find("mac")
        model = iface.find("model")
        address = iface.find("address")
        if net_type == "network":
            source_name = source.get("network", "") if source is not None else ""
            actual_bridge = source.get("bridge") if source is not None else None
        else:
            source_name = source.get("bridge", "") if source is not None else ""
            actual_bridge = None
        definition.nets.append(
            NetDef(
                type=net_type,
                source=source_name,
                ifname=target.get("dev") if target is not None else None,
                ifname_managed=target is not None and target.get("managed") == "yes",
                mac=mac.get("address") if mac is not None else None,
                model=model.get("type", "virtio-net") if model is not None else "virtio-net",
                actual_bridge=actual_bridge,
                slot=_optional_int("slot", address.get("slot")) if address is not None else None,
            )
        )
    for graphics_el in root.findall("devices/graphics"):
        definition.graphics.append(
            GraphicsDef(
                type=graphics_el.get("type", "vnc"),
                port=_parse_int("graphics port", graphics_el.get("port", "0")),
                autoport=graphics_el.get("autoport", "yes") == "yes",
                listen=graphics_el.get("listen", "127.0.0.1"),
            )
        )
    return definition


def parse_domain_xml(text: str) -> DomainDef:
    try:
        root = fromstring(text)
    except ParseError as exc:
        raise ConfigError(f"Malformed domain XML: {exc}") from exc
    return _parse_domain_element(root)


def format_status_xml(definition: DomainDef, state: DomainState, reason: StateReason, pid: int) -> str:
    root = Element("domstatus", state=state.value, reason=reason.value, pid=str(pid))
    root.append(_build_domain_element(definition, live=True))
    return _element_to_str(root)


def parse_status_xml(text: str) -> DomainStatus:
    try:
        root = fromstring(text)
    except ParseError as exc:
        raise ConfigError(f"Malformed status XML: {exc}") from exc
    if root.tag != "domstatus":
        raise ConfigError(f"Expected <domstatus> root element, found <{root.tag}>")
    domain_el = root.find("domain")
    if domain_el is None:
        raise ConfigError("Status document has no <domain> element")
    try:
        state = DomainState(root.get("state", "shutoff"))
    except ValueError as exc:
        raise ConfigError(f"Unknown domain state '{root.get('state')}'") from exc
    reason = parse_reason(state, root.get("reason", "unknown"))
    return DomainStatus(
        definition=_parse_domain_element(domain_el),
        state=state,
        reason=reason,
        pid=_parse_int("pid", root.get("pid", "0")),
    )


def config_file(directory: Path, name: str) -> Path:
    return directory / f"{name}.xml"


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers never see a partial file."""
    ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(text + "\n")
        tmp_path.replace(path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
        raise


def save_status(state_dir: Path, definition: DomainDef, state: DomainState, reason: StateReason, pid: int) -> Path:
    path = config_file(state_dir, definition.name)
    write_atomic(path, format_status_xml(definition, state, reason, pid))
    return path


def remove_status(state_dir: Path, name: str) -> bool:
    return remove_file(config_file(state_dir, name))


def save_config(config_dir: Path, definition: DomainDef) -> Path:
    path = config_file(config_dir, definition.name)
    write_atomic(path, format_domain_xml(definition))
    return path
