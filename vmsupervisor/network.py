"""Tap/bridge plumbing and managed-network leases for vm-supervisor."""

from __future__ import annotations

import subprocess
import threading
from typing import Dict, Optional

from vmsupervisor.constants import IFCONFIG_BIN
from vmsupervisor.exceptions import ConfigError, ProcessError
from vmsupervisor.models import NET_TYPE_NETWORK, DomainDef, NetDef
from vmsupervisor.utils import log, run


class NetworkBackend:
    """Thin wrapper around ifconfig(8) for tap and bridge membership."""

    def _ifconfig(self, *args: str) -> str:
        cmd = [IFCONFIG_BIN, *args]
        try:
            result = run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise ProcessError(f"{IFCONFIG_BIN} not found") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise ProcessError(f"'{' '.join(cmd)}' failed with status {exc.returncode}: {detail}") from exc
        return (result.stdout or "").strip()

    def tap_create(self) -> str:
        return self._ifconfig("tap", "create")

    def bridge_add_port(self, bridge: str, ifname: str) -> None:
        self._ifconfig(bridge, "addm", ifname)

    def bridge_remove_port(self, bridge: str, ifname: str) -> None:
        self._ifconfig(bridge, "deletem", ifname)

    def tap_delete(self, ifname: str) -> None:
        self._ifconfig(ifname, "destroy")


class NetworkLeases:
    """Book-keeping for ``type=network`` attachments.

    Maps each managed network to its bridge and records which domain
    interfaces hold a lease on it.
    """

    def __init__(self, bridges: Optional[Dict[str, str]] = None) -> None:
        self.bridges: Dict[str, str] = dict(bridges or {})
        # network name -> domain name -> number of interfaces holding a lease
        self._leases: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def acquire(self, domain_name: str, net: NetDef) -> str:
        bridge = self.bridges.get(net.source)
        if bridge is None:
            raise ConfigError(f"Network '{net.source}' is not defined")
        with self._lock:
            holders = self._leases.setdefault(net.source, {})
            holders[domain_name] = holders.get(domain_name, 0) + 1
        net.actual_bridge = bridge
        return bridge

    def release(self, domain_name: str, net: NetDef) -> None:
        with self._lock:
            holders = self._leases.get(net.source, {})
            if not holders.get(domain_name):
                raise ConfigError(f"No lease on network '{net.source}' for '{domain_name}'")
            holders[domain_name] -= 1
            if not holders[domain_name]:
                del holders[domain_name]
        net.actual_bridge = None

    def notify(self, domain_name: str, net: NetDef) -> None:
        """Re-register a lease held by a domain that survived a supervisor restart."""
        if net.source not in self.bridges:
            raise ConfigError(f"Network '{net.source}' is not defined")
        with self._lock:
            holders = self._leases.setdefault(net.source, {})
            holders[domain_name] = holders.get(domain_name, 0) + 1
        if net.actual_bridge is None:
            net.actual_bridge = self.bridges[net.source]

    def holders(self, network: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._leases.get(network, {}))


def setup_domain_networks(definition: DomainDef, backend: NetworkBackend, leases: Optional[NetworkLeases]) -> None:
    """Create a tap per interface and plug it into its bridge."""
    for net in definition.nets:
        if net.type == NET_TYPE_NETWORK:
            if leases is None:
                raise ConfigError(f"Network '{net.source}' requested but no managed networks are configured")
            leases.acquire(definition.name, net)
        bridge = net.bridge_name()
        if not net.ifname:
            net.ifname = backend.tap_create()
            net.ifname_managed = True
        if bridge:
            backend.bridge_add_port(bridge, net.ifname)


def cleanup_domain_networks(definition: DomainDef, backend: NetworkBackend, leases: Optional[NetworkLeases]) -> None:
    """Tear down taps and leases; every failure is ignored."""
    for net in definition.nets:
        ifname = net.ifname
        if net.ifname:
            bridge = net.bridge_name()
            if bridge:
                try:
                    backend.bridge_remove_port(bridge, net.ifname)
                except ProcessError as exc:
                    log("DEBUG", f"Ignoring bridge port removal failure for {net.ifname}: {exc}")
            try:
                backend.tap_delete(net.ifname)
            except ProcessError as exc:
                log("DEBUG", f"Ignoring tap deletion failure for {net.ifname}: {exc}")
            if net.ifname_managed:
                net.ifname = None
                net.ifname_managed = False
        if net.type == NET_TYPE_NETWORK:
            if leases is None:
                log("WARN", f"Unable to release network device '{ifname}'")
                continue
            try:
                leases.release(definition.name, net)
            except ConfigError as exc:
                log("WARN", f"Unable to release network device '{ifname}': {exc}")


def notify_domain_networks(definition: DomainDef, leases: Optional[NetworkLeases]) -> None:
    for net in definition.nets:
        if net.type != NET_TYPE_NETWORK:
            continue
        if leases is None:
            log("WARN", f"Unable to notify network '{net.source}' about '{definition.name}'")
            continue
        try:
            leases.notify(definition.name, net)
        except ConfigError as exc:
            log("WARN", f"Unable to notify network '{net.source}' about '{definition.name}': {exc}")


def release_domain_leases(definition: DomainDef, leases: Optional[NetworkLeases]) -> None:
    """Drop the managed-network leases of a domain whose process is gone."""
    if leases is None:
        return
    for net in definition.nets:
        if net.type != NET_TYPE_NETWORK:
            continue
        try:
            leases.release(definition.name, net)
        except ConfigError as exc:
            log("DEBUG", f"No lease to release on '{net.source}' for '{definition.name}': {exc}")
