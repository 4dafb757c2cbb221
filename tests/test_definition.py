"""Tests for vmsupervisor.definition module."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmsupervisor.definition import (
    config_file,
    format_domain_xml,
    format_status_xml,
    parse_domain_xml,
    parse_status_xml,
    remove_status,
    save_config,
    save_status,
)
from vmsupervisor.exceptions import ConfigError
from vmsupervisor.models import DomainState, LoaderDef, NetDef, RunningReason, ShutoffReason


class TestDomainXml:
    def test_round_trip_preserves_devices(self, domain_def):
        domain_def.loader = LoaderDef(
            path=Path("/fw/BHYVE_UEFI.fd"),
            nvram=Path("/var/lib/nvram/guest1_VARS.fd"),
            nvram_template=Path("/fw/BHYVE_UEFI_VARS.fd"),
        )
        domain_def.nets.append(
            NetDef(type="network", source="default", ifname="tap3", ifname_managed=True, slot=5)
        )
        parsed = parse_domain_xml(format_domain_xml(domain_def))
        assert parsed == domain_def

    def test_live_xml_carries_id(self, domain_def):
        domain_def.id = 4242
        assert 'id="4242"' in format_domain_xml(domain_def, live=True)
        assert "id=" not in format_domain_xml(domain_def).splitlines()[0]

    def test_bootloader_elements(self, domain_def):
        domain_def.bootloader = "/usr/local/sbin/grub-bhyve"
        domain_def.bootloader_args = "--root hd0"
        xml = format_domain_xml(domain_def)
        assert "<bootloader>/usr/local/sbin/grub-bhyve</bootloader>" in xml
        assert "<bootloader_args>--root hd0</bootloader_args>" in xml

    def test_malformed_xml(self):
        with pytest.raises(ConfigError, match="Malformed domain XML"):
            parse_domain_xml("<domain>")

    def test_missing_name(self):
        with pytest.raises(ConfigError, match="missing a name"):
            parse_domain_xml("<domain type='bhyve'/>")

    def test_wrong_root(self):
        with pytest.raises(ConfigError, match="Expected <domain>"):
            parse_domain_xml("<network/>")

    @pytest.mark.parametrize(
        "xml, field",
        [
            ("<domain><name>a</name><memory>lots</memory></domain>", "memory"),
            ("<domain><name>a</name><vcpu>two</vcpu></domain>", "vcpu"),
            ("<domain id='x'><name>a</name></domain>", "domain id"),
            (
                "<domain><name>a</name><devices><disk><address slot='s3'/></disk></devices></domain>",
                "slot",
            ),
        ],
    )
    def test_non_numeric_fields(self, xml, field):
        with pytest.raises(ConfigError, match=f"Malformed {field} value"):
            parse_domain_xml(xml)


class TestStatusXml:
    def test_round_trip(self, domain_def):
        domain_def.id = 77
        text = format_status_xml(domain_def, DomainState.RUNNING, RunningReason.BOOTED, 77)
        status = parse_status_xml(text)
        assert status.state is DomainState.RUNNING
        assert status.reason is RunningReason.BOOTED
        assert status.pid == 77
        assert status.definition.id == 77
        assert status.definition.name == "guest1"

    def test_unknown_state(self, domain_def):
        text = format_status_xml(domain_def, DomainState.SHUTOFF, ShutoffReason.UNKNOWN, 0)
        with pytest.raises(ConfigError, match="Unknown domain state"):
            parse_status_xml(text.replace('state="shutoff"', 'state="melted"'))

    def test_missing_domain(self):
        with pytest.raises(ConfigError, match="no <domain>"):
            parse_status_xml("<domstatus state='running' reason='booted' pid='1'/>")

    def test_non_numeric_pid(self, domain_def):
        text = format_status_xml(domain_def, DomainState.RUNNING, RunningReason.BOOTED, 12)
        with pytest.raises(ConfigError, match="Malformed pid value 'garbage'"):
            parse_status_xml(text.replace('pid="12"', 'pid="garbage"'))


class TestFiles:
    def test_save_and_remove_status(self, tmp_path, domain_def):
        path = save_status(tmp_path, domain_def, DomainState.RUNNING, RunningReason.BOOTED, 10)
        assert path == config_file(tmp_path, "guest1")
        assert parse_status_xml(path.read_text()).pid == 10
        assert remove_status(tmp_path, "guest1") is True
        assert remove_status(tmp_path, "guest1") is False

    def test_save_config_leaves_no_temp_files(self, tmp_path, domain_def):
        save_config(tmp_path / "etc", domain_def)
        save_config(tmp_path / "etc", domain_def)
        assert [p.name for p in (tmp_path / "etc").iterdir()] == ["guest1.xml"]
