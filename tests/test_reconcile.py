"""Tests for vmsupervisor.reconcile module."""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest
from conftest import make_domain

from vmsupervisor.definition import config_file, parse_status_xml
from vmsupervisor.domain import Domain, DomainList
from vmsupervisor.exceptions import ProcessError
from vmsupervisor.models import DomainState, NetDef, RunningReason, ShutoffReason
from vmsupervisor.network import NetworkLeases
from vmsupervisor.ports import PortAllocator
from vmsupervisor.process import ProcessController
from vmsupervisor.reconcile import expected_proctitle, reconnect_all, reconnect_domain


@pytest.fixture
def controller(driver_config, fake_network) -> ProcessController:
    return ProcessController(
        driver_config,
        PortAllocator("vnc", 5900, 5910, check_bind=False),
        network=fake_network,
        leases=NetworkLeases(driver_config.networks),
        on_exit=MagicMock(),
    )


def _running(domain: Domain, pid: int) -> Domain:
    domain.pid = pid
    domain.definition.id = pid
    domain.set_state(DomainState.RUNNING, RunningReason.BOOTED)
    return domain


def _table(argv):
    table = MagicMock()
    proc = MagicMock()
    table.get_procs.return_value = [proc] if argv is not None else []
    table.get_argv.return_value = argv
    return table


class TestReconnectDomain:
    def test_expected_proctitle(self):
        assert expected_proctitle("web") == "bhyve: web"

    def test_match_reattaches(self, controller, domain_def):
        domain = _running(Domain(domain_def), 4321)
        domain.definition.graphics[0].port = 5903
        with patch("vmsupervisor.reconcile.open_monitor") as mock_open:
            assert reconnect_domain(domain, _table(["bhyve: guest1"]), controller) is True
        mock_open.assert_called_once_with(domain, controller.on_exit)
        assert domain.monitor is mock_open.return_value
        assert controller.ports.is_used(5903)
        assert domain.state is DomainState.RUNNING
        assert domain.pid == 4321

    def test_fixed_port_not_reserved(self, controller, domain_def):
        domain = _running(Domain(domain_def), 4321)
        domain.definition.graphics[0].autoport = False
        domain.definition.graphics[0].port = 5905
        with patch("vmsupervisor.reconcile.open_monitor"):
            reconnect_domain(domain, _table(["bhyve: guest1"]), controller)
        assert not controller.ports.is_used(5905)

    def test_port_conflict_is_warning(self, controller, domain_def, capsys):
        domain = _running(Domain(domain_def), 4321)
        domain.definition.graphics[0].port = 5903
        controller.ports.set_used(5903)
        with patch("vmsupervisor.reconcile.open_monitor"):
            assert reconnect_domain(domain, _table(["bhyve: guest1"]), controller) is True
        assert "Failed to mark VNC port '5903'" in capsys.readouterr().out

    def test_identity_mismatch(self, controller, domain_def, driver_config):
        domain = _running(Domain(domain_def), 4321)
        with patch("vmsupervisor.reconcile.open_monitor") as mock_open:
            assert reconnect_domain(domain, _table(["/usr/sbin/sshd"]), controller) is False
        mock_open.assert_not_called()
        assert domain.pid == 0
        assert domain.definition.id == -1
        assert domain.state is DomainState.SHUTOFF
        assert domain.reason is ShutoffReason.UNKNOWN
        status = parse_status_xml(config_file(driver_config.state_dir, "guest1").read_text())
        assert status.state is DomainState.SHUTOFF
        assert status.pid == 0

    @pytest.mark.parametrize("argv", [None, []])
    def test_missing_or_unreadable_process(self, controller, domain_def, argv):
        domain = _running(Domain(domain_def), 4321)
        assert reconnect_domain(domain, _table(argv), controller) is False
        assert domain.state is DomainState.SHUTOFF

    def test_lookup_error_is_mismatch(self, controller, domain_def):
        domain = _running(Domain(domain_def), 4321)
        table = MagicMock()
        table.get_procs.side_effect = ProcessError("Process table handle is closed")
        assert reconnect_domain(domain, table, controller) is False
        assert domain.state is DomainState.SHUTOFF

    def test_inactive_and_zero_pid_skipped(self, controller):
        table = MagicMock()
        inactive = make_domain("a")
        zero_pid = make_domain("b")
        zero_pid.set_state(DomainState.RUNNING, RunningReason.BOOTED)
        assert reconnect_domain(inactive, table, controller) is False
        assert reconnect_domain(zero_pid, table, controller) is False
        table.get_procs.assert_not_called()
        assert zero_pid.state is DomainState.RUNNING

    def test_network_leases_renotified(self, controller, domain_def):
        domain_def.nets = [NetDef(type="network", source="default", ifname="tap4")]
        domain = _running(Domain(domain_def), 4321)
        with patch("vmsupervisor.reconcile.open_monitor"):
            reconnect_domain(domain, _table(["bhyve: guest1"]), controller)
        assert controller.leases.holders("default") == {"guest1": 1}

    def test_mismatch_leaves_no_lease(self, controller, domain_def):
        domain_def.nets = [NetDef(type="network", source="default", ifname="tap4")]
        domain = _running(Domain(domain_def), 4321)
        assert reconnect_domain(domain, _table(["other"]), controller) is False
        assert domain.state is DomainState.SHUTOFF
        assert controller.leases.holders("default") == {}

        # A later start and stop must balance out to no holders.
        controller.leases.acquire("guest1", domain_def.nets[0])
        controller.leases.release("guest1", domain_def.nets[0])
        assert controller.leases.holders("default") == {}


class TestReconnectAll:
    def test_mismatch_does_not_affect_others(self, controller):
        domains = DomainList()
        # Our own pid is alive but its argv[0] is not a bhyve title.
        stale = domains.add(_running(make_domain("stale"), os.getpid()))
        idle = domains.add(make_domain("idle"))
        paused = domains.add(make_domain("paused"))
        paused.set_state(DomainState.PAUSED, RunningReason.BOOTED)

        assert reconnect_all(domains, controller) == 0

        assert stale.state is DomainState.SHUTOFF
        assert stale.reason is ShutoffReason.UNKNOWN
        assert idle.state is DomainState.SHUTOFF
        assert idle.reason is ShutoffReason.UNKNOWN
        assert paused.state is DomainState.PAUSED

    def test_counts_reattached(self, controller):
        domains = DomainList()
        domain = domains.add(_running(make_domain("vm0"), 4321))
        table = _table(["bhyve: vm0"])
        table.open.return_value = table
        with patch("vmsupervisor.reconcile.ProcessTable", return_value=table), patch(
            "vmsupervisor.reconcile.open_monitor"
        ):
            assert reconnect_all(domains, controller) == 1
        table.close.assert_called_once_with()
        assert domain.state is DomainState.RUNNING

    def test_table_open_failure(self, controller, capsys):
        domains = DomainList()
        domain = domains.add(_running(make_domain("vm0"), 4321))
        with patch("vmsupervisor.reconcile.ProcessTable.open", side_effect=ProcessError("no kvm")):
            assert reconnect_all(domains, controller) == 0
        assert domain.state is DomainState.RUNNING
        assert "[ERROR]" in capsys.readouterr().out
