"""
Tests for the port and resource reconciler

Everything runs against the FakeHost from conftest, so no sockets, containers
or services are touched.
"""

import pytest

from wgeasy_host import ActionResult, PortProbe, PortState, Transport
from wgeasy_reconcile import (
    AlwaysDeny,
    AutoConfirm,
    Conflict,
    ConflictKind,
    DecisionPolicy,
    PortExhaustion,
    Ports,
    ReconcileResult,
    RemediationMode,
)

UDP = Transport.UDP
TCP = Transport.TCP


class TestFindNextFree:
    """Tests for Reconciler.find_next_free"""

    def test_free_start_port_is_returned(self, host, make_reconciler):
        """Test that a free start port is returned unchanged"""
        reconciler = make_reconciler(AutoConfirm())
        assert reconciler.find_next_free(51820, UDP) == 51820

    def test_skips_busy_ports(self, host, make_reconciler):
        """Test that the smallest free port above the busy ones is returned"""
        host.busy = {(51820, UDP): "nginx", (51821, UDP): "nginx"}
        reconciler = make_reconciler(AutoConfirm())
        assert reconciler.find_next_free(51820, UDP) == 51822

    def test_transports_are_independent(self, host, make_reconciler):
        """Test that a busy UDP port does not block the same TCP port"""
        host.busy = {(51821, UDP): "dnsmasq"}
        reconciler = make_reconciler(AutoConfirm())
        assert reconciler.find_next_free(51821, TCP) == 51821

    def test_exhaustion(self, host, make_reconciler):
        """Test that PortExhaustion is raised when every candidate is busy"""
        host.busy = {(p, UDP): "nginx" for p in range(51820, 51830)}
        reconciler = make_reconciler(AutoConfirm())
        with pytest.raises(PortExhaustion) as exc:
            reconciler.find_next_free(51820, UDP, max_attempts=5)
        assert exc.value.start_port == 51820
        assert str(exc.value) == "No free udp port found in range 51820-51824"

    def test_stops_at_top_of_port_range(self, host, make_reconciler):
        """Test that the search never goes past 65535"""
        host.busy = {(65535, TCP): "haproxy"}
        reconciler = make_reconciler(AutoConfirm())
        with pytest.raises(PortExhaustion):
            reconciler.find_next_free(65535, TCP)

    def test_invalid_start_port(self, make_reconciler):
        """Test that port 0 is rejected"""
        reconciler = make_reconciler(AutoConfirm())
        with pytest.raises(ValueError):
            reconciler.find_next_free(0, UDP)

    def test_unknown_state_counts_as_busy(self, host, make_reconciler):
        """Test that a port whose state cannot be read is skipped"""
        host.unknown = {(51820, UDP)}
        reconciler = make_reconciler(AutoConfirm())
        assert reconciler.scan_port(51820, UDP) is True
        assert reconciler.find_next_free(51820, UDP) == 51821


class TestEnumerateConflicts:
    """Tests for Reconciler.enumerate_conflicts"""

    def test_all_categories(self, host, make_reconciler):
        host.containers = {"wg-easy": []}
        host.services = {"wg-quick@wg0.service": []}
        host.interfaces = {"wg0": [], "eth0": []}
        conflicts = make_reconciler(AutoConfirm()).enumerate_conflicts()

        assert {(c.kind, c.identifier) for c in conflicts} == {
            (ConflictKind.CONTAINER, "wg-easy"),
            (ConflictKind.SERVICE, "wg-quick@wg0.service"),
            (ConflictKind.INTERFACE, "wg0"),
        }

    def test_failing_category_does_not_stop_others(self, host, make_reconciler):
        """Test that a broken container listing still reports services and interfaces"""
        host.broken = {"containers"}
        host.services = {"wg-quick@wg0.service": []}
        host.interfaces = {"wg0": []}
        conflicts = make_reconciler(AutoConfirm()).enumerate_conflicts()

        assert {c.kind for c in conflicts} == {ConflictKind.SERVICE, ConflictKind.INTERFACE}

    def test_all_categories_failing(self, host, make_reconciler):
        host.broken = {"containers", "services", "interfaces"}
        assert make_reconciler(AutoConfirm()).enumerate_conflicts() == set()

    def test_clean_host(self, make_reconciler):
        assert make_reconciler(AutoConfirm()).enumerate_conflicts() == set()


class TestRemediate:
    """Tests for Reconciler.remediate"""

    def test_action_order(self, host, make_reconciler):
        """Test that containers go first, then services, then interfaces"""
        host.containers = {"wg-easy": []}
        host.services = {"wg-quick@wg0.service": []}
        host.interfaces = {"wg0": []}
        reconciler = make_reconciler(AutoConfirm())
        results = reconciler.remediate(reconciler.enumerate_conflicts())

        assert host.calls == [
            ("container.stop", "wg-easy"),
            ("container.remove", "wg-easy"),
            ("service.stop", "wg-quick@wg0.service"),
            ("service.disable", "wg-quick@wg0.service"),
            ("interface.down", "wg0"),
            ("interface.delete", "wg0"),
        ]
        assert all(r.ok for r in results)

    def test_remediation_is_idempotent(self, host, make_reconciler):
        """Test that repeating the cleanup reports success for absent targets"""
        host.containers = {"wg-easy": []}
        reconciler = make_reconciler(AutoConfirm())
        conflicts = reconciler.enumerate_conflicts()

        first = reconciler.remediate(conflicts)
        second = reconciler.remediate(conflicts)

        assert all(r.ok for r in first)
        assert all(r.ok for r in second)
        assert {r.detail for r in second} == {"already absent"}
        assert host.containers == {}

    def test_dry_run_mutates_nothing(self, host, make_reconciler):
        host.containers = {"wg-easy": [(51820, UDP)]}
        host.interfaces = {"wg0": []}
        reconciler = make_reconciler(AutoConfirm(), dry_run=True)
        assert reconciler.mode is RemediationMode.DRY_RUN

        results = reconciler.remediate(reconciler.enumerate_conflicts())

        assert host.calls == []
        assert "wg-easy" in host.containers
        assert results and all(r.skipped and r.detail == "dry-run" for r in results)

    def test_declined_actions_are_recorded(self, host, make_reconciler):
        host.containers = {"wg-easy": []}
        reconciler = make_reconciler(AlwaysDeny())
        results = reconciler.remediate(reconciler.enumerate_conflicts())

        assert host.calls == []
        assert [(r.action, r.detail) for r in results] == [
            ("container.stop", "declined"),
            ("container.remove", "declined"),
        ]
        assert all(r.skipped and not r.ok for r in results)

    def test_services_stopped_but_not_disabled(self, host, make_reconciler, answers):
        """Test that disabling on boot is a separate question defaulting to no"""
        host.services = {"wg-quick@wg0.service": []}
        reconciler = make_reconciler(answers("y", ""))
        reconciler.remediate(reconciler.enumerate_conflicts())

        assert host.calls == [("service.stop", "wg-quick@wg0.service")]

    def test_failure_does_not_stop_remaining_actions(self, host, make_reconciler):
        host.containers = {"wg-easy": []}
        host.interfaces = {"wg0": []}
        host.failing = {"container.stop": "permission denied"}
        reconciler = make_reconciler(AutoConfirm())
        results = reconciler.remediate(reconciler.enumerate_conflicts())

        assert ("interface.delete", "wg0") in host.calls
        failed = [r for r in results if not r.ok]
        assert [(r.action, r.detail) for r in failed] == [("container.stop", "permission denied")]


class TestReconcile:
    """End-to-end reconcile scenarios"""

    def test_clean_host_keeps_defaults(self, make_reconciler):
        result = make_reconciler(AutoConfirm()).reconcile()

        assert result.ok
        assert result.ports == Ports(51820, 51821)
        assert result.conflicts == []
        assert result.changes == []

    def test_leftover_container_is_removed(self, host, make_reconciler):
        """Test that a wg-easy container holding 51820/udp is cleaned up and the port kept"""
        host.containers = {"wg-easy": [(51820, UDP)]}
        result = make_reconciler(AutoConfirm()).reconcile(Ports(51820, 51821))

        assert result.ok
        assert result.ports == Ports(51820, 51821)
        assert host.containers == {}
        assert [c.kind for c in result.conflicts] == [ConflictKind.CONTAINER]
        assert [(a.action, a.ok) for a in result.actions] == [
            ("container.stop", True),
            ("container.remove", True),
        ]

    def test_auto_shift_past_busy_range(self, host, make_reconciler):
        """Test that 51820-51825 held by another program shifts the VPN port to 51826"""
        host.busy = {(p, UDP): "nginx" for p in range(51820, 51826)}
        result = make_reconciler(AutoConfirm(), auto_shift=True).reconcile()

        assert result.ok
        assert result.ports == Ports(51826, 51821)
        assert result.changes == [(UDP, 51820, 51826)]
        assert result.conflicts == [
            Conflict(ConflictKind.RAW_PORT, "51820/udp (used by nginx)", resolvable=False)
        ]

    def test_auto_shift_exhaustion_raises(self, host, make_reconciler):
        host.busy = {(p, UDP): "nginx" for p in range(51820, 51830)}
        reconciler = make_reconciler(AutoConfirm(), auto_shift=True, max_attempts=3)
        with pytest.raises(PortExhaustion) as exc:
            reconciler.reconcile()
        assert exc.value.start_port == 51821

    def test_unknown_ui_port_is_shifted(self, host, make_reconciler):
        host.unknown = {(51821, TCP)}
        result = make_reconciler(AutoConfirm(), auto_shift=True).reconcile()

        assert result.ports == Ports(51820, 51822)

    def test_operator_accepts_suggestion(self, host, make_reconciler, answers):
        host.busy = {(51821, TCP): "apache2"}
        policy = answers("")
        result = make_reconciler(policy).reconcile()

        assert result.ok
        assert result.ports == Ports(51820, 51822)
        assert "Use 51822/tcp instead?" in policy.prompts[0]

    def test_operator_overrides_busy_port(self, host, make_reconciler, answers):
        """Test that continuing anyway keeps the busy port and is not re-blocked"""
        host.busy = {(51820, UDP): "nginx"}
        result = make_reconciler(answers("n", "y")).reconcile()

        assert result.ok
        assert result.ports == Ports(51820, 51821)
        assert result.overridden == {(51820, UDP)}
        assert result.blocked == []

    def test_failed_cleanup_surfaces_blocked_port(self, host, make_reconciler, answers):
        """Test that failing actions are collected and the held port is reported"""
        host.containers = {"wg-easy": [(51820, UDP)]}
        host.failing = {
            "container.stop": "permission denied",
            "container.remove": "permission denied",
        }
        # approve cleanup, refuse the new port, keep the default "no" for continuing
        result = make_reconciler(answers("y", "n", "")).reconcile()

        assert not result.ok
        assert [(b.port, b.transport) for b in result.blocked] == [(51820, UDP)]
        assert [f.action for f in result.failures] == ["container.stop", "container.remove"]
        assert result.ports.vpn == 51820

    def test_declined_everything_blocks(self, host, make_reconciler):
        host.containers = {"wg-easy": [(51820, UDP)]}
        result = make_reconciler(AlwaysDeny()).reconcile()

        assert not result.ok
        assert host.calls == []
        assert result.failures == []
        assert result.blocked[0].owner == "wg-easy"

    def test_port_taken_during_reconcile_is_blocked(self, host, make_reconciler):
        """Test that the final check catches a port grabbed after the first scan"""
        real_query = host.query_port
        seen = []

        def racing(port, transport):
            if (port, transport) == (51821, TCP):
                seen.append(port)
                if len(seen) > 1:
                    return PortProbe(port, transport, PortState.BUSY, "docker-proxy")
            return real_query(port, transport)

        host.query_port = racing
        result = make_reconciler(AutoConfirm()).reconcile()

        assert not result.ok
        assert [b.describe() for b in result.blocked] == ["51821/tcp (used by docker-proxy)"]

    def test_dry_run_reports_without_mutating(self, host, make_reconciler):
        host.containers = {"wg-easy": [(51820, UDP)]}
        result = make_reconciler(AutoConfirm(), dry_run=True).reconcile()

        assert host.calls == []
        assert all(a.skipped for a in result.actions)
        assert "wg-easy" in host.containers


class TestReconcileResult:
    def test_failures_exclude_skipped(self):
        result = ReconcileResult(
            ports=Ports(),
            actions=[
                ActionResult("container.stop", "wg-easy", ok=True),
                ActionResult("container.remove", "wg-easy", ok=False, detail="busy"),
                ActionResult("service.stop", "wg-quick@wg0", ok=False, skipped=True),
            ],
        )
        assert [f.action for f in result.failures] == ["container.remove"]
        assert result.ok


class TestInteractivePolicy:
    """Tests for the terminal decision policy"""

    @pytest.mark.parametrize(
        "reply, expected",
        [("", True), ("n", False), ("NO", False), ("y", True), ("whatever", True)],
    )
    def test_confirm_default_yes(self, answers, reply, expected):
        assert answers(reply).confirm("Stop?", True) is expected

    @pytest.mark.parametrize(
        "reply, expected",
        [("", False), ("y", True), ("Yes", True), ("n", False), ("whatever", False)],
    )
    def test_confirm_default_no(self, answers, reply, expected):
        assert answers(reply).confirm("Continue anyway?", False) is expected

    def test_confirm_prompt_shows_default(self, answers):
        policy = answers("")
        policy.confirm("Continue anyway?", False)
        assert policy.prompts == ["Continue anyway? (y/N): "]

    def test_eof_picks_default(self, answers):
        policy = answers()
        assert policy.confirm("Stop?", True) is True
        assert policy.confirm("Disable?", False) is False

    def test_choose(self, answers):
        options = {"1": "start", "2": "move", "3": "exit"}
        assert answers("").choose("Options", options, default="2", cancel="3") == "2"
        assert answers("3").choose("Options", options, default="1", cancel="3") == "3"
        assert answers("9").choose("Options", options, default="1", cancel="3") is None

    def test_choose_prompt_lists_range(self, answers, capsys):
        policy = answers("1")
        policy.choose("Options", {"1": "start", "2": "move", "3": "exit"}, "1", "3")
        assert policy.prompts == ["Enter your choice (1-3): "]
        assert "2. move" in capsys.readouterr().out

    def test_ask(self, answers):
        policy = answers("", " 51830 ")
        assert policy.ask("Enter port", "51822") == "51822"
        assert policy.ask("Enter port", "51822") == "51830"
        assert policy.prompts[0] == "Enter port [51822]: "


class TestFixedPolicies:
    def test_auto_confirm(self):
        policy = AutoConfirm()
        assert policy.confirm("Continue anyway?", False) is True
        assert policy.choose("Options", {"1": "a", "2": "b"}, default="2", cancel="1") == "2"
        assert policy.ask("Address", "203.0.113.5") == "203.0.113.5"

    def test_always_deny(self):
        policy = AlwaysDeny()
        assert policy.confirm("Stop?", True) is False
        assert policy.choose("Options", {"1": "a", "3": "c"}, default="1", cancel="3") == "3"


class TestReconcileNeverReturnsBusyPort:
    """With auto-shift, the effective ports are free whenever the result is ok"""

    @pytest.mark.parametrize(
        "busy, containers, interfaces",
        [
            ({}, {}, {}),
            ({(51820, UDP): "nginx"}, {}, {}),
            ({(51821, TCP): "apache2"}, {"wg-easy": [(51820, UDP)]}, {}),
            ({(p, UDP): "x" for p in range(51820, 51840)}, {}, {"wg0": [(51840, UDP)]}),
            ({(51821, TCP): "a", (51822, TCP): "b"}, {"wg-easy": [(51821, TCP)]}, {"wg1": []}),
        ],
    )
    def test_effective_ports_are_free(self, host, make_reconciler, busy, containers, interfaces):
        host.busy = dict(busy)
        host.containers = {k: list(v) for k, v in containers.items()}
        host.interfaces = {k: list(v) for k, v in interfaces.items()}
        result = make_reconciler(AutoConfirm(), auto_shift=True).reconcile()

        assert result.ok
        assert not host.query_port(result.ports.vpn, UDP).in_use
        assert not host.query_port(result.ports.ui, TCP).in_use


class TestWaitForRelease:
    """Tests for the post-cleanup wait"""

    @pytest.mark.parametrize("owner", ["wg-easy", "docker-proxy", "wireguard-go"])
    def test_resource_ports_are_watched(self, host, make_reconciler, owner):
        host.containers = {"wg-easy": []}
        host.busy = {(51820, UDP): owner, (51821, TCP): "apache2"}
        reconciler = make_reconciler(AutoConfirm())
        conflicts = reconciler.enumerate_conflicts()

        assert reconciler.held_by_resources(Ports(), conflicts) == [(51820, UDP)]

    def test_unknown_state_is_not_watched(self, host, make_reconciler):
        host.unknown = {(51820, UDP)}
        reconciler = make_reconciler(AutoConfirm())
        assert reconciler.held_by_resources(Ports(), set()) == []

    def test_foreign_holder_does_not_stall_cleanup(self, host, make_reconciler):
        """Test that a port held by another program is not waited on after cleanup"""
        host.containers = {"wg-easy": [(51820, UDP)]}
        host.busy = {(51821, TCP): "apache2"}
        sleeps = []
        reconciler = make_reconciler(
            AutoConfirm(), auto_shift=True, release_timeout=30, sleep=sleeps.append
        )
        result = reconciler.reconcile()

        assert sleeps == []
        assert result.ports == Ports(51820, 51822)

    def test_nothing_to_watch(self, make_reconciler):
        sleeps = []
        reconciler = make_reconciler(AutoConfirm(), release_timeout=30, sleep=sleeps.append)
        reconciler.wait_for_release([])
        assert sleeps == []


class TestDecisionPolicy:
    def test_is_abstract(self):
        with pytest.raises(TypeError):
            DecisionPolicy()
