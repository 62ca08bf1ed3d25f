#!/usr/bin/env python3
"""Port and resource reconciliation before the wg-easy stack binds its ports.

The reconciler finds what occupies the VPN (UDP) and web UI (TCP) ports,
cleans up known WireGuard leftovers (wg-easy containers, wg-quick services,
wg* interfaces) and, when a port stays busy, moves to the next free port or
asks the operator what to do. Questions go through a DecisionPolicy so the
whole flow runs the same with a terminal, with --yes, or in tests.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from wgeasy_host import ActionResult, HostSystem, PortProbe, PortState, Transport, wait_until

log = logging.getLogger("wgeasy.reconcile")

CONTAINER_NAME = "wg-easy"
SERVICE_PATTERN = "wg-quick@*"
INTERFACE_PREFIX = "wg"
DEFAULT_WG_PORT = 51820
DEFAULT_UI_PORT = 51821
DEFAULT_MAX_ATTEMPTS = 100
RELEASE_TIMEOUT = 10.0
MAX_PORT = 65535

# Socket owners that belong to a container or WireGuard setup rather than to
# an unrelated program.
RESOURCE_PROCESSES = ("docker-proxy", "dockerd", "containerd", "wg-quick", "wireguard-go")


class PortExhaustion(Exception):
    """No free port was found within the search bound."""

    def __init__(self, start_port: int, transport: Transport, attempts: int):
        self.start_port = start_port
        self.transport = transport
        self.attempts = attempts
        last = min(start_port + attempts - 1, MAX_PORT)
        super().__init__(
            f"No free {transport.value} port found in range {start_port}-{last}"
        )


class RemediationMode(str, Enum):
    AUTO_CONFIRM = "auto-confirm"
    INTERACTIVE = "interactive"
    DRY_RUN = "dry-run"


class ConflictKind(str, Enum):
    CONTAINER = "container"
    SERVICE = "system-service"
    INTERFACE = "network-interface"
    RAW_PORT = "raw-port"


@dataclass(frozen=True)
class Conflict:
    kind: ConflictKind
    identifier: str
    resolvable: bool = True
    detail: str = ""

    def describe(self) -> str:
        if self.detail:
            return f"{self.identifier} ({self.detail})"
        return self.identifier


class Ports(NamedTuple):
    vpn: int = DEFAULT_WG_PORT
    ui: int = DEFAULT_UI_PORT


@dataclass
class ReconcileResult:
    ports: Ports
    conflicts: list[Conflict] = field(default_factory=list)
    actions: list[ActionResult] = field(default_factory=list)
    changes: list[tuple[Transport, int, int]] = field(default_factory=list)
    overridden: set[tuple[int, Transport]] = field(default_factory=set)
    blocked: list[PortProbe] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.blocked

    @property
    def failures(self) -> list[ActionResult]:
        return [r for r in self.actions if not r.ok and not r.skipped]


# ---------------- decision policies -----------------


class DecisionPolicy(ABC):
    """Answers the yes/no and menu questions raised during reconciliation."""

    mode = RemediationMode.INTERACTIVE

    @abstractmethod
    def confirm(self, question: str, default: bool) -> bool:
        pass

    @abstractmethod
    def choose(self, question: str, options: dict, default: str, cancel: str) -> str | None:
        pass

    def ask(self, question: str, default: str = "") -> str:
        """Free-text question; only an interactive policy reads input."""
        return default


class AutoConfirm(DecisionPolicy):
    """Say yes to everything (``--yes``)."""

    mode = RemediationMode.AUTO_CONFIRM

    def confirm(self, question: str, default: bool) -> bool:
        log.info("%s -> yes (auto)", question)
        return True

    def choose(self, question: str, options: dict, default: str, cancel: str) -> str | None:
        log.info("%s -> %s (auto)", question, options.get(default, default))
        return default


class AlwaysDeny(DecisionPolicy):
    """Say no to everything; menus resolve to their cancel option."""

    mode = RemediationMode.INTERACTIVE

    def confirm(self, question: str, default: bool) -> bool:
        log.info("%s -> no", question)
        return False

    def choose(self, question: str, options: dict, default: str, cancel: str) -> str | None:
        return cancel


class Interactive(DecisionPolicy):
    """Prompt on the terminal.

    ``(Y/n)`` questions accept anything but n/no, ``(y/N)`` questions only
    accept y/yes. Empty input or EOF picks the default.
    """

    mode = RemediationMode.INTERACTIVE

    def __init__(self, input_fn=input):
        self.input_fn = input_fn

    def _ask(self, prompt: str) -> str:
        try:
            return self.input_fn(prompt).strip().lower()
        except EOFError:
            return ""

    def confirm(self, question: str, default: bool) -> bool:
        answer = self._ask(f"{question} ({'Y/n' if default else 'y/N'}): ")
        if not answer:
            return default
        if default:
            return answer not in ("n", "no")
        return answer in ("y", "yes")

    def choose(self, question: str, options: dict, default: str, cancel: str) -> str | None:
        print(question)
        for key, label in options.items():
            print(f"  {key}. {label}")
        keys = "-".join((min(options), max(options))) if options else ""
        answer = self._ask(f"Enter your choice ({keys}): ")
        if not answer:
            return default
        return answer if answer in options else None

    def ask(self, question: str, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        try:
            answer = self.input_fn(f"{question}{suffix}: ").strip()
        except EOFError:
            answer = ""
        return answer or default


# ---------------- reconciler -----------------


class Reconciler:
    """Detect and resolve conflicts on the VPN and web UI ports.

    Args:
        host: HostSystem (or a stand-in with the same methods)
        policy: DecisionPolicy answering operator questions
        auto_shift: Move a busy port to the next free one without asking
        dry_run: Report remediation without running anything
        max_attempts: Upper bound for the free port search
        release_timeout: Seconds to wait for ports after cleanup
        sleep: Sleep function used while waiting
    """

    def __init__(
        self,
        host: HostSystem,
        policy: DecisionPolicy,
        auto_shift: bool = False,
        dry_run: bool = False,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        release_timeout: float = RELEASE_TIMEOUT,
        sleep=time.sleep,
    ):
        self.host = host
        self.policy = policy
        self.auto_shift = auto_shift
        self.dry_run = dry_run
        self.max_attempts = max_attempts
        self.release_timeout = release_timeout
        self.sleep = sleep

    @property
    def mode(self) -> RemediationMode:
        if self.dry_run:
            return RemediationMode.DRY_RUN
        return self.policy.mode

    def scan_port(self, port: int, transport: Transport) -> bool:
        """Return True if ``port`` is in use or its state could not be read."""
        probe = self.host.query_port(port, transport)
        log.debug("Port %s/%s: %s", port, transport.value, probe.state.value)
        return probe.in_use

    def find_next_free(
        self, start_port: int, transport: Transport, max_attempts: int | None = None
    ) -> int:
        """Probe upward from ``start_port`` and return the first free port.

        Raises:
            ValueError: If start_port is not a valid port number
            PortExhaustion: If no free port exists within max_attempts candidates
        """
        if start_port < 1:
            raise ValueError(f"Invalid port: {start_port}")
        attempts = max_attempts or self.max_attempts
        port = start_port
        for _ in range(attempts):
            if port > MAX_PORT:
                break
            if not self.scan_port(port, transport):
                return port
            port += 1
        raise PortExhaustion(start_port, transport, attempts)

    def enumerate_conflicts(self) -> set[Conflict]:
        """List wg-easy containers, wg-quick services and wg interfaces.

        Each category is checked on its own; a failing check is logged and the
        remaining ones still run.
        """
        conflicts = set()

        try:
            for c in self.host.list_containers(CONTAINER_NAME):
                conflicts.add(Conflict(ConflictKind.CONTAINER, c["name"], detail=c.get("status", "")))
        except (RuntimeError, OSError) as e:
            log.warning("Skipping container check: %s", e)

        try:
            for unit in self.host.list_services(SERVICE_PATTERN):
                conflicts.add(Conflict(ConflictKind.SERVICE, unit))
        except (RuntimeError, OSError) as e:
            log.warning("Skipping service check: %s", e)

        try:
            for iface in self.host.list_interfaces(INTERFACE_PREFIX):
                conflicts.add(Conflict(ConflictKind.INTERFACE, iface))
        except (RuntimeError, OSError) as e:
            log.warning("Skipping interface check: %s", e)

        return conflicts

    def remediate(self, conflicts, mode: RemediationMode | None = None) -> list[ActionResult]:
        """Clean up the given conflicts.

        Containers are stopped and removed, services stopped (and optionally
        disabled), interfaces brought down and deleted. Raw port users are only
        reported. A failed action is logged and the remaining ones still run.

        Args:
            conflicts: Iterable of Conflict records
            mode: RemediationMode; defaults to the reconciler's mode

        Returns:
            One ActionResult per attempted, skipped or declined action
        """
        mode = mode or self.mode
        results = []
        grouped = {kind: [] for kind in ConflictKind}
        for conflict in sorted(conflicts, key=lambda c: (c.kind.value, c.identifier)):
            grouped[conflict.kind].append(conflict)

        containers = grouped[ConflictKind.CONTAINER]
        if containers:
            log.warning("Found existing wg-easy container(s):")
            for c in containers:
                log.warning("  - %s", c.describe())
            names = [c.identifier for c in containers]
            if self._approved(mode, "Stop and remove these containers?", True):
                for name in names:
                    results += self._apply(mode, ("container.stop", "container.remove"), name)
            else:
                results += self._declined(("container.stop", "container.remove"), names)

        services = grouped[ConflictKind.SERVICE]
        if services:
            names = [s.identifier for s in services]
            log.warning("Found running WireGuard service(s): %s", ", ".join(names))
            if self._approved(mode, "Stop these WireGuard services?", True):
                for name in names:
                    results += self._apply(mode, ("service.stop",), name)
                if self._approved(mode, "Disable them from starting on boot?", False):
                    for name in names:
                        results += self._apply(mode, ("service.disable",), name)
            else:
                results += self._declined(("service.stop",), names)

        interfaces = grouped[ConflictKind.INTERFACE]
        if interfaces:
            names = [i.identifier for i in interfaces]
            log.warning("Found WireGuard interface(s): %s", ", ".join(names))
            if self._approved(mode, "Bring down and delete these interfaces?", True):
                for name in names:
                    results += self._apply(mode, ("interface.down", "interface.delete"), name)
            else:
                results += self._declined(("interface.down", "interface.delete"), names)

        for raw in grouped[ConflictKind.RAW_PORT]:
            log.warning("Port %s cannot be freed automatically", raw.describe())

        return results

    def _approved(self, mode: RemediationMode, question: str, default: bool) -> bool:
        if mode is RemediationMode.INTERACTIVE:
            return self.policy.confirm(question, default)
        return True

    def _apply(self, mode: RemediationMode, actions, target: str) -> list[ActionResult]:
        results = []
        for action in actions:
            if mode is RemediationMode.DRY_RUN:
                log.info("[dry-run] would %s %s", action, target)
                results.append(ActionResult(action, target, ok=True, skipped=True, detail="dry-run"))
                continue
            result = self.host.mutate(action, target)
            if result.ok:
                log.info("%s %s: ok", action, target)
            else:
                log.warning("%s %s failed: %s", action, target, result.detail)
            results.append(result)
        return results

    def _declined(self, actions, targets) -> list[ActionResult]:
        return [
            ActionResult(action, target, ok=False, skipped=True, detail="declined")
            for target in targets
            for action in actions
        ]

    def reconcile(self, desired: Ports = Ports()) -> ReconcileResult:
        """Make sure the VPN and UI ports can be bound.

        Named resources are cleaned up first, then both ports are re-scanned.
        A port that is still busy is moved (auto-shift or operator choice),
        overridden by the operator, or reported in ``blocked``.

        Raises:
            PortExhaustion: If auto-shift is on and no free port is found
        """
        result = ReconcileResult(ports=desired)

        named = self.enumerate_conflicts()
        result.conflicts.extend(sorted(named, key=lambda c: (c.kind.value, c.identifier)))
        if named:
            held = self.held_by_resources(desired, named)
            result.actions = self.remediate(named)
            if any(r.ok and not r.skipped for r in result.actions):
                self.wait_for_release(held)
        else:
            log.info("No existing WireGuard installations found")

        effective = {}
        for port, transport in ((desired.vpn, Transport.UDP), (desired.ui, Transport.TCP)):
            probe = self.host.query_port(port, transport)
            if not probe.in_use:
                effective[transport] = port
                continue
            log.warning("Port %s is currently in use", probe.describe())
            result.conflicts.append(Conflict(ConflictKind.RAW_PORT, probe.describe(), resolvable=False))
            effective[transport] = self._resolve_busy(probe, result)

        result.ports = Ports(effective[Transport.UDP], effective[Transport.TCP])

        # Ports may have been taken while we were busy; check once more.
        for port, transport in ((result.ports.vpn, Transport.UDP), (result.ports.ui, Transport.TCP)):
            if (port, transport) in result.overridden:
                continue
            if any(b.port == port and b.transport is transport for b in result.blocked):
                continue
            probe = self.host.query_port(port, transport)
            if probe.in_use:
                log.warning("Port %s became busy before start", probe.describe())
                result.blocked.append(probe)

        if result.ok:
            log.info("Ports ready: %s/udp and %s/tcp", result.ports.vpn, result.ports.ui)
        return result

    def _resolve_busy(self, probe: PortProbe, result: ReconcileResult) -> int:
        transport = probe.transport
        if self.auto_shift:
            new_port = self.find_next_free(probe.port + 1, transport)
            return self._shift(probe.port, new_port, transport, result)

        try:
            suggestion = self.find_next_free(probe.port + 1, transport)
        except PortExhaustion as e:
            log.warning("%s", e)
            suggestion = None

        if suggestion is not None and self.policy.confirm(
            f"Port {probe.describe()} is in use. Use {suggestion}/{transport.value} instead?",
            True,
        ):
            return self._shift(probe.port, suggestion, transport, result)

        if self.policy.confirm(
            f"Continue with port {probe.port}/{transport.value} anyway? This might fail.",
            False,
        ):
            log.warning("Continuing with busy port %s on operator request", probe.describe())
            result.overridden.add((probe.port, transport))
            return probe.port

        result.blocked.append(probe)
        return probe.port

    def _shift(self, old: int, new: int, transport: Transport, result: ReconcileResult) -> int:
        log.info("Port %s/%s is busy, using %s/%s", old, transport.value, new, transport.value)
        result.changes.append((transport, old, new))
        return new

    def held_by_resources(self, desired: Ports, conflicts) -> list[tuple[int, Transport]]:
        """Return the desired ports currently held by one of ``conflicts``.

        A port is attributed to a resource when its owner is the resource
        itself, a container or WireGuard helper process, or a kernel socket
        with no process (a wg interface). Ports held by other programs or in
        an unknown state are left out, since cleanup cannot release them.
        """
        identifiers = {c.identifier for c in conflicts}
        held = []
        for port, transport in ((desired.vpn, Transport.UDP), (desired.ui, Transport.TCP)):
            probe = self.host.query_port(port, transport)
            if probe.state is not PortState.BUSY:
                continue
            if probe.owner is None or probe.owner in identifiers or probe.owner in RESOURCE_PROCESSES:
                held.append((port, transport))
            else:
                log.debug("Port %s is not held by a WireGuard resource", probe.describe())
        return held

    def wait_for_release(self, ports):
        """Poll until every (port, transport) in ``ports`` is free or time runs out."""
        if not ports:
            return
        log.info("Waiting for ports to be released...")

        def released():
            return not any(self.scan_port(port, transport) for port, transport in ports)

        if not wait_until(released, timeout=self.release_timeout, sleep=self.sleep):
            log.info("Ports still in use after %.0fs", self.release_timeout)
