#!/usr/bin/env python3
"""Host queries and mutations used by the wg-easy tooling.

Everything that touches the machine (socket table, containers, systemd units,
kernel interfaces) goes through HostSystem so the reconciler can be driven by
a fake in tests.
"""

import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum

import psutil

log = logging.getLogger("wgeasy.host")

# Substrings in a failing command's output that mean "target already gone".
ABSENT_MARKERS = (
    "no such container",
    "no such object",
    "not loaded",
    "does not exist",
    "cannot find device",
    "not found",
)

MUTATIONS = {
    "container.stop": ("docker", "stop", "{target}"),
    "container.remove": ("docker", "rm", "{target}"),
    "service.stop": ("systemctl", "stop", "{target}"),
    "service.disable": ("systemctl", "disable", "{target}"),
    "interface.down": ("ip", "link", "set", "{target}", "down"),
    "interface.delete": ("ip", "link", "delete", "{target}"),
}

_SS_USERS_RE = re.compile(r'users:\(\("([^"]+)"')


class Transport(str, Enum):
    UDP = "udp"
    TCP = "tcp"


class PortState(str, Enum):
    FREE = "free"
    BUSY = "busy"
    UNKNOWN = "unknown"


@dataclass
class PortProbe:
    port: int
    transport: Transport
    state: PortState
    owner: str | None = None

    @property
    def in_use(self) -> bool:
        """Busy and unknown both block a bind decision."""
        return self.state is not PortState.FREE

    def describe(self) -> str:
        label = f"{self.port}/{self.transport.value}"
        if self.state is PortState.UNKNOWN:
            return f"{label} (state unknown)"
        if self.owner:
            return f"{label} (used by {self.owner})"
        return label


@dataclass
class ActionResult:
    action: str
    target: str
    ok: bool
    skipped: bool = False
    detail: str = ""


def command_exists(cmd: str) -> bool:
    """Check if a command exists in the system PATH.

    Args:
        cmd: The command name to check

    Returns:
        True if the command exists, False otherwise
    """
    return shutil.which(cmd) is not None


def wait_until(
    predicate,
    timeout: float = 15.0,
    initial_delay: float = 0.25,
    factor: float = 2.0,
    max_delay: float = 2.0,
    sleep=time.sleep,
    clock=time.monotonic,
) -> bool:
    """Poll ``predicate`` with exponential backoff until it holds or time runs out.

    Args:
        predicate: Zero-argument callable returning a truthy value when done
        timeout: Upper bound in seconds for the whole wait
        initial_delay: First pause between checks
        factor: Multiplier applied to the pause after each failed check
        max_delay: Cap for a single pause
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        True if the predicate held before the deadline, False otherwise
    """
    deadline = clock() + timeout
    delay = initial_delay
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(delay, max_delay, remaining))
        delay *= factor


class HostSystem:
    """Socket table, container engine, systemd and interface access.

    Methods fall into three groups: query_* (read one fact), list_* (enumerate
    resources) and mutate (change one resource). With dry_run set, mutate only
    logs what it would run.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    # ---------------- query -----------------

    def command_exists(self, cmd: str) -> bool:
        return command_exists(cmd)

    def query_port(self, port: int, transport: Transport) -> PortProbe:
        """Look up a listener on ``port``/``transport``.

        Uses psutil's socket table first and falls back to ``ss`` when psutil
        cannot read it. If neither source answers the state is UNKNOWN.
        """
        try:
            connections = psutil.net_connections(kind=transport.value)
        except (psutil.AccessDenied, OSError) as e:
            log.debug("psutil socket table unavailable (%s), trying ss", e)
            return self._query_port_ss(port, transport)

        for conn in connections:
            if not conn.laddr or conn.laddr.port != port:
                continue
            if transport is Transport.TCP and conn.status != psutil.CONN_LISTEN:
                continue
            return PortProbe(port, transport, PortState.BUSY, self._process_name(conn.pid))
        return PortProbe(port, transport, PortState.FREE)

    def _process_name(self, pid: int | None) -> str | None:
        if not pid:
            return None
        try:
            return psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def _query_port_ss(self, port: int, transport: Transport) -> PortProbe:
        flag = "-u" if transport is Transport.UDP else "-t"
        try:
            result = subprocess.run(
                ["ss", "-H", "-l", "-n", "-p", flag],
                capture_output=True,
                text=True,
                check=True,
            )
        except (FileNotFoundError, subprocess.CalledProcessError) as e:
            log.warning("Could not query port %s/%s: %s", port, transport.value, e)
            return PortProbe(port, transport, PortState.UNKNOWN)

        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) < 5:
                continue
            # State Recv-Q Send-Q Local:Port Peer:Port [Process]
            if fields[3].rsplit(":", 1)[-1] != str(port):
                continue
            match = _SS_USERS_RE.search(line)
            return PortProbe(
                port, transport, PortState.BUSY, match.group(1) if match else None
            )
        return PortProbe(port, transport, PortState.FREE)

    def service_active(self, name: str) -> bool:
        if not self.command_exists("systemctl"):
            return False
        result = subprocess.run(
            ["systemctl", "is-active", "--quiet", name],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        return result.returncode == 0

    # ---------------- list -----------------

    def list_containers(self, name_filter: str) -> list[dict]:
        """Return containers (any state) whose name matches ``name_filter``.

        Raises:
            RuntimeError: If docker is missing or the listing fails
        """
        if not self.command_exists("docker"):
            raise RuntimeError("docker command not found")
        result = subprocess.run(
            [
                "docker",
                "ps",
                "-a",
                "--filter",
                f"name={name_filter}",
                "--format",
                "{{.ID}}\t{{.Names}}\t{{.Status}}",
            ],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise RuntimeError(result.stderr.strip() or "docker ps failed")
        containers = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            containers.append(
                {
                    "id": parts[0],
                    "name": parts[1],
                    "status": parts[2] if len(parts) > 2 else "",
                }
            )
        return containers

    def list_services(self, pattern: str) -> list[str]:
        """Return running systemd service units matching ``pattern``.

        Raises:
            RuntimeError: If systemctl is missing or the listing fails
        """
        if not self.command_exists("systemctl"):
            raise RuntimeError("systemctl command not found")
        result = subprocess.run(
            [
                "systemctl",
                "list-units",
                "--type=service",
                "--state=running",
                "--no-legend",
                "--plain",
                pattern,
            ],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise RuntimeError(result.stderr.strip() or "systemctl list-units failed")
        units = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if fields:
                units.append(fields[0])
        return units

    def list_interfaces(self, prefix: str) -> list[str]:
        """Return kernel interfaces named ``<prefix><digits>`` (e.g. wg0)."""
        pattern = re.compile(rf"^{re.escape(prefix)}\d*$")
        return sorted(name for name in psutil.net_if_addrs() if pattern.match(name))

    # ---------------- mutate -----------------

    def mutate(self, action: str, target: str) -> ActionResult:
        """Run one corrective action against ``target``.

        A target that is already gone counts as success, so repeating an
        action is harmless.

        Args:
            action: One of the MUTATIONS keys
            target: Container, unit or interface name

        Returns:
            ActionResult describing the outcome
        """
        if action not in MUTATIONS:
            raise ValueError(f"Unknown action: {action}")
        cmd = [part.format(target=target) for part in MUTATIONS[action]]

        if self.dry_run:
            log.info("[dry-run] would run: %s", " ".join(cmd))
            return ActionResult(action, target, ok=True, skipped=True, detail="dry-run")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            return ActionResult(action, target, ok=False, detail=str(e))

        output = (result.stderr or result.stdout or "").strip()
        if result.returncode == 0:
            return ActionResult(action, target, ok=True, detail=output)
        if any(marker in output.lower() for marker in ABSENT_MARKERS):
            log.debug("%s %s: already absent (%s)", action, target, output)
            return ActionResult(action, target, ok=True, detail="already absent")
        return ActionResult(action, target, ok=False, detail=output)
