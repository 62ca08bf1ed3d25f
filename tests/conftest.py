"""
Shared fixtures for the wgeasy tests.

FakeHost stands in for HostSystem: it keeps an in-memory socket table plus
containers, services and interfaces that own ports, and applies mutations to
that state instead of the real machine.
"""

import pytest

from wgeasy_host import ActionResult, PortProbe, PortState
from wgeasy_reconcile import Interactive, Reconciler


class FakeHost:
    def __init__(self):
        # (port, Transport) -> owner name, for sockets nothing can clean up
        self.busy = {}
        # (port, Transport) whose state cannot be read
        self.unknown = set()
        # name -> list of (port, Transport) held while the resource is up
        self.containers = {}
        self.services = {}
        self.interfaces = {}
        # "containers" / "services" / "interfaces" listings that should fail
        self.broken = set()
        # action -> error text for mutations that should fail
        self.failing = {}
        self.calls = []

    def _owner(self, port, transport):
        key = (port, transport)
        if key in self.busy:
            return self.busy[key]
        for table in (self.containers, self.services, self.interfaces):
            for name, held in table.items():
                if key in held:
                    return name
        return None

    def query_port(self, port, transport):
        if (port, transport) in self.unknown:
            return PortProbe(port, transport, PortState.UNKNOWN)
        owner = self._owner(port, transport)
        if owner:
            return PortProbe(port, transport, PortState.BUSY, owner)
        return PortProbe(port, transport, PortState.FREE)

    def list_containers(self, name_filter):
        if "containers" in self.broken:
            raise RuntimeError("docker command not found")
        return [
            {"id": f"id-{name}", "name": name, "status": "Up 2 hours"}
            for name in sorted(self.containers)
            if name_filter in name
        ]

    def list_services(self, pattern):
        if "services" in self.broken:
            raise RuntimeError("systemctl command not found")
        return sorted(self.services)

    def list_interfaces(self, prefix):
        if "interfaces" in self.broken:
            raise OSError("netlink unavailable")
        return sorted(name for name in self.interfaces if name.startswith(prefix))

    def mutate(self, action, target):
        self.calls.append((action, target))
        if action in self.failing:
            return ActionResult(action, target, ok=False, detail=self.failing[action])

        table = {
            "container": self.containers,
            "service": self.services,
            "interface": self.interfaces,
        }[action.split(".")[0]]
        if target not in table:
            return ActionResult(action, target, ok=True, detail="already absent")
        if action in ("container.stop", "interface.down"):
            table[target] = []
        elif action in ("container.remove", "service.stop", "interface.delete"):
            del table[target]
        return ActionResult(action, target, ok=True)


def no_sleep(seconds):
    pass


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def answers():
    """Build an Interactive policy that replays the given terminal answers."""

    def build(*replies):
        queue = list(replies)
        prompts = []

        def fake_input(prompt):
            prompts.append(prompt)
            if not queue:
                raise EOFError
            return queue.pop(0)

        policy = Interactive(input_fn=fake_input)
        policy.prompts = prompts
        return policy

    return build


@pytest.fixture
def make_reconciler(host):
    def build(policy, **kwargs):
        kwargs.setdefault("release_timeout", 0)
        kwargs.setdefault("sleep", no_sleep)
        return Reconciler(host, policy, **kwargs)

    return build
