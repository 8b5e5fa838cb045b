"""Shared pytest fixtures for ssh_tunnels tests."""

import pytest

from ssh_tunnels.common.exceptions import ConnectFailedError, ForwardRejectedError
from ssh_tunnels.config import TunnelSettings
from ssh_tunnels.models import RemoteSocket
from ssh_tunnels.ports import PortAllocator
from ssh_tunnels.profiles import ProfileStore
from ssh_tunnels.registry import FileTunnelRegistry
from ssh_tunnels.session import SessionOrchestrator


class FakeChannels:
    """In-memory ControlChannelProvider recording every call."""

    def __init__(self):
        self.alive: dict[str, bool] = {}
        self.forwards: dict[str, list[tuple[int, RemoteSocket]]] = {}
        self.fail_connect: set[str] = set()
        self.reject_ports: set[int] = set()
        self.fail_cancel: set[int] = set()
        self.fail_close: set[str] = set()
        self.calls: list[tuple] = []

    def has_handle(self, host_id):
        return host_id in self.alive

    def handles(self):
        return sorted(self.alive)

    def ensure(self, host_id):
        self.calls.append(("ensure", host_id))
        if host_id in self.fail_connect:
            raise ConnectFailedError(host_id, f"Unable to connect to {host_id}")
        if self.alive.get(host_id):
            return
        self.alive[host_id] = True
        self.forwards[host_id] = []

    def is_alive(self, host_id):
        return self.alive.get(host_id, False)

    def forward(self, host_id, local_port, remote):
        self.calls.append(("forward", host_id, local_port))
        if local_port in self.reject_ports:
            raise ForwardRejectedError(
                host_id, local_port, f"Forward {local_port} rejected by {host_id}"
            )
        self.forwards[host_id].append((local_port, remote))

    def cancel(self, host_id, local_port, remote):
        self.calls.append(("cancel", host_id, local_port))
        if local_port in self.fail_cancel:
            raise ForwardRejectedError(
                host_id, local_port, f"Cancel of {local_port} failed"
            )
        self.forwards[host_id].remove((local_port, remote))

    def close(self, host_id):
        self.calls.append(("close", host_id))
        if host_id in self.fail_close:
            raise ConnectFailedError(host_id, f"Unable to reach {host_id}")
        self.alive.pop(host_id, None)
        self.forwards.pop(host_id, None)

    def kill_connection(self, host_id):
        """Simulate the master process dying while its socket remains."""
        self.alive[host_id] = False


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return TunnelSettings(base_dir=tmp_path / "state")


@pytest.fixture
def channels():
    return FakeChannels()


@pytest.fixture
def listening():
    """Mutable set standing in for the live listener table."""
    return set()


@pytest.fixture
def allocator(listening):
    return PortAllocator(listener_source=lambda: listening)


@pytest.fixture
def registry(settings):
    return FileTunnelRegistry(settings.registry_dir)


@pytest.fixture
def profiles(settings):
    return ProfileStore(settings.profiles_dir)


@pytest.fixture
def orchestrator(registry, channels, allocator, profiles):
    return SessionOrchestrator(
        registry=registry,
        channels=channels,
        allocator=allocator,
        profiles=profiles,
        default_start_port=4000,
    )
