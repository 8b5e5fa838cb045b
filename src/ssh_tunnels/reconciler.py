"""Leveling pass between the registry and live control channels.

Each host is classified from three observations (registry entry present,
channel handle present, channel alive) and inconsistent hosts are torn down.
The pass runs once per command; it is not a watcher.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict

from .channel import ControlChannelProvider
from .common.exceptions import ChannelError
from .common.logging import get_logger
from .registry import TunnelRegistry

logger = get_logger(__name__)


class HostState(str, Enum):
    """Derived consistency state of one host."""

    HEALTHY = "healthy"
    STALE_SOCKET_MISSING = "stale_socket_missing"
    STALE_CONNECTION_DEAD = "stale_connection_dead"
    ORPHAN_CHANNEL = "orphan_channel"
    ABSENT = "absent"


class ReconcileAction(BaseModel):
    """Informational record of one cleanup performed by the reconciler."""

    model_config = ConfigDict(frozen=True)

    host_id: str
    state: HostState
    message: str


def classify(has_file: bool, has_handle: bool, is_alive: bool) -> HostState:
    """Decide a host's state from the registry/channel observations.

    ``is_alive`` is ignored when there is no handle.
    """
    if has_file:
        if not has_handle:
            return HostState.STALE_SOCKET_MISSING
        if not is_alive:
            return HostState.STALE_CONNECTION_DEAD
        return HostState.HEALTHY
    if has_handle:
        return HostState.ORPHAN_CHANNEL
    return HostState.ABSENT


_MESSAGES = {
    HostState.STALE_SOCKET_MISSING: (
        "Control socket for {host} is missing, removed stale tunnel records"
    ),
    HostState.STALE_CONNECTION_DEAD: (
        "Connection to {host} is dead, removed stale tunnel records"
    ),
    HostState.ORPHAN_CHANNEL: "Closed connection to {host} with no recorded tunnels",
}


class Reconciler:
    """Detects and repairs drift between recorded and live state."""

    def __init__(self, registry: TunnelRegistry, channels: ControlChannelProvider):
        self.registry = registry
        self.channels = channels

    def observe(self, host_id: str) -> HostState:
        """Classify one host against current registry and channel state."""
        has_file = self.registry.has_host(host_id)
        has_handle = self.channels.has_handle(host_id)
        is_alive = self.channels.is_alive(host_id) if has_handle else False
        return classify(has_file, has_handle, is_alive)

    def remediate(self, host_id: str, state: HostState) -> ReconcileAction | None:
        """Apply the teardown for ``state``. Healthy and absent hosts are untouched."""
        if state in (HostState.HEALTHY, HostState.ABSENT):
            return None

        if self.channels.has_handle(host_id):
            try:
                self.channels.close(host_id)
            except (ChannelError, OSError) as e:
                logger.warning("Failed to close channel", host=host_id, error=str(e))
        if state != HostState.ORPHAN_CHANNEL:
            self.registry.delete_host(host_id)

        action = ReconcileAction(
            host_id=host_id,
            state=state,
            message=_MESSAGES[state].format(host=host_id),
        )
        logger.info("Reconciled host", host=host_id, state=state.value)
        return action

    def reconcile(self, host_id: str) -> list[ReconcileAction]:
        """Run the leveling pass for a single host."""
        if self.registry.has_host(host_id) and self.registry.is_empty(host_id):
            # an empty record set counts as no registry entry
            self.registry.delete_host(host_id)
        action = self.remediate(host_id, self.observe(host_id))
        return [action] if action else []

    def known_hosts(self, exclude: set[str] | None = None) -> list[str]:
        """Hosts with a registry entry or a channel handle, registry hosts first."""
        skip = exclude or set()
        seen: list[str] = []
        for host_id in [*self.registry.hosts(), *self.channels.handles()]:
            if host_id not in seen and host_id not in skip:
                seen.append(host_id)
        return seen

    def reconcile_all(self, exclude: set[str] | None = None) -> list[ReconcileAction]:
        """Run the leveling pass for every known host.

        Args:
            exclude: Host ids to leave alone (e.g. targets of kill)
        """
        actions: list[ReconcileAction] = []
        for host_id in self.known_hosts(exclude):
            actions.extend(self.reconcile(host_id))
        return actions
