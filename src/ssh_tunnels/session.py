"""Session orchestration: add, remove, kill, list, save and load.

Batch operations (``add`` and loading one profile) are all-or-nothing: a
failed forward cancels the forwards already applied in the batch and
reconciles the host. Operations over independent targets (``remove``,
``kill``, ``save``) report unknown items as warnings and keep going.
"""

from collections.abc import Callable, Sequence

from pydantic import BaseModel, Field

from .channel import ControlChannelProvider, SSHControlChannel
from .common.exceptions import (
    ChannelError,
    ConnectFailedError,
    CorruptRecordError,
    ForwardRejectedError,
    HostNotFoundError,
    InvalidArgumentError,
    MissingArgumentError,
    PortInUseError,
    ProfileNotFoundError,
    TunnelError,
    TunnelNotFoundError,
)
from .common.logging import get_logger
from .common.utils import MAX_PORT, validate_non_empty_string, validate_port
from .config import TunnelSettings
from .locking import HostLock, NullLock
from .models import Profile, TunnelRecord, parse_remote_spec
from .ports import PortAllocator
from .profiles import ProfileStore
from .reconciler import ReconcileAction, Reconciler
from .registry import FileTunnelRegistry, TunnelRegistry

logger = get_logger(__name__)

ConfirmCallback = Callable[[str], bool]


class OperationReport(BaseModel):
    """Outcome of one orchestrator command."""

    records: list[TunnelRecord] = Field(
        default_factory=list, description="Records added, removed or listed"
    )
    cleanups: list[ReconcileAction] = Field(
        default_factory=list, description="Reconciliation cleanups performed"
    )
    messages: list[str] = Field(default_factory=list, description="Informational")
    warnings: list[str] = Field(default_factory=list, description="Per-item failures")

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def note(self, message: str) -> None:
        logger.info(message)
        self.messages.append(message)


class SessionOrchestrator:
    """Composes registry, channels, allocator and profiles into commands."""

    def __init__(
        self,
        registry: TunnelRegistry,
        channels: ControlChannelProvider,
        allocator: PortAllocator,
        profiles: ProfileStore,
        default_start_port: int = 4000,
        lock: HostLock | NullLock | None = None,
    ):
        validate_port(default_start_port, "Default start port")
        self.registry = registry
        self.channels = channels
        self.allocator = allocator
        self.profiles = profiles
        self.default_start_port = default_start_port
        self.lock = lock or NullLock()
        self.reconciler = Reconciler(registry, channels)

    @classmethod
    def from_settings(cls, settings: TunnelSettings) -> "SessionOrchestrator":
        """Build an orchestrator over the on-disk layout and OpenSSH."""
        settings.ensure_dirs()
        return cls(
            registry=FileTunnelRegistry(settings.registry_dir),
            channels=SSHControlChannel(
                settings.sockets_dir,
                ssh_binary=settings.ssh_binary,
                ssh_options=settings.ssh_options,
                bind_address=settings.bind_address,
            ),
            allocator=PortAllocator(bind_address=settings.bind_address),
            profiles=ProfileStore(settings.profiles_dir),
            default_start_port=settings.default_start_port,
            lock=HostLock(settings.locks_dir, timeout=settings.lock_timeout),
        )

    def _level(self, exclude: set[str] | None = None) -> list[ReconcileAction]:
        actions: list[ReconcileAction] = []
        for host_id in self.reconciler.known_hosts(exclude):
            with self.lock.hold(host_id):
                actions.extend(self.reconciler.reconcile(host_id))
        return actions

    def _teardown(self, host_id: str) -> None:
        if self.channels.has_handle(host_id):
            try:
                self.channels.close(host_id)
            except (ChannelError, OSError) as e:
                logger.warning("Failed to close channel", host=host_id, error=str(e))
        self.registry.delete_host(host_id)

    def _cancel_quietly(self, record: TunnelRecord) -> None:
        try:
            self.channels.cancel(
                record.owner_host_id, record.local_port, record.remote_socket
            )
        except ChannelError as e:
            logger.warning(
                "Rollback cancel failed",
                host=record.owner_host_id,
                local_port=record.local_port,
                error=str(e),
            )

    def _rollback(self, records: Sequence[TunnelRecord]) -> None:
        """Undo applied forwards and drop any of them already persisted."""
        for record in reversed(records):
            self._cancel_quietly(record)
            if self.registry.find_by_local_port(record.local_port) == record:
                self.registry.remove_by_local_port(record.local_port)

    def add(
        self,
        host_id: str,
        remote_sockets: Sequence[str],
        start_port: int | None = None,
    ) -> OperationReport:
        """Forward consecutive free local ports to ``remote_sockets`` via a host.

        Args:
            host_id: ssh host to carry the tunnels
            remote_sockets: ``host:port[:label]`` strings
            start_port: First local port to try (settings default if None)

        Returns:
            Report with the new records

        Raises:
            MissingArgumentError: If the host or remote sockets are missing
            InvalidRemoteSocketError: If a remote socket string is malformed
            ConnectFailedError: If the channel cannot be established
            ForwardRejectedError: If any forward in the batch is refused
        """
        if not host_id or not host_id.strip():
            raise MissingArgumentError("add requires a host")
        if not remote_sockets:
            raise MissingArgumentError("add requires at least one remote socket")
        host_id = host_id.strip()
        if any(ch.isspace() for ch in host_id):
            raise InvalidArgumentError(f"Invalid host id: {host_id!r}")
        specs = [parse_remote_spec(value) for value in remote_sockets]
        port = self.default_start_port if start_port is None else start_port
        try:
            validate_port(port, "Start port")
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from None

        report = OperationReport()
        with self.lock.hold(host_id):
            report.cleanups.extend(self.reconciler.reconcile(host_id))
            applied: list[TunnelRecord] = []
            try:
                self.channels.ensure(host_id)
                for remote, label in specs:
                    if port > MAX_PORT:
                        raise PortInUseError(port, "Ran out of local ports")
                    reserved = self.registry.local_ports()
                    reserved.update(r.local_port for r in applied)
                    port = self.allocator.next_free_port(port, reserved=reserved)
                    self.channels.forward(host_id, port, remote)
                    applied.append(
                        TunnelRecord(
                            local_port=port,
                            remote_socket=remote,
                            owner_host_id=host_id,
                            label=label,
                        )
                    )
                    port += 1

                for record in applied:
                    self.registry.add(host_id, record)
            except TunnelError as e:
                logger.error("Add failed, rolling back", host=host_id, error=str(e))
                self._rollback(applied)
                self.reconciler.reconcile(host_id)
                raise

        report.records.extend(applied)
        for record in applied:
            report.note(
                f"Forwarding localhost:{record.local_port} to "
                f"{record.remote_socket} via {host_id}"
            )
        return report

    def remove(self, local_ports: Sequence[int]) -> OperationReport:
        """Cancel tunnels by local port, tearing down hosts left with none."""
        if not local_ports:
            raise MissingArgumentError("remove requires at least one local port")

        report = OperationReport(cleanups=self._level())
        for local_port in local_ports:
            record = self.registry.find_by_local_port(local_port)
            if record is None:
                report.warn(str(TunnelNotFoundError(local_port)))
                continue

            host_id = record.owner_host_id
            with self.lock.hold(host_id):
                try:
                    self.channels.cancel(host_id, local_port, record.remote_socket)
                except ChannelError as e:
                    report.warn(str(e))
                    continue

                self.registry.remove_by_local_port(local_port)
                report.records.append(record)
                report.note(f"Removed tunnel on local port {local_port}")

                if self.registry.is_empty(host_id):
                    self._teardown(host_id)
                    report.note(f"Closed connection to {host_id}")
        return report

    def kill(self, host_ids: Sequence[str]) -> OperationReport:
        """Tear down hosts unconditionally, whatever their liveness."""
        if not host_ids:
            raise MissingArgumentError("kill requires at least one host")

        report = OperationReport(cleanups=self._level(exclude=set(host_ids)))
        for host_id in host_ids:
            if not self.registry.has_host(host_id) and not self.channels.has_handle(
                host_id
            ):
                report.warn(str(HostNotFoundError(host_id)))
                continue

            with self.lock.hold(host_id):
                report.records.extend(self.registry.records_for(host_id))
                self._teardown(host_id)
                report.note(f"Killed connection to {host_id}")
        return report

    def list_tunnels(self) -> OperationReport:
        """Reconcile, then return every recorded tunnel."""
        report = OperationReport(cleanups=self._level())
        report.records.extend(self.registry.list_all())
        return report

    def save(
        self,
        profile_name: str,
        local_ports: Sequence[int],
        confirm_overwrite: ConfirmCallback | None = None,
    ) -> OperationReport:
        """Snapshot the records on ``local_ports`` into a named profile.

        An existing profile is only replaced when ``confirm_overwrite`` returns
        True for its name.
        """
        try:
            profile_name = validate_non_empty_string(profile_name, "Profile name")
        except ValueError:
            raise MissingArgumentError("save requires a profile name") from None
        # raises InvalidArgumentError for names that cannot be stored
        self.profiles.path_for(profile_name)
        if not local_ports:
            raise MissingArgumentError("save requires at least one local port")

        report = OperationReport(cleanups=self._level())
        records: list[TunnelRecord] = []
        for local_port in local_ports:
            record = self.registry.find_by_local_port(local_port)
            if record is None:
                report.warn(f"No tunnel found on local port {local_port}, skipping")
            elif record not in records:
                records.append(record)

        if not records:
            report.warn(f"Nothing to save to profile '{profile_name}'")
            return report

        if self.profiles.exists(profile_name) and not (
            confirm_overwrite is not None and confirm_overwrite(profile_name)
        ):
            report.warn(f"Profile '{profile_name}' exists, not overwritten")
            return report

        self.profiles.save(Profile(name=profile_name, records=tuple(records)))
        report.records.extend(records)
        report.note(f"Saved {len(records)} tunnel(s) to profile '{profile_name}'")
        return report

    def _port_available(self, local_port: int) -> bool:
        if local_port in self.registry.local_ports():
            return False
        return self.allocator.is_port_free(local_port)

    def _establish(self, record: TunnelRecord) -> None:
        host_id = record.owner_host_id
        with self.lock.hold(host_id):
            self.channels.ensure(host_id)
            self.channels.forward(host_id, record.local_port, record.remote_socket)
            try:
                self.registry.add(host_id, record)
            except PortInUseError:
                self._cancel_quietly(record)
                raise

    def _load_profile(self, profile: Profile, report: OperationReport) -> None:
        loaded: list[TunnelRecord] = []
        touched: set[str] = set()
        try:
            for record in profile.records:
                if not self._port_available(record.local_port):
                    report.warn(
                        f"Local port {record.local_port} already in use, skipping "
                        f"{record.remote_socket} via {record.owner_host_id}"
                    )
                    continue
                touched.add(record.owner_host_id)
                self._establish(record)
                loaded.append(record)
        except (ForwardRejectedError, PortInUseError, ConnectFailedError) as e:
            self._rollback(loaded)
            for host_id in sorted(touched):
                with self.lock.hold(host_id):
                    report.cleanups.extend(self.reconciler.reconcile(host_id))
            if isinstance(e, ConnectFailedError):
                raise
            report.warn(f"Aborted loading profile '{profile.name}': {e}")
            return

        report.records.extend(loaded)
        report.note(f"Loaded {len(loaded)} tunnel(s) from profile '{profile.name}'")

    def load(self, profile_names: Sequence[str]) -> OperationReport:
        """Re-establish the tunnels saved in each named profile.

        A refused forward aborts (and rolls back) only the profile it belongs
        to; a connection failure aborts the whole command.

        Raises:
            ConnectFailedError: If a channel cannot be established
        """
        if not profile_names:
            raise MissingArgumentError("load requires at least one profile name")

        report = OperationReport(cleanups=self._level())
        for name in profile_names:
            try:
                profile = self.profiles.load(name)
            except (ProfileNotFoundError, CorruptRecordError) as e:
                report.warn(str(e))
                continue
            self._load_profile(profile, report)
        return report
