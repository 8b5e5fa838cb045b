"""ssh_tunnels - local port forwards multiplexed over persistent ssh connections."""

__version__ = "0.1.0"

from .channel import ControlChannelProvider, SSHControlChannel  # noqa: E402
from .common.exceptions import (  # noqa: E402
    ChannelError,
    ConfigurationError,
    ConnectFailedError,
    CorruptRecordError,
    ForwardRejectedError,
    HostNotFoundError,
    InvalidArgumentError,
    InvalidRemoteSocketError,
    LockTimeoutError,
    MissingArgumentError,
    NotFoundError,
    PortInUseError,
    ProfileNotFoundError,
    TunnelError,
    TunnelNotFoundError,
)
from .common.logging import get_logger, setup_logging  # noqa: E402
from .config import TunnelSettings  # noqa: E402
from .models import Profile, RemoteSocket, TunnelRecord, parse_remote_spec  # noqa: E402
from .ports import PortAllocator  # noqa: E402
from .profiles import ProfileStore  # noqa: E402
from .reconciler import HostState, ReconcileAction, Reconciler, classify  # noqa: E402
from .registry import (  # noqa: E402
    FileTunnelRegistry,
    InMemoryTunnelRegistry,
    TunnelRegistry,
)
from .session import OperationReport, SessionOrchestrator  # noqa: E402

__all__ = [
    # Models
    "RemoteSocket",
    "TunnelRecord",
    "Profile",
    "parse_remote_spec",
    # Core
    "TunnelRegistry",
    "FileTunnelRegistry",
    "InMemoryTunnelRegistry",
    "Reconciler",
    "HostState",
    "ReconcileAction",
    "classify",
    "PortAllocator",
    "ProfileStore",
    "SessionOrchestrator",
    "OperationReport",
    # Transport
    "ControlChannelProvider",
    "SSHControlChannel",
    # Configuration
    "TunnelSettings",
    # Exceptions
    "TunnelError",
    "ConfigurationError",
    "MissingArgumentError",
    "ChannelError",
    "ConnectFailedError",
    "ForwardRejectedError",
    "PortInUseError",
    "NotFoundError",
    "TunnelNotFoundError",
    "HostNotFoundError",
    "InvalidArgumentError",
    "ProfileNotFoundError",
    "CorruptRecordError",
    "InvalidRemoteSocketError",
    "LockTimeoutError",
    # Utilities
    "get_logger",
    "setup_logging",
]
