"""Custom exceptions for tunnel management."""


class TunnelError(Exception):
    """Base exception for all ssh_tunnels errors."""

    pass


class ConfigurationError(TunnelError):
    """Raised when settings are invalid."""

    pass


class MissingArgumentError(TunnelError):
    """Raised when a command is missing a required argument."""

    pass


class InvalidArgumentError(TunnelError):
    """Raised when a host id or port argument is malformed."""

    pass


class ChannelError(TunnelError):
    """Raised when a control channel operation fails."""

    def __init__(self, host_id: str, message: str):
        self.host_id = host_id
        super().__init__(message)


class ConnectFailedError(ChannelError):
    """Raised when a control channel to a host cannot be established."""

    pass


class ForwardRejectedError(ChannelError):
    """Raised when a live channel refuses a specific forward."""

    def __init__(self, host_id: str, local_port: int, message: str):
        self.local_port = local_port
        super().__init__(host_id, message)


class PortInUseError(TunnelError):
    """Raised when a local port is already claimed."""

    def __init__(self, port: int, message: str | None = None):
        self.port = port
        super().__init__(message or f"Local port {port} already in use")


class NotFoundError(TunnelError):
    """Base exception for lookups of unknown ports, hosts and profiles."""

    pass


class TunnelNotFoundError(NotFoundError):
    """Raised when no tunnel is recorded for a local port."""

    def __init__(self, local_port: int):
        self.local_port = local_port
        super().__init__(f"No tunnel found on local port {local_port}")


class HostNotFoundError(NotFoundError):
    """Raised when neither a registry entry nor a channel exists for a host."""

    def __init__(self, host_id: str):
        self.host_id = host_id
        super().__init__(f"Unable to find connection to kill: {host_id}")


class ProfileNotFoundError(NotFoundError):
    """Raised when a saved profile does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Profile '{name}' not found")


class CorruptRecordError(TunnelError):
    """Raised when a stored record line cannot be parsed."""

    def __init__(self, source: str, line_number: int, reason: str):
        self.source = source
        self.line_number = line_number
        super().__init__(f"Corrupt record in {source} line {line_number}: {reason}")


class InvalidRemoteSocketError(TunnelError):
    """Raised when a remote socket string is not host:port[:label]."""

    pass


class LockTimeoutError(TunnelError):
    """Raised when a host lock cannot be acquired in time."""

    pass
