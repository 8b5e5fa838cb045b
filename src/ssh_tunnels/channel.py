"""Control channels to remote hosts.

The core only talks to :class:`ControlChannelProvider`. The shipped
implementation drives OpenSSH connection multiplexing: one ControlMaster
process per host, addressed by a control socket under ``sockets/``, with
forwards added and cancelled through ``ssh -O``.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from .common.exceptions import ConnectFailedError, ForwardRejectedError
from .common.logging import get_logger
from .common.utils import safe_filename
from .models import RemoteSocket

logger = get_logger(__name__)


class ControlChannelProvider(Protocol):
    """Operations the session core needs from the transport."""

    def has_handle(self, host_id: str) -> bool:
        """Whether a channel handle exists for the host (alive or not)."""
        ...

    def handles(self) -> list[str]:
        """Host ids that currently have a channel handle."""
        ...

    def ensure(self, host_id: str) -> None:
        """Reuse the live channel or establish a new one."""
        ...

    def is_alive(self, host_id: str) -> bool:
        """Non-destructive liveness probe."""
        ...

    def forward(self, host_id: str, local_port: int, remote: RemoteSocket) -> None:
        """Add a forward on the existing channel."""
        ...

    def cancel(self, host_id: str, local_port: int, remote: RemoteSocket) -> None:
        """Remove one forward without closing the channel."""
        ...

    def close(self, host_id: str) -> None:
        """Terminate the channel and discard its handle."""
        ...


class SSHControlChannel:
    """ControlChannelProvider backed by OpenSSH ControlMaster sockets."""

    def __init__(
        self,
        sockets_dir: Path,
        ssh_binary: str = "ssh",
        ssh_options: list[str] | None = None,
        bind_address: str = "127.0.0.1",
    ):
        """Initialize the provider.

        Args:
            sockets_dir: Directory holding one control socket per host
            ssh_binary: ssh client executable or name on PATH
            ssh_options: Extra Key=Value options used when connecting
            bind_address: Local address forwards listen on
        """
        self.sockets_dir = sockets_dir
        self.ssh_binary = ssh_binary
        self.ssh_options = list(ssh_options or [])
        self.bind_address = bind_address

    def socket_path(self, host_id: str) -> Path:
        return self.sockets_dir / safe_filename(host_id)

    def has_handle(self, host_id: str) -> bool:
        return self.socket_path(host_id).exists()

    def handles(self) -> list[str]:
        if not self.sockets_dir.is_dir():
            return []
        return sorted(p.name for p in self.sockets_dir.iterdir())

    def _resolve_binary(self, host_id: str) -> str:
        binary = shutil.which(self.ssh_binary)
        if binary is None:
            raise ConnectFailedError(
                host_id, f"ssh client '{self.ssh_binary}' not found in system PATH"
            )
        return binary

    def _control(self, host_id: str, *args: str) -> subprocess.CompletedProcess[str]:
        command = [
            self._resolve_binary(host_id),
            "-S",
            str(self.socket_path(host_id)),
            *args,
            host_id,
        ]
        logger.debug("Running ssh control command", command=command)
        return subprocess.run(command, capture_output=True, text=True, check=False)

    def _forward_spec(self, local_port: int, remote: RemoteSocket) -> str:
        remote_host = f"[{remote.host}]" if ":" in remote.host else remote.host
        return f"{self.bind_address}:{local_port}:{remote_host}:{remote.port}"

    def ensure(self, host_id: str) -> None:
        """Reuse a live master connection or start a new one.

        Raises:
            ConnectFailedError: If the master connection cannot be established
        """
        if self.has_handle(host_id) and self.is_alive(host_id):
            logger.debug("Reusing control channel", host=host_id)
            return

        if self.has_handle(host_id):
            self._discard_socket(host_id)

        self.sockets_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        options: list[str] = []
        for option in self.ssh_options:
            options.extend(["-o", option])

        logger.info("Opening control channel", host=host_id)
        try:
            result = subprocess.run(
                [
                    self._resolve_binary(host_id),
                    "-M",
                    "-S",
                    str(self.socket_path(host_id)),
                    "-f",
                    "-N",
                    "-o",
                    "ControlPersist=yes",
                    *options,
                    host_id,
                ],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ConnectFailedError(
                host_id, f"Failed to start ssh for {host_id}: {e}"
            ) from e

        if result.returncode != 0 or not self.has_handle(host_id):
            message = result.stderr.strip() or f"exit status {result.returncode}"
            logger.error("Control channel failed", host=host_id, error=message)
            raise ConnectFailedError(
                host_id, f"Unable to connect to {host_id}: {message}"
            )

    def is_alive(self, host_id: str) -> bool:
        if not self.has_handle(host_id):
            return False
        try:
            result = self._control(host_id, "-O", "check")
        except (OSError, ConnectFailedError) as e:
            logger.warning("Liveness check failed", host=host_id, error=str(e))
            return False
        return result.returncode == 0

    def forward(self, host_id: str, local_port: int, remote: RemoteSocket) -> None:
        """Add a local forward to the master connection.

        Raises:
            ForwardRejectedError: If the master refuses the forward
        """
        result = self._control(
            host_id, "-O", "forward", "-L", self._forward_spec(local_port, remote)
        )
        if result.returncode != 0:
            message = result.stderr.strip() or f"exit status {result.returncode}"
            raise ForwardRejectedError(
                host_id,
                local_port,
                f"Forward {local_port} -> {remote} via {host_id} rejected: {message}",
            )
        logger.info(
            "Forward added", host=host_id, local_port=local_port, remote=str(remote)
        )

    def cancel(self, host_id: str, local_port: int, remote: RemoteSocket) -> None:
        """Cancel a local forward on the master connection.

        Raises:
            ForwardRejectedError: If the master refuses the cancel request
        """
        result = self._control(
            host_id, "-O", "cancel", "-L", self._forward_spec(local_port, remote)
        )
        if result.returncode != 0:
            message = result.stderr.strip() or f"exit status {result.returncode}"
            raise ForwardRejectedError(
                host_id,
                local_port,
                f"Cancel of {local_port} -> {remote} via {host_id} failed: {message}",
            )
        logger.info("Forward cancelled", host=host_id, local_port=local_port)

    def close(self, host_id: str) -> None:
        """Ask the master to exit; drop the socket if it is already dead."""
        if not self.has_handle(host_id):
            return
        try:
            result = self._control(host_id, "-O", "exit")
        finally:
            self._discard_socket(host_id)
        if result.returncode != 0:
            logger.info(
                "Control channel already gone",
                host=host_id,
                error=result.stderr.strip(),
            )

    def _discard_socket(self, host_id: str) -> None:
        self.socket_path(host_id).unlink(missing_ok=True)
