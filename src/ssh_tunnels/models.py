"""Tunnel record models and the on-disk record format.

A record is stored as one line of exactly four tab-separated fields::

    <local_port>\t<remote_host>:<remote_port>\t<owner_host_id>\t<label>

The label may be empty. Registry files and profile files share the format.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .common.exceptions import CorruptRecordError, InvalidRemoteSocketError

FIELD_SEPARATOR = "\t"
FIELD_COUNT = 4


def _check_no_control_chars(value: str, field_name: str) -> str:
    if any(ch in value for ch in ("\t", "\n", "\r")):
        raise ValueError(f"{field_name} cannot contain tabs or newlines")
    return value


class RemoteSocket(BaseModel):
    """Remote host:port a tunnel relays to."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1, description="Remote host as seen from the ssh host")
    port: int = Field(ge=1, le=65535, description="Remote port")

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Reject whitespace and brackets left over from parsing."""
        if any(ch.isspace() for ch in v) or "[" in v or "]" in v:
            raise ValueError(f"Invalid remote host: {v!r}")
        return v

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str) -> "RemoteSocket":
        """Parse ``host:port`` (IPv6 hosts in brackets)."""
        socket, label = parse_remote_spec(value)
        if label:
            raise InvalidRemoteSocketError(
                f"Unexpected label in remote socket {value!r}"
            )
        return socket


def parse_remote_spec(value: str) -> tuple[RemoteSocket, str]:
    """Split a ``host:port[:label]`` argument into a socket and a label.

    Args:
        value: Remote socket string, e.g. ``127.0.0.1:8080:web``

    Returns:
        Tuple of the remote socket and the label ("" when absent)

    Raises:
        InvalidRemoteSocketError: If the string is not host:port[:label]
    """
    text = value.strip()
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise InvalidRemoteSocketError(f"Invalid remote socket: {value!r}")
        parts = rest[1:].split(":", 1)
    else:
        host, sep, rest = text.partition(":")
        if not sep:
            raise InvalidRemoteSocketError(
                f"Invalid remote socket {value!r}: expected host:port[:label]"
            )
        parts = rest.split(":", 1)

    port_text = parts[0]
    label = parts[1] if len(parts) > 1 else ""

    if not port_text.isdigit():
        raise InvalidRemoteSocketError(
            f"Invalid remote socket {value!r}: port must be numeric"
        )

    try:
        socket = RemoteSocket(host=host, port=int(port_text))
        _check_no_control_chars(label, "Label")
    except (ValidationError, ValueError) as e:
        raise InvalidRemoteSocketError(f"Invalid remote socket {value!r}: {e}") from e

    return socket, label


class TunnelRecord(BaseModel):
    """One local port forwarded to a remote socket through a host."""

    model_config = ConfigDict(frozen=True)

    local_port: int = Field(ge=1, le=65535, description="Local listening port")
    remote_socket: RemoteSocket = Field(description="Remote host:port")
    owner_host_id: str = Field(min_length=1, description="ssh host carrying the tunnel")
    label: str = Field(default="", description="Optional user label")

    @field_validator("owner_host_id")
    @classmethod
    def validate_owner_host_id(cls, v: str) -> str:
        """Host ids are single tokens."""
        if any(ch.isspace() for ch in v):
            raise ValueError(f"Host id cannot contain whitespace: {v!r}")
        return v

    @field_validator("label")
    @classmethod
    def validate_label(cls, v: str) -> str:
        return _check_no_control_chars(v, "Label")

    def to_line(self) -> str:
        """Serialize the record to a single line (without newline)."""
        return FIELD_SEPARATOR.join(
            [
                str(self.local_port),
                str(self.remote_socket),
                self.owner_host_id,
                self.label,
            ]
        )

    @classmethod
    def from_line(
        cls, line: str, source: str = "<record>", line_number: int = 1
    ) -> "TunnelRecord":
        """Deserialize a record line.

        Args:
            line: Line as read from disk (trailing newline allowed)
            source: File name used in error messages
            line_number: 1-based line number used in error messages

        Returns:
            Parsed record

        Raises:
            CorruptRecordError: If the field count or any field is invalid
        """
        fields = line.rstrip("\r\n").split(FIELD_SEPARATOR)
        if len(fields) != FIELD_COUNT:
            raise CorruptRecordError(
                source,
                line_number,
                f"expected {FIELD_COUNT} fields, found {len(fields)}",
            )

        port_text, socket_text, host_id, label = fields
        if not port_text.isdigit():
            raise CorruptRecordError(
                source, line_number, f"local port is not numeric: {port_text!r}"
            )

        try:
            return cls(
                local_port=int(port_text),
                remote_socket=RemoteSocket.parse(socket_text),
                owner_host_id=host_id,
                label=label,
            )
        except (ValidationError, InvalidRemoteSocketError) as e:
            raise CorruptRecordError(source, line_number, str(e)) from e


def parse_records(text: str, source: str = "<records>") -> list[TunnelRecord]:
    """Parse every non-blank line of a registry or profile file."""
    records = []
    # records are newline separated; str.splitlines would also split labels
    # on form feeds and unicode line separators
    for line_number, line in enumerate(text.split("\n"), start=1):
        if not line.strip():
            continue
        records.append(TunnelRecord.from_line(line, source, line_number))
    return records


def format_records(records: list[TunnelRecord]) -> str:
    """Serialize records to file contents."""
    return "".join(f"{record.to_line()}\n" for record in records)


class Profile(BaseModel):
    """Named, ordered snapshot of tunnel records."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Profile name")
    records: tuple[TunnelRecord, ...] = Field(
        default=(), description="Saved records in order"
    )
