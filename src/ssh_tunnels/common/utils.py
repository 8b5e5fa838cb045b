"""Utility functions for ssh_tunnels."""

import re

from .exceptions import InvalidArgumentError

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._@%+=:,-]")


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def safe_filename(name: str) -> str:
    """Map a host id or profile name onto a single path component.

    Args:
        name: Host id or profile name

    Returns:
        Name with path separators and other unsafe characters replaced

    Raises:
        InvalidArgumentError: If the name is empty or a dot entry
    """
    name = name.strip() if name else ""
    if name in ("", ".", ".."):
        raise InvalidArgumentError(f"Invalid name: {name!r}")
    return _UNSAFE_NAME.sub("_", name)
