"""Durable tunnel registry.

One record set per host. All file I/O for the registry stays behind
:class:`TunnelRegistry`; :class:`FileTunnelRegistry` keeps one file per host
and :class:`InMemoryTunnelRegistry` keeps everything in a dict.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from .common.exceptions import PortInUseError, TunnelNotFoundError
from .common.logging import get_logger
from .common.utils import safe_filename
from .models import TunnelRecord, format_records, parse_records

logger = get_logger(__name__)


class TunnelRegistry(ABC):
    """Record sets keyed by host id, with local ports unique across all hosts."""

    @abstractmethod
    def hosts(self) -> list[str]:
        """Host ids with a registry entry, in discovery order."""

    @abstractmethod
    def has_host(self, host_id: str) -> bool:
        """Whether a registry entry exists for the host (even if empty)."""

    @abstractmethod
    def records_for(self, host_id: str) -> list[TunnelRecord]:
        """Records for one host in insertion order."""

    @abstractmethod
    def _store(self, host_id: str, records: list[TunnelRecord]) -> None:
        """Replace the stored record set for a host."""

    @abstractmethod
    def delete_host(self, host_id: str) -> bool:
        """Delete the host's entry. Returns False if there was none."""

    def list_all(self) -> list[TunnelRecord]:
        """All records, hosts in discovery order, insertion order within a host."""
        records: list[TunnelRecord] = []
        for host_id in self.hosts():
            records.extend(self.records_for(host_id))
        return records

    def local_ports(self) -> set[int]:
        return {record.local_port for record in self.list_all()}

    def find_by_local_port(self, local_port: int) -> TunnelRecord | None:
        """Find the record using ``local_port`` on any host."""
        for record in self.list_all():
            if record.local_port == local_port:
                return record
        return None

    def add(self, host_id: str, record: TunnelRecord) -> None:
        """Append a record to the host's record set.

        Raises:
            ValueError: If the record belongs to a different host
            PortInUseError: If any host already records the local port
        """
        if record.owner_host_id != host_id:
            raise ValueError(
                f"Record for {record.owner_host_id} cannot be added to {host_id}"
            )

        existing = self.find_by_local_port(record.local_port)
        if existing is not None:
            raise PortInUseError(
                record.local_port,
                f"Local port {record.local_port} already forwarded via "
                f"{existing.owner_host_id}",
            )

        records = self.records_for(host_id) if self.has_host(host_id) else []
        records.append(record)
        self._store(host_id, records)
        logger.info(
            "Added tunnel to registry", host=host_id, local_port=record.local_port
        )

    def remove_by_local_port(self, local_port: int) -> str:
        """Remove the record using ``local_port`` and return its host id.

        The host entry is left in place even when it becomes empty; the caller
        tears the host session down.

        Raises:
            TunnelNotFoundError: If no host records the port
        """
        for host_id in self.hosts():
            records = self.records_for(host_id)
            remaining = [r for r in records if r.local_port != local_port]
            if len(remaining) != len(records):
                self._store(host_id, remaining)
                logger.info(
                    "Removed tunnel from registry", host=host_id, local_port=local_port
                )
                return host_id
        raise TunnelNotFoundError(local_port)

    def is_empty(self, host_id: str) -> bool:
        """Whether the host has no remaining records."""
        return not self.has_host(host_id) or not self.records_for(host_id)


class FileTunnelRegistry(TunnelRegistry):
    """Registry stored as one record file per host under ``registry_dir``."""

    def __init__(self, registry_dir: Path):
        self.registry_dir = registry_dir

    def path_for(self, host_id: str) -> Path:
        return self.registry_dir / safe_filename(host_id)

    def _read(self, path: Path) -> list[TunnelRecord]:
        return parse_records(path.read_text(encoding="utf-8"), source=str(path))

    def hosts(self) -> list[str]:
        if not self.registry_dir.is_dir():
            return []
        host_ids = []
        for path in sorted(self.registry_dir.iterdir()):
            if not path.is_file() or path.name.startswith("."):
                continue
            records = self._read(path)
            host_ids.append(records[0].owner_host_id if records else path.name)
        return host_ids

    def has_host(self, host_id: str) -> bool:
        return self.path_for(host_id).is_file()

    def records_for(self, host_id: str) -> list[TunnelRecord]:
        path = self.path_for(host_id)
        if not path.is_file():
            return []
        return self._read(path)

    def _store(self, host_id: str, records: list[TunnelRecord]) -> None:
        self.registry_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = self.path_for(host_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.registry_dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(format_records(records))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete_host(self, host_id: str) -> bool:
        path = self.path_for(host_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted registry entry", host=host_id)
        return True


class InMemoryTunnelRegistry(TunnelRegistry):
    """Registry held in a dict; hosts are discovered in insertion order."""

    def __init__(self) -> None:
        self._records: dict[str, list[TunnelRecord]] = {}

    def hosts(self) -> list[str]:
        return list(self._records)

    def has_host(self, host_id: str) -> bool:
        return host_id in self._records

    def records_for(self, host_id: str) -> list[TunnelRecord]:
        return list(self._records.get(host_id, []))

    def _store(self, host_id: str, records: list[TunnelRecord]) -> None:
        self._records[host_id] = list(records)

    def delete_host(self, host_id: str) -> bool:
        return self._records.pop(host_id, None) is not None
