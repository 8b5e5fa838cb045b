"""Named profiles of saved tunnel records."""

import os
import tempfile
from pathlib import Path

from .common.exceptions import ProfileNotFoundError
from .common.logging import get_logger
from .common.utils import safe_filename
from .models import Profile, format_records, parse_records

logger = get_logger(__name__)


class ProfileStore:
    """Profile files under ``profiles_dir``, one file per profile name."""

    def __init__(self, profiles_dir: Path):
        self.profiles_dir = profiles_dir

    def path_for(self, name: str) -> Path:
        return self.profiles_dir / safe_filename(name)

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def names(self) -> list[str]:
        """Saved profile names, sorted."""
        if not self.profiles_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self.profiles_dir.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )

    def save(self, profile: Profile) -> Path:
        """Write a profile, replacing any profile of the same name.

        Returns:
            Path of the written profile file
        """
        self.profiles_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = self.path_for(profile.name)
        fd, tmp_name = tempfile.mkstemp(dir=self.profiles_dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(format_records(list(profile.records)))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Saved profile", profile=profile.name, records=len(profile.records))
        return path

    def load(self, name: str) -> Profile:
        """Read a profile.

        Raises:
            ProfileNotFoundError: If no profile file exists
            CorruptRecordError: If a line in the file is malformed
        """
        path = self.path_for(name)
        if not path.is_file():
            raise ProfileNotFoundError(name)
        records = parse_records(path.read_text(encoding="utf-8"), source=str(path))
        return Profile(name=name, records=tuple(records))
