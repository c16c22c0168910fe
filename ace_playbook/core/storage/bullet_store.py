"""JSON file persistence for the playbook plus its archive directory.

Layout under ``base_dir``::

    playbook.json                 current playbook
    archive/playbook_<ts>.json    full snapshots (clear, compaction)
    archive/removed_<ts>.json     bullets removed by dedup/eviction
    archive/corrupt_<ts>.json     unreadable playbook files set aside on load
"""

import logging
import os
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from ace_playbook.core.errors import CorruptStoreError, StoreUnavailable
from ace_playbook.core.schema import Bullet, Playbook, UTCDateTime
from ace_playbook.utils import archive_stamp, atomic_write_text, utc_now

logger = logging.getLogger(__name__)

PLAYBOOK_FILE = "playbook.json"
ARCHIVE_DIR = "archive"


class ArchivedBullet(BaseModel):
    bullet: Bullet
    reason: str
    merged_into: str | None = None


class ArchiveRecord(BaseModel):
    reason: str
    archived_at: UTCDateTime = Field(default_factory=utc_now)
    playbook_version: int = 0
    entries: list[ArchivedBullet] = Field(default_factory=list)


class BulletStorage:
    """Reads and writes the playbook file; writes are atomic whole-file replaces."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).expanduser()
        self.playbook_path = self.base_dir / PLAYBOOK_FILE
        self.archive_dir = self.base_dir / ARCHIVE_DIR

    def load(self) -> Playbook:
        """Load the playbook, falling back to an empty one.

        A missing file yields an empty playbook. A corrupt file is moved into
        the archive directory and an empty playbook is returned.

        Raises:
            StoreUnavailable: If the file exists but cannot be read
        """
        try:
            playbook = self._read()
        except CorruptStoreError as e:
            quarantined = self._quarantine()
            logger.error(
                f"Corrupt playbook at {self.playbook_path} ({e}); "
                f"moved to {quarantined}, starting with an empty playbook"
            )
            return Playbook()
        logger.info(
            f"Loaded playbook v{playbook.version} with {playbook.total} bullets "
            f"from {self.playbook_path}"
        )
        return playbook

    def _read(self) -> Playbook:
        try:
            raw = self.playbook_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Playbook()
        except UnicodeDecodeError as e:
            raise CorruptStoreError(f"not valid UTF-8: {e}") from e
        except OSError as e:
            raise StoreUnavailable(f"Cannot read {self.playbook_path}: {e}") from e

        if not raw.strip():
            raise CorruptStoreError("file is empty")
        try:
            return Playbook.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptStoreError(f"{e.error_count()} validation error(s)") from e

    def _quarantine(self) -> Path | None:
        target = self._archive_path("corrupt")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(self.playbook_path, target)
        except OSError as e:
            logger.warning(f"Could not move corrupt playbook aside: {e}")
            return None
        return target

    def save(self, playbook: Playbook) -> None:
        """Persist the playbook atomically.

        Raises:
            StoreUnavailable: If the file cannot be written
        """
        try:
            atomic_write_text(self.playbook_path, playbook.model_dump_json(indent=2))
        except OSError as e:
            raise StoreUnavailable(f"Cannot write {self.playbook_path}: {e}") from e
        logger.debug(f"Saved playbook v{playbook.version} ({playbook.total} bullets)")

    def archive_snapshot(self, playbook: Playbook, now: datetime | None = None) -> Path:
        """Write a full copy of the playbook into the archive directory."""
        path = self._archive_path("playbook", now)
        try:
            atomic_write_text(path, playbook.model_dump_json(indent=2))
        except OSError as e:
            raise StoreUnavailable(f"Cannot write archive {path}: {e}") from e
        logger.info(f"Archived playbook v{playbook.version} to {path}")
        return path

    def archive_bullets(
        self,
        entries: list[ArchivedBullet],
        reason: str,
        version: int = 0,
        now: datetime | None = None,
    ) -> Path | None:
        """Record bullets that are about to leave the live playbook."""
        if not entries:
            return None
        record = ArchiveRecord(
            reason=reason,
            archived_at=now or utc_now(),
            playbook_version=version,
            entries=entries,
        )
        path = self._archive_path("removed", now)
        try:
            atomic_write_text(path, record.model_dump_json(indent=2))
        except OSError as e:
            raise StoreUnavailable(f"Cannot write archive {path}: {e}") from e
        logger.info(f"Archived {len(entries)} bullet(s) ({reason}) to {path}")
        return path

    def list_archives(self, prefix: str | None = None) -> list[Path]:
        if not self.archive_dir.is_dir():
            return []
        pattern = f"{prefix}_*.json" if prefix else "*.json"
        return sorted(self.archive_dir.glob(pattern))

    def read_archive(self, path: Path) -> ArchiveRecord:
        return ArchiveRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _archive_path(self, prefix: str, now: datetime | None = None) -> Path:
        stamp = archive_stamp(now or utc_now())
        path = self.archive_dir / f"{prefix}_{stamp}.json"
        counter = 1
        while path.exists():
            path = self.archive_dir / f"{prefix}_{stamp}_{counter}.json"
            counter += 1
        return path
