# AppStack - Database Backups

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Protocol

from appstack.core.config import Settings
from appstack.core.errors import ApplicationNotFound, BackupNotFound, DatabaseNotFound
from appstack.core.models import ApplicationRecord, BackupInfo
from appstack.core.registry import Registry

logger = logging.getLogger("appstack.backups")

BACKUP_SUFFIX = ".dump"
_STAMP = "%Y%m%d-%H%M%S-%f"


class DumpCollaborator(Protocol):
    def dump_database(self, name: str, path: Path) -> Path:
        ...

    def restore_database(self, name: str, path: Path, clean: bool = True) -> None:
        ...


class BackupManager:
    """Dumps application databases into the backups directory and back."""

    def __init__(self, settings: Settings, registry: Registry, database: DumpCollaborator):
        self.settings = settings
        self.registry = registry
        self.database = database

    @property
    def directory(self) -> Path:
        return self.settings.backups_path

    def _record_with_database(self, app_id: str) -> ApplicationRecord:
        record = self.registry.get(app_id)
        if record is None:
            raise ApplicationNotFound(app_id)
        if record.database is None:
            raise DatabaseNotFound(app_id, f"Application {app_id} has no database")
        return record

    def _path(self, filename: str) -> Path:
        """Resolve a backup filename, refusing anything outside the directory."""
        if Path(filename).name != filename or not filename.endswith(BACKUP_SUFFIX):
            raise BackupNotFound(filename)
        path = self.directory / filename
        if not path.is_file():
            raise BackupNotFound(filename)
        return path

    @staticmethod
    def _info(path: Path) -> Optional[BackupInfo]:
        app_id, sep, _ = path.stem.rpartition("_")
        if not sep:
            return None
        stat = path.stat()
        return BackupInfo(
            filename=path.name,
            app_id=app_id,
            size=stat.st_size,
            created=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
        )

    def backup_app(self, app_id: str) -> BackupInfo:
        record = self._record_with_database(app_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime(_STAMP)
        path = self.directory / f"{app_id}_{stamp}{BACKUP_SUFFIX}"
        self.database.dump_database(record.database.name, path)
        logger.info("Backed up %s to %s", app_id, path.name)
        return self._info(path)

    def restore_app(self, app_id: str, filename: str, drop_first: bool = False) -> BackupInfo:
        record = self._record_with_database(app_id)
        path = self._path(filename)
        logger.info("Restoring %s from %s", app_id, filename)
        self.database.restore_database(record.database.name, path, clean=drop_first)
        return self._info(path)

    def list_backups(self, app_id: Optional[str] = None) -> List[BackupInfo]:
        """Backups on disk, newest first."""
        if not self.directory.is_dir():
            return []
        backups = []
        for path in self.directory.glob(f"*{BACKUP_SUFFIX}"):
            info = self._info(path)
            if info is None or (app_id is not None and info.app_id != app_id):
                continue
            backups.append(info)
        return sorted(backups, key=lambda b: (b.created, b.filename), reverse=True)

    def delete_backup(self, filename: str) -> None:
        self._path(filename).unlink()
        logger.info("Deleted backup %s", filename)

    def cleanup_old_backups(self, retention_days: Optional[int] = None) -> List[str]:
        """Delete backups older than the retention period; returns their names."""
        if retention_days is None:
            retention_days = self.settings.backup_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        deleted = []
        for info in self.list_backups():
            if info.created < cutoff:
                (self.directory / info.filename).unlink()
                deleted.append(info.filename)
        if deleted:
            logger.info("Removed %d backups older than %d days", len(deleted), retention_days)
        return deleted
