"""
Migration Backup Module
=======================

Snapshots the JSON source before a run and provides the backup utility used by
the ``fleetsync backup`` command.

Features:
- Timestamped byte-for-byte copy of the source file before migration
- Optional retention of the newest N source backups
- Export of the target database as MongoDB Extended JSON
- Restore of either backup kind
"""

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from bson import json_util

from ..utils import filesystem_timestamp, format_file_size, iso_timestamp, utc_now

logger = logging.getLogger(__name__)

SOURCE_BACKUP_PREFIX = "data-backup-"
DATABASE_BACKUP_PREFIX = "mongodb-backup-"


@dataclass
class BackupInfo:
    """A backup file found in the backup directory."""
    path: Path
    kind: str  # "source" or "database"
    size_bytes: int
    modified_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': str(self.path),
            'kind': self.kind,
            'size': format_file_size(self.size_bytes),
        }


class SourceBackup:
    """
    Manages backups of the JSON source-of-truth file.

    Backups are plain copies named ``data-backup-<ts>.json`` so they can be
    restored or diffed with ordinary tools.
    """

    def __init__(
        self,
        source_path: Path,
        backup_dir: Path,
        max_backups: Optional[int] = None,
    ):
        """
        Initialize backup manager.

        Args:
            source_path: Path to the JSON source file
            backup_dir: Directory to store backups
            max_backups: Maximum number of source backups to retain (None keeps all)
        """
        self.source_path = Path(source_path)
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups

    def create_backup(self) -> Optional[Path]:
        """
        Copy the source file into the backup directory.

        A failed backup never stops a migration: the error is logged as a
        warning and None is returned.

        Returns:
            Path of the backup file, or None if the backup failed
        """
        backup_path = self.backup_dir / f"{SOURCE_BACKUP_PREFIX}{filesystem_timestamp()}.json"
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.source_path, backup_path)
        except OSError as e:
            logger.warning(f"Backup failed, continuing without one: {e}")
            return None

        logger.info(f"Backup created: {backup_path} ({format_file_size(backup_path.stat().st_size)})")

        if self.max_backups is not None:
            self._cleanup_old_backups()

        return backup_path

    def list_backups(self) -> List[BackupInfo]:
        """
        List all backup files, newest first.

        Returns:
            BackupInfo for every source backup and database export
        """
        if not self.backup_dir.is_dir():
            return []

        backups = []
        for path in self.backup_dir.glob('*.json'):
            if path.name.startswith(SOURCE_BACKUP_PREFIX):
                kind, stamp = 'source', path.name[len(SOURCE_BACKUP_PREFIX):]
            elif path.name.startswith(DATABASE_BACKUP_PREFIX):
                kind, stamp = 'database', path.name[len(DATABASE_BACKUP_PREFIX):]
            else:
                continue
            stat = path.stat()
            backups.append((stamp, BackupInfo(path, kind, stat.st_size, stat.st_mtime)))

        # Timestamped names sort chronologically
        backups.sort(key=lambda item: (item[0], item[1].modified_at), reverse=True)
        return [info for _, info in backups]

    def restore_backup(self, backup_path: Path) -> Path:
        """
        Restore the source file from a backup.

        The backup must parse as JSON; the source file is replaced with its
        exact bytes.

        Args:
            backup_path: Backup file to restore

        Returns:
            The restored source path
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            raise FileNotFoundError(f"Backup not found: {backup_path}")

        with open(backup_path, 'r', encoding='utf-8') as f:
            json.load(f)

        logger.info(f"Restoring {self.source_path} from {backup_path}")
        shutil.copyfile(backup_path, self.source_path)
        return self.source_path

    def _cleanup_old_backups(self) -> None:
        """Remove source backups exceeding max_backups."""
        backups = [b for b in self.list_backups() if b.kind == 'source']

        while len(backups) > self.max_backups:
            oldest = backups.pop()
            try:
                oldest.path.unlink()
                logger.info(f"Cleaned up old backup: {oldest.path.name}")
            except OSError as e:
                logger.warning(f"Could not remove old backup {oldest.path}: {e}")


def is_database_export(backup_path: Path) -> bool:
    """True if `backup_path` holds a database export rather than a source copy."""
    with open(backup_path, 'r', encoding='utf-8') as f:
        data = json_util.loads(f.read())
    return isinstance(data, dict) and isinstance(data.get('collections'), dict)


async def export_database(db, backup_dir: Path) -> Path:
    """
    Export every non-system collection of `db` to a timestamped file.

    Documents are written as relaxed MongoDB Extended JSON so ObjectIds and
    dates survive a restore.

    Args:
        db: Motor database handle
        backup_dir: Directory to write the export into

    Returns:
        Path of the export file
    """
    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    backup_path = backup_dir / f"{DATABASE_BACKUP_PREFIX}{filesystem_timestamp()}.json"

    logger.info(f"Exporting database {db.name}...")

    export: Dict[str, Any] = {
        'database': db.name,
        'timestamp': iso_timestamp(utc_now()),
        'collections': {},
    }
    for name in sorted(await db.list_collection_names()):
        if name.startswith('system.'):
            continue
        documents = await db[name].find({}).to_list(length=None)
        export['collections'][name] = documents
        logger.info(f"  Exported {name}: {len(documents)} documents")

    backup_path.write_text(json_util.dumps(export, indent=2), encoding='utf-8')
    logger.info(f"Database backup created: {backup_path}")
    return backup_path


async def restore_database(db, backup_path: Path) -> Dict[str, int]:
    """
    Replace the contents of each exported collection with the exported documents.

    This is destructive: existing documents in those collections are deleted
    first. Collections absent from the export are left untouched.

    Args:
        db: Motor database handle
        backup_path: Export file written by export_database

    Returns:
        Dict of collection name -> restored document count
    """
    backup_path = Path(backup_path)
    data = json_util.loads(backup_path.read_text(encoding='utf-8'))
    if not isinstance(data, dict) or not isinstance(data.get('collections'), dict):
        raise ValueError(f"Not a database export: {backup_path}")

    logger.info(f"Restoring database {db.name} from {backup_path}")

    restored = {}
    for name, documents in data['collections'].items():
        collection = db[name]
        await collection.delete_many({})
        if documents:
            await collection.insert_many(documents)
        restored[name] = len(documents)
        logger.info(f"  Restored {name}: {len(documents)} documents")

    return restored
