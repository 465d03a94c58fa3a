"""
fleetsync - Command Line Interface
==================================
Runs the JSON to MongoDB migration and its supporting tools.

Usage Examples:
    # Full migration (default command)
    fleetsync
    fleetsync migrate --progress

    # Verify an already-migrated database
    fleetsync verify

    # Backups
    fleetsync backup json
    fleetsync backup all
    fleetsync backup list
    fleetsync backup restore backups/mongodb-backup-2025-03-01T12-00-00-000Z.json --yes

    # Replace auto-named indexes with the canonical ones
    fleetsync cleanup-indexes
"""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from .config import MigrationConfig, load_config
from .migration.backup import SourceBackup, export_database, is_database_export, restore_database
from .migration.indexes import cleanup_indexes
from .migration.job import MigrationJob
from .migration.target import connect_target
from .migration.verify import MigrationVerifier

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class FleetSyncCLI:
    """Dispatches parsed arguments to the migration components."""

    def __init__(self, args, config: MigrationConfig):
        self.args = args
        self.config = config

    async def run(self) -> int:
        """Execute the requested command and return the exit status."""
        command = self.args.command or 'migrate'

        if command == 'migrate':
            return await self.run_migrate()
        elif command == 'verify':
            return await self.run_verify()
        elif command == 'backup':
            return await self.run_backup()
        elif command == 'cleanup-indexes':
            return await self.run_cleanup_indexes()

        print(f"Unknown command: {command}", file=sys.stderr)
        return 1

    # ========================================
    # Migration
    # ========================================

    async def run_migrate(self) -> int:
        report = await MigrationJob(self.config).run()
        print("\n" + "=" * 60)
        print("Migration Summary")
        print("=" * 60)
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return 0

    async def run_verify(self) -> int:
        run = await MigrationVerifier.run_standalone(self.config)
        run.counts.print_report()
        run.existence.print_report()
        if run.report_path:
            print(f"Report saved to: {run.report_path}")
        return 0 if run.passed else 1

    async def run_cleanup_indexes(self) -> int:
        async with connect_target(self.config) as db:
            reports = await cleanup_indexes(db)
        print(json.dumps({name: report.to_dict() for name, report in reports.items()}, indent=2))
        return 0 if all(report.ok for report in reports.values()) else 1

    # ========================================
    # Backups
    # ========================================

    async def run_backup(self) -> int:
        action = self.args.backup_action
        backup = SourceBackup(self.config.source_path, self.config.backup_dir,
                              max_backups=self.config.max_backups)

        if action == 'json':
            return 0 if backup.create_backup() else 1

        if action == 'mongo':
            await self._export_database()
            return 0

        if action == 'all':
            created = backup.create_backup()
            await self._export_database()
            return 0 if created else 1

        if action == 'list':
            backups = backup.list_backups()
            print(f"Found {len(backups)} backup(s) in {self.config.backup_dir}:")
            for info in backups:
                print(f"   - [{info.kind}] {info.path.name} ({info.to_dict()['size']})")
            return 0

        if action == 'restore':
            return await self._restore(backup, Path(self.args.path))

        print(f"Unknown backup action: {action}", file=sys.stderr)
        return 1

    async def _export_database(self) -> Path:
        async with connect_target(self.config) as db:
            path = await export_database(db, self.config.backup_dir)
        print(f"Database backup created: {path}")
        return path

    async def _restore(self, backup: SourceBackup, path: Path) -> int:
        if not path.exists():
            print(f"Backup not found: {path}", file=sys.stderr)
            return 1

        if is_database_export(path):
            if not self.args.yes:
                print(
                    f"Restoring {path.name} replaces the contents of every exported collection "
                    f"in {self.config.database_name}. Re-run with --yes to confirm.",
                    file=sys.stderr,
                )
                return 1
            async with connect_target(self.config) as db:
                restored = await restore_database(db, path)
            print(f"Restored {sum(restored.values())} documents into {len(restored)} collection(s)")
            return 0

        restored_path = backup.restore_backup(path)
        print(f"Restored {restored_path} from {path}")
        return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog='fleetsync',
        description="fleetsync - Reconcile the JSON data store into MongoDB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fleetsync                               # run the migration
  fleetsync --source ./data.json migrate --progress
  fleetsync verify                        # exit 0 if all data is present
  fleetsync backup all                    # data.json copy + database export
  fleetsync backup restore <file> --yes   # restore a database export
  fleetsync cleanup-indexes
        """
    )

    # Global options
    parser.add_argument('--config', help='YAML configuration file')
    parser.add_argument('--source', type=Path, help='JSON source file (default: ./data.json)')
    parser.add_argument('--backup-dir', type=Path, help='Directory for backups, logs and reports')
    parser.add_argument('--uri', help='MongoDB connection string (default: $MONGODB_URI)')
    parser.add_argument('--database', help='Target database (default: $MONGODB_DATABASE)')
    parser.add_argument('--batch-size', type=int, help='Operations per bulk write (default: 1000)')
    parser.add_argument('--progress', action='store_true', default=None, help='Show progress bars')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        type=str.upper, help='Console log level')

    # Subcommands
    subparsers = parser.add_subparsers(dest='command', help='Command to execute (default: migrate)')

    subparsers.add_parser('migrate', help='Reconcile the JSON source into MongoDB')
    subparsers.add_parser('verify', help='Verify that all source data is present in MongoDB')
    subparsers.add_parser('cleanup-indexes', help='Drop auto-named indexes and recreate canonical ones')

    backup_parser = subparsers.add_parser('backup', help='Backup utility')
    backup_subparsers = backup_parser.add_subparsers(dest='backup_action', help='Backup action')
    backup_subparsers.required = True

    backup_subparsers.add_parser('json', help='Copy the JSON source into the backup directory')
    backup_subparsers.add_parser('mongo', help='Export the database as Extended JSON')
    backup_subparsers.add_parser('all', help='Both json and mongo backups')
    backup_subparsers.add_parser('list', help='List backups, newest first')
    restore_parser = backup_subparsers.add_parser('restore', help='Restore a backup file')
    restore_parser.add_argument('path', help='Backup file to restore')
    restore_parser.add_argument('--yes', '-y', action='store_true',
                                help='Confirm replacing database contents')

    return parser


def build_config(args) -> MigrationConfig:
    """Resolve configuration: defaults < environment < YAML file < CLI flags."""
    config = load_config(args.config)
    return config.merged(
        source_path=args.source,
        backup_dir=args.backup_dir,
        connection_string=args.uri,
        database_name=args.database,
        batch_size=args.batch_size,
        show_progress=args.progress,
        log_level=args.log_level,
    )


async def async_main(args, config: MigrationConfig) -> int:
    """Async entry point; fatal errors become exit status 1."""
    cli = FleetSyncCLI(args, config)
    try:
        return await cli.run()
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        traceback.print_exc()
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    # console level is set on the handler; a run log may lower the package logger
    level = getattr(logging, config.log_level, logging.INFO)
    console = logging.StreamHandler()
    console.setLevel(level)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[console])
    logger.debug(f"Configuration: {config.to_dict()}")

    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
