"""
JSON to MongoDB Migration Job
=============================

Runs one complete reconciliation of the JSON source into MongoDB:

    Backup -> Connect -> Load -> Provision indexes -> Reconcile collections
    -> Reconcile object maps -> Persist run metadata -> Verify counts
    -> Verify existence -> Report

Usage:
    job = MigrationJob(load_config())
    report = await job.run()
    print(json.dumps(report.to_dict(), indent=2))

Source and connection failures are raised; everything after the connection
is established degrades to warnings and is reflected in the report status.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pymongo.errors import PyMongoError

from ..config import MigrationConfig
from ..utils import filesystem_timestamp, format_duration, iso_timestamp, utc_now
from .backup import SourceBackup
from .indexes import IndexProvisioner, IndexReport
from .log import MigrationLog
from .reconcile import CollectionReconciler, ReconciliationResult
from .source import ARRAY_COLLECTIONS, OBJECT_MAPS, SourceSnapshot, load_snapshot
from .target import connect_target
from .verify import MigrationVerificationReport, MigrationVerifier

logger = logging.getLogger(__name__)

METADATA_COLLECTION = "_migration_metadata"


class RunStatus(str, Enum):
    """Final status of a completed run."""
    SUCCESS = "success"
    WARNING = "warning"


@dataclass(frozen=True)
class RunReport:
    """Outcome of one migration run, built from structured results."""
    run_id: str
    database_name: str
    source_path: str
    started_at: str
    finished_at: str
    duration_seconds: float
    results: Mapping[str, ReconciliationResult]
    indexes: Mapping[str, IndexReport]
    counts: MigrationVerificationReport
    existence: MigrationVerificationReport
    success: bool
    status: RunStatus
    backup_path: Optional[str] = None
    log_path: Optional[str] = None
    metadata_saved: bool = False

    @property
    def totals(self) -> Dict[str, int]:
        return {
            'inserted': sum(r.inserted for r in self.results.values()),
            'updated': sum(r.updated for r in self.results.values()),
            'skipped': sum(r.skipped for r in self.results.values()),
            'conflicts': sum(r.conflicts for r in self.results.values()),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'runId': self.run_id,
            'status': self.status.value,
            'success': self.success,
            'database': self.database_name,
            'sourceFile': self.source_path,
            'startedAt': self.started_at,
            'finishedAt': self.finished_at,
            'durationSeconds': round(self.duration_seconds, 3),
            'totals': self.totals,
            'results': {name: result.to_dict() for name, result in self.results.items()},
            'indexes': {name: report.to_dict() for name, report in self.indexes.items()},
            'verification': {
                'counts': self.counts.to_dict(),
                'existence': self.existence.to_dict(),
            },
            'backupPath': self.backup_path,
            'logPath': self.log_path,
            'metadataSaved': self.metadata_saved,
        }


class MigrationJob:
    """
    Orchestrates one migration run.

    Args:
        config: Run configuration
        log: Logger to report through; it should live under the ``fleetsync``
            logger so the run log captures it (default: module logger)
    """

    def __init__(self, config: MigrationConfig, log: Optional[logging.Logger] = None):
        self.config = config
        self.logger = log or logger
        self.run_id = uuid.uuid4().hex[:8]

    async def run(self) -> RunReport:
        """
        Execute the migration.

        Returns:
            RunReport with per-collection results and both verification passes

        Raises:
            SourceLoadError: the source could not be read
            TargetConnectionError: MongoDB could not be reached
        """
        started = utc_now()
        start_time = time.time()
        log_path = self.config.backup_dir / f"migration-log-{filesystem_timestamp(started)}.txt"
        run_log = MigrationLog()

        with run_log.capture():
            try:
                self.logger.info(f"Starting MongoDB migration run {self.run_id}")
                self.logger.info("=" * 60)
                report = await self._execute(started, start_time, str(log_path))
            except Exception as e:
                self.logger.error(f"Migration failed: {e}")
                raise
            finally:
                written = run_log.flush_to(log_path)

        if written is None:
            report = replace(report, log_path=None)
        else:
            self.logger.info(f"Migration log saved to {written}")
        return report

    async def _execute(self, started, start_time: float, log_path: str) -> RunReport:
        config = self.config

        backup_path = SourceBackup(
            config.source_path, config.backup_dir, max_backups=config.max_backups
        ).create_backup()

        async with connect_target(config) as db:
            snapshot = load_snapshot(config.source_path)

            indexes = await IndexProvisioner(log=self.logger).provision(db)

            self.logger.info("Starting data migration...")
            reconciler = CollectionReconciler(
                db,
                batch_size=config.batch_size,
                migration_version=config.migration_version,
                show_progress=config.show_progress,
                log=self.logger,
            )
            results: Dict[str, ReconciliationResult] = {}
            for spec in ARRAY_COLLECTIONS:
                results[spec.name] = await reconciler.reconcile_collection(snapshot.get(spec.name), spec)
            for name in OBJECT_MAPS:
                results[name] = await reconciler.reconcile_object_map(snapshot.get(name), name)

            metadata_saved = await self._save_metadata(db, snapshot, results)

            verifier = MigrationVerifier(db, snapshot, lookup_batch_size=config.batch_size, log=self.logger)
            counts = await verifier.verify_counts()
            existence = await verifier.verify_existence()

        success = counts.passed and existence.passed
        report = RunReport(
            run_id=self.run_id,
            database_name=config.database_name,
            source_path=str(snapshot.path),
            started_at=iso_timestamp(started),
            finished_at=iso_timestamp(),
            duration_seconds=time.time() - start_time,
            results=results,
            indexes=indexes,
            counts=counts,
            existence=existence,
            success=success,
            status=RunStatus.SUCCESS if success else RunStatus.WARNING,
            backup_path=str(backup_path) if backup_path else None,
            log_path=log_path,
            metadata_saved=metadata_saved,
        )
        self._log_summary(report)
        return report

    async def _save_metadata(self, db, snapshot: SourceSnapshot,
                             results: Mapping[str, ReconciliationResult]) -> bool:
        document = {
            'runId': self.run_id,
            'migrationDate': iso_timestamp(),
            'migrationVersion': self.config.migration_version,
            'sourceFile': str(snapshot.path),
            'databaseName': self.config.database_name,
            'results': {name: result.to_dict() for name, result in results.items()},
            'originalDataKeys': list(snapshot.original_keys),
        }
        try:
            await db[METADATA_COLLECTION].insert_one(document)
        except PyMongoError as e:
            self.logger.warning(f"Could not save migration metadata: {e}")
            return False
        self.logger.info("Migration metadata saved")
        return True

    def _log_summary(self, report: RunReport) -> None:
        totals = report.totals
        self.logger.info("=" * 60)
        self.logger.info(f"Migration finished in {format_duration(report.duration_seconds)}")
        self.logger.info(
            f"Total: {totals['inserted']} inserted, {totals['updated']} updated, "
            f"{totals['skipped']} skipped ({totals['conflicts']} conflicts retried)"
        )
        if report.success:
            self.logger.info("MIGRATION SUCCESSFUL: all source data is present in MongoDB")
        else:
            self.logger.warning("MIGRATION COMPLETED WITH WARNINGS: some data may be missing")
        if report.backup_path:
            self.logger.info(f"Backup: {report.backup_path}")
        self.logger.info(f"Run report: {json.dumps(report.to_dict(), default=str)}")
