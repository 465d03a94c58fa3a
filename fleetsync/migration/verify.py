"""
Migration Verification Module
=============================

Checks that the target database holds everything in the JSON source.

Two passes are run per collection:
1. Count pass: target document count must be at least the source count.
   Extra target documents (from earlier migrations or other writers) are
   reported but do not fail the check.
2. Existence pass: every keyed source record must be found by its identity.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from ..config import MigrationConfig
from ..utils import filesystem_timestamp, iso_timestamp, preview_items
from .source import (
    ARRAY_COLLECTIONS,
    OBJECT_MAPS,
    ArrayCollection,
    KeyValueMap,
    SourceSnapshot,
    is_hashable,
    keyed_identities,
    load_snapshot,
    record_identity,
)
from .target import connect_target

logger = logging.getLogger(__name__)

COUNT_PASS = "count"
EXISTENCE_PASS = "existence"


@dataclass
class VerificationResult:
    """Results from a verification check."""

    check_name: str
    passed: bool
    source_count: int = 0
    target_count: int = 0
    discrepancies: list = field(default_factory=list)
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def summary(self) -> str:
        """Human-readable summary of the verification result."""
        status = "PASSED" if self.passed else "FAILED"
        msg = f"{status}: {self.check_name}"
        if self.error:
            msg += f" - Error: {self.error}"
        elif 'found' in self.details:
            msg += f" - {self.details['found']}/{self.source_count} found"
            if self.discrepancies:
                msg += f", missing: {preview_items(self.discrepancies)}"
        else:
            msg += f" - source={self.source_count}, target={self.target_count}"
        return msg


@dataclass
class MigrationVerificationReport:
    """All check results of one verification pass."""

    database_name: str
    pass_name: str
    checks: List[VerificationResult] = field(default_factory=list)
    passed: bool = True
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0

    def add_check(self, result: VerificationResult) -> None:
        """Add a verification check result."""
        self.checks.append(result)
        self.total_checks += 1
        if result.passed:
            self.passed_checks += 1
        else:
            self.failed_checks += 1
            self.passed = False

    def to_dict(self) -> dict:
        """Convert report to dictionary for serialization."""
        return {
            "database_name": self.database_name,
            "pass": self.pass_name,
            "passed": self.passed,
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "checks": [
                {
                    "check_name": c.check_name,
                    "passed": c.passed,
                    "source_count": c.source_count,
                    "target_count": c.target_count,
                    "discrepancies": c.discrepancies[:10],
                    "details": c.details,
                    "error": c.error,
                }
                for c in self.checks
            ],
        }

    def print_report(self) -> None:
        """Print formatted verification report."""
        print("\n" + "=" * 60)
        print(f"MIGRATION VERIFICATION REPORT ({self.pass_name} pass)")
        print("=" * 60)
        print(f"Database: {self.database_name}")
        print("-" * 60)

        for check in self.checks:
            print(check.summary)

        print("-" * 60)
        status = "ALL CHECKS PASSED" if self.passed else "VERIFICATION FAILED"
        print(f"{status} ({self.passed_checks}/{self.total_checks} passed)")
        print("=" * 60 + "\n")


@dataclass
class VerificationRun:
    """Both passes of a standalone verification."""
    counts: MigrationVerificationReport
    existence: MigrationVerificationReport
    report_path: Optional[Path] = None

    @property
    def passed(self) -> bool:
        return self.counts.passed and self.existence.passed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "counts": self.counts.to_dict(),
            "existence": self.existence.to_dict(),
        }


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _document_identities(document: Dict[str, Any], key_field: str) -> List[Any]:
    """Values a source identity may match: the ``_id`` and the key field.

    An array key field matches by element, as ``$in`` does.
    """
    values = [document.get('_id')]
    key_value = document.get(key_field)
    if isinstance(key_value, list):
        values.extend(key_value)
    else:
        values.append(key_value)
    return [v for v in values if v is not None and is_hashable(v)]


class MigrationVerifier:
    """
    Verifies a migrated database against the source snapshot.

    Args:
        db: Motor database handle
        snapshot: The source the database was reconciled from
        lookup_batch_size: Identities per ``$in`` query in the existence pass
        log: Logger to report through (default: module logger)
    """

    def __init__(
        self,
        db,
        snapshot: SourceSnapshot,
        lookup_batch_size: int = 1000,
        log: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.snapshot = snapshot
        self.lookup_batch_size = lookup_batch_size
        self.logger = log or logger

    def _array_collections(self):
        for spec in ARRAY_COLLECTIONS:
            value = self.snapshot.get(spec.name)
            if isinstance(value, ArrayCollection) and len(value):
                yield spec, value

    def _object_maps(self):
        for name in OBJECT_MAPS:
            value = self.snapshot.get(name)
            if isinstance(value, KeyValueMap) and len(value):
                yield name, value

    # ------------------------------------------------------------------
    # Count pass
    # ------------------------------------------------------------------

    async def verify_counts(self) -> MigrationVerificationReport:
        """Compare source counts with target document counts."""
        self.logger.info("Verifying document counts...")
        report = MigrationVerificationReport(database_name=self.db.name, pass_name=COUNT_PASS)

        for spec, value in self._array_collections():
            source_count = len(keyed_identities(value, spec.key_field))
            report.add_check(await self._count_check(spec.name, source_count))

        for name, value in self._object_maps():
            report.add_check(await self._count_check(name, len(value)))

        self._log_report(report)
        return report

    async def _count_check(self, name: str, source_count: int) -> VerificationResult:
        try:
            target_count = await self.db[name].count_documents({})
        except PyMongoError as e:
            self.logger.warning(f"{name}: count failed: {e}")
            return VerificationResult(check_name=name, passed=False, source_count=source_count, error=str(e))

        passed = target_count >= source_count
        if not passed:
            self.logger.warning(f"{name}: missing data, source={source_count}, target={target_count}")
        elif target_count > source_count:
            self.logger.info(
                f"{name}: {target_count} documents, {target_count - source_count} more than the source"
            )
        else:
            self.logger.info(f"{name}: {target_count} documents (exact match)")

        return VerificationResult(
            check_name=name,
            passed=passed,
            source_count=source_count,
            target_count=target_count,
            details={'extra': max(target_count - source_count, 0)},
        )

    # ------------------------------------------------------------------
    # Existence pass
    # ------------------------------------------------------------------

    async def verify_existence(self) -> MigrationVerificationReport:
        """Look up every keyed source record in the target by its identity."""
        self.logger.info("Verifying every source record exists in the target...")
        report = MigrationVerificationReport(database_name=self.db.name, pass_name=EXISTENCE_PASS)

        for spec, value in self._array_collections():
            identities = keyed_identities(value, spec.key_field)
            unkeyed = sum(1 for r in value.records if record_identity(r, spec.key_field) is None)
            report.add_check(
                await self._existence_check(spec.name, spec.key_field, identities, unkeyed)
            )

        for name, value in self._object_maps():
            report.add_check(await self._existence_check(name, '_id', list(value.entries), 0))

        self._log_report(report)
        return report

    async def _existence_check(self, name: str, key_field: str, identities: List[Any],
                               unkeyed: int) -> VerificationResult:
        collection = self.db[name]
        found = set()
        try:
            for batch in _chunks(identities, self.lookup_batch_size):
                if key_field == '_id':
                    query = {'_id': {'$in': batch}}
                else:
                    query = {'$or': [{key_field: {'$in': batch}}, {'_id': {'$in': batch}}]}
                documents = await collection.find(query, {key_field: 1}).to_list(length=None)
                for document in documents:
                    found.update(_document_identities(document, key_field))
        except PyMongoError as e:
            self.logger.warning(f"{name}: existence lookup failed: {e}")
            return VerificationResult(check_name=name, passed=False, source_count=len(identities), error=str(e))

        missing = [identity for identity in identities if identity not in found]
        found_count = len(identities) - len(missing)
        passed = not missing

        if passed:
            self.logger.info(f"{name}: {found_count}/{len(identities)} records verified")
        else:
            self.logger.warning(
                f"{name}: {found_count}/{len(identities)} found, {len(missing)} missing "
                f"({preview_items(missing)})"
            )
        if unkeyed:
            self.logger.info(f"{name}: {unkeyed} source record(s) without {key_field} not checked")

        return VerificationResult(
            check_name=name,
            passed=passed,
            source_count=len(identities),
            target_count=found_count,
            discrepancies=missing,
            details={'found': found_count, 'missing_count': len(missing), 'unkeyed': unkeyed},
        )

    def _log_report(self, report: MigrationVerificationReport) -> None:
        if report.passed:
            self.logger.info(f"{report.pass_name.capitalize()} pass: all {report.total_checks} checks passed")
        else:
            self.logger.warning(
                f"{report.pass_name.capitalize()} pass: {report.failed_checks}/{report.total_checks} checks failed"
            )

    async def verify_all(self) -> VerificationRun:
        """Run the count pass and then the existence pass."""
        counts = await self.verify_counts()
        existence = await self.verify_existence()
        return VerificationRun(counts=counts, existence=existence)

    # ------------------------------------------------------------------
    # Standalone verification
    # ------------------------------------------------------------------

    @classmethod
    async def run_standalone(cls, config: MigrationConfig,
                             log: Optional[logging.Logger] = None) -> VerificationRun:
        """
        Verify an already-migrated database without running a migration.

        Loads the source, connects, runs both passes and writes
        ``verification-report-<ts>.json`` into the backup directory.
        """
        log = log or logger
        snapshot = load_snapshot(config.source_path)

        async with connect_target(config) as db:
            run = await cls(db, snapshot, log=log).verify_all()

        report = {
            'timestamp': iso_timestamp(),
            'database': config.database_name,
            'sourceFile': str(snapshot.path),
            **run.to_dict(),
        }
        report_path = config.backup_dir / f"verification-report-{filesystem_timestamp()}.json"
        try:
            config.backup_dir.mkdir(parents=True, exist_ok=True)
            report_path.write_text(json.dumps(report, indent=2, default=str), encoding='utf-8')
            run.report_path = report_path
            log.info(f"Verification report saved to {report_path}")
        except OSError as e:
            log.warning(f"Could not write verification report: {e}")

        if run.passed:
            log.info("VERIFICATION PASSED: all data is present in MongoDB")
        else:
            log.warning("VERIFICATION FAILED: some data is missing, review the report")
        return run
