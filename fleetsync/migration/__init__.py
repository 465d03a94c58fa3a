"""
fleetsync Migration Module
==========================

Reconciles the JSON source-of-truth into MongoDB and verifies the result.

Components:
    - MigrationJob: Orchestrates a full run and returns a RunReport
    - CollectionReconciler: Idempotent batched upserts for collections and object maps
    - IndexProvisioner: Canonical indexes, stale index clean-up
    - MigrationVerifier: Count and existence passes, standalone verification
    - SourceBackup: Source snapshots plus database export/restore
    - MigrationLog: Per-run log handler flushed to a file
"""

from .backup import SourceBackup, export_database, restore_database
from .errors import MigrationError, SourceLoadError, TargetConnectionError
from .indexes import IndexProvisioner, IndexReport, cleanup_indexes, provision_indexes
from .job import MigrationJob, RunReport, RunStatus
from .log import MigrationLog, MigrationLogEntry
from .reconcile import (
    CollectionReconciler,
    ReconciliationResult,
    UpsertOutcome,
    UpsertResult,
)
from .source import (
    ArrayCollection,
    InvalidValue,
    KeyValueMap,
    SourceSnapshot,
    load_snapshot,
)
from .target import connect_target
from .verify import MigrationVerificationReport, MigrationVerifier, VerificationResult

__all__ = [
    'MigrationJob',
    'RunReport',
    'RunStatus',
    'CollectionReconciler',
    'ReconciliationResult',
    'UpsertOutcome',
    'UpsertResult',
    'IndexProvisioner',
    'IndexReport',
    'provision_indexes',
    'cleanup_indexes',
    'MigrationVerifier',
    'MigrationVerificationReport',
    'VerificationResult',
    'SourceBackup',
    'export_database',
    'restore_database',
    'MigrationLog',
    'MigrationLogEntry',
    'ArrayCollection',
    'KeyValueMap',
    'InvalidValue',
    'SourceSnapshot',
    'load_snapshot',
    'connect_target',
    'MigrationError',
    'SourceLoadError',
    'TargetConnectionError',
]
