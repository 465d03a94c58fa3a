"""
Collection Reconciler
=====================

Reconciles source collections into MongoDB so that any number of runs
against the same source converge on the same target:

- a record whose identity is already present is updated in place
- a new identity is inserted with ``_id`` equal to the identity
- a record without an identity is skipped and never written

Writes go out as unordered bulk batches. A batch that fails is replayed one
operation at a time through ``upsert_one``, which turns a duplicate-key
conflict into a single update retry. No per-record or per-batch error escapes
this module; everything is tallied into a ReconciliationResult.
"""

import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pymongo import ReplaceOne, UpdateOne
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure, PyMongoError
from tqdm import tqdm

from ..config import MIGRATION_VERSION
from ..utils import iso_timestamp, utc_now
from .source import (
    ArrayCollection,
    CollectionSpec,
    KeyValueMap,
    SourceValue,
    is_hashable,
    record_identity,
)

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000
IMMUTABLE_FIELD = 66  # replacement would change the _id of a matched document
CONFLICT_CODES = (DUPLICATE_KEY, IMMUTABLE_FIELD)


class UpsertOutcome(str, Enum):
    """What a single reconciled write did."""
    INSERTED = "inserted"
    UPDATED = "updated"
    CONFLICT_RETRIED = "conflict_retried"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UpsertResult:
    identity: Any
    outcome: UpsertOutcome
    reason: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Per-collection tallies. Conflict retries count as updates."""
    collection: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    note: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.skipped

    def record(self, result: UpsertResult) -> None:
        if result.outcome == UpsertOutcome.INSERTED:
            self.inserted += 1
        elif result.outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        elif result.outcome == UpsertOutcome.CONFLICT_RETRIED:
            self.updated += 1
            self.conflicts += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'conflicts': self.conflicts,
        }
        if self.note:
            data['note'] = self.note
        return data


@dataclass(frozen=True)
class PendingWrite:
    """A prepared write for one identity.

    `payload` never contains ``_id``; it is only supplied when the document
    is created.
    """
    key_field: str
    identity: Any
    payload: Dict[str, Any]
    is_new: bool

    def to_operation(self):
        if self.is_new:
            return ReplaceOne(
                {self.key_field: self.identity},
                {**self.payload, '_id': self.identity},
                upsert=True,
            )
        return UpdateOne(
            {self.key_field: self.identity},
            {'$set': self.payload, '$setOnInsert': {'_id': self.identity}},
            upsert=True,
        )


class CollectionReconciler:
    """
    Reconciles array collections and object maps into one database.

    Args:
        db: Motor database handle
        batch_size: Operations per unordered bulk write
        migration_version: Value stamped on every written document
        show_progress: Show a tqdm bar per collection
        log: Logger to report through (default: module logger)
        clock: Returns the ``migratedAt`` timestamp for a write
    """

    def __init__(
        self,
        db,
        batch_size: int = 1000,
        migration_version: str = MIGRATION_VERSION,
        show_progress: bool = False,
        log: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], str]] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.db = db
        self.batch_size = batch_size
        self.migration_version = migration_version
        self.show_progress = show_progress
        self.logger = log or logger
        self.clock = clock or (lambda: iso_timestamp(utc_now()))

    def _stamp(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload['migratedAt'] = self.clock()
        payload['migrationVersion'] = self.migration_version
        return payload

    # ------------------------------------------------------------------
    # Single-write primitive
    # ------------------------------------------------------------------

    async def upsert_one(self, collection, write: PendingWrite) -> UpsertResult:
        """
        Apply one write, converting failures into an outcome.

        A duplicate-key conflict (another writer created the identity first)
        is retried once as a plain update of the existing document.
        """
        try:
            if write.is_new:
                result = await collection.replace_one(
                    {write.key_field: write.identity},
                    {**write.payload, '_id': write.identity},
                    upsert=True,
                )
            else:
                result = await collection.update_one(
                    {write.key_field: write.identity},
                    {'$set': write.payload, '$setOnInsert': {'_id': write.identity}},
                    upsert=True,
                )
        except (DuplicateKeyError, OperationFailure) as e:
            if getattr(e, 'code', None) in CONFLICT_CODES:
                return await self._retry_as_update(collection, write, e)
            return self._skip(collection, write, e)
        except PyMongoError as e:
            return self._skip(collection, write, e)

        if result.upserted_id is not None:
            return UpsertResult(write.identity, UpsertOutcome.INSERTED)
        return UpsertResult(write.identity, UpsertOutcome.UPDATED)

    async def _retry_as_update(self, collection, write: PendingWrite, error: Exception) -> UpsertResult:
        self.logger.debug(f"{collection.name}: conflict on {write.identity!r}, retrying as update: {error}")
        try:
            result = await collection.update_one(
                {'$or': [{'_id': write.identity}, {write.key_field: write.identity}]},
                {'$set': write.payload},
            )
        except PyMongoError as e:
            return self._skip(collection, write, e)

        if result.matched_count == 0:
            return self._skip(
                collection, write,
                f"no document with _id or {write.key_field} equal to {write.identity!r}; the conflict is on "
                f"another unique index or the conflicting document was removed ({error})",
            )
        return UpsertResult(write.identity, UpsertOutcome.CONFLICT_RETRIED)

    def _skip(self, collection, write: PendingWrite, error) -> UpsertResult:
        reason = str(error)
        self.logger.warning(f"Failed to migrate {collection.name} document {write.identity!r}: {reason}")
        return UpsertResult(write.identity, UpsertOutcome.SKIPPED, reason)

    # ------------------------------------------------------------------
    # Array collections
    # ------------------------------------------------------------------

    async def existing_identities(self, collection, key_field: str) -> Set[Any]:
        """Identities already stored; a document without `key_field` contributes its ``_id``."""
        documents = await collection.find({}, {key_field: 1}).to_list(length=None)
        identities = set()
        for document in documents:
            value = document.get(key_field)
            if value is None or value == '':
                value = document.get('_id')
            if value is not None and is_hashable(value):
                identities.add(value)
        return identities

    def prepare_writes(self, collection: ArrayCollection, spec: CollectionSpec, known: Set[Any]):
        """
        Turn source records into PendingWrites.

        Returns:
            (writes, skipped) where skipped counts keyless records
        """
        writes: List[PendingWrite] = []
        skipped = 0
        for record in collection.records:
            identity = record_identity(record, spec.key_field)
            if identity is None or not is_hashable(identity):
                skipped += 1
                continue

            payload = {k: v for k, v in record.items() if k != '_id'}
            self._stamp(payload)

            is_new = identity not in known
            known.add(identity)
            writes.append(PendingWrite(spec.key_field, identity, payload, is_new))
        return writes, skipped

    async def reconcile_collection(self, value: SourceValue, spec: CollectionSpec) -> ReconciliationResult:
        """
        Reconcile one array collection.

        Args:
            value: The classified source value for `spec.name`
            spec: Collection name and identity field

        Returns:
            ReconciliationResult with inserted/updated/skipped tallies
        """
        result = ReconciliationResult(collection=spec.name)

        if not isinstance(value, ArrayCollection):
            self.logger.info(f"Skipping {spec.name}: not an array")
            result.note = "not an array"
            return result
        if len(value) == 0:
            self.logger.info(f"Skipping empty collection: {spec.name}")
            result.note = "empty"
            return result

        collection = self.db[spec.name]
        self.logger.info(f"Migrating {spec.name}: {len(value)} documents...")

        try:
            known = await self.existing_identities(collection, spec.key_field)
        except PyMongoError as e:
            # every write is treated as new; conflicts take the retry path
            self.logger.warning(f"{spec.name}: could not read existing identities: {e}")
            known = set()

        writes, keyless = self.prepare_writes(value, spec, known)
        result.skipped += keyless
        if keyless:
            self.logger.warning(f"{spec.name}: skipped {keyless} record(s) without {spec.key_field}")

        with tqdm(total=len(writes), desc=spec.name, unit="doc", file=sys.stderr,
                  disable=not self.show_progress, leave=False) as pbar:
            for start in range(0, len(writes), self.batch_size):
                batch = writes[start:start + self.batch_size]
                await self._flush_batch(collection, batch, result)
                pbar.update(len(batch))

        self.logger.info(
            f"{spec.name}: {result.inserted} inserted, {result.updated} updated, {result.skipped} skipped"
        )
        return result

    async def _flush_batch(self, collection, batch: List[PendingWrite], result: ReconciliationResult) -> None:
        operations = [write.to_operation() for write in batch]
        try:
            bulk = await collection.bulk_write(operations, ordered=False)
        except BulkWriteError as e:
            details = e.details or {}
            failed = sorted({error['index'] for error in details.get('writeErrors', [])})
            result.inserted += details.get('nUpserted', 0) + details.get('nInserted', 0)
            result.updated += details.get('nMatched', 0)
            self.logger.warning(
                f"{collection.name}: {len(failed)} of {len(batch)} writes failed in batch, retrying individually"
            )
            for index in failed:
                result.record(await self.upsert_one(collection, batch[index]))
            return
        except PyMongoError as e:
            self.logger.warning(f"{collection.name}: batch write failed ({e}), processing individually...")
            for write in batch:
                result.record(await self.upsert_one(collection, write))
            return

        result.inserted += bulk.upserted_count + bulk.inserted_count
        result.updated += bulk.matched_count

    # ------------------------------------------------------------------
    # Object maps
    # ------------------------------------------------------------------

    def key_value_records(self, value: KeyValueMap) -> List[Dict[str, Any]]:
        return [
            self._stamp({'_id': key, 'key': key, 'value': entry})
            for key, entry in value.entries.items()
        ]

    async def reconcile_object_map(self, value: SourceValue, name: str) -> ReconciliationResult:
        """
        Reconcile a key/value map into ``{_id: key, key, value}`` documents.

        Arrays, scalars and empty maps are skipped with a log line.
        """
        result = ReconciliationResult(collection=name)

        if not isinstance(value, KeyValueMap):
            self.logger.info(f"Skipping invalid object data: {name}")
            result.note = "not an object"
            return result
        if len(value) == 0:
            self.logger.info(f"Skipping empty object: {name}")
            result.note = "empty"
            return result

        collection = self.db[name]
        records = self.key_value_records(value)
        self.logger.info(f"Migrating {name}: {len(records)} key-value pairs...")

        for start in range(0, len(records), self.batch_size):
            batch = records[start:start + self.batch_size]
            try:
                inserted = await collection.insert_many(batch, ordered=False)
            except BulkWriteError as e:
                details = e.details or {}
                result.inserted += details.get('nInserted', 0)
                failed = sorted({error['index'] for error in details.get('writeErrors', [])})
                self.logger.info(f"{name}: {len(failed)} existing key(s), using upsert...")
                for index in failed:
                    result.record(await self._upsert_entry(collection, batch[index]))
                continue
            except PyMongoError as e:
                self.logger.warning(f"{name}: insert failed ({e}), using upsert...")
                for record in batch:
                    result.record(await self._upsert_entry(collection, record))
                continue
            result.inserted += len(inserted.inserted_ids)

        self.logger.info(f"{name}: {result.inserted} inserted, {result.updated} updated, {result.skipped} skipped")
        return result

    async def _upsert_entry(self, collection, record: Dict[str, Any]) -> UpsertResult:
        key = record['_id']
        fields = {k: v for k, v in record.items() if k != '_id'}
        try:
            outcome = await collection.update_one({'_id': key}, {'$set': fields}, upsert=True)
        except PyMongoError as e:
            self.logger.warning(f"Failed to migrate {collection.name} key {key!r}: {e}")
            return UpsertResult(key, UpsertOutcome.SKIPPED, str(e))
        if outcome.upserted_id is not None:
            return UpsertResult(key, UpsertOutcome.INSERTED)
        return UpsertResult(key, UpsertOutcome.UPDATED)
