"""
In-memory stand-ins for the Motor client used by the migration tests.

The fakes implement the subset of the Motor API the migration code calls and
raise the real ``pymongo.errors`` exceptions (duplicate keys, bulk write
errors, index conflicts) so error handling is exercised as in production.
Unique indexes, including the implicit ``_id_`` index, are enforced.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo import InsertOne, ReplaceOne, UpdateOne
from pymongo.errors import (
    AutoReconnect,
    BulkWriteError,
    DuplicateKeyError,
    OperationFailure,
    ServerSelectionTimeoutError,
    WriteError,
)


# =============================================================================
# Result objects
# =============================================================================

@dataclass
class InsertOneResult:
    inserted_id: Any


@dataclass
class InsertManyResult:
    inserted_ids: List[Any]


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    upserted_id: Any = None


@dataclass
class DeleteResult:
    deleted_count: int


@dataclass
class BulkWriteResult:
    inserted_count: int = 0
    matched_count: int = 0
    modified_count: int = 0
    upserted_count: int = 0
    deleted_count: int = 0
    upserted_ids: Dict[int, Any] = field(default_factory=dict)


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        if length is None:
            return list(self._documents)
        return list(self._documents[:length])


# =============================================================================
# Query helpers
# =============================================================================

def matches(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Supports equality, ``$in`` and ``$or``."""
    for key, condition in query.items():
        if key == '$or':
            if not any(matches(document, sub) for sub in condition):
                return False
            continue
        if isinstance(condition, dict) and '$in' in condition:
            if key not in document or not any(document[key] == v for v in condition['$in']):
                return False
            continue
        if key not in document or document[key] != condition:
            return False
    return True


def project(document: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not projection:
        return copy.deepcopy(document)
    projected = {'_id': document['_id']} if projection.get('_id', 1) else {}
    for key, include in projection.items():
        if include and key != '_id' and key in document:
            projected[key] = copy.deepcopy(document[key])
    return projected


def equality_fields(query: Dict[str, Any]) -> Dict[str, Any]:
    """Fields an upsert copies from its filter into the new document."""
    return {
        key: value for key, value in query.items()
        if not key.startswith('$') and not isinstance(value, dict)
    }


def _default_index_name(keys) -> str:
    return '_'.join(f"{name}_{direction}" for name, direction in keys)


# =============================================================================
# Collection / database / client
# =============================================================================

class FakeCollection:
    """A collection stored as a list of dicts in insertion order."""

    def __init__(self, name: str, database: "FakeDatabase"):
        self.name = name
        self.database = database
        self.documents: List[Dict[str, Any]] = []
        self.indexes: Dict[str, Dict[str, Any]] = {'_id_': {'v': 2, 'key': [('_id', 1)]}}
        self.exists = False

        # Failure injection
        self.fail_bulk_writes = 0
        self.fail_index_creation: Dict[str, OperationFailure] = {}
        self.fail_count = False
        self.before_bulk_write: Optional[Callable[[list], None]] = None
        self.write_hook: Optional[Callable[[str, Dict[str, Any]], None]] = None

        # Call log
        self.bulk_write_calls = 0
        self.single_write_calls = 0

    @property
    def full_name(self) -> str:
        return f"{self.database.name}.{self.name}"

    # ---- helpers ---------------------------------------------------------

    def _find_first(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for document in self.documents:
            if matches(document, query):
                return document
        return None

    def _check_unique(self, candidate: Dict[str, Any], replacing: Optional[Dict[str, Any]] = None) -> None:
        for name, info in self.indexes.items():
            if name != '_id_' and not info.get('unique'):
                continue
            fields = [key for key, _ in info['key']]
            sparse = info.get('sparse', False)
            if sparse and not any(f in candidate for f in fields):
                continue
            value = tuple(candidate.get(f) for f in fields)
            for document in self.documents:
                if document is replacing:
                    continue
                if sparse and not any(f in document for f in fields):
                    continue
                if tuple(document.get(f) for f in fields) == value:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.full_name} "
                        f"index: {name} dup key: {value}",
                        11000,
                    )

    def _run_hook(self, operation: str, query: Dict[str, Any]) -> None:
        if self.write_hook:
            self.write_hook(operation, query)

    def _insert(self, document: Dict[str, Any]) -> Any:
        document = copy.deepcopy(document)
        document.setdefault('_id', ObjectId())
        self._check_unique(document)
        self.documents.append(document)
        self.exists = True
        return document['_id']

    def _update(self, query, update, upsert) -> UpdateResult:
        self._run_hook('update', query)
        target = self._find_first(query)
        if target is not None:
            changes = update.get('$set', {})
            if '_id' in changes and changes['_id'] != target['_id']:
                raise WriteError("Performing an update on the path '_id' would modify the immutable field '_id'", 66)
            updated = {**target, **copy.deepcopy(changes)}
            self._check_unique(updated, replacing=target)
            modified = int(updated != target)
            self.documents[self.documents.index(target)] = updated
            return UpdateResult(matched_count=1, modified_count=modified)

        if not upsert:
            return UpdateResult(matched_count=0, modified_count=0)

        document = equality_fields(query)
        document.update(copy.deepcopy(update.get('$setOnInsert', {})))
        document.update(copy.deepcopy(update.get('$set', {})))
        upserted_id = self._insert(document)
        return UpdateResult(matched_count=0, modified_count=0, upserted_id=upserted_id)

    def _replace(self, query, replacement, upsert) -> UpdateResult:
        self._run_hook('replace', query)
        target = self._find_first(query)
        if target is not None:
            if '_id' in replacement and replacement['_id'] != target['_id']:
                raise WriteError(
                    "After applying the update, the (immutable) field '_id' was found to have been altered",
                    66,
                )
            updated = {**copy.deepcopy(replacement), '_id': target['_id']}
            self._check_unique(updated, replacing=target)
            modified = int(updated != target)
            self.documents[self.documents.index(target)] = updated
            return UpdateResult(matched_count=1, modified_count=modified)

        if not upsert:
            return UpdateResult(matched_count=0, modified_count=0)

        document = copy.deepcopy(replacement)
        if '_id' not in document and '_id' in equality_fields(query):
            document['_id'] = query['_id']
        upserted_id = self._insert(document)
        return UpdateResult(matched_count=0, modified_count=0, upserted_id=upserted_id)

    # ---- Motor API -------------------------------------------------------

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, Any]] = None) -> FakeCursor:
        query = query or {}
        return FakeCursor([project(d, projection) for d in self.documents if matches(d, query)])

    async def find_one(self, query: Optional[Dict[str, Any]] = None, projection=None):
        document = self._find_first(query or {})
        return project(document, projection) if document is not None else None

    async def count_documents(self, query: Dict[str, Any]) -> int:
        if self.fail_count:
            raise AutoReconnect("connection reset during count")
        return sum(1 for d in self.documents if matches(d, query))

    async def insert_one(self, document: Dict[str, Any]) -> InsertOneResult:
        self.single_write_calls += 1
        inserted_id = self._insert(document)
        document.setdefault('_id', inserted_id)
        return InsertOneResult(inserted_id)

    async def insert_many(self, documents: List[Dict[str, Any]], ordered: bool = True) -> InsertManyResult:
        inserted_ids, write_errors = [], []
        for index, document in enumerate(documents):
            try:
                inserted_ids.append(self._insert(document))
            except DuplicateKeyError as e:
                write_errors.append({'index': index, 'code': 11000, 'errmsg': str(e)})
                if ordered:
                    break
        if write_errors:
            raise BulkWriteError({
                'writeErrors': write_errors,
                'writeConcernErrors': [],
                'nInserted': len(inserted_ids),
                'nUpserted': 0,
                'nMatched': 0,
                'nModified': 0,
                'nRemoved': 0,
                'upserted': [],
            })
        return InsertManyResult(inserted_ids)

    async def update_one(self, query, update, upsert: bool = False) -> UpdateResult:
        self.single_write_calls += 1
        return self._update(query, update, upsert)

    async def replace_one(self, query, replacement, upsert: bool = False) -> UpdateResult:
        self.single_write_calls += 1
        return self._replace(query, replacement, upsert)

    async def delete_many(self, query: Dict[str, Any]) -> DeleteResult:
        kept = [d for d in self.documents if not matches(d, query)]
        deleted = len(self.documents) - len(kept)
        self.documents = kept
        return DeleteResult(deleted)

    async def bulk_write(self, requests: list, ordered: bool = True) -> BulkWriteResult:
        self.bulk_write_calls += 1
        if self.before_bulk_write:
            self.before_bulk_write(requests)
        if self.fail_bulk_writes:
            self.fail_bulk_writes -= 1
            raise AutoReconnect("connection closed during bulk write")

        result = BulkWriteResult()
        write_errors = []
        for index, request in enumerate(requests):
            try:
                if isinstance(request, UpdateOne):
                    outcome = self._update(request._filter, request._doc, request._upsert)
                elif isinstance(request, ReplaceOne):
                    outcome = self._replace(request._filter, request._doc, request._upsert)
                elif isinstance(request, InsertOne):
                    self._insert(request._doc)
                    result.inserted_count += 1
                    continue
                else:
                    raise TypeError(f"Unsupported bulk operation: {request!r}")
            except OperationFailure as e:
                write_errors.append({'index': index, 'code': e.code, 'errmsg': str(e)})
                if ordered:
                    break
                continue
            result.matched_count += outcome.matched_count
            result.modified_count += outcome.modified_count
            if outcome.upserted_id is not None:
                result.upserted_count += 1
                result.upserted_ids[index] = outcome.upserted_id

        if write_errors:
            raise BulkWriteError({
                'writeErrors': write_errors,
                'writeConcernErrors': [],
                'nInserted': result.inserted_count,
                'nUpserted': result.upserted_count,
                'nMatched': result.matched_count,
                'nModified': result.modified_count,
                'nRemoved': 0,
                'upserted': [{'index': i, '_id': _id} for i, _id in result.upserted_ids.items()],
            })
        return result

    async def index_information(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self.indexes)

    async def create_index(self, keys, name: Optional[str] = None, unique: bool = False,
                           sparse: bool = False, **kwargs) -> str:
        keys = [tuple(k) for k in keys]
        name = name or _default_index_name(keys)
        if name in self.fail_index_creation:
            raise self.fail_index_creation[name]

        if any(direction == 'text' for _, direction in keys):
            info = {
                'v': 2,
                'key': [('_fts', 'text'), ('_ftsx', 1)],
                'weights': {field_name: 1 for field_name, d in keys if d == 'text'},
            }
        else:
            info = {'v': 2, 'key': keys}
        if unique:
            info['unique'] = True
        if sparse:
            info['sparse'] = True

        existing = self.indexes.get(name)
        if existing is not None:
            if existing == info:
                return name
            code = 86 if existing['key'] != info['key'] else 85
            raise OperationFailure(f"An existing index has the same name as the requested index: {name}", code)
        for other_name, other in self.indexes.items():
            if other['key'] == info['key']:
                raise OperationFailure(
                    f"Index already exists with a different name: {other_name}", 85
                )

        if unique:
            fields = [k for k, _ in keys]
            seen = set()
            for document in self.documents:
                if sparse and not any(f in document for f in fields):
                    continue
                value = tuple(repr(document.get(f)) for f in fields)
                if value in seen:
                    raise OperationFailure(f"E11000 duplicate key error building index {name}", 11000)
                seen.add(value)

        self.indexes[name] = info
        self.exists = True
        return name

    async def drop_index(self, name: str) -> None:
        if name == '_id_':
            raise OperationFailure("cannot drop _id index", 72)
        if name not in self.indexes:
            raise OperationFailure(f"index not found with name [{name}]", 27)
        del self.indexes[name]

    # ---- test helpers ----------------------------------------------------

    def seed(self, *documents: Dict[str, Any]) -> None:
        for document in documents:
            self._insert(document)

    def seed_index(self, name: str, keys, unique: bool = False, sparse: bool = False) -> None:
        info = {'v': 2, 'key': [tuple(k) for k in keys]}
        if unique:
            info['unique'] = True
        if sparse:
            info['sparse'] = True
        self.indexes[name] = info
        self.exists = True


class FakeDatabase:
    def __init__(self, name: str):
        self.name = name
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name, self)
        return self.collections[name]

    def get_collection(self, name: str) -> FakeCollection:
        return self[name]

    async def list_collection_names(self) -> List[str]:
        return [name for name, collection in self.collections.items() if collection.exists]


class FakeAdmin:
    def __init__(self, client: "FakeMotorClient"):
        self.client = client

    async def command(self, name: str, *args, **kwargs) -> Dict[str, Any]:
        self.client.commands.append(name)
        if self.client.unreachable:
            raise ServerSelectionTimeoutError("localhost:27017: [Errno 111] Connection refused")
        return {'ok': 1.0}


class FakeMotorClient:
    """Shared across connections so state persists between runs, like a server."""

    def __init__(self):
        self.databases: Dict[str, FakeDatabase] = {}
        self.admin = FakeAdmin(self)
        self.unreachable = False
        self.commands: List[str] = []
        self.connect_kwargs: List[Dict[str, Any]] = []
        self.open_connections = 0
        self.close_calls = 0

    def __call__(self, connection_string: str, **kwargs) -> "FakeMotorClient":
        """Used in place of the AsyncIOMotorClient constructor."""
        self.connect_kwargs.append({'host': connection_string, **kwargs})
        self.open_connections += 1
        return self

    def __getitem__(self, name: str) -> FakeDatabase:
        if name not in self.databases:
            self.databases[name] = FakeDatabase(name)
        return self.databases[name]

    def get_database(self, name: str) -> FakeDatabase:
        return self[name]

    def close(self) -> None:
        self.close_calls += 1
        self.open_connections -= 1
