"""
Index Provisioner
=================

Creates the canonical, explicitly named indexes for each collection and
removes indexes left behind by earlier schemas (driver auto-generated names
such as ``email_1`` or ``lat_1_lng_1``).

Index problems never abort a migration; they are reported per collection in
an IndexReport and logged as warnings.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, TEXT
from pymongo.errors import OperationFailure, PyMongoError

from ..utils import preview_items

logger = logging.getLogger(__name__)

# Server error codes for an index that clashes with an existing one
INDEX_OPTIONS_CONFLICT = 85
INDEX_KEY_SPECS_CONFLICT = 86
INDEX_CONFLICT_CODES = (INDEX_OPTIONS_CONFLICT, INDEX_KEY_SPECS_CONFLICT)


@dataclass(frozen=True)
class IndexSpec:
    """A canonical index definition."""
    name: str
    keys: Tuple[Tuple[str, Any], ...]
    unique: bool = False
    sparse: bool = False

    @property
    def legacy_name(self) -> str:
        """Name the driver generates when no name is given, e.g. ``lat_1_lng_1``."""
        return '_'.join(f"{field_name}_{direction}" for field_name, direction in self.keys)

    @property
    def is_text(self) -> bool:
        return any(direction == TEXT for _, direction in self.keys)

    def matches(self, info: Dict[str, Any]) -> bool:
        """True if an ``index_information()`` entry has this definition."""
        if bool(info.get('unique', False)) != self.unique:
            return False
        if bool(info.get('sparse', False)) != self.sparse:
            return False
        return _key_pattern(info) == self.key_pattern()

    def key_pattern(self) -> Tuple[Tuple[str, Any], ...]:
        if self.is_text:
            return tuple(sorted((name, TEXT) for name, direction in self.keys if direction == TEXT))
        return tuple((name, _normalize_direction(direction)) for name, direction in self.keys)


def _normalize_direction(direction: Any) -> Any:
    if isinstance(direction, (int, float)) and not isinstance(direction, bool):
        return int(direction)
    return direction


def _key_pattern(info: Dict[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    """Comparable key pattern of an existing index.

    Text indexes are stored as ``_fts``/``_ftsx`` keys with the indexed fields
    in ``weights``.
    """
    keys = list(info.get('key', []))
    if any(name == '_fts' for name, _ in keys):
        return tuple(sorted((name, TEXT) for name in info.get('weights', {})))
    return tuple((name, _normalize_direction(direction)) for name, direction in keys)


def _spec(name: str, *keys: Tuple[str, Any], unique: bool = False, sparse: bool = False) -> IndexSpec:
    return IndexSpec(name=name, keys=tuple(keys), unique=unique, sparse=sparse)


INDEX_PLAN: Dict[str, Tuple[IndexSpec, ...]] = {
    'users': (
        _spec('idx_user_id', ('id', ASCENDING), unique=True),
        _spec('idx_user_username', ('username', ASCENDING), unique=True, sparse=True),
        _spec('idx_user_email', ('email', ASCENDING), unique=True, sparse=True),
        _spec('idx_user_type', ('type', ASCENDING)),
        _spec('idx_user_status', ('status', ASCENDING)),
    ),
    'bins': (
        _spec('idx_bin_id', ('id', ASCENDING), unique=True),
        _spec('idx_bin_location_text', ('location', TEXT)),
        _spec('idx_bin_coords', ('lat', ASCENDING), ('lng', ASCENDING)),
        _spec('idx_bin_status', ('status', ASCENDING)),
        _spec('idx_bin_type', ('type', ASCENDING)),
    ),
    'routes': (
        _spec('idx_route_id', ('id', ASCENDING), unique=True),
        _spec('idx_route_driver', ('driverId', ASCENDING)),
        _spec('idx_route_status', ('status', ASCENDING)),
        _spec('idx_route_created', ('createdAt', DESCENDING)),
    ),
    'collections': (
        _spec('idx_collection_id', ('id', ASCENDING), unique=True),
        _spec('idx_collection_bin', ('binId', ASCENDING)),
        _spec('idx_collection_driver', ('driverId', ASCENDING)),
        _spec('idx_collection_time', ('timestamp', DESCENDING)),
    ),
    'complaints': (
        _spec('idx_complaint_id', ('id', ASCENDING), unique=True),
        _spec('idx_complaint_status', ('status', ASCENDING)),
        _spec('idx_complaint_created', ('createdAt', DESCENDING)),
    ),
    'alerts': (
        _spec('idx_alert_id', ('id', ASCENDING), unique=True),
        _spec('idx_alert_type', ('type', ASCENDING)),
        _spec('idx_alert_status', ('status', ASCENDING)),
        _spec('idx_alert_time', ('timestamp', DESCENDING)),
    ),
    'sensors': (
        _spec('idx_sensor_imei', ('imei', ASCENDING), unique=True, sparse=True),
        _spec('idx_sensor_bin', ('binId', ASCENDING)),
    ),
}

# Auto-generated names known to have been created by earlier schemas, in
# addition to the auto-generated name of every canonical index.
KNOWN_LEGACY_INDEXES: Dict[str, Tuple[str, ...]] = {
    'users': ('email_1', 'id_1', 'username_1', 'type_1', 'status_1'),
    'bins': ('id_1', 'lat_1_lng_1', 'status_1'),
    'routes': ('id_1', 'driverId_1', 'status_1'),
    'collections': ('id_1', 'binId_1', 'driverId_1'),
    'sensors': ('imei_1', 'binId_1', 'email_1'),
}


def legacy_index_names(collection_name: str) -> List[str]:
    """Index names on `collection_name` that are treated as stale."""
    names = dict.fromkeys(KNOWN_LEGACY_INDEXES.get(collection_name, ()))
    for spec in INDEX_PLAN.get(collection_name, ()):
        names.setdefault(spec.legacy_name)
    return list(names)


@dataclass
class IndexReport:
    """Outcome of provisioning one collection's indexes."""
    collection: str
    created: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'collection': self.collection,
            'created': list(self.created),
            'dropped': list(self.dropped),
            'failed': dict(self.failed),
        }


class IndexProvisioner:
    """
    Brings each collection's indexes in line with INDEX_PLAN.

    Per collection: drop stale indexes (legacy names, or canonical names with
    a different definition), then create every canonical index, dropping and
    retrying once on an index conflict.
    """

    def __init__(
        self,
        plan: Optional[Dict[str, Tuple[IndexSpec, ...]]] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.plan = plan if plan is not None else INDEX_PLAN
        self.logger = log or logger

    async def provision(self, db, collections: Optional[Iterable[str]] = None) -> Dict[str, IndexReport]:
        """
        Provision indexes for `collections` (default: every planned collection).

        Returns:
            Dict of collection name -> IndexReport
        """
        self.logger.info("Creating database indexes...")
        names = list(collections) if collections is not None else list(self.plan)

        reports = {}
        for name in names:
            specs = self.plan.get(name)
            if not specs:
                continue
            reports[name] = await self.provision_collection(db[name], specs)

        failed = sum(len(report.failed) for report in reports.values())
        if failed:
            self.logger.warning(f"Index provisioning finished with {failed} failure(s)")
        else:
            self.logger.info("All indexes created successfully")
        return reports

    async def provision_collection(self, collection, specs: Tuple[IndexSpec, ...]) -> IndexReport:
        report = IndexReport(collection=collection.name)

        try:
            existing = await collection.index_information()
        except PyMongoError as e:
            self.logger.warning(f"{collection.name}: could not read existing indexes: {e}")
            existing = {}

        if existing:
            self.logger.debug(f"{collection.name}: current indexes {preview_items(existing, limit=10)}")

        for name in self._stale_indexes(collection.name, specs, existing):
            if await self._drop(collection, name):
                report.dropped.append(name)
                existing.pop(name, None)

        for spec in specs:
            if spec.name in existing:
                continue
            await self._create(collection, spec, report)

        return report

    def _stale_indexes(self, collection_name: str, specs, existing: Dict[str, Any]) -> List[str]:
        legacy = set(legacy_index_names(collection_name))
        by_name = {spec.name: spec for spec in specs}

        stale = []
        for name, info in existing.items():
            if name == '_id_':
                continue
            if name in legacy:
                stale.append(name)
            elif name in by_name and not by_name[name].matches(info):
                self.logger.info(f"{collection_name}: index {name} has an outdated definition")
                stale.append(name)
        return stale

    async def _drop(self, collection, name: str) -> bool:
        try:
            await collection.drop_index(name)
        except PyMongoError as e:
            self.logger.warning(f"{collection.name}: could not drop index {name}: {e}")
            return False
        self.logger.info(f"{collection.name}: dropped stale index {name}")
        return True

    async def _create(self, collection, spec: IndexSpec, report: IndexReport) -> None:
        for attempt in (1, 2):
            try:
                await collection.create_index(
                    list(spec.keys), name=spec.name, unique=spec.unique, sparse=spec.sparse
                )
                report.created.append(spec.name)
                return
            except OperationFailure as e:
                if attempt == 1 and e.code in INDEX_CONFLICT_CODES:
                    conflicting = await self._find_conflict(collection, spec)
                    if conflicting and await self._drop(collection, conflicting):
                        report.dropped.append(conflicting)
                        continue
                self._record_failure(collection.name, spec, e, report)
                return
            except PyMongoError as e:
                self._record_failure(collection.name, spec, e, report)
                return

    async def _find_conflict(self, collection, spec: IndexSpec) -> Optional[str]:
        """Name of the existing index sharing `spec`'s name or key pattern."""
        try:
            existing = await collection.index_information()
        except PyMongoError:
            return None
        if spec.name in existing:
            return spec.name
        for name, info in existing.items():
            if name != '_id_' and _key_pattern(info) == spec.key_pattern():
                return name
        return None

    def _record_failure(self, collection_name: str, spec: IndexSpec, error: Exception, report: IndexReport) -> None:
        report.failed[spec.name] = str(error)
        self.logger.warning(f"{collection_name}: index {spec.name} could not be created: {error}")
        if spec.unique:
            self.logger.warning(
                f"{collection_name}: unique index {spec.name} is missing; "
                f"duplicate identities are no longer rejected by the database"
            )


async def provision_indexes(db, log: Optional[logging.Logger] = None) -> Dict[str, IndexReport]:
    """Provision every planned collection's indexes."""
    return await IndexProvisioner(log=log).provision(db)


async def cleanup_indexes(db, log: Optional[logging.Logger] = None) -> Dict[str, IndexReport]:
    """
    Drop legacy auto-named indexes and recreate the canonical ones on every
    planned collection, independent of a migration run.
    """
    log = log or logger
    log.info("Cleaning up indexes...")
    reports = await IndexProvisioner(log=log).provision(db)
    for name, report in reports.items():
        log.info(
            f"{name}: dropped {len(report.dropped)}, created {len(report.created)}, "
            f"failed {len(report.failed)}"
        )
    return reports
