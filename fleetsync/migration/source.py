"""
Source Loader
=============

Reads the JSON source-of-truth and classifies each top-level value once, so
the reconcilers dispatch on a type instead of re-inspecting raw JSON.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import SourceLoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionSpec:
    """An array collection and the field that identifies its records."""
    name: str
    key_field: str
    unique: bool = True


# Reconciled in this order
ARRAY_COLLECTIONS: Tuple[CollectionSpec, ...] = (
    CollectionSpec('users', 'id'),
    CollectionSpec('bins', 'id'),
    CollectionSpec('routes', 'id'),
    CollectionSpec('collections', 'id'),
    CollectionSpec('complaints', 'id'),
    CollectionSpec('alerts', 'id'),
    CollectionSpec('sensors', 'imei'),
    CollectionSpec('systemLogs', 'id', unique=False),
    CollectionSpec('pendingRegistrations', 'id', unique=False),
)

OBJECT_MAPS: Tuple[str, ...] = ('driverLocations', 'analytics')

COLLECTION_SPECS: Dict[str, CollectionSpec] = {spec.name: spec for spec in ARRAY_COLLECTIONS}


@dataclass(frozen=True)
class ArrayCollection:
    """A top-level JSON array of entity records."""
    name: str
    records: Tuple[Any, ...] = ()

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class KeyValueMap:
    """A top-level JSON object mapping keys to arbitrary values."""
    name: str
    entries: Mapping[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class InvalidValue:
    """A top-level value that is neither an array nor an object."""
    name: str
    type_name: str

    def __len__(self) -> int:
        return 0


SourceValue = Union[ArrayCollection, KeyValueMap, InvalidValue]


def _json_type_name(value: Any) -> str:
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    return type(value).__name__


def classify_value(name: str, value: Any) -> SourceValue:
    """
    Classify one top-level JSON value.

    ``None`` (absent key or JSON null) becomes an empty value of the shape the
    catalogue expects for `name`.
    """
    if value is None:
        if name in OBJECT_MAPS:
            return KeyValueMap(name, MappingProxyType({}))
        return ArrayCollection(name, ())
    if isinstance(value, list):
        return ArrayCollection(name, tuple(value))
    if isinstance(value, dict):
        return KeyValueMap(name, MappingProxyType(dict(value)))
    return InvalidValue(name, _json_type_name(value))


@dataclass(frozen=True)
class SourceSnapshot:
    """Immutable view of the source file for one run."""
    path: Path
    values: Mapping[str, SourceValue]
    original_keys: Tuple[str, ...] = ()

    def get(self, name: str) -> SourceValue:
        value = self.values.get(name)
        if value is None:
            return classify_value(name, None)
        return value

    def counts(self) -> Dict[str, int]:
        """Record/entry count per catalogued name (0 for invalid values)."""
        names = [spec.name for spec in ARRAY_COLLECTIONS] + list(OBJECT_MAPS)
        return {name: len(self.get(name)) for name in names}

    @classmethod
    def from_data(cls, data: Dict[str, Any], path: Optional[Path] = None) -> "SourceSnapshot":
        """Build a snapshot from already-parsed JSON."""
        names = [spec.name for spec in ARRAY_COLLECTIONS] + list(OBJECT_MAPS)
        values = {name: classify_value(name, data.get(name)) for name in names}
        return cls(
            path=Path(path) if path else Path('<memory>'),
            values=MappingProxyType(values),
            original_keys=tuple(data.keys()),
        )


def load_snapshot(path: Path) -> SourceSnapshot:
    """
    Read and classify the JSON source file.

    Args:
        path: JSON file whose top level is an object

    Returns:
        SourceSnapshot for the run

    Raises:
        SourceLoadError: unreadable file, invalid JSON, or non-object top level
    """
    path = Path(path)
    logger.info(f"Loading data from {path}...")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except OSError as e:
        raise SourceLoadError(f"Cannot read source file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SourceLoadError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise SourceLoadError(
            f"Source file {path} must contain a JSON object, got {_json_type_name(data)}"
        )

    snapshot = SourceSnapshot.from_data(data, path)

    counts = snapshot.counts()
    logger.info(f"Data loaded: {json.dumps(counts)}")
    for name, value in snapshot.values.items():
        if isinstance(value, InvalidValue):
            logger.warning(f"{name}: expected array or object, found {value.type_name}")

    return snapshot


def record_identity(record: Any, key_field: str) -> Optional[Any]:
    """
    Identity of `record` under `key_field`, or None if it has no usable key.

    Missing, null and empty-string keys are unusable, as are values that
    cannot serve as an identity (lists, objects, booleans).
    """
    if not isinstance(record, dict):
        return None
    value = record.get(key_field)
    if value is None or value == '' or isinstance(value, (bool, list, dict)):
        return None
    return value


def is_hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True


def keyed_identities(collection: ArrayCollection, key_field: str) -> List[Any]:
    """Distinct identities of `collection` in first-seen order."""
    seen = {}
    for record in collection.records:
        identity = record_identity(record, key_field)
        if identity is not None and identity not in seen:
            seen[identity] = None
    return list(seen)
