"""Configuration for fleetsync migration runs.

Settings resolve in order: dataclass defaults, environment (a ``.env`` file is
loaded first), an optional YAML file, then explicit overrides from the CLI.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .utils import mask_connection_string

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_CONNECTION_STRING = "mongodb://localhost:27017"
DEFAULT_DATABASE_NAME = "waste_management"
DEFAULT_SOURCE_PATH = PROJECT_ROOT / "data.json"
DEFAULT_BACKUP_DIR = PROJECT_ROOT / "backups"
MIGRATION_VERSION = "1.0.0"


@dataclass
class MigrationConfig:
    """Configuration for a JSON to MongoDB migration run.

    Attributes:
        connection_string: MongoDB URI (MONGODB_URI, then MONGODB_URL)
        database_name: Target database (MONGODB_DATABASE)
        source_path: JSON source-of-truth file
        backup_dir: Directory for backups, run logs and verification reports
        batch_size: Operations per unordered bulk write
        migration_version: Value stamped into every migrated document
        server_selection_timeout_ms: Driver server selection timeout
        connect_timeout_ms: Driver socket connect timeout
        max_backups: Source backups to retain (None keeps all)
        show_progress: Show a tqdm progress bar while reconciling
        log_level: Logging level name for the CLI
    """

    connection_string: str = DEFAULT_CONNECTION_STRING
    database_name: str = DEFAULT_DATABASE_NAME
    source_path: Path = field(default_factory=lambda: DEFAULT_SOURCE_PATH)
    backup_dir: Path = field(default_factory=lambda: DEFAULT_BACKUP_DIR)
    batch_size: int = 1000
    migration_version: str = MIGRATION_VERSION
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 10000
    max_backups: Optional[int] = None
    show_progress: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Normalize paths and validate values."""
        self.source_path = Path(self.source_path)
        self.backup_dir = Path(self.backup_dir)
        self.log_level = str(self.log_level).upper()

        if not self.connection_string:
            raise ValueError("connection_string must not be empty")

        if not self.database_name:
            raise ValueError("database_name must not be empty")

        if not 1 <= self.batch_size <= 100000:
            raise ValueError(f"batch_size must be 1-100000, got {self.batch_size}")

        if self.server_selection_timeout_ms <= 0 or self.connect_timeout_ms <= 0:
            raise ValueError("connection timeouts must be positive")

        if self.max_backups is not None and self.max_backups < 1:
            raise ValueError(f"max_backups must be at least 1, got {self.max_backups}")

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "MigrationConfig":
        """Build configuration from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (the ``.env`` file
                is only loaded when reading the real environment)

        Returns:
            MigrationConfig with environment values applied
        """
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        return cls(
            connection_string=(
                env.get("MONGODB_URI") or env.get("MONGODB_URL") or DEFAULT_CONNECTION_STRING
            ),
            database_name=env.get("MONGODB_DATABASE") or DEFAULT_DATABASE_NAME,
            log_level=env.get("FLEETSYNC_LOG_LEVEL") or "INFO",
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create MigrationConfig from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**data)

    def merged(self, **overrides: Any) -> "MigrationConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reports.

        Returns:
            Dict with configuration values (credentials masked)
        """
        return {
            "connection_string": mask_connection_string(self.connection_string),
            "database_name": self.database_name,
            "source_path": str(self.source_path),
            "backup_dir": str(self.backup_dir),
            "batch_size": self.batch_size,
            "migration_version": self.migration_version,
            "server_selection_timeout_ms": self.server_selection_timeout_ms,
            "connect_timeout_ms": self.connect_timeout_ms,
            "max_backups": self.max_backups,
            "show_progress": self.show_progress,
            "log_level": self.log_level,
        }

    @classmethod
    def from_file(cls, config_path: Path, base: Optional["MigrationConfig"] = None) -> "MigrationConfig":
        """
        Apply a YAML configuration file on top of `base`.

        Relative paths inside the file resolve against the file's directory.

        Args:
            config_path: Path to a YAML mapping of MigrationConfig fields
            base: Configuration the file overrides (default: dataclass defaults)

        Returns:
            MigrationConfig instance
        """
        path = Path(config_path)
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file must contain a mapping: {path}")

        for key in ("source_path", "backup_dir"):
            if key in data and not Path(data[key]).is_absolute():
                data[key] = path.parent / data[key]

        values = {f.name: getattr(base, f.name) for f in fields(cls)} if base else {}
        unknown = sorted(set(data) - {f.name for f in fields(cls)})
        if unknown:
            raise ValueError(f"Unknown configuration keys in {path}: {unknown}")
        values.update(data)
        return cls(**values)


def load_config(config_path: Optional[str] = None) -> MigrationConfig:
    """
    Load configuration from the environment and an optional YAML file.

    Args:
        config_path: Optional path to a YAML configuration file

    Returns:
        MigrationConfig instance
    """
    config = MigrationConfig.from_env()
    if not config_path:
        return config
    return MigrationConfig.from_file(config_path, base=config)
