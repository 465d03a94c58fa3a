"""
Migration Run Log
=================
Captures every record emitted under the ``fleetsync`` logger while a run is
active, keeps it in memory, and writes it out as a plain-text file when the
run ends.

Usage:
    run_log = MigrationLog()
    with run_log.capture():
        ...  # run the migration
    run_log.flush_to(backup_dir / "migration-log-<ts>.txt")
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..utils import iso_timestamp

PACKAGE_LOGGER = "fleetsync"

_active_run: ContextVar[Optional["MigrationLog"]] = ContextVar("fleetsync_active_run", default=None)

# logger name -> (active captures, level before the first one)
_captures: Dict[str, Tuple[int, int]] = {}
_captures_lock = threading.Lock()


@dataclass(frozen=True)
class MigrationLogEntry:
    """One timestamped, leveled line of the run log."""
    timestamp: str
    level: str
    message: str
    logger_name: str = PACKAGE_LOGGER

    def format_line(self) -> str:
        return f"[{self.timestamp}] [{self.level}] {self.message}"


class MigrationLog(logging.Handler):
    """
    Logging handler that buffers entries for the duration of one run.

    Entries are append-only. Every active handler sits on the package logger,
    so records are routed by context: a handler only keeps records emitted
    from the task or thread that entered its ``capture()``. Runs that overlap
    in one process (``asyncio.gather`` of two jobs) each get their own lines.
    """

    def __init__(self, level: int = logging.INFO):
        super().__init__(level=level)
        self._entries: List[MigrationLogEntry] = []
        self._entries_lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        return _active_run.get() is self and super().filter(record)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = MigrationLogEntry(
                timestamp=iso_timestamp(datetime.fromtimestamp(record.created, tz=timezone.utc)),
                level=record.levelname,
                message=record.getMessage(),
                logger_name=record.name,
            )
            with self._entries_lock:
                self._entries.append(entry)
        except Exception:
            self.handleError(record)

    @property
    def entries(self) -> List[MigrationLogEntry]:
        with self._entries_lock:
            return list(self._entries)

    def lines(self) -> List[str]:
        return [entry.format_line() for entry in self.entries]

    def count(self, level: str) -> int:
        """Number of entries at exactly `level` (e.g. "WARNING")."""
        return sum(1 for entry in self.entries if entry.level == level)

    @contextmanager
    def capture(self, logger_name: str = PACKAGE_LOGGER) -> Iterator["MigrationLog"]:
        """
        Attach to `logger_name` for the duration of the block.

        The logger is lowered to the handler's level if needed so INFO lines
        reach the run log; console handlers keep filtering on their own level.
        The logger's level is restored when the last overlapping capture ends.
        """
        target = logging.getLogger(logger_name)
        with _captures_lock:
            depth, saved_level = _captures.get(logger_name, (0, target.level))
            if target.getEffectiveLevel() > self.level:
                target.setLevel(self.level)
            _captures[logger_name] = (depth + 1, saved_level)
        target.addHandler(self)
        token = _active_run.set(self)
        try:
            yield self
        finally:
            _active_run.reset(token)
            target.removeHandler(self)
            with _captures_lock:
                depth, saved_level = _captures.pop(logger_name)
                if depth > 1:
                    _captures[logger_name] = (depth - 1, saved_level)
                else:
                    target.setLevel(saved_level)

    def flush_to(self, path: Path) -> Optional[Path]:
        """
        Write the buffered log to `path`.

        Returns:
            The written path, or None if the file could not be written
            (reported on the module logger, never raised).
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text('\n'.join(self.lines()) + '\n', encoding='utf-8')
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not write migration log {path}: {e}")
            return None
        return path
