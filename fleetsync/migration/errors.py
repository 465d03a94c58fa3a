"""Fatal errors that abort a migration run.

Everything else (batch failures, per-record failures, index and backup
problems) is converted into tallies and warnings and never raised.
"""


class MigrationError(Exception):
    """Base class for errors that abort a run."""


class SourceLoadError(MigrationError):
    """The JSON source could not be read or parsed."""


class TargetConnectionError(MigrationError):
    """The target MongoDB deployment was unreachable at connect time."""
