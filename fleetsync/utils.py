"""
fleetsync Utility Functions
===========================
Common helpers shared by the migration modules and the CLI.
"""

import re
from datetime import datetime, timezone
from typing import Iterable, Optional

_CREDENTIALS_PATTERN = re.compile(r'//.*@')


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Format a datetime as ISO-8601 UTC with millisecond precision.

    Args:
        moment: Datetime to format (default: now)

    Returns:
        String like "2025-03-01T12:30:45.123Z"

    Examples:
        >>> iso_timestamp(datetime(2025, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc))
        '2025-03-01T12:30:45.123Z'
    """
    moment = moment or utc_now()
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def filesystem_timestamp(moment: Optional[datetime] = None) -> str:
    """
    ISO timestamp safe to embed in a file name (colons and periods replaced).

    Examples:
        >>> filesystem_timestamp(datetime(2025, 3, 1, 12, 30, 45, 123000, tzinfo=timezone.utc))
        '2025-03-01T12-30-45-123Z'
    """
    return re.sub(r'[:.]', '-', iso_timestamp(moment))


def mask_connection_string(connection_string: str) -> str:
    """Hide the credentials part of a MongoDB URI for logging."""
    return _CREDENTIALS_PATTERN.sub('//***@', connection_string)


def format_file_size(size_bytes: int) -> str:
    """
    Convert bytes to human-readable format with auto-unit selection.

    Args:
        size_bytes: Size in bytes (can be int or float)

    Returns:
        Human-readable string like "1.5 MB", "256 KB", "2.3 GB"

    Examples:
        >>> format_file_size(1024)
        '1.0 KB'
        >>> format_file_size(0)
        '0 B'
    """
    if size_bytes == 0:
        return "0 B"

    size = float(size_bytes)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(size) < 1024.0:
            if unit == 'B':
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def format_duration(seconds: float) -> str:
    """
    Convert seconds to human-readable duration.

    Args:
        seconds: Duration in seconds

    Returns:
        Human-readable string like "2.5s", "1m 30s", "2h 15m"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def preview_items(items: Iterable, limit: int = 5) -> str:
    """Comma-joined preview of the first `limit` items, '...' when truncated."""
    items = list(items)
    text = ', '.join(str(item) for item in items[:limit])
    if len(items) > limit:
        text += '...'
    return text
