"""
Shared utility functions for qbt-reconciler
"""

import re
import logging
from typing import List, Union, Iterable


_SEPARATORS = re.compile(r'[._\-]')
_WHITESPACE = re.compile(r'\s+')

_DURATION_UNITS = {
    's': 1, 'sec': 1, 'second': 1,
    'm': 60, 'min': 60, 'minute': 60,
    'h': 3600, 'hour': 3600,
    'd': 86400, 'day': 86400,
    'w': 604800, 'week': 604800,
}


def parse_tags(tags_str: str) -> List[str]:
    """
    Parse a qBittorrent tag string into a list

    Args:
        tags_str: Comma-separated tags as returned by the Web API ("a, b")

    Returns:
        List of non-empty, stripped tag strings
    """
    if not tags_str or not tags_str.strip():
        return []
    return [tag.strip() for tag in tags_str.split(',') if tag.strip()]


def normalize_path(path: str) -> str:
    """
    Normalize a path for comparison

    Lowercases, converts backslashes to forward slashes and strips one
    trailing slash, so "D:\\Movies\\" and "d:/movies" compare equal.
    """
    if not path:
        return ''
    path = path.lower().replace('\\', '/')
    if path.endswith('/'):
        path = path[:-1]
    return path


def content_basename(content_path: str) -> str:
    """Last component of a normalized content path"""
    normalized = normalize_path(content_path)
    if not normalized:
        return ''
    return normalized.rsplit('/', 1)[-1]


def normalize_name(name: str) -> str:
    """
    Normalize a torrent name for fuzzy comparison

    Lowercase, replace '.', '_' and '-' with spaces, collapse whitespace.

    Examples:
        >>> normalize_name('Some.Movie_2024-1080p')
        'some movie 2024 1080p'
    """
    name = _SEPARATORS.sub(' ', name.lower())
    return _WHITESPACE.sub(' ', name).strip()


def contains_fold(items: Iterable[str], candidate: str) -> bool:
    """Case-insensitive membership test; an empty candidate never matches"""
    if not candidate:
        return False
    candidate = candidate.lower()
    return any(item.strip().lower() == candidate for item in items)


def parse_duration(duration: Union[str, int, float, None], default: int = 0) -> int:
    """
    Parse a duration into seconds

    Args:
        duration: Seconds as a number, or a string like "30 days", "15m", "2 hours"
        default: Returned when the value is empty or unparseable

    Returns:
        Duration in seconds

    Examples:
        >>> parse_duration("2 minutes")
        120
        >>> parse_duration("15m")
        900
        >>> parse_duration(45)
        45
    """
    if duration is None or duration == '':
        return default

    if isinstance(duration, bool):
        return default

    if isinstance(duration, (int, float)):
        return int(duration)

    text = str(duration).lower().strip()
    if text.isdigit():
        return int(text)

    match = re.fullmatch(r'(\d+)\s*([a-z]+?)s?', text)
    if not match or match.group(2) not in _DURATION_UNITS:
        logging.warning(f"Invalid duration format: {duration}, defaulting to {default}")
        return default

    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def limit_batch(hashes: List[str], max_size: int) -> List[List[str]]:
    """
    Split hashes into chunks of at most max_size

    Args:
        hashes: Torrent hashes
        max_size: Maximum chunk length (<= 0 disables chunking)

    Returns:
        List of hash chunks
    """
    if max_size <= 0 or len(hashes) <= max_size:
        return [list(hashes)]
    return [list(hashes[i:i + max_size]) for i in range(0, len(hashes), max_size)]


def format_bytes(bytes_count: int) -> str:
    """
    Format bytes into human-readable string

    Args:
        bytes_count: Number of bytes

    Returns:
        Formatted string like "1.50 GB"
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(bytes_count) < 1024.0:
            return f"{bytes_count:.2f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.2f} PB"


def format_duration(seconds: int) -> str:
    """
    Format seconds into human-readable duration

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "2d 5h 30m"
    """
    if seconds < 60:
        return f"{seconds}s"

    parts = []

    days = seconds // 86400
    if days > 0:
        parts.append(f"{days}d")
        seconds %= 86400

    hours = seconds // 3600
    if hours > 0:
        parts.append(f"{hours}h")
        seconds %= 3600

    minutes = seconds // 60
    if minutes > 0:
        parts.append(f"{minutes}m")

    return " ".join(parts)
