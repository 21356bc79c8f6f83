"""
Commit message and timestamp normalization.

Used by candidate discovery to compare commit messages across repositories
whose histories may have been lightly edited on the way over.
"""
import re
from datetime import datetime, timezone

from config import Config


ROLE_PREFIX_PATTERN = re.compile(
    r'^(merge|revert|update|fix|add|remove|delete|create|initial):\s*',
    re.IGNORECASE,
)

VERSION_PATTERN = re.compile(r'^v?\d+\.\d+')


def normalize_message(message: str) -> str:
    """
    Normalize a commit message for cross-repository comparison.

    Lowercase, trim, strip a leading role prefix such as "fix:" or
    "Merge:", then cut to 100 characters. Stacked prefixes are stripped
    until none is left so normalizing twice gives the same result.
    """
    normalized = (message or '').lower().strip()
    while True:
        stripped = ROLE_PREFIX_PATTERN.sub('', normalized, count=1).strip()
        if stripped == normalized:
            break
        normalized = stripped
    return normalized[:Config.MESSAGE_MAX_LENGTH].rstrip()


def first_line(message: str) -> str:
    """First line of a commit message."""
    return (message or '').split('\n', 1)[0]


def is_trivial_message(normalized: str) -> bool:
    """
    True for normalized messages too generic to count as evidence:
    short ones, boilerplate first commits and bare version bumps.
    """
    if len(normalized) <= 10:
        return True
    if any(normalized.startswith(prefix) for prefix in Config.TRIVIAL_MESSAGE_PREFIXES):
        return True
    return bool(VERSION_PATTERN.match(normalized))


def to_utc(value: datetime) -> datetime:
    """Aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_minute(value: datetime) -> datetime:
    """Drop seconds and microseconds: the matching granularity for commit timestamps."""
    return to_utc(value).replace(second=0, microsecond=0)
