"""
Backup object naming and the tiered retention policy.

Backups are named dump-<database>-<YYYYMMDDHHMM>.sql.gz (UTC). The policy keeps:
- every backup from the last 24 hours
- the earliest backup of each day from the last 7 days
- the earliest backup of each week, forever

Everything else is eligible for deletion.
"""

import re
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Set

TIMESTAMP_FORMAT = '%Y%m%d%H%M'
DAY_FORMAT = '%Y%m%d'
WEEK_FORMAT = '%Y%W'

BACKUP_NAME_PATTERN = re.compile(r'(\d{12})\.sql\.gz\Z')

DAILY_WINDOW = timedelta(days=1)
WEEKLY_WINDOW = timedelta(days=7)


RetentionCandidate = namedtuple('RetentionCandidate', ['name', 'timestamp'])


def backup_filename(database: str, when: datetime) -> str:
    """Name of the backup object for a database taken at `when`."""
    return f"dump-{database}-{_as_utc(when).strftime(TIMESTAMP_FORMAT)}.sql.gz"


def pointer_filename(database: str) -> str:
    """Name of the object recording the most recent backup for a database."""
    return f"most-recent-dump-{database}.txt"


def is_backup_name(name: str, database: str) -> bool:
    """True for object names that belong to this database's backups."""
    return database in name and BACKUP_NAME_PATTERN.search(name) is not None


def parse_backup_timestamp(name: str) -> Optional[datetime]:
    """
    Extract the UTC timestamp from a backup object name.

    Returns:
        Aware datetime, or None if the name has no valid timestamp
    """
    match = BACKUP_NAME_PATTERN.search(name)
    if not match:
        return None

    try:
        parsed = datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return parsed.replace(tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _earliest_per_period(candidates: Iterable[RetentionCandidate], period_format: str) -> List[RetentionCandidate]:
    groups = {}
    for candidate in candidates:
        key = candidate.timestamp.strftime(period_format)
        groups.setdefault(key, []).append(candidate)

    return [
        min(group, key=lambda c: (c.timestamp.strftime(TIMESTAMP_FORMAT), c.name))
        for group in groups.values()
    ]


def select_backups_to_keep(candidates: Iterable[RetentionCandidate],
                           now: Optional[datetime] = None) -> Set[str]:
    """
    Apply the daily, weekly and forever tiers to a set of backups.

    Candidates without a timestamp are excluded from every tier, so they are
    never kept.

    Args:
        candidates: RetentionCandidate(name, timestamp) items; timestamp may be None
        now: Evaluation time (default: current UTC time)

    Returns:
        Names of the backups to keep
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    dated = [
        RetentionCandidate(c.name, _as_utc(c.timestamp))
        for c in candidates
        if c.timestamp is not None
    ]

    daily = [c for c in dated if c.timestamp >= now - DAILY_WINDOW]
    weekly = _earliest_per_period(
        [c for c in dated if c.timestamp >= now - WEEKLY_WINDOW],
        DAY_FORMAT
    )
    forever = _earliest_per_period(dated, WEEK_FORMAT)

    return {c.name for c in daily + weekly + forever}


def build_candidates(names: Iterable[str], database: str) -> List[RetentionCandidate]:
    """
    Turn a raw store listing into retention candidates for one database.

    Names that do not belong to the database's backups are dropped.
    """
    return [
        RetentionCandidate(name, parse_backup_timestamp(name))
        for name in names
        if is_backup_name(name, database)
    ]
