"""
Backup and retention policy.

Pure functions deciding which volumes are due for a backup, which tags a new
snapshot receives and whether an existing snapshot has expired. The
decisions never read the clock: callers capture ``now`` once per pass and
pass it in.

Policy:
    - Monthly volumes are only backed up on the 1st of the month
    - At most one backup per volume per calendar day
    - Snapshots taken on January 1st never expire
    - Monthly snapshots and snapshots taken on the 1st are kept a year
    - All other snapshots are kept a month

How to change safely:
    - Tag values written here are read back by later passes, possibly by an
      older release; only add tags, never change the format of existing ones
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Mapping
from datetime import date, datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)

BACKUP_TAG = "Backup"
LAST_BACKUP_TAG = "LastBackup"
NAME_TAG = "Name"
FREQUENCY_TAG = "Frequency"
EXPIRES_TAG = "Expires"

EPOCH = "1970-01-01"

# Resource selection is fixed: volumes opt in through their Backup tag and
# only snapshots owned by this account are ever swept.
BACKUP_TAG_VALUES = ("daily", "monthly")
SNAPSHOT_OWNERS = ("self",)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackupFrequency(Enum):
    """Backup cadence selected by a volume's Backup tag."""

    DAILY = "daily"
    MONTHLY = "monthly"

    @classmethod
    def from_tags(cls, tags: Mapping[str, str]) -> BackupFrequency:
        """Monthly if the Backup tag says so (any case), daily otherwise."""
        value = tags.get(BACKUP_TAG)
        if value is not None and value.lower() == cls.MONTHLY.value:
            return cls.MONTHLY
        return cls.DAILY


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 date or date-time tag value.

    Returns None for missing, empty or malformed values. A trailing ``Z``
    is accepted as UTC.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def as_local(moment: datetime) -> datetime:
    """Return ``moment`` as an aware datetime in the local timezone.

    Naive datetimes are taken to already be local time.
    """
    return moment.astimezone()


def local_date(moment: datetime) -> date:
    """Calendar date of ``moment`` in local time."""
    if moment.tzinfo is None:
        return moment.date()
    return as_local(moment).date()


def last_backup(tags: Mapping[str, str]) -> datetime:
    """When the volume was last backed up, the epoch if never or unreadable."""
    raw = tags.get(LAST_BACKUP_TAG, EPOCH)
    parsed = parse_timestamp(raw)
    if parsed is None:
        logger.warning("Unreadable LastBackup tag, treating as never backed up", extra={"value": raw})
        parsed = datetime.fromisoformat(EPOCH)
    return parsed


def is_due(tags: Mapping[str, str], today: date) -> bool:
    """Decide whether a volume with ``tags`` needs a backup on ``today``."""
    # Monthly backups only fire on the first day of the month
    if BackupFrequency.from_tags(tags) is BackupFrequency.MONTHLY and today.day != 1:
        return False

    return local_date(last_backup(tags)) != today


def add_months(moment: datetime, months: int) -> datetime:
    """Move ``moment`` forward by calendar months, clamping the day.

    Jan 31 + 1 month is Feb 28 (or 29); Feb 29 + 12 months is Feb 28.
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def expiry_for(frequency: BackupFrequency, now: datetime) -> datetime | None:
    """Retention deadline for a snapshot taken at ``now``, None to keep forever."""
    if now.tzinfo is not None:
        now = as_local(now)
    if now.month == 1 and now.day == 1:
        return None

    if frequency is BackupFrequency.MONTHLY or now.day == 1:
        return add_months(now, 12)
    return add_months(now, 1)


def snapshot_description(frequency: BackupFrequency) -> str:
    return f"Automated {frequency.value} snapshot."


def snapshot_tags(volume_tags: Mapping[str, str], now: datetime) -> dict[str, str]:
    """Tags for a snapshot of a volume with ``volume_tags`` taken at ``now``."""
    frequency = BackupFrequency.from_tags(volume_tags)
    tags = {FREQUENCY_TAG: frequency.value}

    expires = expiry_for(frequency, now)
    if expires is not None:
        tags[EXPIRES_TAG] = expires.isoformat()

    if NAME_TAG in volume_tags:
        tags[NAME_TAG] = volume_tags[NAME_TAG]
    return tags


def expires_at(tags: Mapping[str, str]) -> datetime | None:
    """Parsed Expires tag, None when absent or malformed."""
    return parse_timestamp(tags.get(EXPIRES_TAG))


def is_expired(tags: Mapping[str, str], now: datetime) -> bool:
    """Whether a snapshot with ``tags`` may be deleted at ``now``.

    Snapshots without a readable Expires tag are never expired.
    """
    deadline = expires_at(tags)
    if deadline is None:
        return False
    return as_local(deadline) <= as_local(now)
