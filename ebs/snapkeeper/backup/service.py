"""
Backup pass for SnapKeeper.

The BackupService walks every volume opted in through its Backup tag and
snapshots the ones that are due:

    1. List tagged volumes, page by page
    2. Decide per volume whether a backup is due today
    3. Create the snapshot, waiting out rate limiting
    4. Tag the snapshot with Frequency, Expires and Name
    5. Tag the volume with LastBackup

Invariants:
    - "now" is captured once at the start of the pass
    - Volumes are processed sequentially in listing order
    - LastBackup is written only after the snapshot is tagged
    - One successful create_snapshot call per due volume per pass

How to change safely:
    - Never move the LastBackup write before the snapshot tagging
    - Two concurrent passes can both snapshot the same volume; keep the
      scheduler from overlapping runs
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import BackupConfig
from ..ec2.base import (
    RateLimitedError,
    ResourceApi,
    RetryExhaustedError,
    Snapshot,
    Volume,
    paginate,
)
from ..policy import (
    BACKUP_TAG,
    BACKUP_TAG_VALUES,
    LAST_BACKUP_TAG,
    BackupFrequency,
    is_due,
    local_date,
    snapshot_description,
    snapshot_tags,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupReport:
    """Outcome of one backup pass.

    Attributes:
        started_at: Moment the pass captured as "now"
        examined: Volumes listed
        created: Snapshots created and tagged
        skipped: Volumes not due
        failed: Volumes given up on after retry exhaustion
        snapshot_ids: Created snapshot ids, in creation order
        duration_ms: Wall time of the pass
    """

    started_at: datetime
    examined: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    snapshot_ids: list[str] = field(default_factory=list)
    failed_volume_ids: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "examined": self.examined,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "snapshot_ids": list(self.snapshot_ids),
            "failed_volume_ids": list(self.failed_volume_ids),
            "duration_ms": self.duration_ms,
        }


class BackupService:
    """Creates snapshots for volumes that are due for a backup.

    Attributes:
        api: ResourceApi to run against
        config: BackupConfig

    Example:
        >>> service = BackupService(api, BackupConfig())
        >>> report = await service.run()
        >>> print(report.created)
    """

    def __init__(
        self,
        api: ResourceApi,
        config: BackupConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            api: ResourceApi implementation
            config: Backup configuration (defaults if not provided)
            clock: Returns the current time; read once per pass and for LastBackup
            sleep: Awaited between rate-limited attempts
        """
        self.api = api
        self.config = config or BackupConfig()
        self._clock = clock
        self._sleep = sleep

    async def run(self) -> BackupReport:
        """Run one backup pass over every tagged volume.

        Returns:
            BackupReport summarising the pass

        Raises:
            ResourceApiError: If listing, tagging or a non-throttled creation
                fails; the pass stops at that volume
        """
        now = self._clock()
        today = local_date(now)
        report = BackupReport(started_at=now)
        started = time.monotonic()

        logger.info("Starting backup pass", extra={"today": today.isoformat()})

        async for page in paginate(self._list_volumes):
            for volume in page.items:
                report.examined += 1

                if not is_due(volume.tags, today):
                    logger.debug(f"{volume.volume_id} is fine.")
                    report.skipped += 1
                    continue

                logger.info(f"{volume.volume_id} needs a backup.")
                try:
                    snapshot = await self.make_snapshot(volume, now)
                except RetryExhaustedError as e:
                    logger.error(e.message, extra=e.details)
                    report.failed += 1
                    report.failed_volume_ids.append(volume.volume_id)
                    continue

                logger.info(f"{volume.volume_id} snapshot created.")
                report.created += 1
                report.snapshot_ids.append(snapshot.snapshot_id)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Backup pass finished", extra={"report": report.to_dict()})
        return report

    async def _list_volumes(self, next_token: str | None):
        return await self.api.list_volumes(BACKUP_TAG, BACKUP_TAG_VALUES, next_token)

    async def make_snapshot(self, volume: Volume, now: datetime) -> Snapshot:
        """Snapshot ``volume`` and commit the backup through its tags.

        Args:
            volume: Volume to back up
            now: Pass start, used for the retention decision

        Returns:
            The created snapshot

        Raises:
            RetryExhaustedError: If every attempt was rate-limited; no tags
                are written in that case
            ResourceApiError: For any other API failure
        """
        frequency = BackupFrequency.from_tags(volume.tags)
        snapshot = await self.create_with_retry(volume.volume_id, snapshot_description(frequency))

        tags = snapshot_tags(volume.tags, now)
        await self.api.create_tags([snapshot.snapshot_id], tags)
        logger.debug(
            "Tagged snapshot",
            extra={"snapshot_id": snapshot.snapshot_id, "volume_id": volume.volume_id, **tags},
        )

        # Marks the volume as backed up; must stay last
        await self.api.create_tags(
            [volume.volume_id],
            {LAST_BACKUP_TAG: self._clock().isoformat()},
        )
        snapshot.tags.update(tags)
        return snapshot

    async def create_with_retry(self, volume_id: str, description: str) -> Snapshot:
        """Create a snapshot, waiting and retrying while rate-limited.

        Raises:
            RetryExhaustedError: After max_attempts rate-limited attempts
            ResourceApiError: Immediately, for any other failure
        """
        attempts = self.config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self.api.create_snapshot(volume_id, description)
            except RateLimitedError:
                if attempt == attempts:
                    break
                logger.warning(
                    f"{volume_id} snapshot request rate-limited. "
                    f"Waiting {self.config.retry_delay_seconds:g} seconds.",
                    extra={"volume_id": volume_id, "attempt": attempt},
                )
                await self._sleep(self.config.retry_delay_seconds)

        raise RetryExhaustedError(volume_id, attempts)
