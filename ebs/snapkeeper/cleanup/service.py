"""
Cleanup pass for SnapKeeper.

The CleanupService deletes snapshots whose Expires tag lies in the past.
Pages are handled one after another; deletions within a page run
concurrently, bounded by a semaphore.

Invariants:
    - Snapshots without a readable Expires tag are never deleted
    - Every deletion of a page is attempted before a failure is raised
    - The next page is not fetched after a failed deletion

How to change safely:
    - Keep the "absent Expires means keep" rule; January 1st snapshots rely on it
    - Only snapshots owned by this account are listed; keep it that way
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import CleanupConfig
from ..ec2.base import ResourceApi, Snapshot, paginate
from ..policy import EXPIRES_TAG, SNAPSHOT_OWNERS, expires_at, is_expired, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """Outcome of one cleanup pass.

    Attributes:
        started_at: Moment the pass captured as "now"
        examined: Snapshots listed
        deleted: Snapshots deleted (or that would be, in dry-run mode)
        retained: Snapshots not yet expired
        ignored: Snapshots without a readable Expires tag
        dry_run: Whether deletions were only logged
        deleted_ids: Deleted snapshot ids
        duration_ms: Wall time of the pass
    """

    started_at: datetime
    examined: int = 0
    deleted: int = 0
    retained: int = 0
    ignored: int = 0
    dry_run: bool = False
    deleted_ids: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "examined": self.examined,
            "deleted": self.deleted,
            "retained": self.retained,
            "ignored": self.ignored,
            "dry_run": self.dry_run,
            "deleted_ids": list(self.deleted_ids),
            "duration_ms": self.duration_ms,
        }


class CleanupService:
    """Deletes snapshots past their retention deadline.

    Attributes:
        api: ResourceApi to run against
        config: CleanupConfig

    Example:
        >>> report = await CleanupService(api).run()
    """

    def __init__(
        self,
        api: ResourceApi,
        config: CleanupConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.api = api
        self.config = config or CleanupConfig()
        self._clock = clock

    async def run(self) -> CleanupReport:
        """Run one cleanup pass over every owned snapshot.

        Raises:
            ResourceApiError: If a listing fails, or after a page in which
                at least one deletion failed
        """
        now = self._clock()
        report = CleanupReport(started_at=now, dry_run=self.config.dry_run)
        semaphore = asyncio.Semaphore(self.config.max_concurrent)
        started = time.monotonic()

        logger.info(
            "Starting cleanup pass",
            extra={"now": now.isoformat(), "dry_run": self.config.dry_run},
        )

        async for page in paginate(self._list_snapshots):
            report.examined += len(page.items)
            results = await asyncio.gather(
                *(self._sweep(snapshot, now, semaphore) for snapshot in page.items),
                return_exceptions=True,
            )

            errors = []
            for snapshot, result in zip(page.items, results):
                if isinstance(result, BaseException):
                    logger.error(
                        f"Failed to delete {snapshot.snapshot_id}: {result}",
                        extra={"snapshot_id": snapshot.snapshot_id},
                    )
                    errors.append(result)
                elif result == "deleted":
                    report.deleted += 1
                    report.deleted_ids.append(snapshot.snapshot_id)
                elif result == "retained":
                    report.retained += 1
                else:
                    report.ignored += 1

            if errors:
                raise errors[0]

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Cleanup pass finished", extra={"report": report.to_dict()})
        return report

    async def _list_snapshots(self, next_token: str | None):
        return await self.api.list_snapshots(SNAPSHOT_OWNERS, next_token)

    async def _sweep(
        self,
        snapshot: Snapshot,
        now: datetime,
        semaphore: asyncio.Semaphore,
    ) -> str:
        """Decide on one snapshot and delete it if expired.

        Returns:
            "ignored", "retained" or "deleted"
        """
        if expires_at(snapshot.tags) is None:
            if EXPIRES_TAG in snapshot.tags:
                logger.warning(
                    f"{snapshot.snapshot_id} has an unreadable Expires tag, ignoring it",
                    extra={"value": snapshot.tags[EXPIRES_TAG]},
                )
            return "ignored"

        if not is_expired(snapshot.tags, now):
            return "retained"

        if self.config.dry_run:
            logger.info(f"{snapshot.snapshot_id} expired, would delete (dry run)")
            return "deleted"

        async with semaphore:
            await self.api.delete_snapshot(snapshot.snapshot_id)
        logger.info(
            f"{snapshot.snapshot_id} deleted.",
            extra={"expires": snapshot.tags[EXPIRES_TAG]},
        )
        return "deleted"
