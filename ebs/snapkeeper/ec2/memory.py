"""
In-memory ResourceApi implementation for testing.

This module provides a dict-backed resource API for:
- Unit tests of the backup and cleanup passes
- Local experiments without AWS credentials

Invariants:
    - Listings are paginated with the configured page size, in insertion order
    - Continuation tokens stay valid while earlier items are deleted
    - Scripted failures are consumed in order, one per call
    - Every mutating call is recorded for assertions

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep the interface compatible with the ResourceApi protocol
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field

from .base import Page, ResourceApiError, Snapshot, Volume

logger = logging.getLogger(__name__)


@dataclass
class CallLog:
    """Record of mutating calls made against the in-memory API."""

    created: list[tuple[str, str]] = field(default_factory=list)
    tagged: list[tuple[tuple[str, ...], dict[str, str]]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    create_attempts: list[str] = field(default_factory=list)
    volume_list_tokens: list[str | None] = field(default_factory=list)
    snapshot_list_tokens: list[str | None] = field(default_factory=list)


class InMemoryResourceApi:
    """In-memory implementation of ResourceApi.

    Attributes:
        page_size: Maximum items returned per listing call
        volumes: Volumes keyed by id
        snapshots: Snapshots keyed by id
        owners: Owner id per snapshot id (defaults to "self")
        calls: Recorded calls

    Example:
        >>> api = InMemoryResourceApi(page_size=2)
        >>> api.add_volume("vol-1", {"Backup": "daily"})
        >>> page = await api.list_volumes("Backup", ("daily", "monthly"))
    """

    def __init__(self, page_size: int = 100) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.page_size = page_size
        self.volumes: dict[str, Volume] = {}
        self.snapshots: dict[str, Snapshot] = {}
        self.owners: dict[str, str] = {}
        self.calls = CallLog()
        self._create_failures: dict[str, list[Exception]] = defaultdict(list)
        self._delete_failures: dict[str, Exception] = {}
        self._list_failures: list[Exception] = []
        self._snapshot_ids = itertools.count(1)
        self._sequence = itertools.count(1)
        self._order: dict[str, int] = {}

    def add_volume(self, volume_id: str, tags: Mapping[str, str] | None = None) -> Volume:
        """Register a volume."""
        volume = Volume(volume_id=volume_id, tags=dict(tags or {}))
        self.volumes[volume_id] = volume
        self._order.setdefault(volume_id, next(self._sequence))
        return volume

    def add_snapshot(
        self,
        snapshot_id: str,
        tags: Mapping[str, str] | None = None,
        owner: str = "self",
        volume_id: str | None = None,
    ) -> Snapshot:
        """Register an existing snapshot."""
        snapshot = Snapshot(snapshot_id=snapshot_id, tags=dict(tags or {}), volume_id=volume_id)
        self.snapshots[snapshot_id] = snapshot
        self.owners[snapshot_id] = owner
        self._order.setdefault(snapshot_id, next(self._sequence))
        return snapshot

    def fail_create(self, volume_id: str, *errors: Exception) -> None:
        """Make the next create_snapshot calls for ``volume_id`` raise ``errors`` in order."""
        self._create_failures[volume_id].extend(errors)

    def fail_delete(self, snapshot_id: str, error: Exception) -> None:
        """Make every delete_snapshot call for ``snapshot_id`` raise ``error``."""
        self._delete_failures[snapshot_id] = error

    def fail_list(self, *errors: Exception) -> None:
        """Make the next listing calls raise ``errors`` in order."""
        self._list_failures.extend(errors)

    def _page(self, items: list, id_attr: str, next_token: str | None) -> Page:
        # The token is the insertion sequence of the last item handed out.
        after = int(next_token) if next_token else 0
        remaining = [item for item in items if self._order[getattr(item, id_attr)] > after]
        chunk = remaining[: self.page_size]
        token = None
        if len(remaining) > self.page_size:
            token = str(self._order[getattr(chunk[-1], id_attr)])
        return Page(items=chunk, next_token=token)

    def _check_list_failure(self) -> None:
        if self._list_failures:
            raise self._list_failures.pop(0)

    async def list_volumes(
        self,
        tag_key: str,
        tag_values: tuple[str, ...],
        next_token: str | None = None,
    ) -> Page[Volume]:
        self.calls.volume_list_tokens.append(next_token)
        self._check_list_failure()
        matching = [v for v in self.volumes.values() if v.tags.get(tag_key) in tag_values]
        page = self._page(matching, "volume_id", next_token)
        # Callers receive copies so tag writes must go through create_tags.
        page.items = [Volume(volume_id=v.volume_id, tags=dict(v.tags)) for v in page.items]
        return page

    async def list_snapshots(
        self,
        owner_ids: tuple[str, ...],
        next_token: str | None = None,
    ) -> Page[Snapshot]:
        self.calls.snapshot_list_tokens.append(next_token)
        self._check_list_failure()
        owned = [s for s in self.snapshots.values() if self.owners.get(s.snapshot_id) in owner_ids]
        page = self._page(owned, "snapshot_id", next_token)
        page.items = [
            Snapshot(snapshot_id=s.snapshot_id, tags=dict(s.tags), volume_id=s.volume_id)
            for s in page.items
        ]
        return page

    async def create_snapshot(self, volume_id: str, description: str) -> Snapshot:
        self.calls.create_attempts.append(volume_id)
        if self._create_failures.get(volume_id):
            raise self._create_failures[volume_id].pop(0)
        if volume_id not in self.volumes:
            raise ResourceApiError(
                f"Volume {volume_id} does not exist",
                code="InvalidVolume.NotFound",
                operation="create_snapshot",
            )

        snapshot_id = f"snap-{next(self._snapshot_ids):08d}"
        snapshot = self.add_snapshot(snapshot_id, volume_id=volume_id)
        self.calls.created.append((volume_id, description))
        logger.debug("InMemoryResourceApi created snapshot", extra={"snapshot_id": snapshot_id})
        return Snapshot(snapshot_id=snapshot.snapshot_id, volume_id=volume_id)

    async def create_tags(self, resource_ids: list[str], tags: Mapping[str, str]) -> None:
        for resource_id in resource_ids:
            resource = self.volumes.get(resource_id) or self.snapshots.get(resource_id)
            if resource is None:
                raise ResourceApiError(
                    f"Resource {resource_id} does not exist",
                    code="InvalidID",
                    operation="create_tags",
                )
            resource.tags.update(tags)
        self.calls.tagged.append((tuple(resource_ids), dict(tags)))

    async def delete_snapshot(self, snapshot_id: str) -> None:
        if snapshot_id in self._delete_failures:
            raise self._delete_failures[snapshot_id]
        if snapshot_id not in self.snapshots:
            raise ResourceApiError(
                f"Snapshot {snapshot_id} does not exist",
                code="InvalidSnapshot.NotFound",
                operation="delete_snapshot",
            )
        del self.snapshots[snapshot_id]
        self.owners.pop(snapshot_id, None)
        self.calls.deleted.append(snapshot_id)
