"""
Base protocol and types for the EC2 resource API abstraction.

This module defines the ResourceApi protocol that both the aiobotocore
adapter and the in-memory implementation provide, along with the resource
types, the paginated result type and the error taxonomy.

Invariants:
    - Volume and Snapshot carry their tags as a plain key -> value mapping
    - A Page with a falsy next_token is the last page of a listing
    - Every provider failure surfaces as a ResourceApiError subclass

How to change safely:
    - Protocol changes require updating every implementation
    - Keep error codes stable, callers branch on the exception type
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# EC2 error code for throttled snapshot creation on a single volume
DEFAULT_RATE_LIMIT_CODE = "SnapshotCreationPerVolumeRateExceeded"


class SnapKeeperError(Exception):
    """Base exception for all SnapKeeper errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SNAPKEEPER_ERROR"
        self.details = details or {}


class ResourceApiError(SnapKeeperError):
    """A resource API call failed and will not be retried."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code or "RESOURCE_API_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class ResourceApiConnectionError(ResourceApiError):
    """The resource API client could not be opened."""


class RateLimitedError(ResourceApiError):
    """Snapshot creation was throttled by the provider."""


class RetryExhaustedError(SnapKeeperError):
    """Every snapshot creation attempt for a volume was rate-limited.

    Attributes:
        volume_id: Volume that could not be snapshotted
        attempts: Number of attempts made
    """

    def __init__(self, volume_id: str, attempts: int) -> None:
        super().__init__(
            f"Snapshot creation for {volume_id} still rate-limited after {attempts} attempts",
            code="RETRY_EXHAUSTED",
            details={"volume_id": volume_id, "attempts": attempts},
        )
        self.volume_id = volume_id
        self.attempts = attempts


def tags_to_dict(tags: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    """Convert an EC2 ``[{"Key": ..., "Value": ...}]`` list into a dict.

    Entries without a Value are kept with an empty string, entries without
    a Key are dropped.
    """
    result: dict[str, str] = {}
    for tag in tags or ():
        key = tag.get("Key")
        if key is None:
            continue
        result[key] = tag.get("Value", "")
    return result


def dict_to_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    """Convert a tag dict into the EC2 ``[{"Key": ..., "Value": ...}]`` shape."""
    return [{"Key": key, "Value": value} for key, value in tags.items()]


@dataclass
class Volume:
    """A block-storage volume opted into backups by tag.

    Attributes:
        volume_id: EC2 volume identifier (vol-...)
        tags: Tag key -> value mapping
    """

    volume_id: str
    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Volume:
        """Create from a describe_volumes item."""
        return cls(volume_id=data["VolumeId"], tags=tags_to_dict(data.get("Tags")))

    def __str__(self) -> str:
        return self.volume_id


@dataclass
class Snapshot:
    """A point-in-time snapshot of a volume.

    Attributes:
        snapshot_id: EC2 snapshot identifier (snap-...)
        tags: Tag key -> value mapping
        volume_id: Source volume, when the provider reports it
        start_time: Creation time, when the provider reports it
    """

    snapshot_id: str
    tags: dict[str, str] = field(default_factory=dict)
    volume_id: str | None = None
    start_time: datetime | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Snapshot:
        """Create from a create_snapshot response or describe_snapshots item."""
        return cls(
            snapshot_id=data["SnapshotId"],
            tags=tags_to_dict(data.get("Tags")),
            volume_id=data.get("VolumeId"),
            start_time=data.get("StartTime"),
        )

    def __str__(self) -> str:
        return self.snapshot_id


@dataclass
class Page(Generic[T]):
    """One page of a listing.

    Attributes:
        items: Resources on this page, in provider order
        next_token: Continuation cursor, falsy on the last page
    """

    items: list[T]
    next_token: str | None = None


@runtime_checkable
class ResourceApi(Protocol):
    """Protocol for the cloud resource API the passes run against.

    Error contract:
        - create_snapshot raises RateLimitedError when throttled
        - every other failure raises ResourceApiError
    """

    @abstractmethod
    async def list_volumes(
        self,
        tag_key: str,
        tag_values: tuple[str, ...],
        next_token: str | None = None,
    ) -> Page[Volume]:
        """List volumes whose ``tag_key`` tag equals one of ``tag_values``."""
        ...

    @abstractmethod
    async def list_snapshots(
        self,
        owner_ids: tuple[str, ...],
        next_token: str | None = None,
    ) -> Page[Snapshot]:
        """List snapshots owned by ``owner_ids``."""
        ...

    @abstractmethod
    async def create_snapshot(self, volume_id: str, description: str) -> Snapshot:
        """Start a snapshot of a volume.

        Raises:
            RateLimitedError: If the provider throttled the request
            ResourceApiError: For any other failure
        """
        ...

    @abstractmethod
    async def create_tags(self, resource_ids: list[str], tags: Mapping[str, str]) -> None:
        """Upsert tags on resources."""
        ...

    @abstractmethod
    async def delete_snapshot(self, snapshot_id: str) -> None:
        """Delete a snapshot."""
        ...


async def paginate(
    fetch: Callable[[str | None], Awaitable[Page[T]]],
) -> AsyncIterator[Page[T]]:
    """Yield every page of a listing, following continuation tokens.

    The first call is made without a token; iteration stops once a page
    comes back with a falsy ``next_token``. Errors from ``fetch`` propagate.

    Example:
        >>> async for page in paginate(lambda token: api.list_snapshots(("self",), token)):
        ...     handle(page.items)
    """
    next_token: str | None = None
    page_number = 0
    while True:
        page = await fetch(next_token)
        page_number += 1
        logger.debug(
            "Fetched page",
            extra={"page": page_number, "items": len(page.items), "has_more": bool(page.next_token)},
        )
        yield page
        if not page.next_token:
            return
        next_token = page.next_token
