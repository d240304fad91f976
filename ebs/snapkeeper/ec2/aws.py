"""
AWS EC2 implementation of the ResourceApi protocol.

Uses aiobotocore for async calls against the EC2 API.

Invariants:
    - NextToken is only sent when continuing a listing
    - ClientError codes are mapped onto the SnapKeeper error taxonomy
    - The original botocore exception is always chained

How to change safely:
    - Test against LocalStack or moto before deploying to AWS
    - Keep the throttling code configurable, AWS has renamed codes before
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from .base import (
    DEFAULT_RATE_LIMIT_CODE,
    Page,
    RateLimitedError,
    ResourceApiConnectionError,
    ResourceApiError,
    Snapshot,
    Volume,
    dict_to_tags,
)

logger = logging.getLogger(__name__)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class Ec2ResourceApi:
    """EC2 implementation of ResourceApi.

    Attributes:
        config: Ec2Config instance
        rate_limit_code: ClientError code treated as throttling on create_snapshot

    Example:
        >>> api = Ec2ResourceApi(Ec2Config(region="eu-west-1"))
        >>> await api.connect()
        >>> page = await api.list_snapshots(("self",))
        >>> await api.close()

    The adapter is also an async context manager:
        >>> async with Ec2ResourceApi(config) as api:
        ...     await api.delete_snapshot("snap-0123")
    """

    def __init__(
        self,
        config: Any,
        rate_limit_code: str = DEFAULT_RATE_LIMIT_CODE,
        client: Any | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            config: Ec2Config instance
            rate_limit_code: Error code signalling throttled snapshot creation
            client: Pre-built EC2 client (skips connect(), used by tests)
        """
        self.config = config
        self.rate_limit_code = rate_limit_code
        self._client = client
        self._client_ctx = None
        self._session = None

    @property
    def is_connected(self) -> bool:
        """Whether an EC2 client is available."""
        return self._client is not None

    async def connect(self) -> None:
        """Create the EC2 client.

        Raises:
            ResourceApiConnectionError: If the client cannot be created
        """
        if self._client is not None:
            return

        client_kwargs: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        try:
            self._session = get_session()
            client_ctx = self._session.create_client("ec2", **client_kwargs)
            self._client = await client_ctx.__aenter__()
            # Only an entered context is ever exited by close()
            self._client_ctx = client_ctx
        except (BotoCoreError, ClientError) as e:
            self._session = None
            raise ResourceApiConnectionError(
                f"Failed to create EC2 client: {e}", operation="connect"
            ) from e

        logger.info(
            "Connected to EC2",
            extra={
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the EC2 client."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client_ctx = None
        self._client = None
        self._session = None

    async def __aenter__(self) -> Ec2ResourceApi:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_client(self) -> Any:
        if self._client is None:
            raise ResourceApiConnectionError("Not connected to EC2", operation="connect")
        return self._client

    def _paging_kwargs(self, next_token: str | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if next_token:
            kwargs["NextToken"] = next_token
        if self.config.page_size:
            kwargs["MaxResults"] = self.config.page_size
        return kwargs

    async def list_volumes(
        self,
        tag_key: str,
        tag_values: tuple[str, ...],
        next_token: str | None = None,
    ) -> Page[Volume]:
        """List volumes tagged ``tag_key`` with one of ``tag_values``."""
        client = self._require_client()
        try:
            response = await client.describe_volumes(
                Filters=[{"Name": f"tag:{tag_key}", "Values": list(tag_values)}],
                **self._paging_kwargs(next_token),
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "describe_volumes") from e

        return Page(
            items=[Volume.from_api(item) for item in response.get("Volumes", [])],
            next_token=response.get("NextToken"),
        )

    async def list_snapshots(
        self,
        owner_ids: tuple[str, ...],
        next_token: str | None = None,
    ) -> Page[Snapshot]:
        """List snapshots owned by ``owner_ids``."""
        client = self._require_client()
        try:
            response = await client.describe_snapshots(
                OwnerIds=list(owner_ids),
                **self._paging_kwargs(next_token),
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "describe_snapshots") from e

        return Page(
            items=[Snapshot.from_api(item) for item in response.get("Snapshots", [])],
            next_token=response.get("NextToken"),
        )

    async def create_snapshot(self, volume_id: str, description: str) -> Snapshot:
        """Start a snapshot of ``volume_id``.

        Raises:
            RateLimitedError: If EC2 answered with the throttling code
            ResourceApiError: For any other failure
        """
        client = self._require_client()
        try:
            response = await client.create_snapshot(VolumeId=volume_id, Description=description)
        except ClientError as e:
            if _error_code(e) == self.rate_limit_code:
                raise RateLimitedError(
                    f"Snapshot creation rate-limited for {volume_id}",
                    code=self.rate_limit_code,
                    operation="create_snapshot",
                ) from e
            raise self._wrap(e, "create_snapshot") from e
        except BotoCoreError as e:
            raise self._wrap(e, "create_snapshot") from e

        return Snapshot.from_api(response)

    async def create_tags(self, resource_ids: list[str], tags: Mapping[str, str]) -> None:
        """Upsert ``tags`` on every resource in ``resource_ids``."""
        client = self._require_client()
        try:
            await client.create_tags(Resources=list(resource_ids), Tags=dict_to_tags(tags))
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "create_tags") from e

    async def delete_snapshot(self, snapshot_id: str) -> None:
        """Delete ``snapshot_id``."""
        client = self._require_client()
        try:
            await client.delete_snapshot(SnapshotId=snapshot_id)
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "delete_snapshot") from e

    @staticmethod
    def _wrap(error: Exception, operation: str) -> ResourceApiError:
        if isinstance(error, EndpointConnectionError):
            return ResourceApiConnectionError(
                f"EC2 {operation} failed: {error}", operation=operation
            )
        code = _error_code(error) if isinstance(error, ClientError) else None
        return ResourceApiError(f"EC2 {operation} failed: {error}", code=code, operation=operation)
