"""
Unit tests for the aiobotocore EC2 adapter.

Tests cover:
- Request shapes for listing, creation, tagging and deletion
- Tag list conversion
- ClientError mapping onto the error taxonomy
- Client lifecycle in connect() and close()
"""

import pytest
from botocore.exceptions import ClientError, NoRegionError

from ebs.snapkeeper.config import Ec2Config
from ebs.snapkeeper.ec2 import (
    Ec2ResourceApi,
    RateLimitedError,
    ResourceApiConnectionError,
    ResourceApiError,
    aws,
)


def client_error(code, operation="CreateSnapshot"):
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)


class StubEc2Client:
    """Records calls and replays canned responses like an aiobotocore EC2 client."""

    def __init__(self, responses=None, errors=None):
        self.responses = responses or {}
        self.errors = errors or {}
        self.calls = []

    async def _call(self, name, kwargs):
        self.calls.append((name, kwargs))
        queued = self.errors.get(name)
        if queued:
            raise queued.pop(0)
        return self.responses.get(name, {})

    async def describe_volumes(self, **kwargs):
        return await self._call("describe_volumes", kwargs)

    async def describe_snapshots(self, **kwargs):
        return await self._call("describe_snapshots", kwargs)

    async def create_snapshot(self, **kwargs):
        return await self._call("create_snapshot", kwargs)

    async def create_tags(self, **kwargs):
        return await self._call("create_tags", kwargs)

    async def delete_snapshot(self, **kwargs):
        return await self._call("delete_snapshot", kwargs)


class TestEc2ResourceApi:
    """Tests for Ec2ResourceApi."""

    def api(self, client, **config):
        return Ec2ResourceApi(Ec2Config(**config), client=client)

    @pytest.mark.asyncio
    async def test_list_volumes_first_page(self):
        """The first call carries the tag filter and no NextToken."""
        client = StubEc2Client(
            responses={
                "describe_volumes": {
                    "Volumes": [
                        {
                            "VolumeId": "vol-1",
                            "Tags": [
                                {"Key": "Backup", "Value": "daily"},
                                {"Key": "Name", "Value": "db"},
                            ],
                        },
                        {"VolumeId": "vol-2"},
                    ],
                    "NextToken": "abc",
                }
            }
        )

        page = await self.api(client).list_volumes("Backup", ("daily", "monthly"))

        assert client.calls == [
            (
                "describe_volumes",
                {"Filters": [{"Name": "tag:Backup", "Values": ["daily", "monthly"]}]},
            )
        ]
        assert page.items[0].volume_id == "vol-1"
        assert page.items[0].tags == {"Backup": "daily", "Name": "db"}
        assert page.items[1].tags == {}
        assert page.next_token == "abc"

    @pytest.mark.asyncio
    async def test_list_volumes_continuation(self):
        """Continuation calls pass NextToken and the configured page size."""
        client = StubEc2Client(responses={"describe_volumes": {"Volumes": []}})

        page = await self.api(client, page_size=50).list_volumes("Backup", ("daily",), "abc")

        _, kwargs = client.calls[0]
        assert kwargs["NextToken"] == "abc"
        assert kwargs["MaxResults"] == 50
        assert page.next_token is None

    @pytest.mark.asyncio
    async def test_list_snapshots(self):
        """Snapshots are listed by owner with their tags."""
        client = StubEc2Client(
            responses={
                "describe_snapshots": {
                    "Snapshots": [
                        {
                            "SnapshotId": "snap-1",
                            "VolumeId": "vol-1",
                            "Tags": [{"Key": "Expires", "Value": "2024-04-15T10:00:00"}],
                        }
                    ]
                }
            }
        )

        page = await self.api(client).list_snapshots(("self",))

        assert client.calls == [("describe_snapshots", {"OwnerIds": ["self"]})]
        assert page.items[0].snapshot_id == "snap-1"
        assert page.items[0].volume_id == "vol-1"
        assert page.items[0].tags == {"Expires": "2024-04-15T10:00:00"}

    @pytest.mark.asyncio
    async def test_create_snapshot(self):
        """create_snapshot sends the volume and description."""
        client = StubEc2Client(
            responses={"create_snapshot": {"SnapshotId": "snap-9", "VolumeId": "vol-1"}}
        )

        snapshot = await self.api(client).create_snapshot("vol-1", "Automated daily snapshot.")

        assert client.calls == [
            ("create_snapshot", {"VolumeId": "vol-1", "Description": "Automated daily snapshot."})
        ]
        assert snapshot.snapshot_id == "snap-9"

    @pytest.mark.asyncio
    async def test_create_snapshot_rate_limited(self):
        """The throttling code maps to RateLimitedError."""
        original = client_error("SnapshotCreationPerVolumeRateExceeded")
        client = StubEc2Client(errors={"create_snapshot": [original]})

        with pytest.raises(RateLimitedError) as exc_info:
            await self.api(client).create_snapshot("vol-1", "x")

        assert exc_info.value.code == "SnapshotCreationPerVolumeRateExceeded"
        assert exc_info.value.__cause__ is original

    @pytest.mark.asyncio
    async def test_create_snapshot_custom_rate_limit_code(self):
        """The throttling code is configurable."""
        client = StubEc2Client(errors={"create_snapshot": [client_error("RequestLimitExceeded")]})
        api = Ec2ResourceApi(Ec2Config(), rate_limit_code="RequestLimitExceeded", client=client)

        with pytest.raises(RateLimitedError):
            await api.create_snapshot("vol-1", "x")

    @pytest.mark.asyncio
    async def test_create_snapshot_other_error(self):
        """Other codes map to a plain ResourceApiError."""
        client = StubEc2Client(
            errors={"create_snapshot": [client_error("IncorrectState")]}
        )

        with pytest.raises(ResourceApiError) as exc_info:
            await self.api(client).create_snapshot("vol-1", "x")

        assert not isinstance(exc_info.value, RateLimitedError)
        assert exc_info.value.code == "IncorrectState"
        assert exc_info.value.operation == "create_snapshot"

    @pytest.mark.asyncio
    async def test_create_tags(self):
        """Tag dicts are sent as Key/Value lists."""
        client = StubEc2Client()

        await self.api(client).create_tags(
            ["snap-1"], {"Frequency": "daily", "Expires": "2024-04-15T10:00:00"}
        )

        assert client.calls == [
            (
                "create_tags",
                {
                    "Resources": ["snap-1"],
                    "Tags": [
                        {"Key": "Frequency", "Value": "daily"},
                        {"Key": "Expires", "Value": "2024-04-15T10:00:00"},
                    ],
                },
            )
        ]

    @pytest.mark.asyncio
    async def test_delete_snapshot_error(self):
        """Deletion failures carry the provider code."""
        client = StubEc2Client(
            errors={"delete_snapshot": [client_error("InvalidSnapshot.InUse", "DeleteSnapshot")]}
        )

        with pytest.raises(ResourceApiError) as exc_info:
            await self.api(client).delete_snapshot("snap-1")

        assert exc_info.value.code == "InvalidSnapshot.InUse"
        assert client.calls == [("delete_snapshot", {"SnapshotId": "snap-1"})]

    @pytest.mark.asyncio
    async def test_listing_error(self):
        """Listing failures are wrapped too."""
        client = StubEc2Client(
            errors={"describe_snapshots": [client_error("UnauthorizedOperation")]}
        )

        with pytest.raises(ResourceApiError) as exc_info:
            await self.api(client).list_snapshots(("self",))

        assert exc_info.value.operation == "describe_snapshots"

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        """Calls before connect() fail clearly."""
        api = Ec2ResourceApi(Ec2Config())

        assert not api.is_connected
        with pytest.raises(ResourceApiConnectionError):
            await api.delete_snapshot("snap-1")


class FakeClientContext:
    """Stands in for the context manager returned by session.create_client()."""

    def __init__(self, client=None, error=None):
        self.client = client
        self.error = error
        self.exits = 0

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.client

    async def __aexit__(self, exc_type, exc, tb):
        self.exits += 1


class FakeSession:
    def __init__(self, context):
        self.context = context
        self.created = []

    def create_client(self, service, **kwargs):
        self.created.append((service, kwargs))
        return self.context


class TestConnection:
    """Tests for connect() and close()."""

    @pytest.fixture
    def session(self, monkeypatch):
        def install(context):
            session = FakeSession(context)
            monkeypatch.setattr(aws, "get_session", lambda: session)
            return session

        return install

    @pytest.mark.asyncio
    async def test_context_manager_opens_and_closes(self, session):
        """The client context is entered on enter and exited once on exit."""
        context = FakeClientContext(client=StubEc2Client())
        fake = session(context)

        async with Ec2ResourceApi(Ec2Config(region="eu-west-1")) as api:
            assert api.is_connected

        assert fake.created == [("ec2", {"region_name": "eu-west-1"})]
        assert context.exits == 1
        assert not api.is_connected

    @pytest.mark.asyncio
    async def test_failed_connect_is_not_exited(self, session):
        """A client that never opened is not closed."""
        context = FakeClientContext(error=NoRegionError())
        session(context)
        api = Ec2ResourceApi(Ec2Config())

        with pytest.raises(ResourceApiConnectionError):
            await api.connect()
        await api.close()

        assert context.exits == 0
        assert not api.is_connected
