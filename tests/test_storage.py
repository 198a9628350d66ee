"""Tests for the S3 storage gateway and storage path helpers."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from ingest.errors import StorageError
from ingest.storage import (
    DELETE_BATCH_SIZE,
    S3StorageGateway,
    build_storage_path,
    purge_video_objects,
    split_storage_path,
)
from tests.fakes import FakeStorage


def client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def gateway(s3_client) -> S3StorageGateway:
    return S3StorageGateway(client=s3_client)


class TestStoragePaths:
    def test_split_on_first_slash(self):
        assert split_storage_path("videos-raw/abc.mp4") == ("videos-raw", "abc.mp4")
        assert split_storage_path("videos-encoded/abc/720p.m3u8") == ("videos-encoded", "abc/720p.m3u8")

    @pytest.mark.parametrize("path", ["", "videos-raw", "videos-raw/", "/abc.mp4"])
    def test_split_rejects_incomplete_paths(self, path):
        with pytest.raises(ValueError):
            split_storage_path(path)

    def test_build_is_inverse_of_split(self):
        assert split_storage_path(build_storage_path("thumbnails", "v1/thumbnail.jpg")) == (
            "thumbnails",
            "v1/thumbnail.jpg",
        )


class TestObjectExists:
    """Tests for S3StorageGateway.object_exists."""

    @pytest.mark.asyncio
    async def test_existing_object(self, gateway, s3_client):
        assert await gateway.object_exists("videos-raw", "v1.mp4") is True
        s3_client.head_object.assert_called_once_with(Bucket="videos-raw", Key="v1.mp4")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["404", "NoSuchKey", "NotFound"])
    async def test_missing_object(self, gateway, s3_client, code):
        s3_client.head_object.side_effect = client_error(code)

        assert await gateway.object_exists("videos-raw", "v1.mp4") is False

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, gateway, s3_client):
        """Should never report an outage as a missing upload."""
        s3_client.head_object.side_effect = client_error("AccessDenied")

        with pytest.raises(ClientError):
            await gateway.object_exists("videos-raw", "v1.mp4")


class TestPresignedUrls:
    @pytest.mark.asyncio
    async def test_upload_url_binds_content_type(self, gateway, s3_client):
        s3_client.generate_presigned_url.return_value = "https://s3/put"

        url = await gateway.generate_upload_url("videos-raw", "v1.mp4", "video/mp4", 3600)

        assert url == "https://s3/put"
        s3_client.generate_presigned_url.assert_called_once_with(
            ClientMethod="put_object",
            Params={"Bucket": "videos-raw", "Key": "v1.mp4", "ContentType": "video/mp4"},
            ExpiresIn=3600,
        )


class TestDeletes:
    """Tests for bulk and prefix deletion."""

    @pytest.mark.asyncio
    async def test_delete_objects_in_chunks(self, gateway, s3_client):
        s3_client.delete_objects.return_value = {}
        keys = [f"v1/seg_{i}.ts" for i in range(DELETE_BATCH_SIZE + 5)]

        deleted = await gateway.delete_objects("videos-encoded", keys)

        assert deleted == len(keys)
        assert s3_client.delete_objects.call_count == 2
        second = s3_client.delete_objects.call_args_list[1].kwargs
        assert len(second["Delete"]["Objects"]) == 5

    @pytest.mark.asyncio
    async def test_delete_objects_reports_errors(self, gateway, s3_client):
        s3_client.delete_objects.return_value = {
            "Errors": [{"Key": "v1/720p.m3u8", "Code": "AccessDenied", "Message": "denied"}]
        }

        with pytest.raises(StorageError, match="AccessDenied"):
            await gateway.delete_objects("videos-encoded", ["v1/720p.m3u8"])

    @pytest.mark.asyncio
    async def test_delete_prefix_lists_then_deletes(self, gateway, s3_client):
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "v1/master.m3u8"}, {"Key": "v1/720p.m3u8"}]},
            {"Contents": [{"Key": "v1/720p_0000.ts"}]},
        ]
        s3_client.get_paginator.return_value = paginator
        s3_client.delete_objects.return_value = {}

        deleted = await gateway.delete_prefix("videos-encoded", "v1/")

        assert deleted == 3
        paginator.paginate.assert_called_once_with(Bucket="videos-encoded", Prefix="v1/")

    @pytest.mark.asyncio
    async def test_delete_prefix_with_nothing_stored(self, gateway, s3_client):
        s3_client.get_paginator.return_value.paginate.return_value = [{}]

        assert await gateway.delete_prefix("videos-encoded", "v1/") == 0
        s3_client.delete_objects.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_prefix_refused(self, gateway):
        with pytest.raises(ValueError):
            await gateway.delete_prefix("videos-encoded", "")


class TestPurgeVideoObjects:
    @pytest.mark.asyncio
    async def test_removes_raw_encoded_and_thumbnail(self):
        storage = FakeStorage()
        storage.put("videos-raw", "v1.mp4")
        storage.put("videos-encoded", "v1/master.m3u8")
        storage.put("videos-encoded", "v10/master.m3u8")
        storage.put("thumbnails", "v1/thumbnail.jpg")

        await purge_video_objects(storage, "v1", "videos-raw/v1.mp4")

        assert storage.objects == {("videos-encoded", "v10/master.m3u8"): b"data"}

    @pytest.mark.asyncio
    async def test_without_raw_path(self):
        storage = FakeStorage()
        storage.put("videos-encoded", "v1/720p.m3u8")

        await purge_video_objects(storage, "v1", None)

        assert storage.keys("videos-encoded") == []
        assert not any(op == "delete_object" and bucket == "videos-raw" for op, bucket, _ in storage.calls)
