"""R2 object store over a stand-in S3 client."""

from io import BytesIO

import pytest

from shorts_worker.storage import R2ObjectStore


class FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise KeyError(Key)
        return {"Body": BytesIO(self.objects[(Bucket, Key)][0])}


class TestR2ObjectStore:

    @pytest.mark.asyncio
    async def test_upload_returns_key_and_download_reads_it_back(self):
        s3 = FakeS3()
        store = R2ObjectStore(s3, "project-assets")

        key = await store.upload("a/video.mp4", b"mp4", "video/mp4")

        assert key == "a/video.mp4"
        assert s3.objects[("project-assets", key)] == (b"mp4", "video/mp4")
        assert await store.download(key) == b"mp4"

    @pytest.mark.asyncio
    async def test_missing_key_raises(self):
        store = R2ObjectStore(FakeS3(), "project-assets")
        with pytest.raises(RuntimeError, match="Download failed for nope"):
            await store.download("nope")
