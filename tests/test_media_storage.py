import hashlib

import pytest
from botocore.exceptions import ClientError

from section_studio.config import Settings
from section_studio.services.media_storage import (
    IMMUTABLE_CACHE_CONTROL,
    MediaStorage,
    MediaStorageConfigurationError,
    MediaStorageError,
)


class FakeS3Client:
    def __init__(self, existing=(), fail_put=False):
        self.objects = {key: b"" for key in existing}
        self.fail_put = fail_put
        self.put_calls = []

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {}

    def put_object(self, **kwargs):
        if self.fail_put:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.put_calls.append(kwargs)
        self.objects[kwargs["Key"]] = kwargs["Body"]


def _storage(**overrides) -> MediaStorage:
    values = {
        "MEDIA_STORAGE_BUCKET": "bucket",
        "MEDIA_STORAGE_ACCESS_KEY": "access",
        "MEDIA_STORAGE_SECRET_KEY": "secret",
        "MEDIA_STORAGE_PREFIX": "test",
        "PUBLIC_ASSET_BASE_URL": "https://cdn.test/",
        **overrides,
    }
    return MediaStorage(Settings(**values))


def test_missing_credentials_are_a_configuration_error():
    with pytest.raises(MediaStorageConfigurationError):
        _storage(MEDIA_STORAGE_ACCESS_KEY=None)


def test_put_image_writes_content_addressed_immutable_object():
    storage = _storage()
    storage.client = FakeS3Client()
    data = b"\x89PNG fake"
    sha = hashlib.sha256(data).hexdigest()

    stored = storage.put_image(data)

    assert stored.key == f"test/sections/{sha[:2]}/{sha}.png"
    assert stored.uri == f"https://cdn.test/{stored.key}"
    (call,) = storage.client.put_calls
    assert call["CacheControl"] == IMMUTABLE_CACHE_CONTROL
    assert call["ContentType"] == "image/png"


def test_existing_object_is_not_rewritten():
    storage = _storage()
    data = b"same bytes"
    sha = hashlib.sha256(data).hexdigest()
    storage.client = FakeS3Client(existing=[f"test/sections/{sha[:2]}/{sha}.png"])

    storage.put_image(data)

    assert storage.client.put_calls == []


def test_upload_failure_raises_storage_error():
    storage = _storage()
    storage.client = FakeS3Client(fail_put=True)

    with pytest.raises(MediaStorageError):
        storage.put_image(b"bytes")
