from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from blobstore.app.services.batch_handler import (
    MANDATORY_PROPERTIES,
    BatchNotFoundError,
    InvalidUploadKeyError,
    S3DirectBatchHandler,
    UploadInfo,
    initialize,
    properties_from_settings,
)
from blobstore.app.services.binary_manager import S3BinaryManager
from blobstore.common.config import ConfigurationError, Settings
from blobstore.domain.repositories import BatchRepository
from blobstore.infra.storage.client import NON_MULTIPART_COPY_MAX_SIZE
from tests.services.mock_storage import MockStorageClient, md5_of

BUCKET = "upload-bucket"
ROLE_ARN = "arn:aws:iam::123456789012:role/direct-upload"


def _properties(**overrides):
    values = {
        "awsid": "AKIAEXAMPLE",
        "awssecret": "secret",
        "bucket": BUCKET,
        "bucket_prefix": "blobs/",
        "region": "eu-west-1",
        "roleArn": ROLE_ARN,
        "accelerateMode": "true",
    }
    values.update(overrides)
    return values


@pytest.fixture
def mock_storage():
    return MockStorageClient()


@pytest.fixture
def context(mock_storage, credential_issuer):
    return initialize(
        _properties(),
        storage_client=mock_storage,
        credential_issuer=credential_issuer,
    )


@pytest.fixture
def handler(session, context):
    return S3DirectBatchHandler(session, context, provider_id="s3")


class TestInitialize:
    @pytest.mark.parametrize("missing", MANDATORY_PROPERTIES)
    def test_missing_mandatory_property(self, missing, mock_storage, credential_issuer):
        properties = _properties()
        del properties[missing]

        with pytest.raises(ConfigurationError, match=missing):
            initialize(
                properties,
                storage_client=mock_storage,
                credential_issuer=credential_issuer,
            )

    def test_prefix_is_optional(self, mock_storage, credential_issuer):
        properties = _properties()
        del properties["bucket_prefix"]

        context = initialize(
            properties, storage_client=mock_storage, credential_issuer=credential_issuer
        )

        assert context.bucket_prefix == ""
        assert context.accelerate is True

    def test_prefix_gets_trailing_slash(self, mock_storage, credential_issuer):
        context = initialize(
            _properties(bucket_prefix="blobs"),
            storage_client=mock_storage,
            credential_issuer=credential_issuer,
        )

        assert context.bucket_prefix == "blobs/"


class TestBatches:
    def test_get_batch_issues_credentials(self, handler, credential_issuer):
        batch_id = handler.new_batch()

        batch = handler.get_batch(batch_id)

        assert batch is not None
        assert batch.batch_id == batch_id
        assert batch.files == {}
        assert batch.properties == {
            "awsSecretKeyId": "ASIATEMP",
            "awsSecretAccessKey": "temp-secret",
            "awsSessionToken": "temp-token",
            "bucket": BUCKET,
            "baseKey": "blobs/",
            "expiration": int(
                datetime(2030, 1, 1, tzinfo=timezone.utc).timestamp() * 1000
            ),
            "region": "eu-west-1",
            "useS3Accelerate": True,
        }
        assert credential_issuer.calls == [
            {"role_arn": ROLE_ARN, "session_name": batch_id, "duration_seconds": 3600}
        ]

    def test_get_unknown_batch(self, handler, credential_issuer):
        assert handler.get_batch("does-not-exist") is None
        assert credential_issuer.calls == []

    def test_expired_batch_is_gone(self, session, context):
        handler = S3DirectBatchHandler(session, context, ttl=timedelta(seconds=-1))
        batch_id = handler.new_batch()

        assert handler.get_batch(batch_id) is None
        with pytest.raises(BatchNotFoundError):
            handler.complete_upload(batch_id, "0", UploadInfo(key="k", filename="f"))

    def test_remove_batch(self, handler):
        batch_id = handler.new_batch("explicit-id")

        assert handler.remove_batch(batch_id) is True
        assert handler.remove_batch(batch_id) is False
        assert handler.get_batch(batch_id) is None


class TestCompleteUpload:
    def test_missing_object_returns_false(self, handler, mock_storage):
        batch_id = handler.new_batch()

        completed = handler.complete_upload(
            batch_id,
            "0",
            UploadInfo(key="blobs/incoming/nothing", filename="a.txt"),
        )

        assert completed is False
        assert handler.get_files(batch_id) == {}
        assert mock_storage.count("copy_object") == 0

    def test_unknown_batch(self, handler):
        with pytest.raises(BatchNotFoundError):
            handler.complete_upload("nope", "0", UploadInfo(key="k", filename="f"))

    def test_single_part_upload_is_moved_once(self, handler, mock_storage):
        data = b"single part upload"
        digest = md5_of(data)
        mock_storage.put(
            BUCKET, "blobs/incoming/abc", data, content_type="text/plain"
        )
        batch_id = handler.new_batch()

        assert handler.complete_upload(
            batch_id, "0", UploadInfo(key="blobs/incoming/abc", filename="a.txt")
        )

        assert mock_storage.keys(BUCKET) == [f"blobs/{digest}"]
        assert mock_storage.count("copy_object") == 1
        descriptor = handler.get_files(batch_id)["0"]
        assert descriptor.blob_key == f"s3:{digest}"
        assert descriptor.digest == digest
        assert descriptor.filename == "a.txt"
        assert descriptor.mime_type == "text/plain"
        assert descriptor.length == len(data)

    def test_multipart_upload_is_copied_twice(self, handler, mock_storage):
        data = b"assembled from parts"
        digest = md5_of(data)
        multipart_etag = "0123456789abcdef0123456789abcdef-3"
        mock_storage.put(BUCKET, "blobs/incoming/big", data, etag=multipart_etag)
        batch_id = handler.new_batch()

        assert handler.complete_upload(
            batch_id,
            "1",
            UploadInfo(key="blobs/incoming/big", filename="big.bin", mime_type="a/b"),
        )

        assert mock_storage.count("copy_object") == 2
        assert mock_storage.keys(BUCKET) == [f"blobs/{digest}"]
        descriptor = handler.get_files(batch_id)["1"]
        assert descriptor.blob_key == f"s3:{digest}"
        assert descriptor.mime_type == "a/b"

    def test_upload_already_at_final_key(self, handler, mock_storage):
        data = b"already in place"
        digest = md5_of(data)
        mock_storage.put(BUCKET, f"blobs/{digest}", data)
        batch_id = handler.new_batch()

        assert handler.complete_upload(
            batch_id, "0", UploadInfo(key=f"blobs/{digest}", filename="x")
        )

        assert mock_storage.keys(BUCKET) == [f"blobs/{digest}"]
        assert mock_storage.count("copy_object") == 0
        assert mock_storage.count("delete_object") == 0

    def test_oversize_upload_is_hashed_and_copied_in_parts(
        self, handler, mock_storage
    ):
        data = b"pretend this is six gigabytes"
        digest = md5_of(data)
        size = NON_MULTIPART_COPY_MAX_SIZE + 1
        mock_storage.put(
            BUCKET,
            "blobs/incoming/huge",
            data,
            etag="0123456789abcdef0123456789abcdef-600",
            size=size,
        )
        batch_id = handler.new_batch()

        assert handler.complete_upload(
            batch_id, "0", UploadInfo(key="blobs/incoming/huge", filename="huge.iso")
        )

        assert mock_storage.count("copy_object") == 0
        assert mock_storage.count("copy_object_multipart") == 1
        assert mock_storage.keys(BUCKET) == [f"blobs/{digest}"]
        descriptor = handler.get_files(batch_id)["0"]
        assert descriptor.digest == digest
        assert descriptor.length == size

    def test_files_survive_reload(self, session, handler, mock_storage):
        mock_storage.put(BUCKET, "blobs/incoming/a", b"a")
        mock_storage.put(BUCKET, "blobs/incoming/b", b"b")
        batch_id = handler.new_batch()
        handler.complete_upload(
            batch_id, "0", UploadInfo(key="blobs/incoming/a", filename="a")
        )
        handler.complete_upload(
            batch_id, "1", UploadInfo(key="blobs/incoming/b", filename="b")
        )

        session.expire_all()
        record = BatchRepository(session).get(batch_id)

        assert sorted(record.files) == ["0", "1"]
        assert handler.get_batch(batch_id).files["1"].digest == md5_of(b"b")

    def test_empty_etag_returns_false(self, handler, mock_storage):
        mock_storage.put(BUCKET, "blobs/incoming/partial", b"partial", etag="")
        batch_id = handler.new_batch()

        completed = handler.complete_upload(
            batch_id, "0", UploadInfo(key="blobs/incoming/partial", filename="p")
        )

        assert completed is False
        assert mock_storage.count("copy_object") == 0
        assert mock_storage.keys(BUCKET) == ["blobs/incoming/partial"]
        assert handler.get_files(batch_id) == {}

    @pytest.mark.parametrize("key", ["other/secret", "blobs/", "blob"])
    def test_key_outside_prefix_is_rejected(self, handler, mock_storage, key):
        mock_storage.put(BUCKET, key, b"not yours")
        batch_id = handler.new_batch()

        with pytest.raises(InvalidUploadKeyError):
            handler.complete_upload(batch_id, "0", UploadInfo(key=key, filename="x"))

        assert mock_storage.keys(BUCKET) == [key]
        assert mock_storage.count("copy_object") == 0


def test_finalized_blob_is_readable_with_unslashed_prefix(
    session, mock_storage, credential_issuer, tmp_path
):
    settings = Settings(
        S3_BUCKET=BUCKET,
        S3_PREFIX="docs",
        S3_REGION="eu-west-1",
        S3_ACCESS_KEY_ID="AKIAEXAMPLE",
        S3_SECRET_ACCESS_KEY="secret",
        BATCH_ROLE_ARN=ROLE_ARN,
        BLOB_CACHE_DIR=str(tmp_path / "cache"),
    )
    manager = S3BinaryManager(settings, storage_client=mock_storage)
    context = initialize(
        properties_from_settings(settings),
        storage_client=mock_storage,
        credential_issuer=credential_issuer,
    )
    handler = S3DirectBatchHandler(session, context)
    mock_storage.put(BUCKET, "docs/incoming", b"payload")
    batch_id = handler.new_batch()

    assert handler.complete_upload(
        batch_id, "0", UploadInfo(key="docs/incoming", filename="payload.txt")
    )

    digest = md5_of(b"payload")
    assert mock_storage.keys(BUCKET) == [f"docs/{digest}"]
    assert handler.get_batch(batch_id).properties["baseKey"] == "docs/"
    path = manager.read_binary(digest)
    assert path is not None
    assert path.read_bytes() == b"payload"
