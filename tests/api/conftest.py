from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from blobstore.api.v1.deps import get_binary_manager, get_upload_context
from blobstore.app.services.batch_handler import initialize
from blobstore.app.services.binary_manager import S3BinaryManager
from blobstore.common.config import Settings
from blobstore.main import create_app
from tests.services.mock_storage import MockStorageClient

UPLOAD_BUCKET = "upload-bucket"


@pytest.fixture
def mock_storage():
    return MockStorageClient()


@pytest.fixture
def manager(mock_storage, tmp_path):
    settings = Settings(
        S3_BUCKET="test-bucket",
        BLOB_CACHE_DIR=str(tmp_path / "cache"),
        S3_DIRECT_DOWNLOAD=True,
        S3_DIRECT_DOWNLOAD_EXPIRE=300,
    )
    return S3BinaryManager(settings, storage_client=mock_storage)


@pytest.fixture
def upload_context(mock_storage, credential_issuer):
    return initialize(
        {
            "awsid": "AKIAEXAMPLE",
            "awssecret": "secret",
            "bucket": UPLOAD_BUCKET,
            "bucket_prefix": "blobs/",
            "region": "eu-west-1",
            "roleArn": "arn:aws:iam::123456789012:role/direct-upload",
        },
        storage_client=mock_storage,
        credential_issuer=credential_issuer,
    )


@pytest.fixture
def client(manager, upload_context):
    app = create_app()
    app.dependency_overrides[get_binary_manager] = lambda: manager
    app.dependency_overrides[get_upload_context] = lambda: upload_context
    return TestClient(app)
