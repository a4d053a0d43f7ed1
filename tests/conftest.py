from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from sqlalchemy import delete

_TEST_ROOT = tempfile.mkdtemp(prefix="blobstore-tests-")

os.environ["DB_URL"] = os.environ.get("TEST_DB_URL") or (
    f"sqlite:///{os.path.join(_TEST_ROOT, 'blobstore.db')}"
)
os.environ["S3_BUCKET"] = "test-bucket"
os.environ["S3_PREFIX"] = ""
os.environ["BLOB_CACHE_DIR"] = os.path.join(_TEST_ROOT, "cache")
os.environ["ADMIN_API_KEY"] = "admin-secret"
os.environ["API_KEY_ENABLED"] = "false"
os.environ["S3_DIRECT_DOWNLOAD"] = "false"

from blobstore.app.services.bundle import (  # noqa: E402
    get_binary_manager,
    get_direct_upload_context,
)
from blobstore.common.config import get_settings  # noqa: E402
from blobstore.infra.db.models import UploadBatch  # noqa: E402
from blobstore.infra.db.session import (  # noqa: E402
    create_schema,
    get_session_factory,
    reset_engine,
)
from blobstore.infra.storage.client import TemporaryCredentials  # noqa: E402


@contextmanager
def _session_scope():
    session_factory = get_session_factory()
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@pytest.fixture(scope="session", autouse=True)
def apply_schema():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    reset_engine()
    create_schema()
    yield
    reset_engine()


@pytest.fixture(autouse=True)
def cleanup_tables(apply_schema):
    with _session_scope() as session:
        session.execute(delete(UploadBatch))
    yield
    with _session_scope() as session:
        session.execute(delete(UploadBatch))


@pytest.fixture(autouse=True)
def clear_service_caches():
    get_binary_manager.cache_clear()
    get_direct_upload_context.cache_clear()
    yield
    get_binary_manager.cache_clear()
    get_direct_upload_context.cache_clear()


@pytest.fixture
def session():
    session_factory = get_session_factory()
    db = session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


class FakeCredentialIssuer:
    """Stands in for STS, recording every role assumption."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    def assume_role(self, *, role_arn, session_name, duration_seconds=3600):
        self.calls.append(
            {
                "role_arn": role_arn,
                "session_name": session_name,
                "duration_seconds": duration_seconds,
            }
        )
        return TemporaryCredentials(
            access_key_id="ASIATEMP",
            secret_access_key="temp-secret",
            session_token="temp-token",
            expiration=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )


@pytest.fixture
def credential_issuer():
    return FakeCredentialIssuer()
