"""Batch handler allowing direct S3 upload.

The client receives temporary credentials scoped to its batch and uploads
straight to the bucket. Completing a file then turns the raw uploaded object
into a digest-identified blob: the object is moved by server-side copy to a
key named after its plain MD5 ETag.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Mapping

from sqlalchemy.orm import Session

from blobstore.app.services.base import BaseService, ServiceError
from blobstore.app.services.binary_manager import normalize_prefix
from blobstore.common.config import ConfigurationError, Settings
from blobstore.common.digest import is_multipart_etag, md5_hexdigest, normalize_etag
from blobstore.domain.repositories.batch_repository import BatchRepository
from blobstore.infra.storage.client import (
    NON_MULTIPART_COPY_MAX_SIZE,
    ObjectHead,
    ObjectNotFoundError,
    StorageClient,
    StorageError,
)
from blobstore.infra.storage.s3_client import S3StorageClient
from blobstore.infra.storage.sts_client import CredentialIssuer, StsCredentialIssuer

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 8 * 1024 * 1024

# properties passed at initialization time

AWS_ID_PROPERTY = "awsid"
AWS_SECRET_PROPERTY = "awssecret"
BUCKET_NAME_PROPERTY = "bucket"
BUCKET_PREFIX_PROPERTY = "bucket_prefix"
BUCKET_REGION_PROPERTY = "region"
ROLE_ARN_PROPERTY = "roleArn"
ACCELERATE_MODE_ENABLED_PROPERTY = "accelerateMode"
ENDPOINT_PROPERTY = "endpoint"

MANDATORY_PROPERTIES: tuple[str, ...] = (
    AWS_ID_PROPERTY,
    AWS_SECRET_PROPERTY,
    BUCKET_NAME_PROPERTY,
    BUCKET_REGION_PROPERTY,
    ROLE_ARN_PROPERTY,
)

# keys in the batch properties, returned to the client

INFO_AWS_SECRET_KEY_ID = "awsSecretKeyId"
INFO_AWS_SECRET_ACCESS_KEY = "awsSecretAccessKey"
INFO_AWS_SESSION_TOKEN = "awsSessionToken"
INFO_BUCKET = "bucket"
INFO_BASE_KEY = "baseKey"
INFO_EXPIRATION = "expiration"
INFO_AWS_REGION = "region"
INFO_USE_S3_ACCELERATE = "useS3Accelerate"


class BatchNotFoundError(ServiceError):
    """Raised when the batch does not exist or has expired."""


class InvalidUploadKeyError(ServiceError):
    """Raised when a reported upload key lies outside the batch prefix."""


@dataclass(frozen=True, slots=True)
class BlobDescriptor:
    """Finalized blob produced by a completed upload."""

    blob_key: str
    digest: str
    filename: str
    mime_type: str | None
    length: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BlobDescriptor":
        return cls(
            blob_key=str(data["blob_key"]),
            digest=str(data["digest"]),
            filename=str(data["filename"]),
            mime_type=data.get("mime_type"),
            length=int(data["length"]),
        )


@dataclass(frozen=True, slots=True)
class UploadInfo:
    """What the client reports after uploading a file on its own."""

    key: str
    filename: str
    mime_type: str | None = None


@dataclass
class Batch:
    batch_id: str
    handler: str
    properties: dict[str, Any] = field(default_factory=dict)
    files: dict[str, BlobDescriptor] = field(default_factory=dict)


@dataclass(frozen=True)
class DirectUploadContext:
    """Validated configuration plus the clients built from it."""

    region: str
    bucket: str
    bucket_prefix: str
    role_arn: str
    accelerate: bool
    storage: StorageClient
    credentials: CredentialIssuer


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() == "true"


def initialize(
    properties: Mapping[str, Any],
    *,
    storage_client: StorageClient | None = None,
    credential_issuer: CredentialIssuer | None = None,
) -> DirectUploadContext:
    """Validate handler properties and build the S3 and STS clients.

    Raises:
        ConfigurationError: If a mandatory property is missing.
    """
    for name in MANDATORY_PROPERTIES:
        if not properties.get(name):
            raise ConfigurationError(f"Missing configuration property: {name}")

    region = str(properties[BUCKET_REGION_PROPERTY])
    bucket = str(properties[BUCKET_NAME_PROPERTY])
    bucket_prefix = normalize_prefix(properties.get(BUCKET_PREFIX_PROPERTY))
    role_arn = str(properties[ROLE_ARN_PROPERTY])
    accelerate = _as_bool(properties.get(ACCELERATE_MODE_ENABLED_PROPERTY))
    access_key_id = str(properties[AWS_ID_PROPERTY])
    secret_access_key = str(properties[AWS_SECRET_PROPERTY])

    if storage_client is None:
        client_settings = Settings(
            S3_BUCKET=bucket,
            S3_PREFIX=bucket_prefix,
            S3_REGION=region,
            S3_ACCESS_KEY_ID=access_key_id,
            S3_SECRET_ACCESS_KEY=secret_access_key,
            S3_ENDPOINT_URL=properties.get(ENDPOINT_PROPERTY) or None,
        )
        storage_client = S3StorageClient(settings=client_settings, accelerate=accelerate)
    if credential_issuer is None:
        credential_issuer = StsCredentialIssuer(
            region=region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
        )
    return DirectUploadContext(
        region=region,
        bucket=bucket,
        bucket_prefix=bucket_prefix,
        role_arn=role_arn,
        accelerate=accelerate,
        storage=storage_client,
        credentials=credential_issuer,
    )


def properties_from_settings(settings: Settings) -> dict[str, Any]:
    return {
        AWS_ID_PROPERTY: settings.S3_ACCESS_KEY_ID,
        AWS_SECRET_PROPERTY: settings.S3_SECRET_ACCESS_KEY,
        BUCKET_NAME_PROPERTY: settings.S3_BUCKET,
        BUCKET_PREFIX_PROPERTY: settings.S3_PREFIX,
        BUCKET_REGION_PROPERTY: settings.S3_REGION,
        ROLE_ARN_PROPERTY: settings.BATCH_ROLE_ARN,
        ACCELERATE_MODE_ENABLED_PROPERTY: settings.BATCH_ACCELERATE,
        ENDPOINT_PROPERTY: settings.S3_ENDPOINT_URL,
    }


class S3DirectBatchHandler(BaseService):
    """Application service for direct-to-S3 upload batches."""

    def __init__(
        self,
        session: Session,
        context: DirectUploadContext,
        *,
        name: str = "s3",
        provider_id: str = "s3",
        ttl: timedelta = timedelta(hours=1),
        repository: BatchRepository | None = None,
    ) -> None:
        super().__init__(session)
        self._context = context
        self._name = name
        self._provider_id = provider_id
        self._ttl = ttl
        self._repo = repository or BatchRepository(session)

    @property
    def name(self) -> str:
        return self._name

    def new_batch(self, batch_id: str | None = None) -> str:
        """Record a new batch in the transient store and return its id."""
        batch_id = batch_id or uuid.uuid4().hex
        self._repo.create(
            batch_id,
            handler=self._name,
            ttl=self._ttl,
            parameters={"provider": self._provider_id},
        )
        self._commit()
        return batch_id

    def get_batch(self, batch_id: str) -> Batch | None:
        """Load a batch and attach freshly issued temporary credentials.

        Returns:
            The batch, or None when it doesn't exist or has expired.

        Raises:
            StorageError: If the role cannot be assumed.
        """
        record = self._repo.get(batch_id)
        if record is None:
            return None

        ctx = self._context
        credentials = ctx.credentials.assume_role(
            role_arn=ctx.role_arn, session_name=record.batch_id
        )
        properties: dict[str, Any] = {
            INFO_AWS_SECRET_KEY_ID: credentials.access_key_id,
            INFO_AWS_SECRET_ACCESS_KEY: credentials.secret_access_key,
            INFO_AWS_SESSION_TOKEN: credentials.session_token,
            INFO_BUCKET: ctx.bucket,
            INFO_BASE_KEY: ctx.bucket_prefix,
            INFO_EXPIRATION: int(credentials.expiration.timestamp() * 1000),
            INFO_AWS_REGION: ctx.region,
            INFO_USE_S3_ACCELERATE: ctx.accelerate,
        }
        return Batch(
            batch_id=record.batch_id,
            handler=record.handler,
            properties=properties,
            files=self._files_of(record.files),
        )

    def get_files(self, batch_id: str) -> dict[str, BlobDescriptor]:
        record = self._repo.get(batch_id)
        if record is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return self._files_of(record.files)

    def remove_batch(self, batch_id: str) -> bool:
        removed = self._repo.delete(batch_id)
        self._commit()
        return removed

    def complete_upload(self, batch_id: str, file_index: str, info: UploadInfo) -> bool:
        """Adopt an object the client uploaded under ``info.key``.

        Returns:
            True when the blob was finalized and attached to the batch, False
            when the uploaded object is not (yet) present.

        Raises:
            BatchNotFoundError: If the batch doesn't exist.
            InvalidUploadKeyError: If the key is not under the bucket prefix.
            StorageError: If metadata retrieval or a copy fails.
        """
        record = self._repo.get(batch_id)
        if record is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        ctx = self._context
        key = info.key
        if not key.startswith(ctx.bucket_prefix) or key == ctx.bucket_prefix:
            raise InvalidUploadKeyError(
                f"Upload key {key} is outside prefix {ctx.bucket_prefix!r}"
            )
        try:
            head = ctx.storage.head_object(bucket=ctx.bucket, object_key=key)
        except ObjectNotFoundError:
            return False
        etag = normalize_etag(head.etag)
        if not etag:
            return False
        mime_type = info.mime_type or head.content_type

        if head.size_bytes > NON_MULTIPART_COPY_MAX_SIZE:
            final_tag, final_head = self._finalize_large(key, head)
        else:
            final_tag, final_head = self._finalize(key, etag)

        descriptor = BlobDescriptor(
            blob_key=f"{self._provider_id}:{final_tag}",
            digest=final_tag,
            filename=info.filename,
            mime_type=mime_type,
            length=final_head.size_bytes or head.size_bytes,
        )
        self._repo.add_file(record, str(file_index), descriptor.as_dict())
        self._commit()
        logger.info(
            "upload_completed batch_id=%s file_index=%s key=%s blob_key=%s length=%s",
            batch_id,
            file_index,
            info.key,
            descriptor.blob_key,
            descriptor.length,
        )
        return True

    def _key(self, tag: str) -> str:
        return f"{self._context.bucket_prefix}{tag}"

    def _move(self, source_key: str, tag: str) -> ObjectHead:
        """Copy ``source_key`` to the key named after ``tag``, then delete it."""
        ctx = self._context
        target_key = self._key(tag)
        if target_key == source_key:
            return ctx.storage.head_object(bucket=ctx.bucket, object_key=target_key)
        copied = ctx.storage.copy_object(
            source_bucket=ctx.bucket,
            source_key=source_key,
            bucket=ctx.bucket,
            object_key=target_key,
        )
        ctx.storage.delete_object(bucket=ctx.bucket, object_key=source_key)
        return copied

    def _finalize(self, key: str, etag: str) -> tuple[str, ObjectHead]:
        copied = self._move(key, etag)
        if not is_multipart_etag(etag):
            return etag, copied

        # A single-request copy re-reads the object at rest, so the new
        # ETag is the plain MD5 the multipart upload could not report.
        new_etag = normalize_etag(copied.etag)
        if not new_etag or is_multipart_etag(new_etag):
            raise StorageError(
                f"Copy of multipart upload {key} did not produce a plain ETag: {new_etag}"
            )
        return new_etag, self._move(self._key(etag), new_etag)

    def _finalize_large(self, key: str, head: ObjectHead) -> tuple[str, ObjectHead]:
        # Above the single-copy ceiling the copy itself is multipart, so the
        # digest has to be computed by reading the object. This streams the
        # whole upload through this process once.
        ctx = self._context
        digest = md5_hexdigest(
            ctx.storage.iter_object_chunks(
                bucket=ctx.bucket, object_key=key, chunk_size=HASH_CHUNK_SIZE
            )
        )
        target_key = self._key(digest)
        if target_key == key:
            return digest, head
        copied = ctx.storage.copy_object_multipart(
            source_bucket=ctx.bucket,
            source_key=key,
            bucket=ctx.bucket,
            object_key=target_key,
            size_bytes=head.size_bytes,
            content_type=head.content_type,
        )
        ctx.storage.delete_object(bucket=ctx.bucket, object_key=key)
        return digest, copied

    @staticmethod
    def _files_of(raw: Mapping[str, Any] | None) -> dict[str, BlobDescriptor]:
        return {
            index: BlobDescriptor.from_dict(data) for index, data in (raw or {}).items()
        }
