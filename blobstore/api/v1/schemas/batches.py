"""Pydantic schemas for direct-upload batch endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BatchPropertiesOut(BaseModel):
    """Values a client needs to upload straight to the bucket.

    Serialized with the camelCase names S3 upload clients expect.
    """

    model_config = ConfigDict(populate_by_name=True)

    aws_secret_key_id: str = Field(alias="awsSecretKeyId")
    aws_secret_access_key: str = Field(alias="awsSecretAccessKey")
    aws_session_token: str = Field(alias="awsSessionToken")
    bucket: str
    base_key: str = Field(alias="baseKey")
    expiration: int = Field(description="Credential expiry, epoch milliseconds")
    region: str
    use_s3_accelerate: bool = Field(alias="useS3Accelerate")


class BlobDescriptorOut(BaseModel):
    """Finalized blob attached to a batch."""

    model_config = ConfigDict(from_attributes=True)

    blob_key: str
    digest: str
    filename: str
    mime_type: str | None = None
    length: int


class BatchOut(BaseModel):
    """Response model for a batch and its temporary credentials."""

    batch_id: str
    properties: BatchPropertiesOut
    files: dict[str, BlobDescriptorOut] = Field(default_factory=dict)


class UploadComplete(BaseModel):
    """Request body sent once the client finished uploading a file."""

    key: str = Field(min_length=1, max_length=1024)
    filename: str = Field(min_length=1, max_length=255)
    mime_type: str | None = None
