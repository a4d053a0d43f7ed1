"""Temporary credential issuance through AWS STS."""

from __future__ import annotations

from typing import Any, Protocol

from blobstore.infra.storage.client import StorageError, TemporaryCredentials

# STS limits role session names to 64 characters of [\w+=,.@-]
MAX_SESSION_NAME_LENGTH = 64
DEFAULT_DURATION_SECONDS = 60 * 60


class CredentialIssuer(Protocol):
    def assume_role(
        self,
        *,
        role_arn: str,
        session_name: str,
        duration_seconds: int = DEFAULT_DURATION_SECONDS,
    ) -> TemporaryCredentials:
        """Obtain credentials restricted to the given role.

        Raises:
            StorageError: If the role cannot be assumed.
        """
        ...


def sanitize_session_name(name: str) -> str:
    cleaned = "".join(
        ch if ch.isalnum() or ch in "+=,.@-_" else "-" for ch in name.strip()
    )
    cleaned = cleaned[:MAX_SESSION_NAME_LENGTH]
    # STS requires at least two characters
    return cleaned if len(cleaned) >= 2 else f"batch-{cleaned}"


class StsCredentialIssuer:
    """Assumes a role with long-lived credentials to mint per-batch ones."""

    def __init__(
        self,
        *,
        region: str,
        access_key_id: str | None,
        secret_access_key: str | None,
    ) -> None:
        self._client = self._build_client(region, access_key_id, secret_access_key)

    @staticmethod
    def _build_client(
        region: str, access_key_id: str | None, secret_access_key: str | None
    ) -> Any:
        try:
            import boto3
        except ImportError as exc:
            raise StorageError(
                "boto3 is required for temporary credentials. "
                "Install with: pip install boto3"
            ) from exc

        return boto3.client(
            "sts",
            region_name=region,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    def assume_role(
        self,
        *,
        role_arn: str,
        session_name: str,
        duration_seconds: int = DEFAULT_DURATION_SECONDS,
    ) -> TemporaryCredentials:
        try:
            response = self._client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=sanitize_session_name(session_name),
                DurationSeconds=int(duration_seconds),
            )
        except Exception as exc:
            raise StorageError(f"Failed to assume role {role_arn}: {exc}") from exc

        credentials = response.get("Credentials")
        if not credentials:
            raise StorageError("STS response missing Credentials")
        return TemporaryCredentials(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expiration=credentials["Expiration"],
        )
