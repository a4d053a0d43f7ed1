import pytest

from blobstore.common.config import ConfigurationError, Settings


def test_defaults_are_unencrypted():
    settings = Settings()
    assert settings.is_encrypted is False
    assert settings.S3_ADDRESSING_STYLE == "auto"


def test_kms_marks_settings_encrypted():
    settings = Settings(S3_SSE_ALGORITHM="aws:kms", S3_SSE_KMS_KEY_ID="key-1")
    assert settings.is_encrypted is True


def test_kms_key_without_kms_algorithm_is_rejected():
    with pytest.raises(ConfigurationError):
        Settings(S3_SSE_ALGORITHM="AES256", S3_SSE_KMS_KEY_ID="key-1")


def test_unknown_sse_algorithm_is_rejected():
    with pytest.raises(ConfigurationError):
        Settings(S3_SSE_ALGORITHM="rot13")


def test_require_bucket():
    with pytest.raises(ConfigurationError, match="S3_BUCKET"):
        Settings().require_bucket()
    assert Settings(S3_BUCKET="b").require_bucket() == "b"


def test_from_environment_falls_back_on_aws_keys(monkeypatch):
    monkeypatch.delenv("S3_ACCESS_KEY_ID", raising=False)
    monkeypatch.delenv("S3_SECRET_ACCESS_KEY", raising=False)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIAENV")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "env-secret")
    monkeypatch.setenv("S3_MAX_RETRIES", "4")

    settings = Settings.from_environment()

    assert settings.S3_ACCESS_KEY_ID == "AKIAENV"
    assert settings.S3_SECRET_ACCESS_KEY == "env-secret"
    assert settings.S3_MAX_RETRIES == 4


def test_from_environment_bad_integer(monkeypatch):
    monkeypatch.setenv("S3_READ_TIMEOUT", "soon")

    with pytest.raises(ConfigurationError, match="soon"):
        Settings.from_environment()


def test_negative_direct_download_expiry_uses_default():
    assert Settings(S3_DIRECT_DOWNLOAD_EXPIRE=-1).S3_DIRECT_DOWNLOAD_EXPIRE == 3600
