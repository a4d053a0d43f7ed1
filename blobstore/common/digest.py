"""Content identity helpers.

Blobs are identified by the lowercase hex MD5 of their bytes. MD5 is required
because S3 reports the MD5 of single-part objects as their ETag, which gives
an independent confirmation that the bytes arrived intact.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import BinaryIO, Iterable

DIGEST_ALGORITHM = "MD5"
DIGEST_LENGTH = 32

CHUNK_SIZE = 1024 * 1024

DIGEST_RE = re.compile(r"[0-9a-f]{32}")
MULTIPART_ETAG_RE = re.compile(r"-\d+$")


def is_digest(value: str) -> bool:
    return DIGEST_RE.fullmatch(value) is not None


def new_hasher() -> "hashlib._Hash":
    return hashlib.md5()


def md5_hexdigest(chunks: Iterable[bytes]) -> str:
    hasher = new_hasher()
    for chunk in chunks:
        hasher.update(chunk)
    return hasher.hexdigest()


def _read_chunks(fp: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterable[bytes]:
    while True:
        chunk = fp.read(chunk_size)
        if not chunk:
            return
        yield chunk


def compute_md5(path: str | Path) -> str:
    with open(path, "rb") as fp:
        return md5_hexdigest(_read_chunks(fp))


def normalize_etag(etag: str | None) -> str | None:
    """Strip the quotes S3 puts around ETag values."""
    if etag is None:
        return None
    return etag.strip().strip('"')


def is_multipart_etag(etag: str | None) -> bool:
    """Multipart-assembled objects have an ETag of the form ``<hex>-<parts>``."""
    if not etag:
        return False
    return MULTIPART_ETAG_RE.search(etag) is not None


def etag_matches_digest(etag: str | None, digest: str, *, encrypted: bool) -> bool:
    """Check a remote ETag against the locally computed digest.

    KMS-encrypted objects and multipart objects have ETags that cannot be
    compared to the plaintext MD5, so they are accepted as-is.
    """
    if encrypted:
        return True
    normalized = normalize_etag(etag)
    if not normalized:
        return False
    return normalized == digest or is_multipart_etag(normalized)
