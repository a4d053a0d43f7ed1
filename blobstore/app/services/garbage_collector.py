"""Mark-and-sweep garbage collection over the blob bucket.

The caller marks every digest still referenced, then the sweep walks the
bucket listing and reclaims the digest-shaped keys that were not marked.
Keys that cannot be MD5 digests are never touched.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from blobstore.app.services.base import ServiceError
from blobstore.common.digest import is_digest
from blobstore.infra.observability.metrics import GC_BINARIES, GC_BYTES, GC_RUNS
from blobstore.infra.storage.client import ObjectSummary, iter_listing

if TYPE_CHECKING:
    from blobstore.app.services.binary_manager import S3BinaryManager

logger = logging.getLogger(__name__)


class GarbageCollectorStateError(ServiceError):
    """Raised when collector phases are driven out of order."""


class GCState(str, enum.Enum):
    IDLE = "idle"
    MARKING = "marking"
    SWEEPING = "sweeping"
    DONE = "done"


@dataclass
class GCStatus:
    num_binaries: int = 0
    size_binaries: int = 0
    num_binaries_gc: int = 0
    size_binaries_gc: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "num_binaries": self.num_binaries,
            "size_binaries": self.size_binaries,
            "num_binaries_gc": self.num_binaries_gc,
            "size_binaries_gc": self.size_binaries_gc,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class SweepResult:
    unmarked: set[str] = field(default_factory=set)
    status: GCStatus = field(default_factory=GCStatus)


def sweep_listing(
    entries: Iterable[ObjectSummary],
    marked: set[str],
    *,
    prefix: str = "",
    status: GCStatus | None = None,
) -> SweepResult:
    """Partition a bucket listing into retained and reclaimable digests.

    Reclaimed digests are discarded from ``marked``; retained ones stay, so a
    second sweep with the same set and listing reclaims the same digests.
    """
    result = SweepResult(status=status or GCStatus())
    for entry in entries:
        key = entry.key
        digest = key[len(prefix):] if prefix and key.startswith(prefix) else key
        if not is_digest(digest):
            continue
        if digest in marked:
            result.status.num_binaries += 1
            result.status.size_binaries += entry.size_bytes
        else:
            result.status.num_binaries_gc += 1
            result.status.size_binaries_gc += entry.size_bytes
            result.unmarked.add(digest)
            marked.discard(digest)
    return result


class S3BinaryGarbageCollector:
    """Garbage collector keeping the marked (in use) digests in memory."""

    def __init__(self, binary_manager: "S3BinaryManager") -> None:
        self._manager = binary_manager
        self._state = GCState.IDLE
        self._marked: set[str] = set()
        self._status = GCStatus()

    @property
    def id(self) -> str:
        return f"s3:{self._manager.bucket}"

    @property
    def state(self) -> GCState:
        return self._state

    @property
    def status(self) -> GCStatus:
        return self._status

    def start(self) -> None:
        if self._state in (GCState.MARKING, GCState.SWEEPING):
            raise GarbageCollectorStateError(f"Collector {self.id} already started")
        self._marked = set()
        self._status = GCStatus(started_at=datetime.now(timezone.utc))
        self._state = GCState.MARKING
        logger.info("gc_started collector=%s", self.id)

    def mark(self, digest: str) -> None:
        if self._state is not GCState.MARKING:
            raise GarbageCollectorStateError(
                f"Collector {self.id} is {self._state.value}, cannot mark"
            )
        self._marked.add(digest)

    def sweep(self) -> set[str]:
        """List the bucket and return the unmarked digests."""
        if self._state is not GCState.MARKING:
            raise GarbageCollectorStateError(
                f"Collector {self.id} is {self._state.value}, cannot sweep"
            )
        self._state = GCState.SWEEPING
        storage = self._manager.file_storage
        entries = iter_listing(
            self._manager.storage_client, bucket=storage.bucket, prefix=storage.prefix
        )
        try:
            result = sweep_listing(
                entries, self._marked, prefix=storage.prefix, status=self._status
            )
        except Exception:
            # the run can simply be restarted from scratch
            self._state = GCState.IDLE
            raise
        self._marked = set()
        self._status = result.status
        self._status.finished_at = datetime.now(timezone.utc)
        self._state = GCState.DONE
        self._record(result.status)
        return result.unmarked

    def stop(self, delete: bool) -> GCStatus:
        """Finish the run, deleting the unmarked blobs when ``delete`` is set."""
        unmarked = self.sweep()
        if delete and unmarked:
            self._manager.remove_binaries(sorted(unmarked))
        logger.info(
            "gc_finished collector=%s delete=%s retained=%s retained_bytes=%s "
            "reclaimed=%s reclaimed_bytes=%s",
            self.id,
            delete,
            self._status.num_binaries,
            self._status.size_binaries,
            self._status.num_binaries_gc,
            self._status.size_binaries_gc,
            extra={"extra": {"collector": self.id, **self._status.as_dict()}},
        )
        return self._status

    def _record(self, status: GCStatus) -> None:
        GC_RUNS.labels(self.id).inc()
        GC_BINARIES.labels(self.id, "retained").inc(status.num_binaries)
        GC_BINARIES.labels(self.id, "reclaimed").inc(status.num_binaries_gc)
        GC_BYTES.labels(self.id, "retained").inc(status.size_binaries)
        GC_BYTES.labels(self.id, "reclaimed").inc(status.size_binaries_gc)
