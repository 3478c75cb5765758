"""File intake store: accepted images, their display handles and results.

The store holds one immutable snapshot (a tuple of ``ManagedFile`` records).
Every mutator builds a new tuple under the lock and swaps it in, so readers
always see a consistent collection. Records are addressed by a generated id;
index-based helpers resolve the index to an id first.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from deepimg.errors import RunInProgressError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from deepimg.core.handles import DisplayHandle, HandleStore

logger = logging.getLogger(__name__)

ALLOWED_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/png", "image/webp"})
MAX_FILE_SIZE: int = 5 * 1024 * 1024
OVERSIZE_NOTICE_SECONDS: float = 4.0


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class FileStatus(StrEnum):
    PENDING = "pending"
    CLASSIFIED = "classified"
    FAILED = "failed"


@dataclass(frozen=True)
class LabelScore:
    """One ranked label returned by the classifier."""

    label: str
    score: float


ClassificationResult = tuple[LabelScore, ...]


@dataclass(frozen=True)
class Candidate:
    """A file offered for intake (upload, drop or picker)."""

    name: str
    size: int
    mime_type: str
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class ManagedFile:
    """An accepted file. Owns its display handle."""

    id: str
    name: str
    size: int
    mime_type: str
    data: bytes = field(repr=False)
    handle: DisplayHandle
    result: ClassificationResult | None = None
    status: FileStatus = FileStatus.PENDING
    error: str | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.name, self.size)

    @property
    def display_url(self) -> str:
        return self.handle.url


@dataclass(frozen=True)
class AddFilesResult:
    """Outcome of one intake batch."""

    accepted: tuple[ManagedFile, ...] = ()
    oversized: tuple[str, ...] = ()
    duplicates: int = 0
    unsupported: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.accepted or self.oversized)


# ---------------------------------------------------------------------------
# Oversize notice
# ---------------------------------------------------------------------------


class OversizeNotice:
    """Transient flag raised when a batch contained files over the size limit.

    The flag reads as set until ``delay`` seconds after it was last raised.
    """

    def __init__(self, delay: float = OVERSIZE_NOTICE_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self._delay = delay
        self._clock = clock
        self._raised_at: float | None = None

    def raise_(self) -> None:
        self._raised_at = self._clock()

    def clear(self) -> None:
        self._raised_at = None

    @property
    def active(self) -> bool:
        if self._raised_at is None:
            return False
        if self._clock() - self._raised_at >= self._delay:
            self._raised_at = None
            return False
        return True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FileStore:
    """The session's file collection and its three mutators."""

    def __init__(
        self,
        handles: HandleStore,
        max_file_size: int = MAX_FILE_SIZE,
        notice_delay: float = OVERSIZE_NOTICE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handles = handles
        self._max_file_size = max_file_size
        self._lock = threading.Lock()
        self._files: tuple[ManagedFile, ...] = ()
        self._run_in_flight = False
        self._closed = False
        self.oversize_notice = OversizeNotice(notice_delay, clock)

    # -- Read views ---------------------------------------------------------

    @property
    def snapshot(self) -> tuple[ManagedFile, ...]:
        return self._files

    @property
    def files(self) -> list[ManagedFile]:
        return list(self._files)

    @property
    def image_urls(self) -> list[str]:
        return [f.display_url for f in self._files]

    @property
    def classification_outputs(self) -> list[ClassificationResult | None]:
        return [f.result for f in self._files]

    def __len__(self) -> int:
        return len(self._files)

    def get(self, file_id: str) -> ManagedFile:
        """Return the record with ``file_id``.

        Raises:
            KeyError: If no such file is in the collection.
        """
        for managed in self._files:
            if managed.id == file_id:
                return managed
        raise KeyError(f"Unknown file: {file_id}")

    def pending(self) -> list[ManagedFile]:
        return [f for f in self._files if f.status is FileStatus.PENDING]

    @property
    def run_in_flight(self) -> bool:
        return self._run_in_flight

    @property
    def is_complete(self) -> bool:
        """True when there are files, none is pending and no run is in flight."""
        files = self._files
        return bool(files) and not self.run_in_flight and all(f.status is not FileStatus.PENDING for f in files)

    # -- Mutators -----------------------------------------------------------

    def add_files(self, candidates: Iterable[Candidate]) -> AddFilesResult:
        """Accept supported, new, small-enough candidates in input order.

        Unsupported types are dropped silently. Duplicates by ``(name, size)``
        are dropped. Oversized files are dropped and raise the oversize notice.
        When nothing passes the type and dedup filter, the state is unchanged.
        """
        with self._lock:
            self._check_open()
            seen = {f.key for f in self._files}
            unsupported = 0
            duplicates = 0
            fitting: list[Candidate] = []
            oversized: list[str] = []

            for candidate in candidates:
                if candidate.mime_type not in ALLOWED_TYPES:
                    unsupported += 1
                    continue
                key = (candidate.name, candidate.size)
                if key in seen:
                    duplicates += 1
                    continue
                seen.add(key)
                if candidate.size > self._max_file_size:
                    oversized.append(candidate.name)
                else:
                    fitting.append(candidate)

            if not fitting and not oversized:
                return AddFilesResult(duplicates=duplicates, unsupported=unsupported)

            accepted = tuple(
                ManagedFile(
                    id=uuid.uuid4().hex,
                    name=c.name,
                    size=c.size,
                    mime_type=c.mime_type,
                    data=c.data,
                    handle=self._handles.create(c.data, c.mime_type),
                )
                for c in fitting
            )
            self._files = self._files + accepted

            if oversized:
                self.oversize_notice.raise_()
            else:
                self.oversize_notice.clear()

        if oversized:
            logger.info(
                "Rejected %d file(s) over %d bytes: %s", len(oversized), self._max_file_size, ", ".join(oversized)
            )
        logger.info("Accepted %d file(s), collection size %d", len(accepted), len(self._files))
        return AddFilesResult(
            accepted=accepted,
            oversized=tuple(oversized),
            duplicates=duplicates,
            unsupported=unsupported,
        )

    def remove(self, file_id: str) -> ManagedFile:
        """Release the file's display handle and drop it from the collection.

        Raises:
            KeyError: If no such file is in the collection.
        """
        with self._lock:
            self._check_open()
            index = self._index_of(file_id)
            return self._remove_index(index)

    def remove_at(self, index: int) -> ManagedFile:
        """Index-addressed removal.

        Raises:
            IndexError: If ``index`` is outside ``0 <= index < len(self)``.
        """
        with self._lock:
            self._check_open()
            if not 0 <= index < len(self._files):
                raise IndexError(f"File index {index} out of range")
            return self._remove_index(index)

    def set_result(self, file_id: str, result: ClassificationResult) -> bool:
        """Store a classification result. Last write wins.

        Returns False when the file was removed while its request was in
        flight; the result is then dropped.
        """
        return self._update(file_id, result=tuple(result), status=FileStatus.CLASSIFIED, error=None)

    def set_result_at(self, index: int, result: ClassificationResult) -> None:
        """Index-addressed variant of :meth:`set_result`.

        Raises:
            IndexError: If ``index`` is outside ``0 <= index < len(self)``.
        """
        files = self._files
        if not 0 <= index < len(files):
            raise IndexError(f"File index {index} out of range")
        self.set_result(files[index].id, result)

    def set_error(self, file_id: str, message: str) -> bool:
        """Mark a file as failed. Returns False if the file is gone."""
        return self._update(file_id, result=None, status=FileStatus.FAILED, error=message)

    def reset_failed(self) -> int:
        """Move failed files back to pending so the next run retries them."""
        with self._lock:
            self._check_open()
            count = 0
            updated: list[ManagedFile] = []
            for managed in self._files:
                if managed.status is FileStatus.FAILED:
                    managed = dataclasses.replace(managed, status=FileStatus.PENDING, error=None)
                    count += 1
                updated.append(managed)
            self._files = tuple(updated)
        return count

    def begin_run(self) -> None:
        """Claim the single classification run slot.

        Raises:
            RunInProgressError: If another run has not finished yet.
        """
        with self._lock:
            self._check_open()
            if self._run_in_flight:
                raise RunInProgressError("A classification run is already in progress")
            self._run_in_flight = True

    def end_run(self) -> None:
        with self._lock:
            self._run_in_flight = False

    def close(self) -> None:
        """Release every remaining display handle and empty the collection."""
        with self._lock:
            if self._closed:
                return
            files, self._files = self._files, ()
            self._closed = True
        for managed in files:
            managed.handle.release()
        logger.info("File store closed, released %d display handle(s)", len(files))

    # -- Internal -----------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("File store is closed")

    def _index_of(self, file_id: str) -> int:
        for index, managed in enumerate(self._files):
            if managed.id == file_id:
                return index
        raise KeyError(f"Unknown file: {file_id}")

    def _remove_index(self, index: int) -> ManagedFile:
        removed = self._files[index]
        removed.handle.release()
        self._files = self._files[:index] + self._files[index + 1 :]
        logger.info("Removed %s, collection size %d", removed.name, len(self._files))
        return removed

    def _update(self, file_id: str, **changes: object) -> bool:
        with self._lock:
            try:
                index = self._index_of(file_id)
            except KeyError:
                logger.info("Dropping classification update for removed file %s", file_id)
                return False
            updated = dataclasses.replace(self._files[index], **changes)  # type: ignore[arg-type]
            self._files = self._files[:index] + (updated,) + self._files[index + 1 :]
            return True
