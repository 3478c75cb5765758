"""Display handles: revocable references to in-memory image bytes.

A handle stands in for a browser object URL. The store hands out an opaque
token per image; the API serves the bytes behind ``/api/v1/blobs/<token>``
until the handle is released.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BLOB_URL_PREFIX = "/api/v1/blobs/"


@dataclass(frozen=True)
class Blob:
    """Bytes and content type behind a live handle."""

    data: bytes
    mime_type: str


class DisplayHandle:
    """A single revocable handle. Must be released exactly once."""

    def __init__(self, store: HandleStore, token: str) -> None:
        self._store = store
        self._token = token
        self._released = False

    @property
    def token(self) -> str:
        return self._token

    @property
    def url(self) -> str:
        return f"{BLOB_URL_PREFIX}{self._token}"

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Revoke the handle.

        Raises:
            RuntimeError: If the handle was already released.
        """
        if self._released:
            raise RuntimeError(f"Display handle {self._token} released twice")
        self._released = True
        self._store._revoke(self._token)

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"DisplayHandle({self._token!r}, {state})"


class HandleStore:
    """Issues and revokes display handles."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, Blob] = {}
        self._created = 0
        self._released = 0

    def create(self, data: bytes, mime_type: str) -> DisplayHandle:
        token = secrets.token_urlsafe(16)
        with self._lock:
            self._blobs[token] = Blob(data=data, mime_type=mime_type)
            self._created += 1
        return DisplayHandle(self, token)

    def resolve(self, token: str) -> Blob | None:
        """Return the blob behind a live token, or None once it is revoked."""
        with self._lock:
            return self._blobs.get(token)

    def _revoke(self, token: str) -> None:
        with self._lock:
            self._blobs.pop(token, None)
            self._released += 1
        logger.debug("Revoked display handle %s", token)

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._blobs)

    @property
    def created_count(self) -> int:
        with self._lock:
            return self._created

    @property
    def released_count(self) -> int:
        with self._lock:
            return self._released
