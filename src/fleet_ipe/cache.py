"""Upload cache — hold uploaded workbook bytes between "list sheets" and "extract".

Each upload gets its own opaque token, so concurrent callers never see each
other's bytes. Entries expire after a TTL and the oldest entry is evicted
once the cache is full.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from uuid import uuid4

from fleet_ipe.extract import ExtractionResult, extract_workbook
from fleet_ipe.grid import EmptyInputError, list_sheet_names

logger = logging.getLogger(__name__)


class UnknownUploadError(KeyError):
    """Raised for a token that was never issued, was discarded, or has expired."""

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(token)

    def __str__(self) -> str:
        return f"Unknown or expired upload token: {self.token!r}"


@dataclass(frozen=True)
class CachedUpload:
    token: str
    filename: str
    content: bytes = field(repr=False)
    sheet_names: tuple[str, ...]
    created_at: float


class UploadCache:
    """Thread-safe, token-keyed store of uploaded workbooks.

    Example:
        >>> cache = UploadCache()
        >>> upload = cache.put(data, "fleet.xlsx")
        >>> result = cache.extract(upload.token, upload.sheet_names[0])
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_entries: int = 32,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CachedUpload] = OrderedDict()
        self._lock = threading.Lock()

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [t for t, e in self._entries.items() if now - e.created_at >= self.ttl_seconds]
        for token in expired:
            del self._entries[token]
            logger.debug("Upload %s expired", token)

    def _lookup(self, token: str) -> CachedUpload:
        self._purge_expired()
        try:
            return self._entries[token]
        except KeyError:
            raise UnknownUploadError(token) from None

    def put(self, content: bytes, filename: str = "") -> CachedUpload:
        """Store *content* and return the entry, including its fresh token.

        Raises EmptyInputError for empty or unreadable workbooks.
        """
        if not content:
            raise EmptyInputError("Uploaded file is empty")
        content = bytes(content)
        sheet_names = tuple(list_sheet_names(content))

        with self._lock:
            self._purge_expired()
            entry = CachedUpload(
                token=uuid4().hex,
                filename=filename,
                content=content,
                sheet_names=sheet_names,
                created_at=self._clock(),
            )
            self._entries[entry.token] = entry
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted upload %s", evicted)
        logger.info("Cached upload %r (%d bytes, %d sheets)", filename, len(content), len(sheet_names))
        return entry

    def get(self, token: str) -> CachedUpload:
        with self._lock:
            return self._lookup(token)

    def sheet_names(self, token: str) -> list[str]:
        with self._lock:
            return list(self._lookup(token).sheet_names)

    def extract(
        self,
        token: str,
        sheet_name: str,
        overrides: Mapping[str, str] | None = None,
    ) -> ExtractionResult:
        """Run the extraction pipeline on the cached bytes of *token*."""
        with self._lock:
            content = self._lookup(token).content
        return extract_workbook(content, sheet_name, overrides)

    def discard(self, token: str) -> None:
        with self._lock:
            if self._entries.pop(token, None) is None:
                raise UnknownUploadError(token)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            self._purge_expired()
            return token in self._entries
