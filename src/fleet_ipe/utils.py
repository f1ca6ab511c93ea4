"""Shared helpers — hashing, timestamps, run ids."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from uuid import uuid4


def sha256_bytes(data: bytes) -> str:
    """Return the hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return uuid4().hex
