"""ID helpers."""

from __future__ import annotations

import uuid

_CHUNK_NAMESPACE = uuid.UUID("6f1c2b7e-8a35-4d0e-9a8e-4f3b5c2d1e90")


def new_id(prefix: str | None = None) -> str:
    """Generate a random UUID4 string with optional prefix."""
    base = uuid.uuid4().hex
    return f"{prefix}_{base}" if prefix else base


def chunk_id(job_id: str, position: int) -> str:
    """Stable chunk identifier, so re-running a job keeps the same ids."""
    return "chk_" + uuid.uuid5(_CHUNK_NAMESPACE, f"{job_id}:{position}").hex
