"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobKind = Literal["web", "pdf"]
JobStatus = Literal["queued", "processing", "processed", "failed", "bot_protected"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"processed", "failed", "bot_protected"})


@dataclass(slots=True)
class Job:
    id: str
    kind: JobKind
    source_ref: str
    config: dict[str, Any]
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    attempt_count: int = 0
    retryable: bool = False
    error_kind: str | None = None
    error_message: str | None = None
    result_count: int = 0
    failed_count: int = 0
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Chunk:
    id: str
    job_id: str
    source_ref: str
    position: int
    ordinal: int
    text: str
    vector: list[float]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class EntityRef:
    """A content or catalog entity, e.g. ``EntityRef("product", "17")``."""

    entity_type: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


@dataclass(slots=True)
class ExclusionRule:
    entity_type: str
    entity_id: str
    created_at: datetime

    @property
    def entity(self) -> EntityRef:
        return EntityRef(self.entity_type, self.entity_id)


__all__ = ["Job", "Chunk", "EntityRef", "ExclusionRule", "JobKind", "JobStatus", "TERMINAL_STATUSES"]
