"""SQLite-backed chunk vector store."""

from __future__ import annotations

import math
from array import array
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from storekb.core.errors import JobCancelled
from storekb.core.metrics import INDEX_SIZE
from storekb.db.sqlite import SQLiteDatabase
from storekb.ingest.types import ChunkPayload
from storekb.models.entities import EntityRef
from storekb.retrieval.exclusions import EntityResolver
from storekb.utils.ids import chunk_id
from storekb.utils.time import ms_to_datetime, now_ms


@dataclass(slots=True)
class ScoredChunk:
    chunk_id: str
    job_id: str
    source_ref: str
    position: int
    ordinal: int
    text: str
    score: float
    created_at: datetime


@dataclass(slots=True)
class SourceSummary:
    source_ref: str
    job_id: str
    chunks: int


_UPSERT_SQL = """
INSERT INTO chunks (id, job_id, source_ref, position, ordinal, text, vector, dim, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (job_id, position) DO UPDATE SET
  source_ref = excluded.source_ref,
  ordinal = excluded.ordinal,
  text = excluded.text,
  vector = excluded.vector,
  dim = excluded.dim,
  created_at = excluded.created_at
"""

_EXCLUDED_BY_RULE = """
EXISTS (
  SELECT 1 FROM source_entities AS se
  JOIN exclusion_rules AS er
    ON er.entity_type = se.entity_type AND er.entity_id = se.entity_id
  WHERE se.source_ref = c.source_ref
)
"""


class VectorStore:
    """Chunks and their vectors; at most one row per ``(job_id, position)``."""

    def __init__(self, db: SQLiteDatabase, dim: int, resolver: EntityResolver) -> None:
        self.db = db
        self.dim = dim
        self.resolver = resolver

    def upsert(
        self,
        job_id: str,
        position: int,
        source_ref: str,
        text: str,
        vector: Sequence[float],
        ordinal: int | None = None,
    ) -> str:
        self._check_dim(vector)
        identifier = chunk_id(job_id, position)
        with self.db.transaction() as cur:
            cur.execute(
                _UPSERT_SQL,
                [
                    identifier,
                    job_id,
                    source_ref,
                    position,
                    position if ordinal is None else ordinal,
                    text,
                    _to_blob(vector),
                    self.dim,
                    now_ms(),
                ],
            )
            self._record_entities(cur, [source_ref])
        self._refresh_gauge()
        return identifier

    def replace_job_chunks(
        self,
        job_id: str,
        items: Sequence[tuple[ChunkPayload, Sequence[float]]],
        expected_status: str | None = "processing",
        attempt: int | None = None,
    ) -> int:
        """Atomically swap a job's chunk set; readers see either the old or the new set.

        With ``expected_status`` set, the swap only happens while the job row is
        still in that status, so a job cancelled or deleted mid-run writes nothing.
        With ``attempt`` set, the row must also still carry that attempt count, so
        a worker whose claim was released and taken over writes nothing either.
        """
        for _payload, vector in items:
            self._check_dim(vector)
        created_at = now_ms()
        with self.db.transaction() as cur:
            if expected_status is not None:
                row = cur.execute("SELECT status, attempt_count FROM jobs WHERE id = ?", [job_id]).fetchone()
                if row is None or row["status"] != expected_status:
                    raise JobCancelled(f"job {job_id} is no longer {expected_status}")
                if attempt is not None and row["attempt_count"] != attempt:
                    raise JobCancelled(f"job {job_id} was claimed again (attempt {row['attempt_count']})")
            cur.execute("DELETE FROM chunks WHERE job_id = ?", [job_id])
            cur.executemany(
                _UPSERT_SQL,
                [
                    (
                        chunk_id(job_id, payload.position),
                        job_id,
                        payload.source_ref,
                        payload.position,
                        payload.ordinal,
                        payload.text,
                        _to_blob(vector),
                        self.dim,
                        created_at,
                    )
                    for payload, vector in items
                ],
            )
            self._record_entities(cur, {payload.source_ref for payload, _vector in items})
            _drop_orphan_entities(cur)
        self._refresh_gauge()
        return len(items)

    def query(
        self,
        vector: Sequence[float],
        k: int,
        exclude_entities: Iterable[EntityRef] = (),
    ) -> list[ScoredChunk]:
        """Top-k chunks by cosine similarity, newest first on ties.

        Exclusions (stored rules and ``exclude_entities``) are applied inside the
        single read statement, before ranking.
        """
        self._check_dim(vector)
        if k <= 0:
            return []
        sql = f"SELECT c.* FROM chunks AS c WHERE NOT {_EXCLUDED_BY_RULE}"
        params: list[str] = []
        extra = list(exclude_entities)
        if extra:
            matches = " OR ".join("(se2.entity_type = ? AND se2.entity_id = ?)" for _ in extra)
            sql += (
                " AND NOT EXISTS (SELECT 1 FROM source_entities AS se2"
                f" WHERE se2.source_ref = c.source_ref AND ({matches}))"
            )
            for entity in extra:
                params.extend([entity.entity_type, entity.entity_id])
        rows = self.db.query(sql, params)

        query_norm = _norm(vector)
        scored: list[ScoredChunk] = []
        for row in rows:
            stored = _from_blob(row["vector"])
            scored.append(
                ScoredChunk(
                    chunk_id=row["id"],
                    job_id=row["job_id"],
                    source_ref=row["source_ref"],
                    position=row["position"],
                    ordinal=row["ordinal"],
                    text=row["text"],
                    score=_cosine(vector, query_norm, stored),
                    created_at=ms_to_datetime(row["created_at"]),
                )
            )
        scored.sort(key=lambda item: (-item.score, -item.created_at.timestamp(), item.chunk_id))
        return scored[:k]

    def delete_by_job(self, job_id: str) -> int:
        with self.db.transaction() as cur:
            removed = cur.execute("DELETE FROM chunks WHERE job_id = ?", [job_id]).rowcount
            _drop_orphan_entities(cur)
        self._refresh_gauge()
        return removed

    def delete_by_source(self, source_ref: str) -> int:
        with self.db.transaction() as cur:
            removed = cur.execute("DELETE FROM chunks WHERE source_ref = ?", [source_ref]).rowcount
            _drop_orphan_entities(cur)
        self._refresh_gauge()
        return removed

    def delete_by_entity(self, entity: EntityRef) -> int:
        with self.db.transaction() as cur:
            removed = cur.execute(
                """
                DELETE FROM chunks WHERE source_ref IN (
                  SELECT source_ref FROM source_entities WHERE entity_type = ? AND entity_id = ?
                )
                """,
                [entity.entity_type, entity.entity_id],
            ).rowcount
            _drop_orphan_entities(cur)
        self._refresh_gauge()
        return removed

    def list_sources(self, parent_url: str) -> list[SourceSummary]:
        """Pages stored for the web job rooted at ``parent_url``, in crawl order."""
        rows = self.db.query(
            """
            SELECT c.source_ref, c.job_id, COUNT(*) AS count, MIN(c.position) AS first_position
            FROM chunks AS c JOIN jobs AS j ON j.id = c.job_id
            WHERE j.kind = 'web' AND j.source_ref = ?
            GROUP BY c.source_ref, c.job_id
            ORDER BY first_position
            """,
            [parent_url],
        )
        return [
            SourceSummary(source_ref=row["source_ref"], job_id=row["job_id"], chunks=row["count"])
            for row in rows
        ]

    def count(self, job_id: str | None = None) -> int:
        if job_id is None:
            row = self.db.query_one("SELECT COUNT(*) AS count FROM chunks")
        else:
            row = self.db.query_one("SELECT COUNT(*) AS count FROM chunks WHERE job_id = ?", [job_id])
        return int(row["count"]) if row else 0

    def _record_entities(self, cur, source_refs: Iterable[str]) -> None:
        rows = [
            (source_ref, entity.entity_type, entity.entity_id)
            for source_ref in source_refs
            for entity in self.resolver.resolve(source_ref)
        ]
        if rows:
            cur.executemany(
                "INSERT OR IGNORE INTO source_entities (source_ref, entity_type, entity_id) VALUES (?, ?, ?)",
                rows,
            )

    def _check_dim(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dim:
            raise ValueError(f"Vector dimension mismatch: expected {self.dim}, got {len(vector)}")

    def _refresh_gauge(self) -> None:
        INDEX_SIZE.set(self.count())


def _drop_orphan_entities(cur) -> None:
    cur.execute(
        "DELETE FROM source_entities WHERE source_ref NOT IN (SELECT DISTINCT source_ref FROM chunks)"
    )


def _to_blob(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def _from_blob(blob: bytes) -> array:
    floats = array("f")
    floats.frombytes(blob)
    return floats


def _norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(value * value for value in vector))


def _cosine(query: Sequence[float], query_norm: float, stored: Sequence[float]) -> float:
    stored_norm = _norm(stored)
    if query_norm == 0 or stored_norm == 0:
        return 0.0
    return sum(x * y for x, y in zip(query, stored)) / (query_norm * stored_norm)


__all__ = ["VectorStore", "ScoredChunk", "SourceSummary"]
