"""Job repository and the job state machine."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import orjson
from pydantic import ValidationError as PydanticValidationError

from storekb.core.config import Settings
from storekb.core.errors import (
    BotProtectionError,
    ConcurrencyConflict,
    JobNotFound,
    RetryLimitExceeded,
    StoreKBError,
    ValidationError,
)
from storekb.core.logging import get_logger, job_context
from storekb.db.sqlite import SQLiteDatabase
from storekb.ingest.pdf import pdf_digest, validate_pdf_upload
from storekb.models.entities import Job, JobKind, JobStatus
from storekb.models.jobs import PdfJobConfig, WebJobConfig
from storekb.utils.ids import new_id
from storekb.utils.time import ms_to_datetime, now_ms

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"processing", "failed"}),
    "processing": frozenset({"processed", "failed", "bot_protected"}),
    "failed": frozenset({"queued", "processing"}),
    "processed": frozenset({"queued"}),
    "bot_protected": frozenset(),
}

_UPDATABLE_FIELDS = {
    "error_kind",
    "error_message",
    "retryable",
    "result_count",
    "failed_count",
    "next_attempt_at",
    "stats",
}

_CLAIMABLE = """
    (status = 'queued'
     OR (status = 'failed' AND retryable = 1 AND attempt_count < ?
         AND COALESCE(next_attempt_at, 0) <= ?))
    AND NOT EXISTS (
      SELECT 1 FROM jobs AS running
      WHERE running.source_ref = jobs.source_ref AND running.status = 'processing'
    )
"""


@dataclass(slots=True)
class DeletionResult:
    jobs: int = 0
    chunks: int = 0


class JobStore:
    """Durable job records. Every transition is committed before returning."""

    def __init__(
        self,
        db: SQLiteDatabase,
        settings: Settings,
        is_excluded: Callable[[str], bool] | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.is_excluded = is_excluded

    # Submission -------------------------------------------------------

    def submit_web(self, config: WebJobConfig | Mapping[str, Any]) -> str:
        if not isinstance(config, WebJobConfig):
            try:
                config = WebJobConfig.model_validate(dict(config))
            except PydanticValidationError as exc:
                raise ValidationError(_describe(exc)) from exc
        return self._submit("web", config.source_ref, config.model_dump())

    def submit_pdf(self, filename: str, data: bytes) -> str:
        validate_pdf_upload(data, self.settings.max_pdf_bytes)
        digest = pdf_digest(data)
        upload_dir = self.settings.upload_dir
        upload_dir.mkdir(parents=True, exist_ok=True)
        path = upload_dir / f"{digest}.pdf"
        if not path.exists():
            path.write_bytes(data)
        config = PdfJobConfig(
            filename=Path(filename or "upload.pdf").name,
            sha256=digest,
            size_bytes=len(data),
            path=str(path),
        )
        return self._submit("pdf", config.source_ref, config.model_dump())

    def _submit(self, kind: JobKind, source_ref: str, config: dict[str, Any]) -> str:
        if self.is_excluded is not None and self.is_excluded(source_ref):
            raise ValidationError(
                f"{source_ref} is excluded",
                user_message="This source is excluded from the knowledge base.",
            )
        now = now_ms()
        config_json = orjson.dumps(config).decode("utf-8")
        with self.db.transaction() as cur:
            row = cur.execute(
                "SELECT id, status, attempt_count FROM jobs WHERE kind = ? AND source_ref = ?",
                [kind, source_ref],
            ).fetchone()
            if row is None:
                job_id = new_id("job")
                cur.execute(
                    """
                    INSERT INTO jobs (id, kind, source_ref, config_json, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'queued', ?, ?)
                    """,
                    [job_id, kind, source_ref, config_json, now, now],
                )
                logger.info("Job submitted", extra=job_context(job_id, source_ref, kind=kind))
                return job_id

            job_id = row["id"]
            status = row["status"]
            if status == "queued":
                cur.execute(
                    "UPDATE jobs SET config_json = ?, updated_at = ? WHERE id = ?",
                    [config_json, now, job_id],
                )
                return job_id
            if status == "processing":
                raise ConcurrencyConflict(f"job {job_id} is already processing {source_ref}")
            if status == "bot_protected":
                raise BotProtectionError(f"{source_ref} was previously detected as bot protected")
            if status == "failed" and row["attempt_count"] >= self.settings.max_attempts:
                raise RetryLimitExceeded(f"job {job_id} exhausted {row['attempt_count']} attempts")

            # processed jobs start over; failed ones keep their attempt count
            attempt_count = 0 if status == "processed" else row["attempt_count"]
            cur.execute(
                """
                UPDATE jobs SET status = 'queued', config_json = ?, updated_at = ?,
                  attempt_count = ?, retryable = 0, next_attempt_at = NULL,
                  error_kind = NULL, error_message = NULL
                WHERE id = ?
                """,
                [config_json, now, attempt_count, job_id],
            )
            logger.info("Job requeued", extra=job_context(job_id, source_ref, previous=status))
            return job_id

    # Claiming and transitions ----------------------------------------

    def claim_next(self) -> Job | None:
        """Move the oldest claimable job to ``processing``, or return None."""
        now = now_ms()
        candidates = self.db.query(
            f"SELECT id FROM jobs WHERE {_CLAIMABLE} ORDER BY created_at ASC, id ASC LIMIT 10",
            [self.settings.max_attempts, now],
        )
        for candidate in candidates:
            try:
                cursor = self.db.execute(
                    f"""
                    UPDATE jobs SET status = 'processing', attempt_count = attempt_count + 1,
                      last_attempt_at = ?, updated_at = ?, next_attempt_at = NULL
                    WHERE id = ? AND {_CLAIMABLE}
                    """,
                    [now, now, candidate["id"], self.settings.max_attempts, now],
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                # another worker claimed a job for the same source first
                self.db.rollback()
                continue
            if cursor.rowcount == 1:
                job = self.get(candidate["id"])
                logger.info(
                    "Job claimed",
                    extra=job_context(job.id, job.source_ref, attempt=job.attempt_count),
                )
                return job
        return None

    def touch(self, job_id: str, attempt: int) -> bool:
        """Heartbeat for a running job; False once the claim for ``attempt`` is gone."""
        now = now_ms()
        cursor = self.db.execute(
            """
            UPDATE jobs SET last_attempt_at = ?, updated_at = ?
            WHERE id = ? AND status = 'processing' AND attempt_count = ?
            """,
            [now, now, job_id, attempt],
        )
        self.db.commit()
        return cursor.rowcount == 1

    def update(self, job_id: str, status: JobStatus, attempt: int | None = None, **fields: Any) -> Job:
        """Apply a transition. With ``attempt`` set, only the worker holding that claim may apply it."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown job fields: {sorted(unknown)}")
        current = self.get(job_id)
        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise ConcurrencyConflict(f"job {job_id} cannot move from {current.status} to {status}")
        if attempt is not None and current.attempt_count != attempt:
            raise ConcurrencyConflict(f"job {job_id} was claimed again (attempt {current.attempt_count})")

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, now_ms()]
        for name, value in fields.items():
            if name == "stats":
                assignments.append("stats_json = ?")
                params.append(orjson.dumps(value).decode("utf-8"))
            elif name == "retryable":
                assignments.append("retryable = ?")
                params.append(1 if value else 0)
            else:
                assignments.append(f"{name} = ?")
                params.append(value)
        where = "id = ? AND status = ?"
        params.extend([job_id, current.status])
        if attempt is not None:
            where += " AND attempt_count = ?"
            params.append(attempt)
        cursor = self.db.execute(
            f"UPDATE jobs SET {', '.join(assignments)} WHERE {where}",
            params,
        )
        self.db.commit()
        if cursor.rowcount != 1:
            raise ConcurrencyConflict(f"job {job_id} changed while updating to {status}")
        return self.get(job_id)

    def complete(
        self,
        job_id: str,
        result_count: int,
        failed_count: int,
        stats: dict[str, Any],
        attempt: int | None = None,
    ) -> Job:
        return self.update(
            job_id,
            "processed",
            attempt=attempt,
            result_count=result_count,
            failed_count=failed_count,
            stats=stats,
            error_kind=None,
            error_message=None,
            retryable=False,
        )

    def fail(
        self,
        job_id: str,
        error: StoreKBError,
        stats: dict[str, Any] | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Record an error; retryable errors schedule another attempt while attempts remain."""
        job = self.get(job_id)
        fields: dict[str, Any] = {
            "error_kind": error.code,
            "error_message": error.detail,
        }
        if stats is not None:
            fields["stats"] = stats
        if isinstance(error, BotProtectionError):
            return self.update(job_id, "bot_protected", attempt=attempt, retryable=False, **fields)
        retryable = error.retryable and job.attempt_count < self.settings.max_attempts
        next_attempt = now_ms() + int(self.settings.retry_delay_seconds * 1000) if retryable else None
        return self.update(
            job_id, "failed", attempt=attempt, retryable=retryable, next_attempt_at=next_attempt, **fields
        )

    def cancel(self, job_id: str) -> bool:
        cursor = self.db.execute(
            """
            UPDATE jobs SET status = 'failed', error_kind = 'cancelled',
              error_message = 'cancelled by request', retryable = 0, updated_at = ?
            WHERE id = ? AND status IN ('queued', 'processing')
            """,
            [now_ms(), job_id],
        )
        self.db.commit()
        return cursor.rowcount == 1

    def requeue_stale(self) -> int:
        """Release processing jobs whose worker stopped reporting."""
        now = now_ms()
        cutoff = now - int(self.settings.stale_after_seconds * 1000)
        cursor = self.db.execute(
            """
            UPDATE jobs SET status = 'failed', retryable = 1, error_kind = 'stale',
              error_message = 'worker stopped before finishing', next_attempt_at = ?, updated_at = ?
            WHERE status = 'processing' AND COALESCE(last_attempt_at, 0) < ?
            """,
            [now, now, cutoff],
        )
        self.db.commit()
        if cursor.rowcount:
            logger.warning("Released %s stale jobs", cursor.rowcount)
        return cursor.rowcount

    # Reads ------------------------------------------------------------

    def find(self, job_id: str) -> Job | None:
        row = self.db.query_one("SELECT * FROM jobs WHERE id = ?", [job_id])
        return _row_to_job(row) if row else None

    def get(self, job_id: str) -> Job:
        job = self.find(job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} does not exist")
        return job

    def get_by_source(self, kind: JobKind, source_ref: str) -> Job | None:
        row = self.db.query_one(
            "SELECT * FROM jobs WHERE kind = ? AND source_ref = ?",
            [kind, source_ref],
        )
        return _row_to_job(row) if row else None

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        if status is None:
            rows = self.db.query("SELECT * FROM jobs ORDER BY created_at ASC, id ASC")
        else:
            rows = self.db.query(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at ASC, id ASC",
                [status],
            )
        return [_row_to_job(row) for row in rows]

    # Deletion ---------------------------------------------------------

    def delete(self, job_id: str) -> DeletionResult:
        job = self.find(job_id)
        if job is None:
            return DeletionResult()
        with self.db.transaction() as cur:
            chunks = cur.execute("SELECT COUNT(*) AS count FROM chunks WHERE job_id = ?", [job_id]).fetchone()
            cur.execute("DELETE FROM jobs WHERE id = ?", [job_id])
        _remove_upload(job)
        logger.info("Job deleted", extra=job_context(job.id, job.source_ref, chunks=chunks["count"]))
        return DeletionResult(jobs=1, chunks=int(chunks["count"]))

    def delete_by_source(self, source_ref: str) -> DeletionResult:
        result = DeletionResult()
        for row in self.db.query("SELECT id FROM jobs WHERE source_ref = ?", [source_ref]):
            removed = self.delete(row["id"])
            result.jobs += removed.jobs
            result.chunks += removed.chunks
        return result

    def purge_failed(self, older_than_days: int = 7) -> int:
        """Delete failed jobs that will never be retried again."""
        cutoff = now_ms() - older_than_days * 86_400_000
        rows = self.db.query(
            """
            SELECT id FROM jobs
            WHERE status = 'failed' AND (retryable = 0 OR attempt_count >= ?) AND updated_at < ?
            """,
            [self.settings.max_attempts, cutoff],
        )
        for row in rows:
            self.delete(row["id"])
        return len(rows)


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        kind=row["kind"],
        source_ref=row["source_ref"],
        config=orjson.loads(row["config_json"]),
        status=row["status"],
        created_at=ms_to_datetime(row["created_at"]),
        updated_at=ms_to_datetime(row["updated_at"]),
        last_attempt_at=ms_to_datetime(row["last_attempt_at"]),
        next_attempt_at=ms_to_datetime(row["next_attempt_at"]),
        attempt_count=row["attempt_count"],
        retryable=bool(row["retryable"]),
        error_kind=row["error_kind"],
        error_message=row["error_message"],
        result_count=row["result_count"],
        failed_count=row["failed_count"],
        stats=orjson.loads(row["stats_json"]) if row["stats_json"] else {},
    )


def _remove_upload(job: Job) -> None:
    if job.kind != "pdf":
        return
    path = job.config.get("path")
    if path:
        Path(path).unlink(missing_ok=True)


def _describe(exc: PydanticValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(messages)


__all__ = ["JobStore", "DeletionResult", "ALLOWED_TRANSITIONS"]
