"""Tests for the job store and its state machine."""

from __future__ import annotations

import pytest

from storekb.core.errors import (
    BotProtectionError,
    ConcurrencyConflict,
    NetworkError,
    ParseError,
    RetryLimitExceeded,
    ValidationError,
)
from storekb.services import Services


def test_submit_normalizes_url_and_dedupes_queued(services: Services) -> None:
    first = services.jobs.submit_web({"url": "HTTPS://Example.com/faq/#top"})
    second = services.jobs.submit_web({"url": "https://example.com/faq"})
    assert first == second
    job = services.jobs.get(first)
    assert job.status == "queued"
    assert job.source_ref == "https://example.com/faq"


@pytest.mark.parametrize(
    "payload",
    [
        {"url": "ftp://example.com/file"},
        {"url": "not a url"},
        {"url": "https://example.com", "include_paths": ["no-leading-slash"]},
        {"url": "https://example.com", "include_selectors": ["div[[["]},
    ],
)
def test_invalid_submissions_rejected_before_job_exists(services: Services, payload: dict) -> None:
    with pytest.raises(ValidationError):
        services.jobs.submit_web(payload)
    assert services.jobs.list_jobs() == []


def test_claim_is_exclusive_and_counts_attempts(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    claimed = services.jobs.claim_next()
    assert claimed is not None and claimed.id == job_id
    assert claimed.status == "processing"
    assert claimed.attempt_count == 1
    assert services.jobs.claim_next() is None


def test_submit_while_processing_conflicts(services: Services) -> None:
    services.jobs.submit_web({"url": "https://example.com/a"})
    services.jobs.claim_next()
    with pytest.raises(ConcurrencyConflict):
        services.jobs.submit_web({"url": "https://example.com/a"})


def test_retryable_failure_is_rescheduled(services: Services) -> None:
    services.settings.retry_delay_seconds = 0
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    services.jobs.claim_next()
    failed = services.jobs.fail(job_id, NetworkError("timeout"))
    assert failed.status == "failed"
    assert failed.retryable is True
    assert failed.error_kind == "network_error"

    again = services.jobs.claim_next()
    assert again is not None and again.id == job_id
    assert again.attempt_count == 2


def test_retry_ceiling(services: Services) -> None:
    services.settings.retry_delay_seconds = 0
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    for _ in range(services.settings.max_attempts):
        claimed = services.jobs.claim_next()
        assert claimed is not None
        services.jobs.fail(job_id, NetworkError("timeout"))

    exhausted = services.jobs.get(job_id)
    assert exhausted.retryable is False
    assert services.jobs.claim_next() is None
    with pytest.raises(RetryLimitExceeded):
        services.jobs.submit_web({"url": "https://example.com/a"})


def test_bot_protected_is_terminal(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    services.jobs.claim_next()
    job = services.jobs.fail(job_id, BotProtectionError("challenge"))
    assert job.status == "bot_protected"
    assert services.jobs.claim_next() is None
    with pytest.raises(BotProtectionError):
        services.jobs.submit_web({"url": "https://example.com/a"})


def test_parse_error_is_not_retried(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    services.jobs.claim_next()
    job = services.jobs.fail(job_id, ParseError("bad"))
    assert job.status == "failed" and job.retryable is False
    assert services.jobs.claim_next() is None


def test_processed_job_resubmit_requeues_same_job(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    services.jobs.claim_next()
    services.jobs.complete(job_id, result_count=3, failed_count=0, stats={})
    assert services.jobs.submit_web({"url": "https://example.com/a", "follow_links": True}) == job_id
    job = services.jobs.get(job_id)
    assert job.status == "queued"
    assert job.attempt_count == 0
    assert job.config["follow_links"] is True


def test_invalid_transition_rejected(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    with pytest.raises(ConcurrencyConflict):
        services.jobs.update(job_id, "processed")


def test_cancel_and_stale_requeue(services: Services) -> None:
    services.settings.stale_after_seconds = 0.001
    a = services.jobs.submit_web({"url": "https://example.com/a"})
    b = services.jobs.submit_web({"url": "https://example.com/b"})
    assert services.jobs.cancel(a) is True
    assert services.jobs.get(a).error_kind == "cancelled"

    services.jobs.claim_next()
    services.db.execute("UPDATE jobs SET last_attempt_at = 0 WHERE id = ?", [b])
    services.db.commit()
    assert services.jobs.requeue_stale() == 1
    stale = services.jobs.get(b)
    assert stale.status == "failed" and stale.retryable is True


def test_heartbeat_keeps_running_job_from_going_stale(services: Services) -> None:
    services.settings.stale_after_seconds = 60
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    claimed = services.jobs.claim_next()
    services.db.execute("UPDATE jobs SET last_attempt_at = 0 WHERE id = ?", [job_id])
    services.db.commit()

    assert services.jobs.touch(job_id, claimed.attempt_count) is True
    assert services.jobs.requeue_stale() == 0
    assert services.jobs.get(job_id).status == "processing"


def test_superseded_claim_cannot_touch_complete_or_fail(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    first = services.jobs.claim_next()
    services.db.execute("UPDATE jobs SET last_attempt_at = 0 WHERE id = ?", [job_id])
    services.db.commit()
    assert services.jobs.requeue_stale() == 1
    second = services.jobs.claim_next()
    assert second.attempt_count == first.attempt_count + 1

    assert services.jobs.touch(job_id, first.attempt_count) is False
    with pytest.raises(ConcurrencyConflict):
        services.jobs.complete(job_id, result_count=1, failed_count=0, stats={}, attempt=first.attempt_count)
    with pytest.raises(ConcurrencyConflict):
        services.jobs.fail(job_id, NetworkError("timeout"), attempt=first.attempt_count)
    assert services.jobs.get(job_id).status == "processing"

    done = services.jobs.complete(job_id, result_count=1, failed_count=0, stats={}, attempt=second.attempt_count)
    assert done.status == "processed"


def test_pdf_submit_stores_upload_and_delete_removes_it(services: Services, pdf_factory) -> None:
    data = pdf_factory(["Hello PDF"])
    job_id = services.jobs.submit_pdf("guide.pdf", data)
    job = services.jobs.get(job_id)
    assert job.source_ref.startswith("pdf://")
    stored = services.settings.upload_dir / f"{job.config['sha256']}.pdf"
    assert stored.read_bytes() == data

    removed = services.jobs.delete(job_id)
    assert removed.jobs == 1
    assert not stored.exists()
    assert services.jobs.find(job_id) is None


def test_oversized_pdf_rejected(services: Services) -> None:
    services.settings.max_pdf_bytes = 2 * 1024 * 1024
    with pytest.raises(ValidationError):
        services.jobs.submit_pdf("huge.pdf", b"%PDF-" + b"0" * (50 * 1024 * 1024))
    assert services.jobs.list_jobs() == []


def test_purge_failed_removes_old_exhausted_jobs(services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://example.com/a"})
    services.jobs.claim_next()
    services.jobs.fail(job_id, ParseError("bad"))
    services.db.execute("UPDATE jobs SET updated_at = 0 WHERE id = ?", [job_id])
    services.db.commit()
    assert services.jobs.purge_failed(older_than_days=7) == 1
    assert services.jobs.find(job_id) is None
