"""End-to-end tests for the ingest worker."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from storekb.core.config import Settings
from storekb.ingest.web import RenderedPage
from storekb.services import Services

from conftest import FakeRenderer, FlakyBackend

FAQ_URL = "https://example.com/faq"

FAQ_HTML = """
<html><head><title>FAQ</title></head><body>
<h1>Help centre</h1>
<p>Shipping: orders leave our warehouse within two business days.</p>
<p>Delivery usually takes three to five days inside the country.</p>
<p>Refund policy: a full refund is issued within 30 days. Refund requests need the order number.</p>
<p>Gift cards never expire and can be combined with discount codes.</p>
<p>Support is reachable by email every weekday from nine to five.</p>
<p>Accounts can be deleted from the profile settings page at any time.</p>
</body></html>
"""


def _paragraph_page(count: int, poison_at: int | None = None) -> str:
    paragraphs = []
    for i in range(count):
        marker = " POISON" if i == poison_at else ""
        paragraphs.append(f"<p>Paragraph number {i} describes product feature {i} in some detail{marker}.</p>")
    return "<html><body>" + "".join(paragraphs) + "</body></html>"


@pytest.mark.asyncio
async def test_faq_scenario_ranks_refund_chunk_first(
    settings: Settings, renderer: FakeRenderer, make_services: Callable[..., Services]
) -> None:
    settings.embedding_dim = 384
    settings.chunk_max_chars = 120
    renderer.pages[FAQ_URL] = FAQ_HTML
    services = make_services()

    job_id = services.jobs.submit_web({"url": FAQ_URL, "follow_links": False})
    assert await services.worker.run_pending() == 1

    job = services.jobs.get(job_id)
    assert job.status == "processed"
    assert job.result_count == services.vector_store.count(job_id) > 1

    results = await services.retrieval.search("refund policy", k=3)
    assert "refund" in results[0].text.lower()
    assert results[0].source_ref == FAQ_URL


@pytest.mark.asyncio
async def test_reprocessing_is_idempotent(renderer: FakeRenderer, services: Services) -> None:
    renderer.pages[FAQ_URL] = FAQ_HTML
    job_id = services.jobs.submit_web({"url": FAQ_URL})
    await services.worker.run_pending()
    first = sorted(hit.chunk_id for hit in services.vector_store.query([1.0] + [0.0] * 63, k=100))

    assert services.jobs.submit_web({"url": FAQ_URL}) == job_id
    await services.worker.run_pending()
    second = sorted(hit.chunk_id for hit in services.vector_store.query([1.0] + [0.0] * 63, k=100))

    assert first == second
    assert services.vector_store.count() == len(first)
    assert services.jobs.get(job_id).status == "processed"


@pytest.mark.asyncio
async def test_partial_embedding_failure_keeps_successful_chunks(
    settings: Settings, renderer: FakeRenderer, make_services: Callable[..., Services]
) -> None:
    settings.chunk_min_chars = 20
    settings.chunk_max_chars = 100
    renderer.pages["https://example.com/features"] = _paragraph_page(10, poison_at=4)
    services = make_services(embedding_backend=FlakyBackend(dim=settings.embedding_dim))

    job_id = services.jobs.submit_web({"url": "https://example.com/features"})
    await services.worker.run_pending()

    job = services.jobs.get(job_id)
    assert job.status == "processed"
    assert job.result_count == 9
    assert job.failed_count == 1
    assert services.vector_store.count(job_id) == 9
    stored_text = " ".join(hit.text for hit in services.vector_store.query([1.0] + [0.0] * 63, k=20))
    assert "POISON" not in stored_text


@pytest.mark.asyncio
async def test_mostly_failed_embeddings_fail_the_job(
    settings: Settings, renderer: FakeRenderer, make_services: Callable[..., Services]
) -> None:
    settings.chunk_max_chars = 100
    renderer.pages["https://example.com/features"] = _paragraph_page(2, poison_at=0)
    services = make_services(embedding_backend=FlakyBackend(dim=settings.embedding_dim))
    settings.min_success_ratio = 0.9

    job_id = services.jobs.submit_web({"url": "https://example.com/features"})
    await services.worker.run_pending()

    job = services.jobs.get(job_id)
    assert job.status == "failed"
    assert job.error_kind == "partial_embedding"
    assert job.retryable is True
    assert services.vector_store.count(job_id) == 0


@pytest.mark.asyncio
async def test_bot_protection_short_circuits(renderer: FakeRenderer, services: Services) -> None:
    url = "https://protected.example.com"
    renderer.pages[url] = RenderedPage(
        url=url,
        final_url=url,
        status=403,
        html="<html><title>Just a moment...</title><form id='challenge-form'></form></html>",
    )
    job_id = services.jobs.submit_web({"url": url})
    await services.worker.run_pending()
    await services.worker.run_pending()

    job = services.jobs.get(job_id)
    assert job.status == "bot_protected"
    assert job.attempt_count == 1
    assert renderer.requested == [url]
    assert services.vector_store.count(job_id) == 0


@pytest.mark.asyncio
async def test_network_failure_is_retryable(renderer: FakeRenderer, services: Services) -> None:
    job_id = services.jobs.submit_web({"url": "https://unreachable.example.com"})
    await services.worker.run_pending()
    job = services.jobs.get(job_id)
    assert job.status == "failed"
    assert job.retryable is True
    assert job.error_kind == "network_error"
    assert job.next_attempt_at is not None


class InterruptingRenderer(FakeRenderer):
    """Runs ``on_render`` before serving a page, e.g. to cancel the job mid-run."""

    def __init__(self, pages, on_render: Callable[[], None]) -> None:
        super().__init__(pages)
        self.on_render = on_render

    async def render(self, url: str) -> RenderedPage:
        self.on_render()
        return await super().render(url)


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["cancel", "delete"])
async def test_cancelled_or_deleted_job_writes_nothing(
    make_services: Callable[..., Services], action: str
) -> None:
    holder: dict[str, str] = {}
    services_ref: dict[str, Services] = {}

    def interrupt() -> None:
        jobs = services_ref["services"].jobs
        if action == "cancel":
            jobs.cancel(holder["job_id"])
        else:
            jobs.delete(holder["job_id"])

    renderer = InterruptingRenderer({FAQ_URL: FAQ_HTML}, interrupt)
    services = make_services(renderer_factory=renderer)
    services_ref["services"] = services
    holder["job_id"] = services.jobs.submit_web({"url": FAQ_URL})

    assert await services.worker.run_pending() == 0
    assert services.vector_store.count() == 0
    job = services.jobs.find(holder["job_id"])
    if action == "cancel":
        assert job is not None and job.status == "failed" and job.error_kind == "cancelled"
    else:
        assert job is None


class SlowRenderer(FakeRenderer):
    """Takes ``delay`` seconds per page and records the most renders seen in flight."""

    def __init__(self, pages, delay: float) -> None:
        super().__init__(pages)
        self.delay = delay
        self.active = 0
        self.peak = 0

    async def render(self, url: str) -> RenderedPage:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            return await super().render(url)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_overlapping_drains_run_one_job_at_a_time(make_services: Callable[..., Services]) -> None:
    shipping_url = "https://example.com/shipping"
    renderer = SlowRenderer({FAQ_URL: FAQ_HTML, shipping_url: FAQ_HTML}, delay=0.02)
    services = make_services(renderer_factory=renderer)
    first = services.jobs.submit_web({"url": FAQ_URL})
    second = services.jobs.submit_web({"url": shipping_url})

    results = await asyncio.gather(services.worker.run_pending(), services.worker.run_pending())

    assert results == [2, 0]
    assert renderer.peak == 1
    assert services.jobs.get(first).status == "processed"
    assert services.jobs.get(second).status == "processed"


@pytest.mark.asyncio
async def test_worker_that_lost_its_claim_writes_nothing(make_services: Callable[..., Services]) -> None:
    services_ref: dict[str, Services] = {}
    takeover: list = []

    def release_and_reclaim() -> None:
        # another worker finds the claim stale and takes the job over
        if takeover:
            return
        other = services_ref["services"]
        other.db.execute("UPDATE jobs SET last_attempt_at = 0 WHERE status = 'processing'")
        other.db.commit()
        other.jobs.requeue_stale()
        takeover.append(other.jobs.claim_next())

    renderer = InterruptingRenderer({FAQ_URL: FAQ_HTML}, release_and_reclaim)
    services = make_services(renderer_factory=renderer)
    services_ref["services"] = services
    job_id = services.jobs.submit_web({"url": FAQ_URL})

    assert await services.worker.run_pending() == 0
    assert services.vector_store.count() == 0
    job = services.jobs.get(job_id)
    assert job.status == "processing"
    assert job.attempt_count == 2

    assert await services.worker.process(takeover[0]) is True
    job = services.jobs.get(job_id)
    assert job.status == "processed"
    assert job.result_count == services.vector_store.count(job_id) > 0


CRAWL_ROOT = "https://shop.example.com"


def _crawl_pages(count: int) -> dict[str, str]:
    links = "".join(f'<a href="/page-{i}">Page {i}</a>' for i in range(count))
    root = f"<html><body><p>Welcome to the shop front page and its catalogue.</p>{links}</body></html>"
    pages = {CRAWL_ROOT: root}
    for i in range(count):
        pages[f"{CRAWL_ROOT}/page-{i}"] = f"<html><body><p>Catalogue page {i} lists seasonal products.</p></body></html>"
    return pages


@pytest.mark.asyncio
async def test_long_crawl_keeps_its_claim_while_it_heartbeats(
    settings: Settings, make_services: Callable[..., Services]
) -> None:
    settings.stale_after_seconds = 0.15
    pages = _crawl_pages(3)
    slow = SlowRenderer(pages, delay=0.06)
    busy = make_services(renderer_factory=slow)
    idle_renderer = FakeRenderer(pages)
    idle = make_services(renderer_factory=idle_renderer)
    job_id = busy.jobs.submit_web({"url": CRAWL_ROOT, "follow_links": True})

    async def second_worker() -> int:
        # starts after the claim is older than stale_after_seconds
        await asyncio.sleep(0.2)
        return await idle.worker.run_pending()

    results = await asyncio.gather(busy.worker.run_pending(), second_worker())

    assert results == [1, 0]
    assert idle_renderer.requested == []
    assert slow.requested.count(CRAWL_ROOT) == 1
    job = busy.jobs.get(job_id)
    assert job.status == "processed"
    assert job.attempt_count == 1


@pytest.mark.asyncio
async def test_pdf_job_is_processed(services: Services, pdf_factory) -> None:
    data = pdf_factory(["Warranty terms cover manufacturing defects for two years."])
    job_id = services.jobs.submit_pdf("warranty.pdf", data)
    await services.worker.run_pending()
    job = services.jobs.get(job_id)
    assert job.status == "processed"
    results = await services.retrieval.search("warranty defects", k=1)
    assert results[0].source_ref == job.source_ref


@pytest.mark.asyncio
async def test_malformed_pdf_fails_terminally(services: Services) -> None:
    job_id = services.jobs.submit_pdf("broken.pdf", b"%PDF-1.4 garbage that is not a document")
    await services.worker.run_pending()
    job = services.jobs.get(job_id)
    assert job.status == "failed"
    assert job.retryable is False
