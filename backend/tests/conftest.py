"""Test fixtures for storekb."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Sequence

import fitz
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from storekb.core.config import Settings  # noqa: E402
from storekb.core.errors import NetworkError  # noqa: E402
from storekb.ingest.embeddings import HashedEmbeddingBackend  # noqa: E402
from storekb.ingest.web import RenderedPage  # noqa: E402
from storekb.services import Services, build_services  # noqa: E402


class FakeRenderer:
    """Serves fixture HTML keyed by URL; unknown URLs behave like unreachable hosts."""

    def __init__(self, pages: dict[str, RenderedPage | str]) -> None:
        self.pages = pages
        self.requested: list[str] = []
        self.opened = 0

    def __call__(self) -> "FakeRenderer":
        return self

    async def __aenter__(self) -> "FakeRenderer":
        self.opened += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def render(self, url: str) -> RenderedPage:
        self.requested.append(url)
        page = self.pages.get(url)
        if page is None:
            raise NetworkError(f"no route to {url}")
        if isinstance(page, str):
            return RenderedPage(url=url, final_url=url, status=200, html=page)
        return page


class FlakyBackend(HashedEmbeddingBackend):
    """Hashed embeddings that never embed texts containing ``poison``."""

    def __init__(self, dim: int = 64, poison: str = "POISON") -> None:
        super().__init__(dim=dim)
        self.poison = poison
        self.calls: list[int] = []

    async def embed(self, texts: Sequence[str]) -> list[list[float] | None]:
        self.calls.append(len(texts))
        return [None if self.poison in text else self.encode(text) for text in texts]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "kb.db",
        upload_dir=tmp_path / "uploads",
        embedding_dim=64,
        embedding_backoff_base=0.0,
        embedding_backoff_max=0.0,
        chunk_min_chars=20,
        chunk_max_chars=200,
        chunk_overlap_chars=0,
        crawl_delay_seconds=0.0,
        run_worker_on_submit=True,
        log_json=False,
    )


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer({})


@pytest.fixture
def make_services(settings: Settings, renderer: FakeRenderer) -> Callable[..., Services]:
    built: list[Services] = []

    def factory(**overrides) -> Services:
        overrides.setdefault("renderer_factory", renderer)
        services = build_services(settings, **overrides)
        built.append(services)
        return services

    yield factory
    for services in built:
        services.close()


@pytest.fixture
def services(make_services: Callable[..., Services]) -> Services:
    return make_services()


def make_pdf(pages: Sequence[str]) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_textbox(fitz.Rect(50, 50, 550, 800), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def pdf_factory() -> Callable[[Sequence[str]], bytes]:
    return make_pdf


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "Title\n\nParagraph one.\n\nParagraph two is here."
