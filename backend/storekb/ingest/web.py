"""Web page rendering, extraction, and same-site crawling."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from storekb.core.config import Settings
from storekb.core.errors import BotProtectionError, NetworkError, StoreKBError
from storekb.core.logging import get_logger
from storekb.ingest.types import FetchedDocument, JobRunStats
from storekb.models.jobs import WebJobConfig
from storekb.utils.text import normalize, normalize_block
from storekb.utils.urls import path_allowed, resolve_link, same_origin, url_path

logger = get_logger(__name__)

_STRIPPED_TAGS = ["script", "style", "noscript", "svg", "iframe", "template"]
_BLOCK_TAGS = [
    "p", "div", "section", "article", "main", "header", "footer", "aside", "nav",
    "h1", "h2", "h3", "h4", "h5", "h6", "li", "ul", "ol", "dl", "dt", "dd",
    "table", "tr", "blockquote", "pre", "figure", "figcaption", "form",
]

# Seen only on challenge interstitials.
_CHALLENGE_SIGNATURES = (
    "cf_chl_opt",
    "cf-challenge",
    "<title>just a moment...</title>",
    "checking your browser before accessing",
    "verify you are human",
    "ddos-guard",
    "challenge-form",
    "captcha-delivery.com",
)
# Suspicious only together with a blocking status code.
_WEAK_MARKERS = (
    "captcha",
    "cloudflare",
    "access denied",
    "blocked",
    "security check",
    "human verification",
    "bot protection",
    "javascript required",
    "please enable javascript",
    "automated access",
    "temporarily limited",
    "too many requests",
)
_BLOCKING_STATUSES = frozenset({403, 429, 503})
_SUSPICIOUS_HEADERS = ("server", "cf-ray", "x-firewall-protection", "x-robots-tag")
_SUSPICIOUS_HEADER_WORDS = ("cloudflare", "protection", "security", "firewall", "guard")


@dataclass(slots=True)
class RenderedPage:
    url: str
    final_url: str
    status: int
    html: str
    headers: dict[str, str] = field(default_factory=dict)


class PageRenderer(Protocol):
    """Loads a URL and returns the rendered DOM; one instance serves one job."""

    async def __aenter__(self) -> "PageRenderer": ...

    async def __aexit__(self, exc_type, exc, tb) -> None: ...

    async def render(self, url: str) -> RenderedPage: ...


class PlaywrightRenderer:
    """Headless Chromium renderer so script-built pages yield their final DOM."""

    def __init__(self, user_agent: str, timeout_seconds: float = 60.0) -> None:
        self.user_agent = user_agent
        self.timeout_ms = int(timeout_seconds * 1000)
        self._playwright = None
        self._browser = None
        self._context = None

    async def __aenter__(self) -> "PlaywrightRenderer":
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=True)
        self._context = await self._browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": 1366, "height": 900},
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def render(self, url: str) -> RenderedPage:
        if self._context is None:
            raise RuntimeError("PlaywrightRenderer must be used as an async context manager")
        page = await self._context.new_page()
        try:
            response = await page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
            html = await page.content()
            headers = await response.all_headers() if response is not None else {}
            return RenderedPage(
                url=url,
                final_url=page.url,
                status=response.status if response is not None else 0,
                html=html,
                headers=headers,
            )
        except PlaywrightTimeoutError as exc:
            raise NetworkError(f"timed out loading {url}") from exc
        except PlaywrightError as exc:
            raise NetworkError(f"failed to load {url}: {exc.message}") from exc
        finally:
            await page.close()


@dataclass(slots=True)
class ExtractedPage:
    text: str
    title: str | None
    links: list[str]


def extract_page(
    html: str,
    base_url: str,
    include_selectors: list[str] | None = None,
    exclude_selectors: list[str] | None = None,
) -> ExtractedPage:
    """Pull readable text, the title, and outgoing links from rendered HTML."""
    soup = BeautifulSoup(html, "html.parser")
    title = normalize(soup.title.get_text()) if soup.title else None

    links: list[str] = []
    for anchor in soup.select("a[href]"):
        link = resolve_link(anchor.get("href", ""), base_url)
        if link and link not in links:
            links.append(link)

    for tag in soup(_STRIPPED_TAGS):
        tag.decompose()
    for selector in exclude_selectors or []:
        for node in soup.select(selector):
            node.decompose()

    if include_selectors:
        roots = []
        for selector in include_selectors:
            for node in soup.select(selector):
                if any(root is node or _contains(root, node) for root in roots):
                    continue
                inner = [i for i, root in enumerate(roots) if _contains(node, root)]
                if inner:
                    # an outer match takes the place of the inner matches it contains
                    roots = [root for i, root in enumerate(roots) if i not in inner]
                    roots.insert(inner[0], node)
                else:
                    roots.append(node)
    else:
        roots = [soup.body or soup]

    parts = [_block_text(root) for root in roots]
    text = normalize_block("\n\n".join(part for part in parts if part.strip()))
    return ExtractedPage(text=text, title=title or None, links=links)


def _contains(outer, inner) -> bool:
    # Tag equality is structural, so compare ancestors by identity.
    return any(parent is outer for parent in inner.parents)


def _block_text(root) -> str:
    for br in root.find_all("br"):
        br.replace_with("\n")
    for block in root.find_all(_BLOCK_TAGS):
        block.insert_before("\n\n")
        block.insert_after("\n\n")
    return root.get_text()


def detect_bot_protection(page: RenderedPage) -> bool:
    body = page.html.lower()
    if any(signature in body for signature in _CHALLENGE_SIGNATURES):
        return True
    if page.status not in _BLOCKING_STATUSES:
        return False
    if any(marker in body for marker in _WEAK_MARKERS):
        return True
    headers = {key.lower(): value.lower() for key, value in page.headers.items()}
    for name in _SUSPICIOUS_HEADERS:
        value = headers.get(name, "")
        if any(word in value for word in _SUSPICIOUS_HEADER_WORDS):
            return True
    # Tiny error bodies are almost always challenge stubs.
    return len(page.html) < 1000


def check_page(page: RenderedPage) -> None:
    if detect_bot_protection(page):
        raise BotProtectionError(f"bot protection detected at {page.url} (status {page.status})")
    if page.status >= 400:
        raise NetworkError(f"{page.url} returned HTTP {page.status}")
    if page.status == 0 and not page.html.strip():
        raise NetworkError(f"{page.url} returned no response")


class WebFetcher:
    """Render a web job's root page and, optionally, same-site pages it links to."""

    def __init__(
        self,
        settings: Settings,
        renderer_factory: Callable[[], PageRenderer] | None = None,
        is_excluded: Callable[[str], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.renderer_factory = renderer_factory or (
            lambda: PlaywrightRenderer(settings.user_agent, settings.render_timeout_seconds)
        )
        self.is_excluded = is_excluded

    async def fetch(
        self,
        config: WebJobConfig,
        stats: JobRunStats,
        checkpoint: Callable[[], Awaitable[None]] | None = None,
    ) -> list[FetchedDocument]:
        root = config.url
        queue: deque[tuple[str, int]] = deque([(root, 0)])
        visited = {root}
        documents: list[FetchedDocument] = []
        requests = 0

        async with self.renderer_factory() as renderer:
            while queue and stats.pages < self.settings.crawl_max_pages:
                url, depth = queue.popleft()
                if checkpoint is not None:
                    await checkpoint()
                if url != root and self.is_excluded is not None and self.is_excluded(url):
                    stats.excluded_pages += 1
                    continue
                if requests and self.settings.crawl_delay_seconds:
                    await asyncio.sleep(self.settings.crawl_delay_seconds)
                requests += 1
                try:
                    page = await renderer.render(url)
                    check_page(page)
                except StoreKBError as exc:
                    if url == root:
                        raise
                    logger.warning("Skipping %s: %s", url, exc.detail)
                    stats.skipped_pages += 1
                    continue

                stats.pages += 1
                extracted = extract_page(
                    page.html,
                    page.final_url or url,
                    config.include_selectors,
                    config.exclude_selectors,
                )
                if extracted.text:
                    documents.append(
                        FetchedDocument(
                            source_ref=url,
                            text=extracted.text,
                            metadata={"title": extracted.title, "final_url": page.final_url, "depth": depth},
                        )
                    )
                if not config.follow_links or depth >= self.settings.crawl_max_depth:
                    continue
                for link in extracted.links:
                    if link in visited or not same_origin(link, root):
                        continue
                    if not path_allowed(url_path(link), config.include_paths, config.exclude_paths):
                        continue
                    visited.add(link)
                    queue.append((link, depth + 1))

        logger.info(
            "Crawled %s: %s pages, %s skipped, %s excluded",
            root,
            stats.pages,
            stats.skipped_pages,
            stats.excluded_pages,
        )
        return documents


__all__ = [
    "RenderedPage",
    "PageRenderer",
    "PlaywrightRenderer",
    "ExtractedPage",
    "extract_page",
    "detect_bot_protection",
    "check_page",
    "WebFetcher",
]
