"""
Website Crawler

This module implements the same-site crawler that feeds the indexing
pipeline. It is responsible for:

- Breadth-first traversal from a seed domain (FIFO frontier)
- URL normalization and dedup (no URL visited twice)
- robots.txt compliance
- Sequential, politeness-delayed page fetches
- Per-page failure isolation (a failed page never aborts the crawl)
- Cooperative cancellation between page fetches

The crawler holds no per-crawl state on the instance, so one instance may
serve several jobs as long as each job passes its own options.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import FetchError
from .robots import RobotsPolicy
from .urls import is_same_site, normalize_url, resolve_link, seed_url

logger = logging.getLogger("kb.crawler")

CancelCheck = Callable[[], bool]
ProgressCallback = Callable[["CrawlProgress"], Awaitable[None]]

_HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
_STRIPPED_TAGS = ("script", "style", "noscript", "template")
_META_FIELDS = {
    "description": ("description", "og:description"),
    "keywords": ("keywords",),
    "author": ("author",),
    "og_title": ("og:title",),
    "og_image": ("og:image",),
}


# ---------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------

class CrawlOptions(BaseModel):
    """
    Per-crawl options supplied by the caller of `startIndexing`.
    """
    max_pages: int = Field(default=50, ge=1, le=10_000)
    timeout: float = Field(default=30.0, gt=0, description="Per-page fetch timeout in seconds.")
    respect_robots: bool = True
    strip_query: bool = True

    model_config = ConfigDict(extra="forbid")


class RawPage(BaseModel):
    """
    A fetched page before cleaning and chunking.
    """
    url: str
    title: str = ""
    text: str = ""
    description: Optional[str] = None
    metadata: Dict[str, Optional[str]] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class CrawlProgress(BaseModel):
    """
    Snapshot handed to the progress callback after each page.
    """
    pages_fetched: int
    pages_failed: int
    frontier_size: int
    last_url: str


class CrawlResult(BaseModel):
    """
    Output of one crawl.
    """
    root_url: str
    pages: List[RawPage] = Field(default_factory=list)
    failed_urls: Dict[str, str] = Field(default_factory=dict)
    visited: List[str] = Field(default_factory=list)
    cancelled: bool = False


# ---------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------

class Crawler:
    """
    Sequential same-site crawler.

    Parameters
    ----------
    client : Optional[httpx.AsyncClient]
        Injected HTTP client. When omitted, a client is opened per crawl
        and closed when the crawl ends (including on cancellation).

    user_agent : str
        User agent sent with every request and matched against robots.txt.

    politeness_delay : float
        Seconds to wait between two page fetches of the same crawl.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "site-kb-crawler/1.0",
        politeness_delay: float = 1.0,
    ) -> None:
        self._client = client
        self.user_agent = user_agent
        self.politeness_delay = politeness_delay

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def crawl(
        self,
        domain: str,
        options: Optional[CrawlOptions] = None,
        should_cancel: Optional[CancelCheck] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CrawlResult:
        """
        Crawl a site starting from its root.

        The crawl terminates when the frontier is empty, `max_pages` pages
        have been collected, or `should_cancel()` returns True.
        """
        options = options or CrawlOptions()
        root_url = seed_url(domain)

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
        )

        try:
            return await self._crawl(client, root_url, options, should_cancel, on_progress)
        finally:
            if owns_client:
                await client.aclose()

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def _crawl(
        self,
        client: httpx.AsyncClient,
        root_url: str,
        options: CrawlOptions,
        should_cancel: Optional[CancelCheck],
        on_progress: Optional[ProgressCallback],
    ) -> CrawlResult:
        result = CrawlResult(root_url=root_url)

        if options.respect_robots:
            robots = await RobotsPolicy.fetch(client, root_url, self.user_agent, options.timeout)
        else:
            robots = RobotsPolicy.allow_all(self.user_agent)

        frontier: Deque[str] = deque([root_url])
        # Everything ever enqueued; guarantees a URL enters the frontier once
        seen: Set[str] = {root_url}
        fetched: Set[str] = set()

        logger.info("Starting crawl of %s (max_pages=%d)", root_url, options.max_pages)

        first_fetch = True
        while frontier and len(result.pages) < options.max_pages:
            if should_cancel and should_cancel():
                logger.info("Crawl of %s cancelled after %d pages", root_url, len(result.pages))
                result.cancelled = True
                break

            url = frontier.popleft()
            if url in fetched:
                # reached earlier as the target of a redirect
                continue

            if not robots.can_fetch(url):
                logger.info("robots.txt disallows %s", url)
                continue

            if not first_fetch and self.politeness_delay > 0:
                await asyncio.sleep(self.politeness_delay)
            first_fetch = False

            result.visited.append(url)
            fetched.add(url)

            try:
                html, final_url = await self._fetch_page(
                    client, url, root_url, options.timeout, options.strip_query
                )
            except FetchError as exc:
                logger.warning("Failed to fetch %s: %s", url, exc.reason)
                result.failed_urls[url] = exc.reason
            else:
                if final_url != url and final_url in fetched:
                    logger.debug("%s redirected to already visited %s", url, final_url)
                else:
                    fetched.add(final_url)
                    seen.add(final_url)

                    soup = BeautifulSoup(html, "html.parser")
                    links = self._extract_links(soup, final_url, root_url, options.strip_query)
                    result.pages.append(self._parse_page(url, soup))

                    for link in links:
                        if link not in seen:
                            seen.add(link)
                            frontier.append(link)

            if on_progress is not None:
                await on_progress(
                    CrawlProgress(
                        pages_fetched=len(result.pages),
                        pages_failed=len(result.failed_urls),
                        frontier_size=len(frontier),
                        last_url=url,
                    )
                )

        logger.info(
            "Crawl of %s finished: %d pages, %d failed, %d left in frontier",
            root_url,
            len(result.pages),
            len(result.failed_urls),
            len(frontier),
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch_page(
        self,
        client: httpx.AsyncClient,
        url: str,
        root_url: str,
        timeout: float,
        strip_query: bool = True,
    ) -> Tuple[str, str]:
        """
        Fetch one page.

        Returns
        -------
        (html, final_url)
            `final_url` is the normalized URL after redirects.

        Raises
        ------
        FetchError
            On transport errors, timeouts, non-2xx status, non-HTML content
            or a redirect that leaves the site.
        """
        try:
            response = await client.get(url, timeout=timeout, headers={"User-Agent": self.user_agent})
        except httpx.TimeoutException as exc:
            raise FetchError(url, f"timeout ({type(exc).__name__})") from exc
        except httpx.HTTPError as exc:
            raise FetchError(url, f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise FetchError(url, f"HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "").lower()
        if content_type and not content_type.startswith(_HTML_CONTENT_TYPES):
            raise FetchError(url, f"non-HTML content type: {content_type}")

        final_url = normalize_url(str(response.url), strip_query=strip_query) or url
        if not is_same_site(final_url, root_url):
            raise FetchError(url, f"redirected off-site to {final_url}")

        return response.text, final_url

    @staticmethod
    def _parse_page(url: str, soup: BeautifulSoup) -> RawPage:
        """
        Extract title, meta tags and visible text. Mutates `soup`.
        """
        title = soup.title.get_text(strip=True) if soup.title else ""

        metadata: Dict[str, Optional[str]] = {}
        for field, names in _META_FIELDS.items():
            metadata[field] = None
            for name in names:
                tag = soup.find("meta", attrs={"name": name}) or soup.find(
                    "meta", attrs={"property": name}
                )
                if tag is not None and tag.get("content"):
                    metadata[field] = tag["content"].strip()
                    break

        for tag in soup(_STRIPPED_TAGS):
            tag.decompose()

        body = soup.body or soup
        text = body.get_text(separator=" ", strip=True)

        return RawPage(
            url=url,
            title=title,
            text=text,
            description=metadata.get("description"),
            metadata=metadata,
        )

    @staticmethod
    def _extract_links(soup: BeautifulSoup, base_url: str, root_url: str, strip_query: bool) -> List[str]:
        """
        Extract followable same-site links, in document order, deduplicated.
        """
        links: List[str] = []
        found: Set[str] = set()

        for anchor in soup.find_all("a", href=True):
            link = resolve_link(anchor["href"], base_url, root_url, strip_query=strip_query)
            if link is not None and link not in found:
                found.add(link)
                links.append(link)

        return links
