"""Bounded same-host breadth-first crawler."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import List
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from .extractor import extract_page
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

_SKIPPED_EXTENSIONS = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".tiff",
        ".css", ".js", ".map", ".woff", ".woff2", ".ttf", ".otf",
        ".pdf", ".zip", ".tar", ".gz", ".rar", ".7z",
        ".mp3", ".wav", ".ogg", ".mp4", ".mov", ".avi", ".webm",
    }
)


class InvalidSourceURL(ValueError):
    """Raised when a URL is not an absolute http(s) address."""


class CrawlError(RuntimeError):
    """Raised when a crawl cannot produce a single page."""


@dataclass(slots=True)
class CrawledPage:
    url: str
    title: str
    text: str


@dataclass(slots=True)
class FetchResult:
    url: str
    status_code: int
    body: str
    content_type: str | None
    final_url: str = ""


def normalize_url(raw: str, base: str | None = None) -> str | None:
    """Return the canonical form of ``raw`` or ``None`` when it is not crawlable.

    Relative references are resolved against ``base``. Scheme and host are
    lowercased, credentials, query and fragment are dropped, an empty path
    becomes ``/`` and a trailing slash is removed from longer paths.
    """

    candidate = (raw or "").strip()
    if not candidate:
        return None
    if base:
        candidate = urljoin(base, candidate)
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"} or not parts.hostname:
        return None
    host = parts.hostname.lower()
    if port is not None:
        host = f"{host}:{port}"
    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return urlunsplit((scheme, host, path, "", ""))


def require_source_url(raw: str) -> str:
    """Normalise a tenant-supplied crawl root, raising on invalid input."""

    normalized = normalize_url(raw)
    if normalized is None:
        raise InvalidSourceURL("url must be an absolute http or https address")
    return normalized


def _hostname(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def _has_skipped_extension(url: str) -> bool:
    path = urlsplit(url).path.lower()
    dot = path.rfind(".")
    if dot == -1 or "/" in path[dot:]:
        return False
    return path[dot:] in _SKIPPED_EXTENSIONS


class Crawler:
    """Fetch up to ``max_pages`` pages reachable from a root URL on the same host."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        timeout: float = 20.0,
        max_body_bytes: int = 2 << 20,
        user_agent: str = "WitzoCrawler/1.0",
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._timeout = timeout
        self._max_body_bytes = max(1, max_body_bytes)
        self._user_agent = user_agent
        self._metrics = metrics

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch(self, url: str) -> FetchResult | None:
        """Fetch one page with a capped body; ``None`` on transport failure."""

        try:
            with self._client.stream(
                "GET",
                url,
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
            ) as response:
                buffer = bytearray()
                for piece in response.iter_bytes():
                    buffer.extend(piece)
                    if len(buffer) >= self._max_body_bytes:
                        del buffer[self._max_body_bytes :]
                        break
                encoding = response.encoding or "utf-8"
                return FetchResult(
                    url=url,
                    status_code=response.status_code,
                    body=bytes(buffer).decode(encoding, errors="replace"),
                    content_type=response.headers.get("content-type"),
                    final_url=str(response.url),
                )
        except httpx.HTTPError as exc:
            logger.warning("crawl.fetch.failed url=%s error=%s", url, exc)
            return None

    def crawl(
        self,
        root_url: str,
        max_pages: int,
        *,
        cancel_event: threading.Event | None = None,
    ) -> List[CrawledPage]:
        """Breadth-first crawl of ``root_url`` returning pages in visitation order."""

        root = require_source_url(root_url)
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")

        root_host = _hostname(root)
        frontier: deque[str] = deque([root])
        seen: set[str] = {root}
        pages: list[CrawledPage] = []
        start = time.perf_counter()
        logger.info("crawl.start root=%s max_pages=%s", root, max_pages)

        while frontier and len(pages) < max_pages:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("crawl.cancelled root=%s pages=%s", root, len(pages))
                break
            url = frontier.popleft()
            fetched = self.fetch(url)
            if fetched is None:
                continue
            if not 200 <= fetched.status_code < 300:
                logger.info("crawl.skip url=%s status=%s", url, fetched.status_code)
                continue
            page_url = url
            if fetched.final_url and fetched.final_url != url:
                page_url = normalize_url(fetched.final_url) or url
                if _hostname(page_url) != root_host:
                    logger.info("crawl.skip.redirect url=%s target=%s", url, fetched.final_url)
                    continue
                if page_url != url and page_url in seen:
                    continue
                seen.add(page_url)

            extracted = extract_page(fetched.body, fetched.content_type)
            if extracted.text:
                pages.append(CrawledPage(url=page_url, title=extracted.title, text=extracted.text))

            for link in self._same_host_links(extracted.links, fetched.final_url or url, root_host):
                if link in seen:
                    continue
                seen.add(link)
                frontier.append(link)

        if self._metrics:
            self._metrics.record_timing("crawl.duration", time.perf_counter() - start)
            self._metrics.increment("crawl.pages", value=len(pages))
        if not pages:
            raise CrawlError("no crawlable pages found")
        logger.info("crawl.completed root=%s pages=%s", root, len(pages))
        return pages

    @staticmethod
    def _same_host_links(hrefs: List[str], page_url: str, root_host: str) -> List[str]:
        links: set[str] = set()
        for href in hrefs:
            link = normalize_url(href, base=page_url)
            if link is None or _hostname(link) != root_host:
                continue
            if _has_skipped_extension(link):
                continue
            links.add(link)
        return sorted(links)


__all__ = [
    "Crawler",
    "CrawledPage",
    "CrawlError",
    "FetchResult",
    "InvalidSourceURL",
    "normalize_url",
    "require_source_url",
]
