"""Visible-text, title and link extraction for crawled pages."""

from __future__ import annotations

from dataclasses import dataclass, field

from bs4 import BeautifulSoup

_SKIPPED_LINK_PREFIXES = ("#", "mailto:", "tel:", "javascript:")


@dataclass(slots=True)
class ExtractedPage:
    """Text content pulled out of a fetched response body."""

    text: str
    title: str = ""
    links: list[str] = field(default_factory=list)


def normalize_whitespace(value: str) -> str:
    return " ".join(value.split())


def looks_like_html(body: str, content_type: str | None) -> bool:
    """Return True when the response should be parsed as HTML."""

    if content_type and "text/html" in content_type.lower():
        return True
    return "<html" in body.lower()


def extract_page(body: str, content_type: str | None = None) -> ExtractedPage:
    """Extract visible text, the document title and raw hrefs from a response body.

    Non-HTML bodies are returned as whitespace-normalised text with no title
    and no links. For HTML, ``<script>`` and ``<style>`` blocks are dropped
    before the remaining markup is stripped; entities are decoded by the parser.
    """

    if not looks_like_html(body, content_type):
        return ExtractedPage(text=normalize_whitespace(body))

    soup = BeautifulSoup(body, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    title = ""
    if soup.title is not None:
        title = normalize_whitespace(soup.title.get_text(" "))

    text = normalize_whitespace(soup.get_text(" "))
    return ExtractedPage(text=text, title=title, links=extract_links(soup))


def extract_links(soup: BeautifulSoup) -> list[str]:
    """Return every usable ``href`` value in document order."""

    links: list[str] = []
    for tag in soup.find_all(href=True):
        href = str(tag.get("href") or "").strip()
        if not href or href.lower().startswith(_SKIPPED_LINK_PREFIXES):
            continue
        links.append(href)
    return links


__all__ = ["ExtractedPage", "extract_page", "extract_links", "looks_like_html", "normalize_whitespace"]
