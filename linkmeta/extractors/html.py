from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
import json
import logging
from typing import Any

from bs4 import BeautifulSoup

from linkmeta.extractors.fetch import FetchedPage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PageDocument:
    """A fetched page parsed once and shared by every extraction tier."""

    page: FetchedPage
    soup: BeautifulSoup | None
    meta: dict[str, str] = field(default_factory=dict)
    title: str | None = None

    @classmethod
    def from_page(cls, page: FetchedPage) -> PageDocument:
        if not page.is_html or not page.body:
            return cls(page=page, soup=None)
        soup = BeautifulSoup(page.body, "html.parser")
        return cls(page=page, soup=soup, meta=extract_meta_tags(soup), title=extract_title(soup))

    def json_ld(self) -> Iterator[Any]:
        if self.soup is None:
            return
        for script in self.soup.find_all("script", attrs={"type": "application/ld+json"}):
            raw = script.string if script.string is not None else script.get_text()
            if not raw or not raw.strip():
                continue
            try:
                yield json.loads(raw)
            except ValueError as exc:
                logger.debug("skipping malformed json-ld block url=%s error=%s", self.page.url, exc)

    def attribute(self, name: str) -> str | None:
        if self.soup is None:
            return None
        element = self.soup.find(attrs={name: True})
        if element is None:
            return None
        value = element.get(name)
        if isinstance(value, list):
            value = " ".join(value)
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    def canonical_link(self) -> str | None:
        if self.soup is None:
            return None
        for link in self.soup.find_all("link", href=True):
            rel = link.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            if "canonical" in (value.lower() for value in rel):
                href = link.get("href")
                if isinstance(href, str) and href.strip():
                    return href.strip()
        return None


def extract_meta_tags(soup: BeautifulSoup) -> dict[str, str]:
    tags: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        key = meta.get("property") or meta.get("name")
        content = meta.get("content")
        if not isinstance(key, str) or not isinstance(content, str):
            continue
        key = key.strip().lower()
        content = content.strip()
        if key and content and key not in tags:
            tags[key] = content
    return tags


def extract_title(soup: BeautifulSoup) -> str | None:
    if soup.title is None:
        return None
    text = soup.title.get_text(strip=True)
    return text or None


def first_non_empty(*values: str | None) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
