from __future__ import annotations

import base64
from dataclasses import dataclass
import html
import logging
import mimetypes
import os
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

import httpx

from subclaw.integrations.llm import ChatProvider

logger = logging.getLogger("subclaw.web")

_USER_AGENT = "Mozilla/5.0 (compatible; subclaw/0.1)"
_SEARCH_URL = "https://html.duckduckgo.com/html/"

_RESULT_LINK = re.compile(
    r'<a[^>]+class="result__a"[^>]+href="(?P<href>[^"]+)"[^>]*>(?P<title>.*?)</a>',
    re.IGNORECASE | re.DOTALL,
)
_RESULT_SNIPPET = re.compile(
    r'<a[^>]+class="result__snippet"[^>]*>(?P<snippet>.*?)</a>',
    re.IGNORECASE | re.DOTALL,
)
_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_DROP_BLOCKS = re.compile(r"<(script|style|noscript|svg)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n+")
_SPACES = re.compile(r"[ \t\r\f\v]+")


def strip_html(markup: str) -> str:
    text = _DROP_BLOCKS.sub(" ", markup)
    text = re.sub(r"<(br|/p|/div|/li|/h\d|/tr)[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = html.unescape(_TAG.sub(" ", text))
    text = _SPACES.sub(" ", text)
    return _BLANK_LINES.sub("\n\n", text).strip()


def _unwrap_redirect(href: str) -> str:
    href = html.unescape(href)
    if href.startswith("//"):
        href = "https:" + href
    parsed = urlparse(href)
    if parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return unquote(target[0])
    return href


@dataclass
class SearchResult:
    title: str
    url: str
    snippet: str


@dataclass
class FetchedPage:
    url: str
    title: str
    content: str


class WebClient:
    def __init__(self, timeout: float = 20.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        )

    def search(self, query: str, limit: int = 8) -> List[SearchResult]:
        with self._client() as client:
            resp = client.post(_SEARCH_URL, data={"q": query})
        if resp.status_code != 200:
            raise RuntimeError(f"search failed: HTTP {resp.status_code}")
        body = resp.text
        snippets = [strip_html(m.group("snippet")) for m in _RESULT_SNIPPET.finditer(body)]
        results: List[SearchResult] = []
        for idx, match in enumerate(_RESULT_LINK.finditer(body)):
            if len(results) >= limit:
                break
            results.append(SearchResult(
                title=strip_html(match.group("title")),
                url=_unwrap_redirect(match.group("href")),
                snippet=snippets[idx] if idx < len(snippets) else "",
            ))
        return results

    def fetch(self, url: str) -> FetchedPage:
        with self._client() as client:
            resp = client.get(url)
        if resp.status_code >= 400:
            raise RuntimeError(f"fetch failed: HTTP {resp.status_code}")
        content_type = resp.headers.get("content-type", "")
        body = resp.text
        if "html" not in content_type and not body.lstrip().startswith("<"):
            return FetchedPage(url=str(resp.url), title="", content=body)
        match = _TITLE.search(body)
        title = strip_html(match.group(1)) if match else ""
        return FetchedPage(url=str(resp.url), title=title, content=strip_html(body))


class ImageAnalyzer:
    """Describes a local image or image URL with a vision-capable model."""

    def __init__(self, provider: ChatProvider, model: str) -> None:
        self.provider = provider
        self.model = model

    @staticmethod
    def _image_url(source: str) -> str:
        if source.startswith(("http://", "https://", "data:")):
            return source
        if not os.path.isfile(source):
            raise FileNotFoundError(source)
        mime = mimetypes.guess_type(source)[0] or "image/png"
        with open(source, "rb") as handle:
            encoded = base64.b64encode(handle.read()).decode("ascii")
        return f"data:{mime};base64,{encoded}"

    def analyze(self, source: str, prompt: str = "") -> str:
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": prompt or "Describe this image in detail."},
            {"type": "image_url", "image_url": {"url": self._image_url(source)}},
        ]
        result = self.provider.chat(
            [{"role": "user", "content": content}],
            None,
            model=self.model,
            max_tokens=2048,
        )
        return result.text or "(no description)"
