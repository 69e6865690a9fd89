from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import socket
from urllib.parse import urljoin, urlparse

import httpx

from linkmeta.core.urls import extract_host, is_blocked_hostname, is_blocked_ip, parse_ip

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
DEFAULT_USER_AGENT = "LinkMetadataFetcher/1.0"
DEFAULT_MAX_BYTES = 2 * 1024 * 1024
DEFAULT_MAX_REDIRECTS = 5

HostResolver = Callable[[str], Awaitable[list[str]]]


class FetchError(Exception):
    """Base fetch error; ``transient`` decides between retry and fallback."""

    transient = False

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError):
    transient = True


class FetchTransportError(FetchError):
    transient = True


class FetchHTTPError(FetchError):
    def __init__(self, status_code: int, *, url: str | None = None) -> None:
        super().__init__(f"unexpected status: {status_code}", url=url)
        self.status_code = status_code
        self.transient = status_code in TRANSIENT_STATUS_CODES or status_code >= 500


class InvalidURLError(FetchError):
    pass


class BlockedURLError(FetchError):
    pass


class TooManyRedirectsError(FetchError):
    pass


@dataclass(slots=True)
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    content_type: str
    body: bytes
    truncated: bool = False

    @property
    def is_html(self) -> bool:
        lowered = self.content_type.lower()
        return "text/html" in lowered or "application/xhtml" in lowered

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/")

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


async def resolve_host_addresses(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise FetchTransportError(f"resolve host: {exc}") from exc
    return [info[4][0] for info in infos]


class PageFetcher:
    """Bounded GET: explicit timeout, capped redirects and body size, no rendering."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = DEFAULT_USER_AGENT,
        resolver: HostResolver | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max(1, max_bytes)
        self.max_redirects = max(0, max_redirects)
        self.user_agent = user_agent
        self._resolver = resolver
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchedPage:
        client = self._get_client()
        current_url = url.strip()
        seen_urls: set[str] = set()

        for _ in range(self.max_redirects + 1):
            await self._validate_url(current_url)
            if current_url in seen_urls:
                raise TooManyRedirectsError("redirect loop detected", url=url)
            seen_urls.add(current_url)

            try:
                async with client.stream(
                    "GET",
                    current_url,
                    headers={"User-Agent": self.user_agent},
                ) as response:
                    location = response.headers.get("location")
                    if response.status_code in REDIRECT_STATUS_CODES and location:
                        current_url = urljoin(str(response.url), location)
                        continue
                    if response.status_code < 200 or response.status_code >= 300:
                        raise FetchHTTPError(response.status_code, url=current_url)
                    body, truncated = await self._read_bounded(response)
                    return FetchedPage(
                        url=url,
                        final_url=str(response.url),
                        status_code=int(response.status_code),
                        content_type=response.headers.get("content-type", ""),
                        body=body,
                        truncated=truncated,
                    )
            except httpx.TimeoutException as exc:
                raise FetchTimeoutError(f"fetch timed out: {exc}", url=current_url) from exc
            except httpx.TransportError as exc:
                raise FetchTransportError(f"fetch failed: {exc}", url=current_url) from exc

        raise TooManyRedirectsError("too many redirects", url=url)

    async def _read_bounded(self, response: httpx.Response) -> tuple[bytes, bool]:
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            remaining = self.max_bytes - received
            if len(chunk) > remaining:
                chunks.append(chunk[:remaining])
                return b"".join(chunks), True
            chunks.append(chunk)
            received += len(chunk)
        return b"".join(chunks), False

    async def _validate_url(self, url: str) -> None:
        try:
            parsed = urlparse(url)
        except ValueError as exc:
            raise InvalidURLError(f"parse url: {exc}", url=url) from exc
        if not parsed.scheme:
            raise InvalidURLError("missing url scheme", url=url)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise InvalidURLError("unsupported url scheme", url=url)

        host = extract_host(url)
        if not host:
            raise InvalidURLError("missing url host", url=url)
        if is_blocked_hostname(host):
            raise BlockedURLError(f"blocked host: {host}", url=url)

        literal = parse_ip(host)
        if literal is not None:
            if is_blocked_ip(literal):
                raise BlockedURLError(f"blocked ip: {host}", url=url)
            return

        if self._resolver is None:
            return
        addresses = await self._resolver(host)
        if not addresses:
            raise FetchTransportError("resolve host: no addresses", url=url)
        for address in addresses:
            parsed_address = parse_ip(address)
            if parsed_address is None or is_blocked_ip(parsed_address):
                raise BlockedURLError(f"blocked ip: {address}", url=url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=False)
            self._owns_client = True
        return self._client


def classify_fetch_error(exc: BaseException | None) -> str:
    """Short error label used in logs."""
    if exc is None:
        return ""
    if isinstance(exc, (FetchTimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, InvalidURLError):
        return "invalid_url"
    if isinstance(exc, BlockedURLError):
        return "blocked"
    if isinstance(exc, FetchHTTPError):
        return "http_status"
    if isinstance(exc, TooManyRedirectsError):
        return "redirect"
    if isinstance(exc, FetchTransportError):
        return "transport"
    return "fetch_error"
