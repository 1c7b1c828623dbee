from __future__ import annotations
import asyncio
import gzip
import logging
import time
import zlib
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol
from urllib.parse import urlparse

import aiohttp
import brotli

from .config import HttpConfig, AuthConfig

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 425, 429}
ERROR_TIMEOUT = "timeout"
ERROR_CONNECTION = "connection"
ERROR_DNS = "dns"
ERROR_INVALID_URL = "invalid_url"
TRANSIENT_ERRORS = {ERROR_TIMEOUT, ERROR_CONNECTION}

OUTCOME_OK = "ok"
OUTCOME_TRANSIENT = "transient"
OUTCOME_PERMANENT = "permanent"


class FetchError(Exception):
    """A fetch that produced no usable response."""

    def __init__(self, url: str, message: str, kind: str = ERROR_CONNECTION):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.kind = kind


class TransientFetchError(FetchError):
    """Timeouts, connection resets and 5xx: worth retrying."""


class PermanentFetchError(FetchError):
    """4xx, DNS failures and invalid URLs: never retried."""


@dataclass
class FetchResult:
    url: str
    status: int = 0
    final_url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    content: bytes = b""
    elapsed: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def content_type(self) -> str:
        return self.header("content-type") or ""

    @property
    def location(self) -> Optional[str]:
        return self.header("location")

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


class Fetcher(Protocol):
    """Supplier of page content. Redirects are not followed; every hop is its own result."""

    async def fetch(self, url: str) -> FetchResult: ...

    async def aclose(self) -> None: ...


def classify_fetch_result(result: FetchResult) -> str:
    """Sort a fetch into ok / transient / permanent for the retry policy."""
    if result.error_kind:
        return OUTCOME_TRANSIENT if result.error_kind in TRANSIENT_ERRORS else OUTCOME_PERMANENT
    if result.status >= 500 or result.status in TRANSIENT_STATUSES:
        return OUTCOME_TRANSIENT
    if result.status >= 400 or result.status == 0:
        return OUTCOME_PERMANENT
    return OUTCOME_OK


def raise_for_outcome(result: FetchResult):
    """Raise the matching FetchError for a failed result."""
    outcome = classify_fetch_result(result)
    if outcome == OUTCOME_TRANSIENT:
        raise TransientFetchError(result.url, result.error or f"HTTP {result.status}", result.error_kind or "http")
    if outcome == OUTCOME_PERMANENT:
        raise PermanentFetchError(result.url, result.error or f"HTTP {result.status}", result.error_kind or "http")


def backoff_delay(cfg: HttpConfig, attempt: int) -> float:
    """Seconds to wait before retry number ``attempt + 1``."""
    return cfg.retry_delay * (cfg.retry_backoff_factor ** attempt)


def _should_use_auth(url: str, auth: AuthConfig) -> bool:
    """Check if authentication should be used for this URL."""
    if not auth or not (auth.username or auth.token):
        return False

    if auth.domain:
        return urlparse(url).netloc.lower() == auth.domain.lower()

    return True


def get_auth_headers(auth: AuthConfig) -> Dict[str, str]:
    """Get authentication headers for token-based and custom authentication."""
    headers = {}

    if not auth:
        return headers

    if auth.auth_type == "bearer" and auth.token:
        headers["Authorization"] = f"Bearer {auth.token}"
    elif auth.auth_type == "api_key" and auth.token:
        headers["X-API-Key"] = auth.token

    if auth.custom_headers:
        headers.update(auth.custom_headers)

    return headers


def get_compression_headers(cfg: HttpConfig) -> Dict[str, str]:
    """Get headers for compression support."""
    return {
        "Accept-Encoding": "gzip, deflate, br" if cfg.enable_brotli else "gzip, deflate",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }


def decompress_content(content: bytes, encoding: str) -> bytes:
    """Decompress content based on encoding."""
    if encoding == "br":
        return brotli.decompress(content)
    elif encoding == "gzip":
        return gzip.decompress(content)
    elif encoding == "deflate":
        return zlib.decompress(content)
    return content


def decode_body(content: bytes, charset: Optional[str]) -> str:
    """Decode a response body, falling back to UTF-8 for unknown or broken charsets."""
    try:
        return content.decode(charset or "utf-8", errors="ignore")
    except (LookupError, UnicodeError):
        return content.decode("utf-8", errors="ignore")


class AiohttpFetcher:
    """HTTP/1.1 fetcher built on aiohttp, decompressing bodies itself."""

    def __init__(self, cfg: HttpConfig):
        self.cfg = cfg
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.cfg.user_agent, **get_compression_headers(self.cfg)},
                timeout=aiohttp.ClientTimeout(total=self.cfg.timeout),
                auto_decompress=False,
            )
        return self._session

    async def fetch(self, url: str) -> FetchResult:
        session = await self._get_session()
        headers = {}
        auth = None
        if _should_use_auth(url, self.cfg.auth):
            headers.update(get_auth_headers(self.cfg.auth))
            if self.cfg.auth.auth_type == "basic" and self.cfg.auth.username:
                auth = aiohttp.BasicAuth(self.cfg.auth.username, self.cfg.auth.password)

        started = time.monotonic()
        try:
            async with session.get(url, allow_redirects=False, headers=headers, auth=auth) as resp:
                raw = await resp.read()
                encoding = resp.headers.get("Content-Encoding", "").lower()
                try:
                    content = decompress_content(raw, encoding)
                except (OSError, zlib.error, brotli.error) as e:
                    logger.debug("Could not decode %s body of %s: %s", encoding, url, e)
                    content = raw
                return FetchResult(
                    url=url, status=resp.status, final_url=str(resp.url), headers=dict(resp.headers),
                    text=decode_body(content, resp.charset), content=content,
                    elapsed=time.monotonic() - started,
                )
        except asyncio.TimeoutError:
            return FetchResult(url=url, final_url=url, error="timed out", error_kind=ERROR_TIMEOUT,
                               elapsed=time.monotonic() - started)
        except aiohttp.InvalidURL as e:
            return FetchResult(url=url, final_url=url, error=str(e), error_kind=ERROR_INVALID_URL)
        except aiohttp.ClientConnectorError as e:
            kind = ERROR_DNS if "name" in str(e).lower() and "resolv" in str(e).lower() else ERROR_CONNECTION
            return FetchResult(url=url, final_url=url, error=str(e), error_kind=kind,
                               elapsed=time.monotonic() - started)
        except aiohttp.ClientError as e:
            return FetchResult(url=url, final_url=url, error=str(e), error_kind=ERROR_CONNECTION,
                               elapsed=time.monotonic() - started)

    async def aclose(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


def resolve_backend(cfg: HttpConfig) -> str:
    backend = (cfg.http_backend or "auto").lower()
    if backend == "auto":
        return "httpx" if cfg.enable_http2 else "aiohttp"
    return backend


def create_fetcher(cfg: HttpConfig) -> Fetcher:
    """Build the fetcher selected by ``HttpConfig.http_backend``."""
    backend = resolve_backend(cfg)
    if backend == "httpx":
        from .http_client import HttpxFetcher
        return HttpxFetcher(cfg)
    if backend == "aiohttp":
        return AiohttpFetcher(cfg)
    raise ValueError(f"Unsupported HTTP backend: {cfg.http_backend}")
