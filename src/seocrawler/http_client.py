"""
HTTP client with HTTP/2 and Brotli support.

httpx decodes ``br`` bodies through the ``brotli`` package, so the client
only has to advertise it.
"""
from __future__ import annotations
import logging
import time
from typing import Optional, Tuple

import httpx

from .config import HttpConfig, AuthConfig
from .fetch import (
    ERROR_CONNECTION, ERROR_DNS, ERROR_INVALID_URL, ERROR_TIMEOUT, FetchResult, decode_body,
    _should_use_auth, get_auth_headers, get_compression_headers,
)

logger = logging.getLogger(__name__)

_DNS_MARKERS = ("name or service not known", "nodename nor servname", "getaddrinfo", "name resolution")


def _create_auth(auth: AuthConfig) -> Optional[Tuple[str, str]]:
    """Create httpx authentication tuple for basic auth."""
    if auth and auth.auth_type == "basic" and auth.username:
        return (auth.username, auth.password)
    return None


def _connect_error_kind(error: Exception) -> str:
    message = str(error).lower()
    if any(marker in message for marker in _DNS_MARKERS):
        return ERROR_DNS
    return ERROR_CONNECTION


class HttpxFetcher:
    """Single-hop fetcher on a shared httpx.AsyncClient.

    Redirects are never followed: the crawl engine stores each hop as its
    own page and enqueues the ``Location`` target.
    """

    def __init__(self, cfg: HttpConfig):
        self.cfg = cfg
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                http2=self.cfg.enable_http2,
                timeout=httpx.Timeout(self.cfg.timeout),
                headers={"User-Agent": self.cfg.user_agent, **get_compression_headers(self.cfg)},
                limits=httpx.Limits(max_connections=max(1, self.cfg.max_concurrency) * 2),
                follow_redirects=False,
            )
        return self._client

    async def fetch(self, url: str) -> FetchResult:
        client = self._get_client()
        headers = {}
        auth = None
        if _should_use_auth(url, self.cfg.auth):
            headers.update(get_auth_headers(self.cfg.auth))
            auth = _create_auth(self.cfg.auth)

        started = time.monotonic()
        try:
            if auth:
                response = await client.get(url, headers=headers, auth=auth)
            else:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            logger.debug("Timeout fetching %s: %s", url, e)
            return FetchResult(url=url, final_url=url, error=str(e) or "timed out",
                               error_kind=ERROR_TIMEOUT, elapsed=time.monotonic() - started)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            return FetchResult(url=url, final_url=url, error=str(e), error_kind=ERROR_INVALID_URL)
        except httpx.ConnectError as e:
            logger.debug("Connect error fetching %s: %s", url, e)
            return FetchResult(url=url, final_url=url, error=str(e), error_kind=_connect_error_kind(e),
                               elapsed=time.monotonic() - started)
        except httpx.HTTPError as e:
            logger.debug("Error fetching %s: %s", url, e)
            return FetchResult(url=url, final_url=url, error=str(e), error_kind=ERROR_CONNECTION,
                               elapsed=time.monotonic() - started)

        content = response.content
        text = decode_body(content, response.encoding)
        return FetchResult(
            url=url,
            status=response.status_code,
            final_url=str(response.url),
            headers=dict(response.headers),
            text=text,
            content=content,
            elapsed=time.monotonic() - started,
        )

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
