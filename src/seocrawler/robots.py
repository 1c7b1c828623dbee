"""
Robots.txt fetching and caching.
"""
import asyncio
import logging
import time
import urllib.robotparser
from email.utils import parsedate_to_datetime
from typing import Dict, Optional, Set, Tuple
from urllib.parse import urlsplit

import aiohttp

from .config import HttpConfig

logger = logging.getLogger(__name__)


def calculate_cache_ttl(headers: Dict[str, str], default_ttl: int = 3600) -> int:
    """Calculate cache TTL from server headers, respecting Cache-Control and Expires."""
    headers_lower = {k.lower(): v for k, v in (headers or {}).items()}

    cache_control = headers_lower.get('cache-control', '').lower()
    if cache_control:
        if 'max-age=' in cache_control:
            max_age_str = cache_control.split('max-age=')[1].split(',')[0].strip()
            try:
                return int(max_age_str)
            except ValueError:
                pass

        if 'no-cache' in cache_control or 'no-store' in cache_control:
            return 0

    expires = headers_lower.get('expires')
    if expires:
        try:
            expires_dt = parsedate_to_datetime(expires)
            return max(0, int(expires_dt.timestamp() - time.time()))
        except (ValueError, TypeError):
            pass

    return default_ttl


class RobotsCache:
    """Cache for robots.txt files with server cache-aware TTL support."""

    def __init__(self, default_ttl: int = 86400):
        self._cache: Dict[str, Tuple[urllib.robotparser.RobotFileParser, float, Dict[str, str]]] = {}
        self._failed_domains: Set[str] = set()
        self._default_ttl = default_ttl

    def get_robots_parser(self, domain: str) -> Optional[urllib.robotparser.RobotFileParser]:
        """Get cached robots parser for domain if not expired."""
        if domain not in self._cache:
            return None

        parser, cached_time, headers = self._cache[domain]
        server_ttl = calculate_cache_ttl(headers, self._default_ttl)
        if time.time() - cached_time > server_ttl:
            del self._cache[domain]
            return None

        return parser

    def set_robots_parser(self, domain: str, parser: urllib.robotparser.RobotFileParser, headers: Dict[str, str] = None):
        """Cache robots parser for domain with TTL."""
        self._cache[domain] = (parser, time.time(), headers or {})
        self._failed_domains.discard(domain)

    def mark_failed(self, domain: str):
        """Mark domain as failed to fetch robots.txt."""
        self._failed_domains.add(domain)

    def is_failed(self, domain: str) -> bool:
        """Check if domain failed to fetch robots.txt."""
        return domain in self._failed_domains


class RobotsPolicy:
    """Answers "may we crawl this URL" and "how long should we wait" per host."""

    def __init__(self, http_config: HttpConfig, cache: RobotsCache = None):
        self.http_config = http_config
        self.cache = cache or RobotsCache(http_config.robots_ttl)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def fetch_robots_txt(self, origin: str) -> Tuple[Optional[str], Dict[str, str]]:
        """Fetch robots.txt content for an origin and return content with headers."""
        robots_url = f"{origin}/robots.txt"
        timeout = aiohttp.ClientTimeout(total=self.http_config.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(robots_url, headers={'User-Agent': self.http_config.user_agent}) as response:
                    if response.status == 200:
                        return await response.text(errors="ignore"), dict(response.headers)
                    if response.status >= 500:
                        logger.info("Server error %s for %s, assuming crawl allowed", response.status, robots_url)
                    return "", dict(response.headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.info("Error fetching %s: %s", robots_url, e)
            return None, {}

    async def get_parser(self, url: str) -> Optional[urllib.robotparser.RobotFileParser]:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        domain = parts.netloc.lower()
        if self.cache.is_failed(domain):
            return None
        cached = self.cache.get_robots_parser(domain)
        if cached:
            return cached

        lock = self._locks.setdefault(domain, asyncio.Lock())
        async with lock:
            cached = self.cache.get_robots_parser(domain)
            if cached:
                return cached
            content, headers = await self.fetch_robots_txt(origin)
            if content is None:
                self.cache.mark_failed(domain)
                return None
            parser = urllib.robotparser.RobotFileParser()
            parser.set_url(f"{origin}/robots.txt")
            parser.parse(content.splitlines())
            self.cache.set_robots_parser(domain, parser, headers)
            return parser

    async def is_allowed(self, url: str) -> bool:
        if not self.http_config.respect_robots_txt:
            return True
        parser = await self.get_parser(url)
        if parser is None:
            return True
        return parser.can_fetch(self.http_config.user_agent, url)

    def get_crawl_delay(self, host: str) -> Optional[float]:
        parser = self.cache.get_robots_parser(host)
        if parser is None:
            return None
        delay = parser.crawl_delay(self.http_config.user_agent)
        return float(delay) if delay is not None else None
