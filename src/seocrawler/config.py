from __future__ import annotations
import os
import random
from dataclasses import dataclass, field
from urllib.parse import urlparse

DATA_DIR = os.getenv("SEOCRAWLER_DATA", os.path.abspath("./data"))


def _get_env_var(primary: str, fallback: str, default: str = None):
    """Get environment variable, checking primary prefix first, then fallback prefix.

    Args:
        primary: Primary environment variable name (e.g., SEOCRAWLER_DB_BACKEND)
        fallback: Fallback environment variable name (e.g., SQLITECRAWLER_DB_BACKEND)
        default: Default value if neither is set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(primary)
    if value is not None:
        return value
    value = os.getenv(fallback)
    if value is not None:
        return value
    return default


def _env(name: str, default: str) -> str:
    return _get_env_var(f"SEOCRAWLER_{name}", f"SQLITECRAWLER_{name}", default)


@dataclass
class AuthConfig:
    """Authentication configuration for crawling protected sites."""
    username: str = ""
    password: str = ""
    auth_type: str = "basic"  # "basic", "bearer", "api_key"
    domain: str = ""  # Optional: restrict auth to specific domain
    token: str = ""
    custom_headers: dict = None


@dataclass
class HttpConfig:
    user_agent: str = _env("UA", "SEOCrawler/1.0 (+https://github.com/user256/SEOCrawler)")
    timeout: int = int(_env("TIMEOUT", "20"))
    max_concurrency: int = int(_env("CONCURRENCY", "5"))
    delay_between_requests: float = float(_env("DELAY", "0.2"))
    http_backend: str = _env("HTTP_BACKEND", "auto")  # "auto", "httpx", "aiohttp"
    respect_robots_txt: bool = _env("RESPECT_ROBOTS", "1") == "1"
    # HTTP/2 and compression configuration
    enable_http2: bool = _env("HTTP2", "1") == "1"
    enable_brotli: bool = _env("BROTLI", "1") == "1"
    # Retry configuration
    max_retries: int = int(_env("MAX_RETRIES", "3"))
    retry_delay: float = float(_env("RETRY_DELAY", "1.0"))
    retry_backoff_factor: float = float(_env("RETRY_BACKOFF", "2.0"))
    # Politeness and rate limiting configuration
    enable_adaptive_delay: bool = _env("ADAPTIVE_DELAY", "1") == "1"
    min_delay: float = float(_env("MIN_DELAY", "0.1"))
    max_delay: float = float(_env("MAX_DELAY", "10.0"))
    delay_increase_factor: float = float(_env("DELAY_INCREASE", "1.5"))
    delay_decrease_factor: float = float(_env("DELAY_DECREASE", "0.9"))
    robots_ttl: int = int(_env("ROBOTS_TTL", "86400"))  # 24 hours
    auth: AuthConfig = None

    def __post_init__(self):
        self.http_backend = (self.http_backend or "auto").lower()


@dataclass
class CrawlLimits:
    max_pages: int = int(_env("MAX_PAGES", "0"))  # 0 = no limit
    max_depth: int = int(_env("MAX_DEPTH", "3"))
    same_host_only: bool = _env("SAME_HOST_ONLY", "1") == "1"
    path_exclude_prefixes: list[str] = field(default_factory=lambda: [p.strip() for p in _env("PATH_EXCLUDE", "").split(",") if p.strip()])
    seed_sitemap: bool = _env("SEED_SITEMAP", "1") == "1"
    # Crash recovery
    checkpoint_interval: int = int(_env("CHECKPOINT_INTERVAL", "50"))
    checkpoint_keep: int = int(_env("CHECKPOINT_KEEP", "5"))


@dataclass
class AnalysisConfig:
    """Tunable policy for the analysis phase.

    None of these values are fixed algorithmic behaviour; they are the
    heuristics the individual tasks compare against.
    """
    concurrency: int = int(_env("ANALYSIS_CONCURRENCY", "1"))
    sink_batch_size: int = int(_env("SINK_BATCH_SIZE", "500"))
    # Content
    thin_content_chars: int = int(_env("THIN_CONTENT_CHARS", "500"))
    limited_content_chars: int = int(_env("LIMITED_CONTENT_CHARS", "1500"))
    # Fingerprints
    near_duplicate_threshold: int = int(_env("NEAR_DUP_BITS", "3"))
    check_domain_variants: bool = _env("CHECK_DOMAIN_VARIANTS", "1") == "1"
    # Canonicals and redirects
    missing_canonical_max_depth: int = int(_env("MISSING_CANONICAL_DEPTH", "2"))
    max_chain_hops: int = int(_env("MAX_CHAIN_HOPS", "5"))
    redirect_chain_error_hops: int = 3
    temporary_redirect_max_age: int = 86400
    # Titles and descriptions
    title_min_length: int = 30
    title_max_length: int = 60
    title_warning_length: int = 70
    description_min_length: int = 50
    description_max_length: int = 160
    description_warning_length: int = 200
    # Crawl budget
    server_error_rate_threshold: float = float(_env("ERROR_RATE_THRESHOLD", "0.05"))
    error_rate_min_pages: int = 20
    # URLs
    max_url_length: int = 2048
    max_query_parameters: int = 3
    # Indexability and security
    important_page_max_depth: int = 2
    check_robots_txt: bool = _env("CHECK_ROBOTS_TXT", "1") == "1"
    hsts_min_max_age: int = 31536000


def get_website_db_name(url: str) -> str:
    """Extract domain from URL and create a safe database name by replacing dots with underscores."""
    parsed = urlparse(url)
    domain = parsed.netloc.lower()
    if domain.startswith('www.'):
        domain = domain[4:]
    safe_name = domain.replace('.', '_').replace('-', '_')
    safe_name = ''.join(c if c.isalnum() or c == '_' else '_' for c in safe_name)
    return safe_name


def get_db_path(start_url: str) -> str:
    """Get the SQLite database path for a site, creating the data directory."""
    os.makedirs(DATA_DIR, exist_ok=True)
    return os.path.join(DATA_DIR, f"{get_website_db_name(start_url)}_seo.db")


def get_database_config(start_url: str = None) -> 'DatabaseConfig':
    """Get database configuration based on environment variables and start URL.

    Reads environment variables directly to support runtime changes (e.g., from command-line args).
    """
    from .database import DatabaseConfig

    backend = _env("DB_BACKEND", "sqlite")

    if backend == "postgresql":
        if start_url:
            database_name = f"{get_website_db_name(start_url)}_seo"
        else:
            database_name = _env("POSTGRES_DB", "seo_crawler")
        return DatabaseConfig(
            backend="postgresql",
            postgres_host=_env("POSTGRES_HOST", "localhost"),
            postgres_port=int(_env("POSTGRES_PORT", "5432")),
            postgres_database=database_name,
            postgres_user=_env("POSTGRES_USER", "crawler_user"),
            postgres_password=_env("POSTGRES_PASSWORD", ""),
            postgres_pool_size=int(_env("POSTGRES_POOL_SIZE", "10")),
        )

    if start_url:
        return DatabaseConfig(backend="sqlite", sqlite_path=get_db_path(start_url))
    os.makedirs(DATA_DIR, exist_ok=True)
    return DatabaseConfig(backend="sqlite", sqlite_path=os.path.join(DATA_DIR, "seo.db"))


# User agent strings for different scenarios
USER_AGENTS = {
    "default": "SEOCrawler/1.0 (+https://github.com/user256/SEOCrawler)",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "firefox": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "googlebot": "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    "mobile": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
}


def get_user_agent(ua_type: str = "default") -> str:
    """Get a user agent string by type or return a random one if 'random' is specified."""
    if ua_type == "random":
        return random.choice(list(USER_AGENTS.values()))
    return USER_AGENTS.get(ua_type, USER_AGENTS["default"])


@dataclass
class CrawlSettings:
    """Everything one crawl run of a project needs."""
    http: HttpConfig = field(default_factory=HttpConfig)
    limits: CrawlLimits = field(default_factory=CrawlLimits)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    run_analysis: bool = True
