import pytest
import os
import sys

# Add src to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.seocrawler.config import AnalysisConfig, AuthConfig, CrawlLimits, CrawlSettings, HttpConfig
from src.seocrawler.database import DatabaseConfig
from src.seocrawler.db_operations import create_project, init_db, store_crawl_result, upsert_page
from src.seocrawler.fetch import FetchResult
from src.seocrawler.hashing import generate_content_hashes
from src.seocrawler.models import PageMetadata, UrlStatus
from src.seocrawler.parse import extract_page_metadata


class FakeFetcher:
    """Serves canned responses keyed by URL; anything else is a 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.requested = []
        self.closed = False

    def add_page(self, url, html, status=200, headers=None):
        headers = {"Content-Type": "text/html; charset=utf-8", **(headers or {})}
        self.responses[url] = FetchResult(url=url, status=status, final_url=url, headers=headers,
                                          text=html, content=html.encode("utf-8"))

    def add_redirect(self, url, location, status=301):
        self.responses[url] = FetchResult(url=url, status=status, final_url=url,
                                          headers={"Location": location})

    async def fetch(self, url):
        self.requested.append(url)
        result = self.responses.get(url)
        if result is None:
            return FetchResult(url=url, status=404, final_url=url, headers={"Content-Type": "text/html"},
                               text="Not found", content=b"Not found")
        if isinstance(result, list):
            # Sequence of responses for retry tests; the last one repeats
            return result.pop(0) if len(result) > 1 else result[0]
        return result

    async def aclose(self):
        self.closed = True


@pytest.fixture
def db_config(tmp_path):
    return DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "test_seo.db"))


@pytest.fixture
async def db(db_config):
    await init_db(db_config)
    return db_config


@pytest.fixture
async def project(db):
    return await create_project("example", "https://example.com/", config=db)


@pytest.fixture
def store_page(db, project):
    """Write a crawled page straight into the store, the way the crawl phase would."""

    async def _store(url, html="", status=200, content_type="text/html; charset=utf-8", headers=None,
                     redirect_to=None, depth=0):
        page_id, _ = await upsert_page(project.id, url, url, depth, config=db)
        headers = dict(headers or {})
        metadata = PageMetadata()
        hashes = {}
        if html and 200 <= status < 300:
            metadata = extract_page_metadata(html, url, headers)
            hashes = generate_content_hashes(html)
        await store_crawl_result(
            page_id, status=UrlStatus.COMPLETED if status < 400 else UrlStatus.FAILED, http_status=status,
            content_type=content_type, headers=headers, html=html, metadata=metadata, hashes=hashes,
            redirect_target=redirect_to, config=db,
        )
        return page_id

    return _store


@pytest.fixture
def http_config():
    return HttpConfig(
        user_agent="TestBot/1.0",
        timeout=10,
        max_concurrency=2,
        delay_between_requests=0,
        respect_robots_txt=False,
        enable_adaptive_delay=False,
        max_retries=2,
        retry_delay=0,
    )


@pytest.fixture
def crawl_limits():
    return CrawlLimits(
        max_pages=0,
        max_depth=3,
        same_host_only=True,
        path_exclude_prefixes=[],
        seed_sitemap=False,
        checkpoint_interval=2,
        checkpoint_keep=3,
    )


@pytest.fixture
def analysis_config():
    return AnalysisConfig(check_domain_variants=False, check_robots_txt=False)


@pytest.fixture
def settings(http_config, crawl_limits, analysis_config):
    return CrawlSettings(http=http_config, limits=crawl_limits, analysis=analysis_config)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def auth_config():
    return AuthConfig(
        username="testuser",
        password="testpassword",
        auth_type="basic"
    )
