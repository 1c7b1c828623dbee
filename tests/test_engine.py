import pytest
from unittest.mock import AsyncMock, patch

from src.seocrawler.checkpoints import checkpoint_create, checkpoint_get_active
from src.seocrawler.config import HttpConfig
from src.seocrawler.db_operations import get_findings, get_page_by_address, upsert_page
from src.seocrawler.fetch import FetchResult
from src.seocrawler.engine import CrawlEngine, HostDelayTracker
from src.seocrawler.frontier import frontier_dequeue, frontier_enqueue, frontier_stats
from src.seocrawler.models import CrawlProgress, QueueState, UrlStatus
from src.seocrawler.robots import RobotsPolicy

from conftest import FakeFetcher

SHARED_TEXT = (
    "<p>Every product on this page ships within two working days from our warehouse. Returns are free "
    "for thirty days and refunds are issued to the original payment method once the item arrives back "
    "with us in its original packaging.</p>"
)


def page(body, title="Example page"):
    return f"<html lang='en'><head><title>{title}</title></head><body>{body}</body></html>"


@pytest.fixture
def site(fake_fetcher):
    fake_fetcher.add_page("https://example.com/", page("<a href='/a'>A</a> <a href='/b'>B</a>", "Home"))
    fake_fetcher.add_page("https://example.com/a", page(SHARED_TEXT, "Shipping A"))
    fake_fetcher.add_page("https://example.com/b", page(SHARED_TEXT, "Shipping B"))
    return fake_fetcher


class PausingFetcher(FakeFetcher):
    """Asks the engine to pause while the first request is in flight."""

    engine = None

    async def fetch(self, url):
        if self.engine is not None and not self.requested:
            self.engine.request_pause()
        return await super().fetch(url)


class ExplodingFetcher(FakeFetcher):
    """Raises from inside the fetch for one URL, as a broken codec lookup would."""

    async def fetch(self, url):
        if url.endswith("/bad"):
            self.requested.append(url)
            raise LookupError("unknown encoding: x-nonsense")
        return await super().fetch(url)


class TestCrawlEngine:
    async def test_crawl_then_analyze_finds_exact_duplicate(self, db, project, settings, site):
        async with CrawlEngine(db, settings, fetcher=site) as engine:
            progress = await engine.start_crawl(project.id)
            assert progress.urls_crawled == 3
            assert progress.completed == 3
            assert progress.queued == 0

            analysis = await engine.run_analysis_phase(project.id)
            assert analysis.pages_analyzed == 3

        assert site.closed is False
        assert sorted(site.requested) == ["https://example.com/", "https://example.com/a", "https://example.com/b"]
        duplicates = await get_findings(project.id, "duplicate_content", "EXACT_DUPLICATE", config=db)
        assert len(duplicates) == 1
        assert sorted(duplicates[0].data["urls"]) == ["https://example.com/a", "https://example.com/b"]
        assert duplicates[0].data["distance"] == 0
        # Finished crawls leave no active checkpoint
        assert await checkpoint_get_active(project.id, config=db) is None

    async def test_pages_record_depth_and_parent(self, db, project, settings, site):
        async with CrawlEngine(db, settings, fetcher=site) as engine:
            await engine.start_crawl(project.id)
        home = await get_page_by_address(project.id, "https://example.com/", config=db)
        child = await get_page_by_address(project.id, "https://example.com/a", config=db)
        assert home.depth == 0
        assert child.depth == 1
        assert child.discovered_from_id == home.id
        assert child.status == UrlStatus.COMPLETED
        assert child.content_hash

    async def test_transient_failure_is_retried(self, db, project, settings, fake_fetcher):
        ok = FetchResult(url="https://example.com/", status=200, headers={"Content-Type": "text/html"},
                         text=page("Hello"), content=page("Hello").encode())
        unavailable = FetchResult(url="https://example.com/", status=503)
        fake_fetcher.responses["https://example.com/"] = [unavailable, ok]

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            progress = await engine.start_crawl(project.id)

        assert fake_fetcher.requested.count("https://example.com/") == 2
        assert progress.completed == 1
        assert progress.error_count == 0

    async def test_retries_exhausted(self, db, project, settings, fake_fetcher):
        fake_fetcher.responses["https://example.com/"] = FetchResult(
            url="https://example.com/", error="timed out", error_kind="timeout")

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            progress = await engine.start_crawl(project.id)

        assert len(fake_fetcher.requested) == settings.http.max_retries + 1
        assert progress.failed == 1
        home = await get_page_by_address(project.id, "https://example.com/", config=db)
        assert home.status == UrlStatus.FAILED
        assert home.http_status is None

    async def test_permanent_failure_not_retried(self, db, project, settings, fake_fetcher):
        fake_fetcher.add_page("https://example.com/", page("<a href='/gone'>Gone</a>"))

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            progress = await engine.start_crawl(project.id)

        assert fake_fetcher.requested.count("https://example.com/gone") == 1
        assert progress.failed == 1
        gone = await get_page_by_address(project.id, "https://example.com/gone", config=db)
        assert gone.status == UrlStatus.FAILED
        assert gone.http_status == 404

    async def test_redirect_target_enqueued(self, db, project, settings, fake_fetcher):
        fake_fetcher.add_redirect("https://example.com/", "/home", status=301)
        fake_fetcher.add_page("https://example.com/home", page("Welcome"))

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            await engine.start_crawl(project.id)

        start = await get_page_by_address(project.id, "https://example.com/", config=db)
        assert start.http_status == 301
        assert start.redirect_target == "https://example.com/home"
        home = await get_page_by_address(project.id, "https://example.com/home", config=db)
        assert home.status == UrlStatus.COMPLETED
        assert home.depth == 0

    async def test_max_pages(self, db, project, settings, site):
        settings.limits.max_pages = 1
        async with CrawlEngine(db, settings, fetcher=site) as engine:
            progress = await engine.start_crawl(project.id)
        assert progress.urls_crawled == 1
        assert progress.queued == 2

    async def test_offsite_and_excluded_links_skipped(self, db, project, settings, fake_fetcher):
        settings.limits.path_exclude_prefixes = ["/private"]
        fake_fetcher.add_page("https://example.com/", page(
            "<a href='https://other.org/'>Other</a> <a href='/private/x'>P</a> <a href='/ok'>Ok</a>"))
        fake_fetcher.add_page("https://example.com/ok", page("Ok"))

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            await engine.start_crawl(project.id)

        assert sorted(fake_fetcher.requested) == ["https://example.com/", "https://example.com/ok"]

    async def test_pause_then_resume(self, db, project, settings, site):
        fetcher = PausingFetcher(site.responses)
        engine = CrawlEngine(db, settings, fetcher=fetcher)
        fetcher.engine = engine

        progress = await engine.start_crawl(project.id)
        assert engine.paused
        assert progress.urls_crawled == 1
        assert progress.queued == 2
        checkpoint = await checkpoint_get_active(project.id, config=db)
        assert checkpoint is not None
        assert checkpoint.urls_crawled == 1

        progress = await engine.resume_crawl(project.id)
        assert not engine.paused
        assert progress.urls_crawled == 3
        assert progress.queued == 0
        assert await checkpoint_get_active(project.id, config=db) is None
        await engine.aclose()

    async def test_max_pages_spans_resume(self, db, project, settings, site):
        settings.limits.max_pages = 2
        fetcher = PausingFetcher(site.responses)
        engine = CrawlEngine(db, settings, fetcher=fetcher)
        fetcher.engine = engine

        progress = await engine.start_crawl(project.id)
        assert progress.urls_crawled == 1

        progress = await engine.resume_crawl(project.id)
        await engine.aclose()
        assert progress.urls_crawled == 2
        assert len(set(fetcher.requested)) == 2
        assert progress.queued == 1

    async def test_unexpected_error_marks_page_failed(self, db, project, settings, fake_fetcher):
        fetcher = ExplodingFetcher(fake_fetcher.responses)
        fetcher.add_page("https://example.com/", page("<a href='/bad'>Bad</a>"))

        async with CrawlEngine(db, settings, fetcher=fetcher) as engine:
            progress = await engine.start_crawl(project.id)
            analysis = await engine.run_analysis_phase(project.id)

        assert progress.failed == 1
        assert progress.error_count == 1
        assert progress.in_progress == 0
        bad = await get_page_by_address(project.id, "https://example.com/bad", config=db)
        assert bad.status == UrlStatus.FAILED
        assert "LookupError" in bad.crawl_error
        assert analysis.pages_analyzed == 2

    async def test_interrupted_crawl_recovered_on_start(self, db, project, settings, fake_fetcher):
        fake_fetcher.add_page("https://example.com/", page("Hello"))
        await upsert_page(project.id, "https://example.com/", "https://example.com/", 0, config=db)
        await frontier_enqueue(project.id, "https://example.com/", config=db)
        await frontier_dequeue(project.id, config=db)  # claimed by a process that died
        await checkpoint_create(project.id, CrawlProgress(in_progress=1), config=db)

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            await engine.start_crawl(project.id)

        stats = await frontier_stats(project.id, config=db)
        assert stats[QueueState.IN_PROGRESS] == 0
        assert stats[QueueState.COMPLETED] == 1
        assert fake_fetcher.requested == ["https://example.com/"]

    async def test_sitemap_seeded(self, db, project, settings, fake_fetcher):
        settings.limits.seed_sitemap = True
        sitemap = ('<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
                   '<url><loc>https://example.com/listed</loc></url></urlset>')
        fake_fetcher.responses["https://example.com/sitemap.xml"] = FetchResult(
            url="https://example.com/sitemap.xml", status=200, headers={"Content-Type": "application/xml"},
            text=sitemap, content=sitemap.encode())
        fake_fetcher.add_page("https://example.com/", page("Hello"))
        fake_fetcher.add_page("https://example.com/listed", page("Listed"))

        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            await engine.start_crawl(project.id)

        listed = await get_page_by_address(project.id, "https://example.com/listed", config=db)
        assert listed.status == UrlStatus.COMPLETED

    async def test_robots_disallowed_not_fetched(self, db, project, settings, fake_fetcher):
        settings.http.respect_robots_txt = True
        fake_fetcher.add_page("https://example.com/", page("<a href='/private/doc'>Doc</a>"))
        robots = AsyncMock(return_value=("User-agent: *\nDisallow: /private\n", {}))

        with patch.object(RobotsPolicy, "fetch_robots_txt", robots):
            async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
                await engine.start_crawl(project.id)

        assert fake_fetcher.requested == ["https://example.com/"]
        blocked = await get_page_by_address(project.id, "https://example.com/private/doc", config=db)
        assert blocked.robots_allowed is False
        assert blocked.status == UrlStatus.COMPLETED

    async def test_unknown_project(self, db, settings, fake_fetcher):
        async with CrawlEngine(db, settings, fetcher=fake_fetcher) as engine:
            with pytest.raises(ValueError):
                await engine.start_crawl(999)

    async def test_owned_fetcher_closed(self, db, settings):
        engine = CrawlEngine(db, settings)
        with patch("src.seocrawler.engine.create_fetcher") as create:
            create.return_value = FakeFetcher()
            fetcher = engine.fetcher
            await engine.aclose()
        assert fetcher.closed is True


class TestHostDelayTracker:
    def test_rate_limit_increases_delay(self):
        cfg = HttpConfig(delay_between_requests=1.0, delay_increase_factor=1.5, max_delay=10.0)
        tracker = HostDelayTracker(cfg)
        tracker.update_delay_for_host("example.com", 429)
        assert tracker.get_delay_for_host("example.com") == pytest.approx(3.0)
        for _ in range(10):
            tracker.update_delay_for_host("example.com", 503)
        assert tracker.get_delay_for_host("example.com") == 10.0

    def test_success_decays_to_base_delay(self):
        cfg = HttpConfig(delay_between_requests=1.0, delay_decrease_factor=0.5, min_delay=0.1)
        tracker = HostDelayTracker(cfg)
        tracker.update_delay_for_host("example.com", 429)
        for _ in range(10):
            tracker.update_delay_for_host("example.com", 200)
        assert tracker.get_delay_for_host("example.com") == 1.0
        assert tracker.get_stats()["example.com"]["response_counts"] == {429: 1, 200: 10}

    def test_unknown_host_uses_base_delay(self):
        tracker = HostDelayTracker(HttpConfig(delay_between_requests=0.3, respect_robots_txt=False))
        assert tracker.get_delay_for_host("example.org") == 0.3
