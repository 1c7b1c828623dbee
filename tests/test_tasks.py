import pytest

from src.seocrawler.accessor import RepositoryAccessor
from src.seocrawler.aggregation import ProjectArena
from src.seocrawler.config import AnalysisConfig
from src.seocrawler.db_operations import (
    add_redirects, get_findings, get_page, get_page_by_address, store_crawl_result, upsert_page,
)
from src.seocrawler.models import PageMetadata, Redirect, Severity, UrlStatus
from src.seocrawler.pipeline import AnalysisPipeline, FindingSink, PageContext, ReportSink, TaskRegistry
from src.seocrawler.tasks.broken_links import BrokenLinksTask
from src.seocrawler.tasks.canonical import CanonicalTask
from src.seocrawler.tasks.defaults import DEFAULT_TASKS, register_default_tasks
from src.seocrawler.tasks.duplicate_content import DuplicateContentTask, band_keys
from src.seocrawler.tasks.hreflang import HreflangTask, is_valid_hreflang
from src.seocrawler.tasks.image_audit import ImageAuditTask
from src.seocrawler.tasks.link_graph import LinkGraphTask
from src.seocrawler.tasks.redirects import RedirectsTask, find_javascript_redirect
from src.seocrawler.tasks.robots import RobotsTask
from src.seocrawler.tasks.security import SecurityTask, check_security_headers, parse_set_cookie
from src.seocrawler.tasks.sitemap import SitemapTask
from src.seocrawler.tasks.structured_data import StructuredDataTask
from src.seocrawler.tasks.titles_meta import TitlesMetaTask

BODY = (
    "<p>Our guide to choosing running shoes covers cushioning, stability and fit. Runners with flat "
    "feet often need more support while neutral runners can pick lighter models. Always try shoes late "
    "in the day when your feet are largest and bring the socks you actually run in. Replace shoes every "
    "five hundred miles or so because worn foam stops absorbing impact and injuries become more likely "
    "over time. Trail runners should look for deeper lugs and a rock plate for rough terrain.</p>"
)


def html_page(body=BODY, title="Running shoes guide for every kind of runner", head=""):
    return (f"<html lang='en'><head><title>{title}</title>"
            f"<meta name='description' content='A practical guide to picking running shoes that fit well.'>"
            f"{head}</head><body>{body}</body></html>")


async def run_tasks(db, project, *tasks, config=None):
    registry = TaskRegistry()
    for task in tasks:
        registry.register_task(task)
    await AnalysisPipeline(registry, db, config or AnalysisConfig(check_domain_variants=False)).run(project)
    return await get_findings(project.id, config=db)


def codes(findings, code):
    return [f for f in findings if f.code == code]


class TestRedirectsTask:
    async def test_loop_reported_once(self, db, project, store_page):
        await store_page("https://example.com/a", status=301, redirect_to="https://example.com/b")
        await store_page("https://example.com/b", status=301, redirect_to="https://example.com/c")
        await store_page("https://example.com/c", status=301, redirect_to="https://example.com/a")

        findings = await run_tasks(db, project, RedirectsTask())

        loops = codes(findings, "REDIRECT_LOOP")
        assert len(loops) == 1
        assert sorted(loops[0].data["loop"]) == [
            "https://example.com/a", "https://example.com/b", "https://example.com/c",
        ]
        page = await get_page_by_address(project.id, "https://example.com/b", config=db)
        assert page.is_redirect_loop is True

    async def test_chain_ending_in_200_is_not_a_loop(self, db, project, store_page):
        await store_page("https://example.com/a", status=301, redirect_to="https://example.com/b")
        await store_page("https://example.com/b", status=301, redirect_to="https://example.com/c")
        await store_page("https://example.com/c", html_page())

        findings = await run_tasks(db, project, RedirectsTask())

        assert codes(findings, "REDIRECT_LOOP") == []
        chains = codes(findings, "REDIRECT_CHAIN")
        assert len(chains) == 1
        assert chains[0].data["chain_length"] == 2
        assert chains[0].data["terminal_status"] == 200
        assert chains[0].severity == Severity.WARNING
        page = await get_page_by_address(project.id, "https://example.com/a", config=db)
        assert page.redirect_chain_length == 2
        assert page.redirect_terminal_status == 200

    async def test_temporary_redirect_with_long_cache(self, db, project, store_page):
        await store_page("http://example.com/old", status=302, redirect_to="https://example.com/new",
                         headers={"Cache-Control": "max-age=604800"})
        findings = await run_tasks(db, project, RedirectsTask())
        found = {f.code for f in findings}
        assert {"REDIRECT_302", "TEMPORARY_REDIRECT", "HTTPS_REDIRECT", "TEMPORARY_REDIRECT_LONG_CACHE"} <= found

    def test_javascript_redirect_detection(self):
        assert find_javascript_redirect("<script>window.location.href = '/new-page';</script>") == "/new-page"
        assert find_javascript_redirect("<script>// location = '/commented'\n</script>") is None
        assert find_javascript_redirect("<p>location = '/not-a-script'</p>") is None


class TestCanonicalTask:
    async def test_noindex_conflict_reported_once(self, db, project, store_page):
        head = ("<link rel='canonical' href='https://example.com/other'>"
                "<meta name='robots' content='noindex'>")
        page_id = await store_page("https://example.com/page", html_page(head=head))
        page = await get_page(page_id, config=db)
        findings = FindingSink(db)
        registry = TaskRegistry(RepositoryAccessor(db))
        task = registry.register_task(CanonicalTask())
        ctx = PageContext(page, project, findings, ReportSink(db, registry), registry.accessor,
                          ProjectArena(project.id), AnalysisConfig())

        await task.execute(ctx)
        await task.execute(ctx)
        await findings.flush()

        stored = await get_findings(project.id, "canonical", "CANONICAL_NOINDEX_CONFLICT", config=db)
        assert len(stored) == 1
        assert stored[0].page_id == page_id

    async def test_canonical_loop(self, db, project, store_page):
        await store_page("https://example.com/a", html_page(head="<link rel='canonical' href='https://example.com/b'>"))
        await store_page("https://example.com/b", html_page(head="<link rel='canonical' href='https://example.com/a'>"))
        findings = await run_tasks(db, project, CanonicalTask())
        assert len(codes(findings, "CANONICAL_LOOP")) == 1
        assert len(codes(findings, "CANONICAL_TO_OTHER_PAGE")) == 2

    async def test_canonical_target_error(self, db, project, store_page):
        await store_page("https://example.com/a", html_page(head="<link rel='canonical' href='https://example.com/gone'>"))
        await store_page("https://example.com/gone", "Not found", status=404)
        findings = await run_tasks(db, project, CanonicalTask())
        errors = codes(findings, "CANONICAL_TARGET_ERROR")
        assert len(errors) == 1
        assert errors[0].data["canonical_status"] == 404


class TestDuplicateContentTask:
    async def test_exact_duplicates_grouped(self, db, project, store_page):
        await store_page("https://example.com/a", html_page())
        await store_page("https://example.com/b", html_page(title="Another title for the same text"))
        await store_page("https://example.com/c", html_page(body="<p>Something else entirely.</p>"))

        findings = await run_tasks(db, project, DuplicateContentTask())

        exact = codes(findings, "EXACT_DUPLICATE")
        assert len(exact) == 1
        assert exact[0].data["urls"] == ["https://example.com/a", "https://example.com/b"]
        assert exact[0].data["distance"] == 0
        assert exact[0].data["similarity"] == 100.0
        assert codes(findings, "NEAR_DUPLICATE") == []

    async def test_permanent_redirect_excludes_pair(self, db, project, store_page):
        a = await store_page("https://example.com/a", html_page())
        await store_page("https://example.com/b", html_page())
        await add_redirects([Redirect(page_id=a, to_url="https://example.com/b", status_code=301)], config=db)

        findings = await run_tasks(db, project, DuplicateContentTask())

        assert codes(findings, "EXACT_DUPLICATE") == []

    async def test_temporary_redirect_reported_separately(self, db, project, store_page):
        a = await store_page("https://example.com/a", html_page())
        await store_page("https://example.com/b", html_page())
        await add_redirects([Redirect(page_id=a, to_url="https://example.com/b", status_code=302)], config=db)

        findings = await run_tasks(db, project, DuplicateContentTask())

        assert codes(findings, "EXACT_DUPLICATE") == []
        assert len(codes(findings, "DUPLICATE_CONTENT_TEMPORARY_REDIRECT")) == 1

    async def test_near_duplicates(self, db, project, store_page):
        await store_page("https://example.com/a", html_page())
        await store_page("https://example.com/b", html_page(body=BODY.replace("cushioning", "padding")))

        findings = await run_tasks(db, project, DuplicateContentTask(),
                                   config=AnalysisConfig(check_domain_variants=False, near_duplicate_threshold=20))

        near = codes(findings, "NEAR_DUPLICATE")
        assert len(near) == 1
        assert 0 < near[0].data["distance"] <= 20
        assert sorted(near[0].data["urls"]) == ["https://example.com/a", "https://example.com/b"]

    @pytest.mark.parametrize("threshold", [0, 3, 5, 20])
    def test_band_keys_cover_threshold_plus_one_bands(self, threshold):
        signature = (1 << 64) - 1
        keys = band_keys(signature, threshold)
        assert len(keys) == threshold + 1
        assert [index for index, _ in keys] == list(range(threshold + 1))

    def test_signatures_within_threshold_share_a_band(self):
        signature = 0x0123456789ABCDEF
        flipped = signature ^ 0b111  # 3 bits differ
        assert set(band_keys(signature, 3)) & set(band_keys(flipped, 3))

    async def test_domain_variants(self, db, project, store_page, fake_fetcher):
        await store_page("https://example.com/", html_page())
        fake_fetcher.add_redirect("http://example.com/", "https://example.com/", status=301)
        fake_fetcher.add_redirect("https://www.example.com/", "https://example.com/", status=302)
        fake_fetcher.add_page("http://www.example.com/", html_page())
        registry = TaskRegistry()
        registry.register_task(DuplicateContentTask())

        await AnalysisPipeline(registry, db, AnalysisConfig(), fetcher=fake_fetcher).run(project)
        findings = await get_findings(project.id, config=db)

        assert len(codes(findings, "DOMAIN_VARIANT_CORRECT_REDIRECT")) == 1
        assert len(codes(findings, "DOMAIN_VARIANT_WRONG_REDIRECT_TYPE")) == 1
        assert len(codes(findings, "DOMAIN_VARIANT_DUPLICATE_CONTENT")) == 1


class TestTitlesMetaTask:
    async def test_duplicate_titles_reported_once_per_group(self, db, project, store_page):
        await store_page("https://example.com/a", html_page(body="<p>First</p>"))
        await store_page("https://example.com/b", html_page(body="<p>Second</p>"))
        await store_page("https://example.com/c", html_page(body="<p>Third</p>", title="A different title here"))

        findings = await run_tasks(db, project, TitlesMetaTask())

        duplicates = codes(findings, "DUPLICATE_TITLE")
        assert len(duplicates) == 1
        assert duplicates[0].severity == Severity.ERROR
        assert len(codes(findings, "DUPLICATE_DESCRIPTION")) == 1
        assert len(codes(findings, "TITLE_TOO_SHORT")) == 1


class TestBrokenLinksTask:
    async def test_broken_link_and_link_to_redirect(self, db, project, store_page):
        body = "<a href='/missing'>Missing</a> <a href='/moved'>Moved</a> <a href='/ok'>Fine</a>"
        await store_page("https://example.com/", html_page(body=body))
        await store_page("https://example.com/missing", "Not found", status=404)
        await store_page("https://example.com/moved", status=301, redirect_to="https://example.com/ok")
        await store_page("https://example.com/ok", html_page())

        findings = await run_tasks(db, project, BrokenLinksTask())

        broken = codes(findings, "BROKEN_LINK")
        assert [f.data["target"] for f in broken] == ["https://example.com/missing"]
        assert broken[0].data["status"] == 404
        assert [f.data["target"] for f in codes(findings, "LINK_TO_REDIRECT")] == ["https://example.com/moved"]


class TestSitemapTask:
    async def test_sitemap_compared_with_crawl(self, db, project, store_page):
        sitemap = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.com/</loc></url>"
            "<url><loc>https://example.com/unlinked</loc></url>"
            "</urlset>"
        )
        await store_page("https://example.com/sitemap.xml", sitemap, content_type="application/xml")
        await store_page("https://example.com/", html_page(body="<a href='/about'>About</a>"))
        await store_page("https://example.com/about", html_page(body="<a href='/'>Home</a>"))

        findings = await run_tasks(db, project, SitemapTask())

        assert codes(findings, "SITEMAP_FOUND")[0].data["count"] == 2
        orphans = codes(findings, "ORPHAN_SITEMAP_URLS")
        assert orphans[0].data["urls"] == ["https://example.com/unlinked"]
        missing = codes(findings, "URLS_MISSING_FROM_SITEMAP")
        assert missing[0].data["urls"] == ["https://example.com/about"]

    async def test_unreadable_gzip_sitemap(self, db, project, store_page):
        await store_page("https://example.com/sitemap.xml.gz", "", content_type="application/x-gzip")
        findings = await run_tasks(db, project, SitemapTask())
        assert len(codes(findings, "SITEMAP_GZIP_ERROR")) == 1


class TestHreflangTask:
    def test_hreflang_syntax(self):
        assert is_valid_hreflang("en")
        assert is_valid_hreflang("en-GB")
        assert is_valid_hreflang("x-default")
        assert not is_valid_hreflang("english")
        assert not is_valid_hreflang("en_GB")

    async def test_missing_return_link(self, db, project, store_page):
        en = ("<link rel='alternate' hreflang='en' href='https://example.com/en'>"
              "<link rel='alternate' hreflang='de' href='https://example.com/de'>")
        de = "<link rel='alternate' hreflang='de' href='https://example.com/de'>"
        await store_page("https://example.com/en", html_page(head=en))
        await store_page("https://example.com/de", html_page(head=de))

        findings = await run_tasks(db, project, HreflangTask())

        missing = codes(findings, "MISSING_BIDIRECTIONAL_LINKS")
        assert len(missing) == 1
        assert missing[0].data["url"] == "https://example.com/en"
        assert len(codes(findings, "MISSING_X_DEFAULT")) == 2


class TestStructuredDataTask:
    async def test_invalid_and_incomplete_json_ld(self, db, project, store_page):
        head = ('<script type="application/ld+json">{"@type": "Article", "headline": "Shoes"}</script>'
                '<script type="application/ld+json">{not json</script>')
        await store_page("https://example.com/a", html_page(head=head))

        findings = await run_tasks(db, project, StructuredDataTask())

        assert len(codes(findings, "INVALID_JSON_LD")) == 1
        incomplete = codes(findings, "INCOMPLETE_ARTICLE_SCHEMA")
        assert incomplete[0].data["missing"] == ["author", "datePublished", "image"]
        assert codes(findings, "JSON_LD_FOUND")[0].data["types"] == ["Article"]


class TestRobotsTask:
    async def test_noindex_on_important_page(self, db, project, store_page):
        head = "<meta name='robots' content='noindex, nofollow'>"
        await store_page("https://example.com/a", html_page(head=head), depth=1)
        await store_page("https://example.com/deep", html_page(head=head), depth=5)

        findings = await run_tasks(db, project, RobotsTask())

        noindex = {f.data["url"]: f for f in codes(findings, "NOINDEX_DETECTED")}
        assert noindex["https://example.com/a"].severity == Severity.WARNING
        assert noindex["https://example.com/deep"].severity == Severity.INFO
        assert noindex["https://example.com/a"].data["source"] == "meta robots tag"
        assert len(codes(findings, "NOFOLLOW_DETECTED")) == 2
        important = codes(findings, "IMPORTANT_PAGE_NOT_INDEXABLE")
        assert [f.data["url"] for f in important] == ["https://example.com/a"]

    async def test_header_directives(self, db, project, store_page):
        header = "noindex, noarchive, max-snippet:0, max-image-preview:large, max-video-preview:-1"
        await store_page("https://example.com/a", html_page(), headers={"X-Robots-Tag": header}, depth=3)

        findings = await run_tasks(db, project, RobotsTask())

        assert codes(findings, "NOINDEX_DETECTED")[0].data["source"] == "X-Robots-Tag header"
        assert len(codes(findings, "X_ROBOTS_TAG_PRESENT")) == 1
        assert len(codes(findings, "NOARCHIVE_DETECTED")) == 1
        assert codes(findings, "NOSNIPPET_DETECTED") == []
        assert codes(findings, "MAX_SNIPPET_DETECTED")[0].severity == Severity.WARNING
        assert codes(findings, "MAX_IMAGE_PREVIEW_DETECTED")[0].severity == Severity.INFO
        assert codes(findings, "MAX_VIDEO_PREVIEW_DETECTED")[0].message.endswith("unlimited")
        assert codes(findings, "IMPORTANT_PAGE_NOT_INDEXABLE") == []

    async def test_blocked_by_robots_txt(self, db, project):
        page_id, _ = await upsert_page(project.id, "https://example.com/private", "https://example.com/private", 1,
                                       config=db)
        await store_crawl_result(page_id, status=UrlStatus.COMPLETED, http_status=None, content_type=None,
                                 headers={}, html="", metadata=PageMetadata(), hashes={}, robots_allowed=False,
                                 config=db)

        findings = await run_tasks(db, project, RobotsTask())

        important = codes(findings, "IMPORTANT_PAGE_NOT_INDEXABLE")
        assert important[0].data["reason"] == "blocked by robots.txt"

    async def test_missing_robots_txt_reported_once(self, db, project, store_page, fake_fetcher):
        await store_page("https://example.com/", html_page())
        await store_page("https://example.com/a", html_page(), depth=1)
        registry = TaskRegistry()
        registry.register_task(RobotsTask())

        await AnalysisPipeline(registry, db, AnalysisConfig(check_domain_variants=False),
                               fetcher=fake_fetcher).run(project)
        findings = await get_findings(project.id, config=db)

        missing = codes(findings, "NO_ROBOTS_TXT")
        assert len(missing) == 1
        assert missing[0].data == {"robots_txt_url": "https://example.com/robots.txt", "status": 404}
        assert fake_fetcher.requested == ["https://example.com/robots.txt"]

    async def test_present_robots_txt(self, db, project, store_page, fake_fetcher):
        await store_page("https://example.com/", html_page())
        fake_fetcher.add_page("https://example.com/robots.txt", "User-agent: *\nDisallow:\n",
                              headers={"Content-Type": "text/plain"})
        registry = TaskRegistry()
        registry.register_task(RobotsTask())

        await AnalysisPipeline(registry, db, AnalysisConfig(check_domain_variants=False),
                               fetcher=fake_fetcher).run(project)

        assert await get_findings(project.id, code="NO_ROBOTS_TXT", config=db) == []


class TestSecurityTask:
    SECURE_HEADERS = {
        "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
        "Content-Security-Policy": "default-src 'self'",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin",
    }

    async def test_mixed_content_and_headers(self, db, project, store_page):
        body = ("<img src='http://cdn.example.com/a.png' alt='A'> <img src='https://cdn.example.com/b.png' alt='B'>"
                "<script src='http://cdn.example.com/app.js'></script>" + BODY)
        head = "<link rel='stylesheet' href='http://cdn.example.com/site.css'>"
        await store_page("https://example.com/a", html_page(body, head=head),
                         headers={"Strict-Transport-Security": "max-age=600", "X-Content-Type-Options": "sniff"})

        findings = await run_tasks(db, project, SecurityTask())

        mixed = codes(findings, "MIXED_CONTENT")[0]
        assert mixed.severity == Severity.ERROR
        assert mixed.data["count"] == 3
        assert mixed.data["resource_types"] == {"Image": 1, "Script": 1, "Stylesheet": 1}
        headers = codes(findings, "MISSING_SECURITY_HEADERS")[0]
        assert headers.data["missing_headers"] == ["Content-Security-Policy", "X-Frame-Options", "Referrer-Policy"]
        assert [w["header"] for w in headers.data["weak_headers"]] == [
            "Strict-Transport-Security", "X-Content-Type-Options",
        ]

    async def test_secure_page_is_clean(self, db, project, store_page):
        headers = dict(self.SECURE_HEADERS, **{"Set-Cookie": "session=abc; Path=/; Secure; HttpOnly"})
        await store_page("https://example.com/a", html_page(), headers=headers)

        assert await run_tasks(db, project, SecurityTask()) == []

    async def test_insecure_cookies(self, db, project, store_page):
        cookie = "session=abc; Secure; HttpOnly, theme=dark; Expires=Wed, 21 Oct 2026 07:28:00 GMT; Path=/"
        headers = dict(self.SECURE_HEADERS, **{"Set-Cookie": cookie})
        await store_page("https://example.com/a", html_page(), headers=headers)

        findings = await run_tasks(db, project, SecurityTask())

        cookies = codes(findings, "INSECURE_COOKIES")[0]
        assert cookies.data["insecure_cookies"] == ["theme"]
        assert cookies.data["missing_http_only"] == ["theme"]

    async def test_http_page(self, db, project, store_page):
        await store_page("http://example.com/", html_page())
        await store_page("http://example.com/deep", html_page(), depth=4)

        findings = await run_tasks(db, project, SecurityTask())

        assert [f.data["url"] for f in codes(findings, "HTTP_NOT_HTTPS")] == ["http://example.com/"]
        assert codes(findings, "MISSING_SECURITY_HEADERS") == []

    def test_cookie_split_keeps_expires_dates(self):
        cookies = parse_set_cookie("a=1; Expires=Thu, 01 Jan 2026 00:00:00 GMT; Secure, b=2")
        assert [name for name, _ in cookies] == ["a", "b"]
        assert "secure" in cookies[0][1]

    def test_hsts_without_max_age_is_weak(self):
        missing, weak = check_security_headers({"strict-transport-security": "includeSubDomains"}, 31536000)
        assert "Strict-Transport-Security" not in missing
        assert weak == [{"header": "Strict-Transport-Security", "issue": "Missing max-age directive"}]


class TestImageAuditTask:
    async def test_alt_text_and_dimensions(self, db, project, store_page):
        body = ("<img src='/a.png' width='10' height='10'>"
                "<img src='/b.png' alt='Shoe on a trail' width='100px' height='50'>"
                "<img src='/c.png' alt='decorative border' width='5' height='5'>"
                "<img src='data:image/png;base64,AAAA'>" + BODY)
        await store_page("https://example.com/a", html_page(body))

        findings = await run_tasks(db, project, ImageAuditTask())

        assert [f.data["image_url"] for f in codes(findings, "MISSING_ALT_TEXT")] == ["https://example.com/a.png"]
        dimensions = codes(findings, "MISSING_DIMENSIONS")
        assert [f.data["image_url"] for f in dimensions] == ["https://example.com/b.png"]
        assert dimensions[0].data["has_width"] is False
        assert dimensions[0].data["has_height"] is True
        assert len(codes(findings, "DECORATIVE_IMAGE")) == 1

    async def test_error_pages_skipped(self, db, project, store_page):
        await store_page("https://example.com/gone", "<img src='/x.png'>", status=404)

        assert await run_tasks(db, project, ImageAuditTask()) == []


class TestLinkGraphTask:
    async def test_one_finding_per_link(self, db, project, store_page):
        await store_page("https://example.com/", html_page("<a href='/a'>Shoes</a> <a href='https://other.org/'></a>"))
        await store_page("https://other.org/", html_page("<a href='/x'>X</a>"))

        findings = await run_tasks(db, project, LinkGraphTask())

        edges = sorted((f.data["to_url"], f.data["anchor_text"]) for f in findings)
        assert edges == [("https://example.com/a", "Shoes"), ("https://other.org/", "(no text)")]


class TestDefaultTasks:
    def test_register_defaults(self):
        registry = register_default_tasks(TaskRegistry())
        assert len(registry) == len(DEFAULT_TASKS)
        assert "redirects" in registry

    def test_exclude(self):
        registry = register_default_tasks(TaskRegistry(), exclude=("sitemap",))
        assert "sitemap" not in registry
