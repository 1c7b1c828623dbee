from __future__ import annotations
import logging

from ..models import Page, Severity
from ..parse import SitemapParseError, classify, extract_from_sitemap, normalize_url_hardened
from ..pipeline import PageContext, ProjectContext, UrlTask

logger = logging.getLogger(__name__)

SITEMAP_URLS = "sitemap_urls"
INDEXABLE_PAGES = "indexable_pages"
SAMPLE_SIZE = 20


def is_gzip_sitemap(page: Page) -> bool:
    content_type = (page.content_type or "").lower()
    return page.path.lower().endswith(".gz") or "gzip" in content_type


class SitemapTask(UrlTask):
    """Parses crawled sitemaps and compares them with the crawled site."""

    key = "sitemap"
    display_name = "XML Sitemap"
    priority = 80

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not page.is_success:
            return
        if classify(page.content_type, page.address) == "sitemap":
            await self._check_sitemap(ctx)
        elif page.is_html and not page.robots_noindex and page.robots_allowed:
            ctx.arena.add_to_group(INDEXABLE_PAGES, page.normalized_url, page.id)

    async def _check_sitemap(self, ctx: PageContext):
        page = ctx.page
        text = await ctx.get_html()
        if not text and is_gzip_sitemap(page):
            await self.emit(ctx, Severity.ERROR, "SITEMAP_GZIP_ERROR",
                            f"Sitemap {page.address} could not be decompressed", url=page.address)
            return
        try:
            kind, locations = extract_from_sitemap(text)
        except SitemapParseError as e:
            await self.emit(ctx, Severity.ERROR, "SITEMAP_PARSE_ERROR",
                            f"Sitemap {page.address} is not valid XML: {e}", url=page.address, error=str(e))
            return

        if kind == "sitemap_index":
            await self.emit(ctx, Severity.INFO, "SITEMAP_INDEX_FOUND",
                            f"Sitemap index with {len(locations)} sitemaps", url=page.address,
                            count=len(locations), sitemaps=locations[:SAMPLE_SIZE])
        else:
            await self.emit(ctx, Severity.INFO, "SITEMAP_FOUND",
                            f"Sitemap with {len(locations)} URLs", url=page.address, count=len(locations))
            for location in locations:
                ctx.arena.add_to_group(SITEMAP_URLS, normalize_url_hardened(location), page.id)
        if not locations:
            await self.emit(ctx, Severity.WARNING, "EMPTY_SITEMAP",
                            f"Sitemap {page.address} lists no URLs", url=page.address)

    async def finalize_project(self, ctx: ProjectContext):
        sitemap_urls = ctx.arena.keys(SITEMAP_URLS)
        if not sitemap_urls or not ctx.arena.try_claim("sitemap_compared"):
            return

        orphans = []
        for url in sitemap_urls:
            page = await ctx.accessor.get_page_by_address(ctx.project.id, url)
            if page is None or await ctx.accessor.count_inlinks(page.id) == 0:
                orphans.append(url)
        if orphans:
            await self.emit(ctx, Severity.WARNING, "ORPHAN_SITEMAP_URLS",
                            f"Found {len(orphans)} URL(s) in sitemap that are not linked internally",
                            count=len(orphans), urls=orphans[:SAMPLE_SIZE])

        listed = set(sitemap_urls)
        missing = [url for url in ctx.arena.keys(INDEXABLE_PAGES) if url not in listed]
        if missing:
            logger.info("%d crawled URLs missing from sitemap", len(missing))
            await self.emit(ctx, Severity.INFO, "URLS_MISSING_FROM_SITEMAP",
                            f"Found {len(missing)} crawled URL(s) missing from the sitemap",
                            count=len(missing), urls=missing[:SAMPLE_SIZE])
