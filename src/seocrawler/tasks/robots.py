"""
Indexability directives: meta robots, the X-Robots-Tag header and robots.txt.

Directive parsing happens at crawl time (``parse.extract_page_metadata``);
this task turns the stored flags into findings. The site's robots.txt is
requested once per project when a fetcher is available.
"""
from __future__ import annotations
import logging
import re

from ..models import Severity
from ..parse import is_same_site, resolve_url, robots_directives
from ..pipeline import PageContext, ProjectContext, UrlTask

logger = logging.getLogger(__name__)

# Header directives reported as-is: (substring, code, message)
_FLAG_DIRECTIVES = (
    ("noarchive", "NOARCHIVE_DETECTED", "Page has 'noarchive' directive (prevents cached copies)"),
    ("nosnippet", "NOSNIPPET_DETECTED", "Page has 'nosnippet' directive (prevents text snippets in search results)"),
    ("noimageindex", "NOIMAGEINDEX_DETECTED", "Page has 'noimageindex' directive (images will not be indexed)"),
    ("unavailable_after", "UNAVAILABLE_AFTER_DETECTED",
     "Page has 'unavailable_after' directive (time-limited indexing)"),
    ("indexifembedded", "INDEXIFEMBEDDED_DETECTED",
     "Page has 'indexifembedded' directive (allows indexing when embedded in iframes)"),
    ("googlebot-news", "GOOGLEBOT_NEWS_DIRECTIVE", "Page has googlebot-news specific directive"),
)

_MAX_SNIPPET_RE = re.compile(r"max-snippet:\s*(-1|\d+)")
_MAX_IMAGE_PREVIEW_RE = re.compile(r"max-image-preview:\s*(none|standard|large)")
_MAX_VIDEO_PREVIEW_RE = re.compile(r"max-video-preview:\s*(-1|\d+)")


class RobotsTask(UrlTask):
    """Reports noindex/nofollow pages, preview limits and unindexable important pages."""

    key = "robots"
    display_name = "Indexability"
    priority = 20

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not is_same_site(page.normalized_url, ctx.project.base_url):
            return
        important = page.depth <= ctx.config.important_page_max_depth

        if not page.robots_allowed:
            if important:
                await self._report_important(ctx, "blocked by robots.txt")
            return

        header = page.x_robots_tag or ""
        header_noindex = robots_directives(header) & {"noindex", "none"}
        source = "X-Robots-Tag header" if header_noindex else "meta robots tag"

        if page.is_html and page.robots_noindex:
            await self.emit(ctx, Severity.WARNING if important else Severity.INFO, "NOINDEX_DETECTED",
                            "Page has noindex directive (will not be indexed by search engines)",
                            url=page.address, source=source, depth=page.depth)
        if page.is_html and page.robots_nofollow:
            await self.emit(ctx, Severity.INFO, "NOFOLLOW_DETECTED",
                            "Page has nofollow directive (links will not pass equity)",
                            url=page.address, source=source)

        if header:
            await self._check_header_directives(ctx, header)
            await self.emit(ctx, Severity.INFO, "X_ROBOTS_TAG_PRESENT", f"X-Robots-Tag header present: {header}",
                            url=page.address, x_robots_tag=header, indexable=not page.robots_noindex)

        if page.robots_noindex and important:
            await self._report_important(ctx, f"noindex in {source}")

    async def _report_important(self, ctx: PageContext, reason: str):
        page = ctx.page
        await self.emit(ctx, Severity.WARNING, "IMPORTANT_PAGE_NOT_INDEXABLE",
                        f"Important page (depth {page.depth}) is not indexable: {reason}",
                        url=page.address, depth=page.depth, reason=reason)

    async def _check_header_directives(self, ctx: PageContext, header: str):
        tag = header.lower()
        url = ctx.page.address
        for needle, code, message in _FLAG_DIRECTIVES:
            if needle in tag:
                await self.emit(ctx, Severity.INFO, code, message, url=url, x_robots_tag=header)

        match = _MAX_SNIPPET_RE.search(tag)
        if match:
            value = match.group(1)
            label = "unlimited" if value == "-1" else f"{value} characters"
            await self.emit(ctx, Severity.WARNING if value == "0" else Severity.INFO, "MAX_SNIPPET_DETECTED",
                            f"Page has 'max-snippet' directive: {label}", url=url, max_snippet=int(value))

        match = _MAX_IMAGE_PREVIEW_RE.search(tag)
        if match:
            value = match.group(1)
            await self.emit(ctx, Severity.WARNING if value == "none" else Severity.INFO,
                            "MAX_IMAGE_PREVIEW_DETECTED", f"Page has 'max-image-preview' directive: {value}",
                            url=url, max_image_preview=value)

        match = _MAX_VIDEO_PREVIEW_RE.search(tag)
        if match:
            value = match.group(1)
            label = "unlimited" if value == "-1" else f"{value} seconds"
            await self.emit(ctx, Severity.WARNING if value == "0" else Severity.INFO,
                            "MAX_VIDEO_PREVIEW_DETECTED", f"Page has 'max-video-preview' directive: {label}",
                            url=url, max_video_preview=int(value))

    async def finalize_project(self, ctx: ProjectContext):
        if not ctx.config.check_robots_txt or ctx.fetcher is None:
            return
        if not ctx.arena.try_claim("robots_txt_checked"):
            return
        robots_url = resolve_url(ctx.project.base_url, "/robots.txt")
        if not robots_url:
            return
        try:
            result = await ctx.fetcher.fetch(robots_url)
        except Exception:
            logger.exception("Error checking for robots.txt at %s", robots_url)
            return
        if result.error_kind:
            logger.debug("robots.txt at %s unreachable: %s", robots_url, result.error)
            return
        if not (200 <= result.status < 300):
            await self.emit(ctx, Severity.INFO, "NO_ROBOTS_TXT",
                            "No robots.txt file found (all pages allowed by default)",
                            robots_txt_url=robots_url, status=result.status)
        else:
            logger.debug("robots.txt found at %s", robots_url)
