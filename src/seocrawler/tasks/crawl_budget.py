from __future__ import annotations
import re

from bs4 import BeautifulSoup

from ..models import Severity
from ..pipeline import PageContext, ProjectContext, UrlTask

SOFT_404_PATTERNS = (
    "404",
    "not found",
    "page not found",
    "page could not be found",
    "page does not exist",
    "page doesn't exist",
    "no longer exists",
    "has been removed",
    "has been deleted",
    "no results found",
    "nothing found",
    "the page you requested",
    "the page you are looking for",
)
_SOFT_404_RE = re.compile(
    r"(?<!\d)404(?!\d)|" + "|".join(re.escape(p) for p in SOFT_404_PATTERNS if p != "404"),
    re.IGNORECASE,
)


def soft_404_matches(title: str, heading: str) -> list:
    """Soft 404 phrases found in the title or first heading of a page."""
    matches = []
    for location, text in (("title", title), ("h1", heading)):
        for match in _SOFT_404_RE.finditer(text or ""):
            matches.append((location, match.group(0).lower()))
    return matches


class CrawlBudgetTask(UrlTask):
    key = "crawl_budget"
    display_name = "Crawl Budget"
    priority = 70

    async def execute(self, ctx: PageContext):
        page = ctx.page
        ctx.arena.increment("pages_seen")
        status = page.http_status
        if status is not None and status >= 500:
            ctx.arena.increment("server_errors")
            await self.emit(ctx, Severity.WARNING, f"SERVER_ERROR_{status}",
                            f"Server error {status} wastes crawl budget",
                            url=page.address, status=status, depth=page.depth)
            return

        if page.is_success and page.is_html:
            html = await ctx.get_html()
            heading = ""
            if html:
                h1 = BeautifulSoup(html, "html.parser").find("h1")
                heading = h1.get_text(" ", strip=True) if h1 else ""
            matches = soft_404_matches(page.title or "", heading)
            if matches:
                await self.emit(ctx, Severity.WARNING, "SOFT_404",
                                "Soft 404: page returns 200 OK but shows error content",
                                url=page.address, status=status,
                                indicators=sorted({phrase for _, phrase in matches}),
                                locations=sorted({location for location, _ in matches}))

    async def finalize_project(self, ctx: ProjectContext):
        total = ctx.arena.counter("pages_seen")
        errors = ctx.arena.counter("server_errors")
        if total < ctx.config.error_rate_min_pages or not errors:
            return
        rate = errors / total
        if rate > ctx.config.server_error_rate_threshold and ctx.arena.try_claim("high_error_rate_reported"):
            await self.emit(ctx, Severity.ERROR, "HIGH_SERVER_ERROR_RATE",
                            f"High server error rate: {rate:.0%} of pages return 5xx errors",
                            total_pages=total, error_count=errors, error_rate=rate)
