from __future__ import annotations
from urllib.parse import parse_qsl, urlsplit

from ..models import Page, ReportColumn, ReportSchema, Severity
from ..parse import comparison_key
from ..pipeline import PageContext, UrlTask


def compute_indexability(page: Page) -> bool:
    """2xx HTML, allowed by robots.txt, no noindex, canonical absent or self."""
    if not (page.is_success and page.is_html and page.robots_allowed):
        return False
    if page.robots_noindex:
        return False
    canonical = page.canonical
    return canonical is None or comparison_key(canonical) == comparison_key(page.normalized_url)


class InventoryTask(UrlTask):
    key = "inventory"
    display_name = "URL Inventory"
    priority = 40

    def report_schema(self):
        return ReportSchema(self.key, [
            ReportColumn("url", "url"),
            ReportColumn("status", "integer"),
            ReportColumn("content_type"),
            ReportColumn("depth", "integer"),
            ReportColumn("title"),
            ReportColumn("text_length", "integer"),
            ReportColumn("indexable", "boolean"),
            ReportColumn("inlinks", "integer"),
        ])

    async def execute(self, ctx: PageContext):
        page = ctx.page
        cfg = ctx.config
        indexable = compute_indexability(page)
        await ctx.accessor.update_page_flags(page.id, {"is_indexable": indexable})

        if len(page.address) > cfg.max_url_length:
            await self.emit(ctx, Severity.WARNING, "URL_TOO_LONG",
                            f"URL is {len(page.address)} characters long", url=page.address,
                            length=len(page.address))

        parts = urlsplit(page.address)
        if any(c.isupper() for c in parts.path):
            await self.emit(ctx, Severity.INFO, "UPPERCASE_IN_URL",
                            "URL path contains uppercase characters", url=page.address)

        parameters = parse_qsl(parts.query, keep_blank_values=True)
        if len(parameters) > cfg.max_query_parameters:
            await self.emit(ctx, Severity.INFO, "TOO_MANY_PARAMETERS",
                            f"URL has {len(parameters)} query parameters", url=page.address,
                            parameters=[name for name, _ in parameters])

        if indexable:
            text_length = page.text_length or 0
            if text_length < cfg.thin_content_chars:
                await self.emit(ctx, Severity.WARNING, "THIN_CONTENT",
                                f"Page has only {text_length} characters of text",
                                url=page.address, text_length=text_length)
            elif text_length < cfg.limited_content_chars:
                await self.emit(ctx, Severity.INFO, "LIMITED_CONTENT",
                                f"Page has limited text content ({text_length} characters)",
                                url=page.address, text_length=text_length)

        await self.report(ctx, {
            "url": page.address,
            "status": page.http_status,
            "content_type": page.content_type,
            "depth": page.depth,
            "title": page.title,
            "text_length": page.text_length,
            "indexable": indexable,
            "inlinks": await ctx.accessor.count_inlinks(page.id),
        })
