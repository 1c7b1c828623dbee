from __future__ import annotations
import re

from ..models import Severity
from ..pipeline import PageContext, ProjectContext, UrlTask

# language[-Script][-REGION], e.g. en, en-GB, zh-Hant-TW, es-419
HREFLANG_RE = re.compile(r"^[a-z]{2,3}(?:-[a-z]{4})?(?:-(?:[a-z]{2}|\d{3}))?$", re.IGNORECASE)
HREFLANG_PAGES = "hreflang_pages"
HREFLANG_MAP = "hreflang_map"


def is_valid_hreflang(value: str) -> bool:
    value = (value or "").strip()
    return value.lower() == "x-default" or bool(HREFLANG_RE.match(value))


class HreflangTask(UrlTask):
    key = "hreflang"
    display_name = "Hreflang"
    priority = 85

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success):
            return
        annotations = await ctx.accessor.get_hreflangs(page.id)
        if not annotations:
            return

        invalid = sorted({h.language for h in annotations if not is_valid_hreflang(h.language)})
        if invalid:
            await self.emit(ctx, Severity.ERROR, "INVALID_HREFLANG_SYNTAX",
                            f"Invalid hreflang syntax in {len(invalid)} tag(s)",
                            url=page.address, invalid=invalid)

        if not any(h.href == page.normalized_url for h in annotations):
            await self.emit(ctx, Severity.WARNING, "MISSING_SELF_REFERENCE",
                            "Hreflang set does not reference the page itself", url=page.address)

        by_language = {}
        for h in annotations:
            by_language.setdefault(h.language.strip().lower(), set()).add(h.href)
        conflicting = sorted(lang for lang, hrefs in by_language.items() if len(hrefs) > 1)
        if conflicting:
            await self.emit(ctx, Severity.WARNING, "DUPLICATE_HREFLANG",
                            f"Hreflang language declared for more than one URL: {', '.join(conflicting)}",
                            url=page.address, languages=conflicting)

        if "x-default" not in by_language:
            await self.emit(ctx, Severity.INFO, "MISSING_X_DEFAULT",
                            "Hreflang set has no x-default", url=page.address)

        ctx.arena.set_value(HREFLANG_MAP, page.normalized_url,
                            [(h.language.strip().lower(), h.href) for h in annotations])
        ctx.arena.add_to_group(HREFLANG_PAGES, page.id, page.normalized_url)

    async def finalize_project(self, ctx: ProjectContext):
        for page_id in ctx.arena.keys(HREFLANG_PAGES):
            url = ctx.arena.group_snapshot(HREFLANG_PAGES, page_id)[0]
            missing = []
            for language, href in ctx.arena.get_value(HREFLANG_MAP, url, []):
                if language == "x-default" or href == url:
                    continue
                target = ctx.arena.get_value(HREFLANG_MAP, href)
                # Targets that were not crawled cannot be checked
                if target is None:
                    continue
                if not any(back == url for _, back in target):
                    missing.append({"url": href, "language": language})
            if missing:
                await self.emit(ctx, Severity.ERROR, "MISSING_BIDIRECTIONAL_LINKS",
                                f"Hreflang missing return links from {len(missing)} target page(s)",
                                page_id=page_id, url=url, missing=missing)
