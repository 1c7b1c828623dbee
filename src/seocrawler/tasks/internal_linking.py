from __future__ import annotations
from urllib.parse import urlsplit

from ..models import Severity
from ..parse import is_same_site
from ..pipeline import PageContext, ProjectContext, UrlTask

GENERIC_ANCHORS = {"click here", "read more", "learn more", "more", "here", "link", "this page"}
ORPHAN_CANDIDATES = "orphan_candidates"


class InternalLinkingTask(UrlTask):
    """Outlink counts, anchor text quality and orphan detection."""

    key = "internal_linking"
    display_name = "Internal Linking"
    priority = 60

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success):
            return

        internal = [link for link in await ctx.get_links()
                    if link.link_type == "hyperlink" and is_same_site(link.to_url, ctx.project.base_url)
                    and link.to_url != page.normalized_url]
        if not internal:
            await self.emit(ctx, Severity.WARNING, "NO_OUTLINKS",
                            "Page has no internal links to other pages", url=page.address)
        else:
            generic = [link.anchor_text for link in internal
                       if link.anchor_text.strip().lower() in GENERIC_ANCHORS]
            if len(generic) * 2 > len(internal):
                await self.emit(ctx, Severity.INFO, "GENERIC_ANCHOR_TEXT",
                                f"{len(generic)} of {len(internal)} internal links use generic anchor text",
                                url=page.address, generic_count=len(generic), total_links=len(internal),
                                anchors=sorted(set(generic)))

        if page.depth > 1 and urlsplit(page.normalized_url).path not in ("", "/"):
            ctx.arena.add_to_group(ORPHAN_CANDIDATES, page.id, (page.address, page.depth))

    async def finalize_project(self, ctx: ProjectContext):
        for page_id in ctx.arena.keys(ORPHAN_CANDIDATES):
            address, depth = ctx.arena.group_snapshot(ORPHAN_CANDIDATES, page_id)[0]
            if await ctx.accessor.count_inlinks(page_id) == 0:
                await self.emit(ctx, Severity.WARNING, "POTENTIAL_ORPHAN",
                                "Page has no detected internal links pointing to it",
                                page_id=page_id, url=address, depth=depth)
