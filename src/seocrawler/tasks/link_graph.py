from __future__ import annotations

from ..models import Severity
from ..parse import is_same_site
from ..pipeline import PageContext, UrlTask


class LinkGraphTask(UrlTask):
    """One finding per outgoing link of every internal page, for graph export."""

    key = "link_graph"
    display_name = "Link Graph"
    priority = 1000

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not is_same_site(page.normalized_url, ctx.project.base_url):
            return
        for link in await ctx.get_links():
            anchor = (link.anchor_text or "").strip() or "(no text)"
            await self.emit(ctx, Severity.INFO, "LINK_GRAPH", f"Links to: {link.to_url}",
                            from_url=page.address, to_url=link.to_url, anchor_text=anchor,
                            link_type=link.link_type)
