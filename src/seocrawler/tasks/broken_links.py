from __future__ import annotations
from typing import Optional, Tuple

from ..models import Severity, UrlStatus
from ..parse import is_same_site
from ..pipeline import PageContext, UrlTask

_MISSING = object()


class BrokenLinksTask(UrlTask):
    """Checks every outgoing link against the crawled status of its target."""

    key = "broken_links"
    display_name = "Broken Links"
    priority = 55

    async def _target_state(self, ctx: PageContext, page_id: int) -> Optional[Tuple[UrlStatus, Optional[int], Optional[str]]]:
        cached = ctx.arena.get_value("link_target", page_id, _MISSING)
        if cached is not _MISSING:
            return cached
        target = await ctx.accessor.get_page(page_id)
        state = (target.status, target.http_status, target.redirect_target) if target else None
        ctx.arena.set_value("link_target", page_id, state)
        return state

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not page.is_success:
            return
        reported = set()
        for link in await ctx.get_links():
            internal = is_same_site(link.to_url, ctx.project.base_url)
            if internal and link.is_nofollow and link.link_type == "hyperlink":
                await self.emit(ctx, Severity.INFO, "NOFOLLOW_INTERNAL_LINK",
                                f"Internal link to {link.to_url} is nofollow",
                                url=page.address, target=link.to_url, anchor_text=link.anchor_text)
            if link.to_page_id is None or link.to_url in reported:
                continue
            state = await self._target_state(ctx, link.to_page_id)
            if state is None:
                continue
            status, http_status, redirect_target = state
            if status == UrlStatus.FAILED and (http_status is None or http_status >= 400):
                reported.add(link.to_url)
                await self.emit(ctx, Severity.ERROR, "BROKEN_LINK",
                                f"Link to {link.to_url} is broken (HTTP {http_status or 'no response'})",
                                url=page.address, target=link.to_url, status=http_status,
                                link_type=link.link_type, anchor_text=link.anchor_text)
            elif http_status is not None and 300 <= http_status < 400:
                reported.add(link.to_url)
                await self.emit(ctx, Severity.WARNING, "LINK_TO_REDIRECT",
                                f"Link to {link.to_url} redirects ({http_status}) to {redirect_target}",
                                url=page.address, target=link.to_url, status=http_status,
                                redirect_target=redirect_target, anchor_text=link.anchor_text)
