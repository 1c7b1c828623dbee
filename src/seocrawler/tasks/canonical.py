from __future__ import annotations
import logging

from ..chains import resolve_canonical_chain
from ..models import Severity
from ..parse import comparison_key, host_key
from ..pipeline import PageContext, UrlTask

logger = logging.getLogger(__name__)


class CanonicalTask(UrlTask):
    """Validates canonical declarations and follows canonical chains."""

    key = "canonical"
    display_name = "Canonical Validation"
    priority = 25

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not page.is_html:
            return

        canonical = page.canonical
        if not canonical:
            if page.depth <= ctx.config.missing_canonical_max_depth:
                await self.emit(ctx, Severity.INFO, "MISSING_CANONICAL",
                                "Page has no canonical tag", url=page.address, depth=page.depth)
            return

        if page.has_multiple_canonicals:
            await self.emit(ctx, Severity.ERROR, "MULTIPLE_CANONICALS",
                            f"Page declares more than one canonical, the first ({canonical}) is used",
                            url=page.address, canonical=canonical,
                            canonical_html=page.canonical_html, canonical_http=page.canonical_http)

        if page.robots_noindex and ctx.arena.try_claim("canonical_noindex", page.id):
            await self.emit(ctx, Severity.WARNING, "CANONICAL_NOINDEX_CONFLICT",
                            "Page has both a canonical and a noindex directive",
                            url=page.address, canonical=canonical)

        self_referential = comparison_key(canonical) == comparison_key(page.normalized_url)
        if self_referential:
            return

        if host_key(canonical) != host_key(page.normalized_url):
            await self.emit(ctx, Severity.WARNING, "CROSS_DOMAIN_CANONICAL",
                            f"Canonical points to another domain: {host_key(canonical)}",
                            url=page.address, canonical=canonical)
        else:
            await self.emit(ctx, Severity.INFO, "CANONICAL_TO_OTHER_PAGE",
                            f"Canonical points to another page: {canonical}",
                            url=page.address, canonical=canonical)

        chain = await resolve_canonical_chain(ctx.accessor, page, ctx.config.max_chain_hops)
        hops = [{"from": src, "to": dst} for src, dst, _ in chain.hops]
        if chain.is_loop:
            if ctx.arena.try_claim("canonical_loop", chain.loop_key()):
                await self.emit(ctx, Severity.ERROR, "CANONICAL_LOOP",
                                "Canonical loop detected: " + " → ".join(chain.loop + [chain.loop[0]]),
                                url=page.address, loop=list(chain.loop))
        elif chain.length > 1:
            await self.emit(ctx, Severity.WARNING, "CANONICAL_CHAIN",
                            "Canonical chain detected: " + " → ".join([page.normalized_url] + [d for _, d, _ in chain.hops]),
                            url=page.address, chain=hops, chain_length=chain.length)

        target = await ctx.accessor.get_page_by_address(page.project_id, canonical)
        if target is None or target.http_status is None:
            logger.debug("Canonical target %s of %s was not crawled", canonical, page.address)
            return
        if not target.is_success:
            await self.emit(ctx, Severity.ERROR, "CANONICAL_TARGET_ERROR",
                            f"Canonical URL returns HTTP {target.http_status}",
                            url=page.address, canonical=canonical, canonical_status=target.http_status)
