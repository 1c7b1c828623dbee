"""
Redirect audit: status codes, canonicalization hops, chains and loops.
"""
from __future__ import annotations
import re
from urllib.parse import urlsplit

from ..chains import resolve_redirect_chain
from ..models import ReportColumn, ReportSchema, Severity, TEMPORARY_REDIRECT_CODES
from ..pipeline import PageContext, UrlTask

REDIRECT_TYPES = {
    301: "Permanent",
    302: "Temporary (Found)",
    303: "See Other",
    307: "Temporary",
    308: "Permanent",
}

_SCRIPT_RE = re.compile(r"<script[^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"//.*?$", re.MULTILINE)
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_JS_REDIRECT_RE = re.compile(
    r"(?:window\.)?location(?:\.(?:href|replace|assign))?\s*[=(]\s*[\"'`]([^\"'`\s]+)[\"'`]",
    re.IGNORECASE,
)
_MAX_AGE_RE = re.compile(r"max-age\s*=\s*(\d+)", re.IGNORECASE)


def find_javascript_redirect(html: str):
    """First plausible ``location = "..."`` target inside a script block, or None."""
    for match in _SCRIPT_RE.finditer(html or ""):
        script = _BLOCK_COMMENT_RE.sub("", _LINE_COMMENT_RE.sub("", match.group(1)))
        for redirect in _JS_REDIRECT_RE.finditer(script):
            target = redirect.group(1)
            if _looks_like_url(target):
                return target
    return None


def _looks_like_url(value: str) -> bool:
    lower = value.lower()
    if len(value) < 3 or lower == "about:blank" or lower.startswith(("javascript:", "#")):
        return False
    if "{{" in lower or "${" in lower or "undefined" in lower or "null" in lower:
        return False
    return lower.startswith(("http://", "https://", "//", "/", "./")) or "." in lower


class RedirectsTask(UrlTask):
    key = "redirects"
    display_name = "Redirects"
    priority = 20

    def report_schema(self):
        return ReportSchema(self.key, [
            ReportColumn("url", "url"),
            ReportColumn("status", "integer"),
            ReportColumn("target", "url"),
            ReportColumn("redirect_type"),
            ReportColumn("chain_length", "integer"),
            ReportColumn("terminal_status", "integer"),
            ReportColumn("is_loop", "boolean"),
        ])

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if page.is_redirect:
            await self._check_redirect(ctx)
            return
        if page.http_status == 200:
            if page.has_meta_refresh:
                await self.emit(ctx, Severity.WARNING, "META_REFRESH_REDIRECT",
                                f"Page uses meta refresh redirect: {page.meta_refresh_target or 'unknown'}",
                                url=page.address, target=page.meta_refresh_target,
                                delay=page.meta_refresh_delay or 0)
            if page.is_html:
                target = find_javascript_redirect(await ctx.get_html())
                if target:
                    await self.emit(ctx, Severity.WARNING, "JAVASCRIPT_REDIRECT",
                                    f"Page uses JavaScript redirect: {target}",
                                    url=page.address, target=target)

    async def _check_redirect(self, ctx: PageContext):
        page = ctx.page
        status = page.http_status
        location = page.redirect_target
        if not location:
            await self.emit(ctx, Severity.ERROR, "MISSING_LOCATION",
                            f"Redirect status {status} but missing Location header", status=status)
            return

        await self.emit(ctx, Severity.INFO, f"REDIRECT_{status}",
                        f"Redirects ({status}) to {location}",
                        url=page.address, target=location, status=status,
                        redirect_type=REDIRECT_TYPES.get(status, "Unknown"))
        if status in (302, 307):
            await self.emit(ctx, Severity.WARNING, "TEMPORARY_REDIRECT",
                            f"Using {status} (temporary) redirect, consider 301 for permanent moves",
                            url=page.address, target=location, status=status)

        source = urlsplit(page.normalized_url)
        target = urlsplit(location)
        if source.scheme == "https" and target.scheme == "http":
            await self.emit(ctx, Severity.ERROR, "MIXED_CONTENT_REDIRECT",
                            "HTTPS page redirects to HTTP", url=page.address, target=location)
        elif source.scheme == "http" and target.scheme == "https":
            await self.emit(ctx, Severity.INFO, "HTTPS_REDIRECT",
                            "HTTP to HTTPS redirect", url=page.address, target=location)

        source_host = source.hostname or ""
        target_host = target.hostname or ""
        if source_host.startswith("www.") and not target_host.startswith("www."):
            await self.emit(ctx, Severity.INFO, "WWW_REDIRECT",
                            "WWW to non-WWW redirect", url=page.address, target=location)
        elif not source_host.startswith("www.") and target_host.startswith("www."):
            await self.emit(ctx, Severity.INFO, "NON_WWW_REDIRECT",
                            "Non-WWW to WWW redirect", url=page.address, target=location)

        if source.path.rstrip("/") == target.path.rstrip("/") and \
                source.path.endswith("/") != target.path.endswith("/"):
            await self.emit(ctx, Severity.INFO, "TRAILING_SLASH_REDIRECT",
                            "Redirect due to trailing slash inconsistency", url=page.address, target=location)

        if status in TEMPORARY_REDIRECT_CODES:
            await self._check_caching(ctx)

        chain = await resolve_redirect_chain(ctx.accessor, page, ctx.config.max_chain_hops)
        await ctx.accessor.update_page_flags(page.id, {
            "redirect_chain_length": chain.length,
            "redirect_terminal_status": chain.terminal_status,
            "is_redirect_loop": chain.is_loop,
        })
        hops = [{"from": src, "to": dst, "status": code} for src, dst, code in chain.hops]
        if chain.is_loop:
            if ctx.arena.try_claim("redirect_loop", chain.loop_key()):
                await self.emit(ctx, Severity.ERROR, "REDIRECT_LOOP",
                                f"Redirect loop detected: {chain.describe()}",
                                url=page.address, loop=list(chain.loop), chain=hops)
        elif chain.length > 1:
            severity = Severity.ERROR if chain.length >= ctx.config.redirect_chain_error_hops else Severity.WARNING
            await self.emit(ctx, severity, "REDIRECT_CHAIN",
                            f"Redirect chain detected ({chain.length} hops): {chain.describe()}",
                            url=page.address, chain_length=chain.length, chain=hops,
                            terminal_url=chain.terminal_url, terminal_status=chain.terminal_status)

        await self.report(ctx, {
            "url": page.address,
            "status": status,
            "target": location,
            "redirect_type": REDIRECT_TYPES.get(status, "Unknown"),
            "chain_length": chain.length,
            "terminal_status": chain.terminal_status,
            "is_loop": chain.is_loop,
        })

    async def _check_caching(self, ctx: PageContext):
        page = ctx.page
        cache_control = next((v for k, v in page.headers.items() if k.lower() == "cache-control"), "")
        match = _MAX_AGE_RE.search(cache_control or "")
        if not match:
            return
        max_age = int(match.group(1))
        if max_age > ctx.config.temporary_redirect_max_age:
            await self.emit(ctx, Severity.WARNING, "TEMPORARY_REDIRECT_LONG_CACHE",
                            f"Temporary redirect ({page.http_status}) has long cache duration "
                            f"({max_age} seconds / {max_age // 86400} days)",
                            status=page.http_status, max_age=max_age)
