"""
HTTPS checks: plain-HTTP pages, mixed content, security headers and cookie flags.
"""
from __future__ import annotations
import re
from collections import Counter
from typing import Dict, List, Tuple

from bs4 import BeautifulSoup

from ..models import Severity
from ..parse import is_same_site
from ..pipeline import PageContext, UrlTask

# (resource kind, tag, attribute) pairs that load subresources
_SUBRESOURCES = (
    ("Image", "img", "src"),
    ("Script", "script", "src"),
    ("Iframe", "iframe", "src"),
    ("Media", "video", "src"),
    ("Media", "audio", "src"),
    ("Media", "source", "src"),
    ("Object", "object", "data"),
)

_HSTS_MAX_AGE_RE = re.compile(r"max-age\s*=\s*\"?(\d+)", re.I)
# Cookie boundaries inside a folded Set-Cookie value; Expires dates contain ", " too
_COOKIE_SPLIT_RE = re.compile(r",\s*(?=[^;,=\s]+=)")


def find_mixed_content(html: str) -> List[Tuple[str, str]]:
    """Subresources an HTTPS page loads over plain HTTP, as ``(kind, url)`` pairs."""
    soup = BeautifulSoup(html or "", "html.parser")
    found = []
    for kind, tag, attr in _SUBRESOURCES:
        for element in soup.find_all(tag, attrs={attr: True}):
            value = element[attr].strip()
            if value.lower().startswith("http://"):
                found.append((kind, value))
    for link in soup.find_all("link", href=True):
        rel = [r.lower() for r in (link.get("rel") or [])]
        if "stylesheet" in rel and link["href"].strip().lower().startswith("http://"):
            found.append(("Stylesheet", link["href"].strip()))
    return found


def check_security_headers(headers: Dict[str, str], hsts_min_max_age: int) -> Tuple[List[str], List[Dict[str, str]]]:
    """Return the missing header names and the weak ``{header, issue}`` entries."""
    headers = {k.lower(): v for k, v in headers.items()}
    missing: List[str] = []
    weak: List[Dict[str, str]] = []

    hsts = headers.get("strict-transport-security")
    if hsts is None:
        missing.append("Strict-Transport-Security")
    else:
        match = _HSTS_MAX_AGE_RE.search(hsts)
        if not match:
            weak.append({"header": "Strict-Transport-Security", "issue": "Missing max-age directive"})
        elif int(match.group(1)) < hsts_min_max_age:
            weak.append({"header": "Strict-Transport-Security",
                         "issue": f"max-age is {match.group(1)} seconds (recommend {hsts_min_max_age}+)"})

    if "content-security-policy" not in headers and "content-security-policy-report-only" not in headers:
        missing.append("Content-Security-Policy")

    content_type_options = headers.get("x-content-type-options")
    if content_type_options is None:
        missing.append("X-Content-Type-Options")
    elif content_type_options.strip().lower() != "nosniff":
        weak.append({"header": "X-Content-Type-Options",
                     "issue": f"Value is '{content_type_options}' (should be 'nosniff')"})

    for name in ("X-Frame-Options", "Referrer-Policy"):
        if name.lower() not in headers:
            missing.append(name)
    return missing, weak


def parse_set_cookie(value: str) -> List[Tuple[str, set]]:
    """Split a (possibly folded) Set-Cookie value into ``(name, attributes)`` pairs."""
    cookies = []
    for cookie in _COOKIE_SPLIT_RE.split(value or ""):
        parts = [p.strip() for p in cookie.split(";")]
        if "=" not in parts[0]:
            continue
        name = parts[0].split("=", 1)[0].strip()
        attributes = {p.split("=", 1)[0].strip().lower() for p in parts[1:] if p}
        cookies.append((name, attributes))
    return cookies


class SecurityTask(UrlTask):
    key = "security"
    display_name = "Security & HTTPS"
    priority = 15

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success):
            return
        if not is_same_site(page.normalized_url, ctx.project.base_url):
            return

        if page.scheme != "https":
            if page.depth <= ctx.config.important_page_max_depth:
                await self.emit(ctx, Severity.WARNING, "HTTP_NOT_HTTPS",
                                "Important page served over HTTP instead of HTTPS",
                                url=page.address, depth=page.depth)
            return

        mixed = find_mixed_content(await ctx.get_html())
        if mixed:
            await self.emit(ctx, Severity.ERROR, "MIXED_CONTENT",
                            f"HTTPS page loads {len(mixed)} HTTP resources (mixed content)",
                            url=page.address, count=len(mixed),
                            resource_types=dict(Counter(kind for kind, _ in mixed)),
                            examples=[{"type": kind, "url": url} for kind, url in mixed[:10]])

        missing, weak = check_security_headers(page.headers, ctx.config.hsts_min_max_age)
        if missing or weak:
            names = missing + [w["header"] for w in weak]
            await self.emit(ctx, Severity.WARNING, "MISSING_SECURITY_HEADERS",
                            "Missing or weak security headers: " + ", ".join(names),
                            url=page.address, missing_headers=missing, weak_headers=weak)

        set_cookie = next((v for k, v in page.headers.items() if k.lower() == "set-cookie"), None)
        if set_cookie:
            await self._check_cookies(ctx, set_cookie)

    async def _check_cookies(self, ctx: PageContext, set_cookie: str):
        cookies = parse_set_cookie(set_cookie)
        insecure = [name for name, attributes in cookies if "secure" not in attributes]
        no_http_only = [name for name, attributes in cookies if "httponly" not in attributes]
        if not (insecure or no_http_only):
            return
        await self.emit(ctx, Severity.WARNING, "INSECURE_COOKIES",
                        f"Cookies missing security flags: {len(insecure)} without Secure, "
                        f"{len(no_http_only)} without HttpOnly",
                        url=ctx.page.address, insecure_cookies=insecure, missing_http_only=no_http_only)
