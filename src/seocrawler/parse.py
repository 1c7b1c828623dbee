from __future__ import annotations
import gzip
import json
import re
import zlib
from urllib.parse import urljoin, urlsplit, urlunsplit, urlparse, parse_qs, urlencode
from typing import Dict, List, Optional, Tuple
from bs4 import BeautifulSoup
from defusedxml import ElementTree as SafeET
from defusedxml.common import DefusedXmlException
import idna
from functools import lru_cache

from .models import Hreflang, Link, PageMetadata, StructuredData

# ------------------ URL helpers ------------------

UTM_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term',
    'utm_content', 'utm_id', 'utm_source_platform',
    'utm_creative_format', 'utm_marketing_tactic'
}
DEFAULT_PORTS = {'http': 80, 'https': 443}
SKIPPED_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "#")


@lru_cache(maxsize=10000)
def normalize_url_hardened(url: str) -> str:
    """
    Comprehensive URL normalization with hardening:
    - Punycode normalization
    - Default port stripping
    - Parameter sorting
    - UTM parameter stripping
    - Fragment removal

    Cached with LRU cache (10,000 entries) for performance.
    """
    parsed = urlparse(url.strip())

    scheme = parsed.scheme.lower()

    hostname = (parsed.hostname or "").lower()
    try:
        domain = idna.encode(hostname).decode('ascii') if hostname else ""
    except (idna.IDNAError, UnicodeError):
        domain = hostname

    try:
        port = parsed.port
    except ValueError:
        port = None
    if port and port != DEFAULT_PORTS.get(scheme):
        domain = f"{domain}:{port}"

    # Trailing slashes are preserved, they matter for server routing
    path = parsed.path or "/"

    query = parsed.query
    if query:
        params = parse_qs(query, keep_blank_values=True)
        filtered_params = {k: v for k, v in params.items() if k.lower() not in UTM_PARAMS}
        sorted_params = sorted(filtered_params.items())
        query = urlencode(sorted_params, doseq=True) if sorted_params else ""

    return urlunsplit((scheme, domain, path, query, ""))


def resolve_url(base: str, href: str) -> Optional[str]:
    """Resolve an href against its page and normalize it; None for non-crawlable hrefs."""
    href = (href or "").strip()
    if not href or href.lower().startswith(SKIPPED_SCHEMES):
        return None
    absolute = urljoin(base, href)
    if urlsplit(absolute).scheme not in ("http", "https"):
        return None
    return normalize_url_hardened(absolute)


def comparison_key(url: str) -> str:
    """Loose form used to compare canonicals: lowercase, no fragment, no trailing slash."""
    parts = urlsplit(url.strip().lower())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))


def host_key(url: str) -> str:
    """Politeness partition: the lowercase host of a URL."""
    return (urlsplit(url).hostname or "").lower()


def strip_www(host: str) -> str:
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def is_same_site(url: str, base_url: str) -> bool:
    """Same registrable host, ignoring scheme and a leading ``www.``."""
    return strip_www(host_key(url)) == strip_www(host_key(base_url))


def domain_variants(url: str) -> List[str]:
    """Homepage URLs of the other scheme and www forms of a site."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    other_scheme = "http" if scheme == "https" else "https"
    other_host = host[4:] if host.startswith("www.") else f"www.{host}"
    return [
        urlunsplit((other_scheme, host, "/", "", "")),
        urlunsplit((scheme, other_host, "/", "", "")),
        urlunsplit((other_scheme, other_host, "/", "", "")),
    ]

# ------------------ classification ------------------

ASSET_EXT = {
    "image": {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".avif"},
    "asset": {".css", ".js", ".pdf", ".zip", ".woff", ".woff2", ".ttf"},
}


def classify(content_type: str | None, url: str) -> str:
    ct = (content_type or "").lower()
    path = urlsplit(url).path.lower()
    if "xml" in ct and ("sitemap" in path or path.endswith(".xml")):
        return "sitemap"
    if path.endswith((".xml.gz", "sitemap.xml")):
        return "sitemap"
    if ct.startswith("text/html") or "xhtml" in ct:
        return "html"
    for kind, exts in ASSET_EXT.items():
        for ext in exts:
            if path.endswith(ext):
                return "image" if kind == "image" else "asset"
    return "other"

# ------------------ sitemaps ------------------

SITEMAP_NS = {"sm": "http://www.sitemaps.org/schemas/sitemap/0.9"}


class SitemapParseError(ValueError):
    """Malformed or unreadable sitemap content."""


def sniff_sitemap_kind(xml_text: str) -> str:
    try:
        root = SafeET.fromstring(xml_text.encode("utf-8"))
        tag = root.tag.lower()
        if tag.endswith("sitemapindex"):
            return "sitemap_index"
        if tag.endswith("urlset"):
            return "sitemap"
    except (SafeET.ParseError, DefusedXmlException):
        pass
    return "sitemap"


def decode_sitemap_payload(payload: bytes) -> str:
    """Decode a sitemap body, transparently un-gzipping ``.xml.gz`` payloads."""
    if payload[:2] == b"\x1f\x8b":
        try:
            payload = gzip.decompress(payload)
        except (OSError, EOFError, zlib.error) as e:
            raise SitemapParseError(f"gzip decompression failed: {e}") from e
    return payload.decode("utf-8", errors="replace")


def extract_from_sitemap(xml_text: str) -> Tuple[str, List[str]]:
    """Return (kind, locations) for a sitemap or sitemap index.

    Raises SitemapParseError when the document is not well-formed XML.
    """
    try:
        root = SafeET.fromstring(xml_text.encode("utf-8"))
    except (SafeET.ParseError, DefusedXmlException) as e:
        raise SitemapParseError(str(e)) from e
    tag = root.tag.lower()
    if tag.endswith("sitemapindex"):
        locs = [e.text.strip() for e in root.findall(".//sm:sitemap/sm:loc", SITEMAP_NS) if e.text]
        return "sitemap_index", locs
    locs = [e.text.strip() for e in root.findall(".//sm:url/sm:loc", SITEMAP_NS) if e.text]
    return "sitemap", locs

# ------------------ extractors ------------------

_LINK_HEADER_RE = re.compile(r'<([^>]+)>\s*;([^,]*)')
_META_REFRESH_RE = re.compile(r'^\s*(\d+)\s*(?:[;,]\s*(?:url\s*=\s*)?[\'"]?([^\'"]*)[\'"]?)?', re.IGNORECASE)


def _parse_link_header(value: str) -> List[Tuple[str, Dict[str, str]]]:
    """Split an HTTP Link header into (url, params) pairs."""
    entries = []
    for url, raw_params in _LINK_HEADER_RE.findall(value or ""):
        params = {}
        for param in raw_params.split(";"):
            if "=" in param:
                key, _, val = param.partition("=")
                params[key.strip().lower()] = val.strip().strip('"')
        entries.append((url.strip(), params))
    return entries


def robots_directives(value: str) -> set:
    return {part.strip().lower() for part in (value or "").split(",") if part.strip()}


def _anchor_text(a) -> str:
    text = a.get_text(" ", strip=True)
    if text:
        return text
    img = a.find("img")
    if img and img.get("alt", "").strip():
        return f"[IMG: {img.get('alt').strip()}]"
    if a.get("title"):
        return f"[TITLE: {a.get('title').strip()}]"
    if a.get("aria-label"):
        return f"[ARIA: {a.get('aria-label').strip()}]"
    return ""


def _schema_types(data) -> List[str]:
    types: List[str] = []
    items = data if isinstance(data, list) else [data]
    for item in items:
        if not isinstance(item, dict):
            continue
        if "@graph" in item:
            types.extend(_schema_types(item["@graph"]))
        value = item.get("@type")
        if isinstance(value, list):
            types.extend(str(v) for v in value)
        elif value:
            types.append(str(value))
    return types


def extract_page_metadata(html: str, page_url: str, headers: Dict[str, str] = None) -> PageMetadata:
    """Parse everything the analysis phase needs from a response.

    Header names are matched case-insensitively. When a page declares more than
    one canonical the first one seen is kept (HTTP header before HTML) and
    ``has_multiple_canonicals`` is set.
    """
    headers = {k.lower(): v for k, v in (headers or {}).items()}
    meta = PageMetadata()

    canonicals_http = []
    for url, params in _parse_link_header(headers.get("link", "")):
        rel = params.get("rel", "").lower().split()
        if "canonical" in rel:
            resolved = resolve_url(page_url, url)
            if resolved:
                canonicals_http.append(resolved)
        elif "alternate" in rel and params.get("hreflang"):
            resolved = resolve_url(page_url, url)
            if resolved:
                meta.hreflangs.append(Hreflang(language=params["hreflang"], href=resolved, source="http"))

    meta.x_robots_tag = headers.get("x-robots-tag")
    header_directives = robots_directives(meta.x_robots_tag)

    soup = BeautifulSoup(html or "", "html.parser")

    base_href = page_url
    base_tag = soup.find("base", href=True)
    if base_tag:
        base_href = urljoin(page_url, base_tag["href"])

    if soup.title and soup.title.string:
        meta.title = soup.title.string.strip()
    description = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    if description and description.get("content") is not None:
        meta.meta_description = description.get("content", "").strip()
    if soup.html and soup.html.get("lang"):
        meta.html_lang = soup.html.get("lang").strip()

    canonicals_html = []
    for link in soup.find_all("link", href=True):
        rel = [r.lower() for r in (link.get("rel") or [])]
        if "canonical" in rel:
            resolved = resolve_url(base_href, link["href"])
            if resolved:
                canonicals_html.append(resolved)
        elif "alternate" in rel and link.get("hreflang"):
            resolved = resolve_url(base_href, link["href"])
            if resolved:
                meta.hreflangs.append(Hreflang(language=link["hreflang"].strip(), href=resolved, source="html"))

    meta.canonical_http = canonicals_http[0] if canonicals_http else None
    meta.canonical_html = canonicals_html[0] if canonicals_html else None
    meta.has_multiple_canonicals = len(canonicals_http) + len(canonicals_html) > 1
    authoritative = meta.canonical_http or meta.canonical_html
    if authoritative:
        meta.has_cross_domain_canonical = host_key(authoritative) != host_key(page_url)

    meta_directives = set()
    for tag in soup.find_all("meta", attrs={"name": re.compile(r"^(robots|googlebot)$", re.I)}):
        meta_directives |= robots_directives(tag.get("content", ""))
    meta.robots_noindex = "noindex" in meta_directives or "noindex" in header_directives \
        or "none" in meta_directives or "none" in header_directives
    meta.robots_nofollow = "nofollow" in meta_directives or "nofollow" in header_directives \
        or "none" in meta_directives or "none" in header_directives
    if meta_directives and header_directives:
        meta.has_robots_conflict = ("noindex" in meta_directives) != ("noindex" in header_directives)

    refresh = soup.find("meta", attrs={"http-equiv": re.compile(r"^refresh$", re.I)})
    if refresh and refresh.get("content"):
        match = _META_REFRESH_RE.match(refresh["content"])
        if match:
            meta.has_meta_refresh = True
            meta.meta_refresh_delay = int(match.group(1))
            if match.group(2):
                meta.meta_refresh_target = resolve_url(base_href, match.group(2))

    for a in soup.find_all("a", href=True):
        target = resolve_url(base_href, a["href"])
        if not target:
            continue
        rel = [r.lower() for r in (a.get("rel") or [])]
        meta.links.append(Link(to_url=target, anchor_text=_anchor_text(a), link_type="hyperlink",
                               is_nofollow="nofollow" in rel))
    for img in soup.find_all("img", src=True):
        target = resolve_url(base_href, img["src"])
        if target:
            meta.links.append(Link(to_url=target, anchor_text=img.get("alt", "").strip(), link_type="image"))

    for script in soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.I)}):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except ValueError as e:
            meta.structured_data.append(StructuredData(raw=raw, is_valid=False, error=str(e)))
            continue
        types = _schema_types(data)
        meta.structured_data.append(StructuredData(raw=raw, schema_type=",".join(types) or None))

    return meta
