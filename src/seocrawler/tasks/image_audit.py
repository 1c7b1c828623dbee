from __future__ import annotations
from typing import Optional

from bs4 import BeautifulSoup

from ..models import Severity
from ..parse import resolve_url
from ..pipeline import PageContext, UrlTask


def _dimension(value) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class ImageAuditTask(UrlTask):
    """Alt text and explicit dimensions for every ``<img>`` on a page."""

    key = "image_audit"
    display_name = "Image Audit"
    priority = 60

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success):
            return
        soup = BeautifulSoup(await ctx.get_html(), "html.parser")
        for img in soup.find_all("img"):
            src = (img.get("src") or "").strip()
            if not src or src.startswith("data:"):
                continue
            image_url = resolve_url(page.address, src) or src
            alt = (img.get("alt") or "").strip()
            width = _dimension(img.get("width"))
            height = _dimension(img.get("height"))

            if not alt:
                await self.emit(ctx, Severity.WARNING, "MISSING_ALT_TEXT", f"Image missing alt text: {image_url}",
                                url=page.address, image_url=image_url, width=width, height=height)
            elif "decorative" in alt.lower():
                await self.emit(ctx, Severity.INFO, "DECORATIVE_IMAGE",
                                f"Image appears to be decorative: {image_url}",
                                url=page.address, image_url=image_url, alt_text=alt)
            if width is None or height is None:
                await self.emit(ctx, Severity.INFO, "MISSING_DIMENSIONS",
                                f"Image missing width/height attributes: {image_url}",
                                url=page.address, image_url=image_url, alt_text=alt,
                                has_width=width is not None, has_height=height is not None)
