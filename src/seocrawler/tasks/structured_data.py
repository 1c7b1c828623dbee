from __future__ import annotations
import json

from ..models import Severity
from ..pipeline import PageContext, UrlTask

ARTICLE_TYPES = {"Article", "NewsArticle", "BlogPosting"}
ARTICLE_PROPERTIES = ("headline", "author", "datePublished", "image")
PRODUCT_PROPERTIES = ("name", "image")


def iter_entities(data):
    """Every JSON-LD object in a document, flattening lists and @graph."""
    items = data if isinstance(data, list) else [data]
    for item in items:
        if not isinstance(item, dict):
            continue
        if "@graph" in item:
            yield from iter_entities(item["@graph"])
        if "@type" in item:
            yield item


def entity_types(entity) -> set:
    value = entity.get("@type")
    return set(value) if isinstance(value, list) else {value}


class StructuredDataTask(UrlTask):
    key = "structured_data"
    display_name = "Structured Data"
    priority = 90

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success):
            return
        blocks = await ctx.accessor.get_structured_data(page.id)
        if not blocks:
            return

        found_types = set()
        for block in blocks:
            if not block.is_valid:
                await self.emit(ctx, Severity.ERROR, "INVALID_JSON_LD",
                                f"Invalid JSON-LD: {block.error}", url=page.address, error=block.error,
                                snippet=block.raw[:200])
                continue
            for entity in iter_entities(json.loads(block.raw)):
                types = entity_types(entity)
                found_types |= {str(t) for t in types if t}
                if types & ARTICLE_TYPES:
                    missing = [p for p in ARTICLE_PROPERTIES if p not in entity]
                    if missing:
                        await self.emit(ctx, Severity.WARNING, "INCOMPLETE_ARTICLE_SCHEMA",
                                        f"Article schema missing required properties: {', '.join(missing)}",
                                        url=page.address, missing=missing)
                if "Product" in types:
                    missing = [p for p in PRODUCT_PROPERTIES if p not in entity]
                    if "offers" not in entity and "price" not in entity:
                        missing.append("offers or price")
                    if missing:
                        await self.emit(ctx, Severity.WARNING, "INCOMPLETE_PRODUCT_SCHEMA",
                                        f"Product schema missing required properties: {', '.join(missing)}",
                                        url=page.address, missing=missing)

        if found_types:
            await self.emit(ctx, Severity.INFO, "JSON_LD_FOUND",
                            f"JSON-LD found: {', '.join(sorted(found_types))}",
                            url=page.address, types=sorted(found_types))
