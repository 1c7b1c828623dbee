"""
Exact and near-duplicate content detection.

Fingerprints are computed at crawl time (``hashing.generate_content_hashes``)
and stored on the page, so this task only groups them. Exact duplicates share
a SHA-256; near duplicates are found by splitting each SimHash into
``threshold + 1`` bands: two signatures within ``threshold`` bits must agree
on at least one band, so only pages sharing a band are compared.

Pairs connected by a permanent redirect are not duplicates. Pairs connected by
a temporary redirect are reported under their own code.

The site's scheme and www variants are also requested once per project to
check they permanently redirect to the crawled homepage.
"""
from __future__ import annotations
import itertools
import logging
from typing import List, Tuple

from ..fetch import ERROR_TIMEOUT, FetchResult
from ..hashing import SIGNATURE_BITS, distance, similarity_percent
from ..models import PERMANENT_REDIRECT_CODES, REDIRECT_CODES, Severity
from ..parse import comparison_key, domain_variants, normalize_url_hardened, resolve_url
from ..pipeline import PageContext, ProjectContext, UrlTask

logger = logging.getLogger(__name__)

EXACT_GROUP = "content_hash"
BAND_GROUP = "simhash_band"


def band_keys(signature: int, threshold: int) -> List[Tuple[int, int]]:
    """(band index, band value) pairs covering all 64 bits of a signature."""
    bands = min(max(1, threshold + 1), SIGNATURE_BITS)
    width = SIGNATURE_BITS // bands
    keys = []
    for index in range(bands):
        shift = index * width
        # The last band takes the remaining bits
        size = SIGNATURE_BITS - shift if index == bands - 1 else width
        keys.append((index, (signature >> shift) & ((1 << size) - 1)))
    return keys


class DuplicateContentTask(UrlTask):
    key = "duplicate_content"
    display_name = "Duplicate Content"
    priority = 50

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success) or not page.content_hash:
            return
        member = (page.id, page.normalized_url, page.content_hash, page.simhash)
        ctx.arena.add_to_group(EXACT_GROUP, page.content_hash, member)
        if page.simhash is not None:
            for band in band_keys(page.simhash, ctx.config.near_duplicate_threshold):
                ctx.arena.add_to_group(BAND_GROUP, band, member)

    async def finalize_project(self, ctx: ProjectContext):
        await self._report_exact(ctx)
        await self._report_near(ctx)
        if ctx.config.check_domain_variants and ctx.fetcher is not None \
                and ctx.arena.try_claim("domain_variants_checked"):
            await self._check_domain_variants(ctx)

    async def _redirect_relation(self, ctx: ProjectContext, url_a: str, url_b: str) -> str:
        codes = await ctx.accessor.get_redirect_codes_between(ctx.project.id, url_a, url_b)
        if any(code in PERMANENT_REDIRECT_CODES for code in codes):
            return "permanent"
        if codes:
            return "temporary"
        return ""

    async def _report_exact(self, ctx: ProjectContext):
        for content_hash in ctx.arena.keys(EXACT_GROUP):
            members = ctx.arena.group_snapshot(EXACT_GROUP, content_hash)
            if len(members) < 2:
                continue
            kept = []
            temporary = []
            for member in members:
                relation = ""
                for other in kept:
                    relation = await self._redirect_relation(ctx, member[1], other[1])
                    if relation:
                        if relation == "temporary":
                            temporary.append((other[1], member[1]))
                        break
                if not relation:
                    kept.append(member)
            for source, target in temporary:
                await self.emit(ctx, Severity.WARNING, "DUPLICATE_CONTENT_TEMPORARY_REDIRECT",
                                f"Duplicate content served through a temporary redirect: {source} and {target}",
                                page_id=members[0][0], urls=[source, target], content_hash=content_hash)
            if len(kept) < 2:
                continue
            urls = [m[1] for m in kept]
            await self.emit(ctx, Severity.ERROR, "EXACT_DUPLICATE",
                            f"Identical content on {len(urls)} pages",
                            page_id=kept[0][0], urls=urls, page_ids=[m[0] for m in kept],
                            content_hash=content_hash, distance=0, similarity=100.0)

    async def _report_near(self, ctx: ProjectContext):
        threshold = ctx.config.near_duplicate_threshold
        compared = set()
        for band in ctx.arena.keys(BAND_GROUP):
            members = ctx.arena.group_snapshot(BAND_GROUP, band)
            for first, second in itertools.combinations(members, 2):
                pair = (min(first[0], second[0]), max(first[0], second[0]))
                if pair in compared:
                    continue
                compared.add(pair)
                if first[2] == second[2]:
                    continue
                bits = distance(first[3], second[3])
                if bits > threshold:
                    continue
                relation = await self._redirect_relation(ctx, first[1], second[1])
                if relation == "permanent":
                    continue
                if relation == "temporary":
                    await self.emit(ctx, Severity.WARNING, "DUPLICATE_CONTENT_TEMPORARY_REDIRECT",
                                    f"Near-duplicate content served through a temporary redirect: "
                                    f"{first[1]} and {second[1]}",
                                    page_id=first[0], urls=[first[1], second[1]], distance=bits)
                    continue
                similarity = similarity_percent(first[3], second[3])
                await self.emit(ctx, Severity.WARNING, "NEAR_DUPLICATE",
                                f"Pages are {similarity:.1f}% similar: {first[1]} and {second[1]}",
                                page_id=first[0], urls=[first[1], second[1]],
                                page_ids=[first[0], second[0]], distance=bits, similarity=similarity)

    async def _check_domain_variants(self, ctx: ProjectContext):
        homepage = resolve_url(ctx.project.base_url, "/") or normalize_url_hardened(ctx.project.base_url)
        root = comparison_key(homepage)
        for variant in domain_variants(homepage):
            try:
                result = await ctx.fetcher.fetch(variant)
            except Exception:
                logger.exception("Error testing domain variant %s", variant)
                continue
            await self._report_variant(ctx, variant, root, result)

    async def _report_variant(self, ctx: ProjectContext, variant: str, root: str, result: FetchResult):
        if result.error_kind == ERROR_TIMEOUT:
            await self.emit(ctx, Severity.WARNING, "DOMAIN_VARIANT_TIMEOUT",
                            f"Domain variant {variant} timed out", variant=variant)
            return
        if result.error_kind:
            await self.emit(ctx, Severity.WARNING, "DOMAIN_VARIANT_UNREACHABLE",
                            f"Domain variant {variant} is unreachable", variant=variant, error=result.error)
            return
        status = result.status
        location = resolve_url(variant, result.location) if result.location else None
        if status in PERMANENT_REDIRECT_CODES:
            if location and comparison_key(location) == root:
                await self.emit(ctx, Severity.INFO, "DOMAIN_VARIANT_CORRECT_REDIRECT",
                                f"Domain variant correctly redirects: {variant} → {location} (HTTP {status})",
                                variant=variant, location=location, status=status)
            else:
                await self.emit(ctx, Severity.WARNING, "DOMAIN_VARIANT_WRONG_TARGET",
                                f"Domain variant redirects to unexpected URL: {variant} → {location}",
                                variant=variant, location=location, status=status)
        elif status in REDIRECT_CODES:
            await self.emit(ctx, Severity.ERROR, "DOMAIN_VARIANT_WRONG_REDIRECT_TYPE",
                            f"Domain variant uses temporary redirect instead of 301: {variant} → {location} "
                            f"(HTTP {status})",
                            variant=variant, location=location, status=status)
        elif status == 200:
            await self.emit(ctx, Severity.ERROR, "DOMAIN_VARIANT_DUPLICATE_CONTENT",
                            f"Domain variant serves content without redirecting: {variant}",
                            variant=variant, status=status)
        else:
            await self.emit(ctx, Severity.WARNING, "DOMAIN_VARIANT_ERROR",
                            f"Domain variant returns error: {variant} (HTTP {status})",
                            variant=variant, status=status)
