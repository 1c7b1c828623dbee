"""
Redirect and canonical chain resolution over the page store.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .accessor import RepositoryAccessor
from .models import Page
from .parse import comparison_key


@dataclass
class ChainResult:
    """One resolved chain starting at ``start``.

    ``hops`` holds (from_url, to_url, status) for every followed step.
    ``terminal`` is the last page reached, None when the next URL was never
    crawled. ``loop`` lists the URLs of the cycle when one was found.
    """
    start: str
    hops: List[Tuple[str, str, Optional[int]]] = field(default_factory=list)
    terminal: Optional[Page] = None
    terminal_url: Optional[str] = None
    loop: List[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def length(self) -> int:
        return len(self.hops)

    @property
    def is_loop(self) -> bool:
        return bool(self.loop)

    @property
    def terminal_status(self) -> Optional[int]:
        return self.terminal.http_status if self.terminal else None

    def loop_key(self) -> Tuple[str, ...]:
        """Order-independent identity of the cycle, shared by every member."""
        return tuple(sorted(self.loop))

    def describe(self) -> str:
        return " → ".join(f"{src} ({status})" for src, _, status in self.hops)


def _redirect_next(page: Page) -> Optional[str]:
    if page.is_redirect and page.redirect_target:
        return page.redirect_target
    return None


def _canonical_next(page: Page) -> Optional[str]:
    canonical = page.canonical
    if canonical and comparison_key(canonical) != comparison_key(page.normalized_url):
        return canonical
    return None


async def _follow(accessor: RepositoryAccessor, page: Page, next_url, max_hops: int) -> ChainResult:
    result = ChainResult(start=page.normalized_url)
    seen = [page.normalized_url]
    current = page
    while True:
        target = next_url(current)
        if target is None:
            result.terminal = current
            result.terminal_url = current.normalized_url
            return result
        result.hops.append((current.normalized_url, target, current.http_status))
        if target in seen:
            result.loop = seen[seen.index(target):]
            result.terminal_url = target
            return result
        if len(result.hops) >= max_hops:
            result.truncated = True
            result.terminal_url = target
            return result
        seen.append(target)
        following = await accessor.get_page_by_address(page.project_id, target)
        if following is None or following.http_status is None:
            result.terminal = following
            result.terminal_url = target
            return result
        current = following


async def resolve_redirect_chain(accessor: RepositoryAccessor, page: Page, max_hops: int = 5) -> ChainResult:
    """Follow recorded redirect targets from ``page`` through the page store."""
    return await _follow(accessor, page, _redirect_next, max_hops)


async def resolve_canonical_chain(accessor: RepositoryAccessor, page: Page, max_hops: int = 5) -> ChainResult:
    """Follow non-self canonicals from ``page``; a chain has more than one hop."""
    return await _follow(accessor, page, _canonical_next, max_hops)
