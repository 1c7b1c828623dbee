"""
Typed, versioned read/write access to the page store for analysis tasks.
"""
from __future__ import annotations
from typing import AsyncIterator, Dict, Iterable, List, Optional

from . import db_operations
from .database import DatabaseConfig
from .models import Hreflang, Link, Page, StructuredData, UrlStatus


class AccessorVersionError(RuntimeError):
    """A task needs a newer accessor than the one installed."""


class RepositoryAccessor:
    """Everything a task may read from, or write back to, the page store.

    ``VERSION`` increases whenever a method is added or its contract changes;
    tasks declare the version they were written against.
    """

    VERSION = 1

    def __init__(self, config: DatabaseConfig):
        self.config = config

    def check_version(self, required: int, task_key: str = ""):
        if required > self.VERSION:
            raise AccessorVersionError(
                f"Task {task_key!r} requires accessor version {required}, installed version is {self.VERSION}"
            )

    def iter_pages(self, project_id: int, statuses: Iterable[UrlStatus] = None,
                   batch_size: int = 500) -> AsyncIterator[Page]:
        return db_operations.iter_pages(project_id, statuses, batch_size, config=self.config)

    async def get_page(self, page_id: int) -> Optional[Page]:
        return await db_operations.get_page(page_id, config=self.config)

    async def get_page_by_address(self, project_id: int, normalized_url: str) -> Optional[Page]:
        return await db_operations.get_page_by_address(project_id, normalized_url, config=self.config)

    async def load_page_html(self, page_id: int) -> str:
        return await db_operations.load_page_html(page_id, config=self.config)

    async def get_links_from(self, page_id: int) -> List[Link]:
        return await db_operations.get_links_from(page_id, config=self.config)

    async def count_inlinks(self, page_id: int) -> int:
        return await db_operations.count_inlinks(page_id, config=self.config)

    async def get_hreflangs(self, page_id: int) -> List[Hreflang]:
        return await db_operations.get_hreflangs(page_id, config=self.config)

    async def get_structured_data(self, page_id: int) -> List[StructuredData]:
        return await db_operations.get_structured_data(page_id, config=self.config)

    async def get_redirect_codes_between(self, project_id: int, url_a: str, url_b: str) -> List[int]:
        return await db_operations.get_redirect_codes_between(project_id, url_a, url_b, config=self.config)

    async def update_page_flags(self, page_id: int, flags: Dict[str, object]):
        await db_operations.update_page_flags(page_id, flags, config=self.config)
