from __future__ import annotations

from ..pipeline import TaskRegistry
from .broken_links import BrokenLinksTask
from .canonical import CanonicalTask
from .crawl_budget import CrawlBudgetTask
from .duplicate_content import DuplicateContentTask
from .hreflang import HreflangTask
from .image_audit import ImageAuditTask
from .internal_linking import InternalLinkingTask
from .inventory import InventoryTask
from .link_graph import LinkGraphTask
from .redirects import RedirectsTask
from .robots import RobotsTask
from .security import SecurityTask
from .sitemap import SitemapTask
from .structured_data import StructuredDataTask
from .titles_meta import TitlesMetaTask

DEFAULT_TASKS = (
    RedirectsTask,
    SecurityTask,
    RobotsTask,
    CanonicalTask,
    TitlesMetaTask,
    InventoryTask,
    DuplicateContentTask,
    BrokenLinksTask,
    InternalLinkingTask,
    CrawlBudgetTask,
    SitemapTask,
    HreflangTask,
    StructuredDataTask,
    ImageAuditTask,
    LinkGraphTask,
)


def register_default_tasks(registry: TaskRegistry, exclude=()) -> TaskRegistry:
    """Register every built-in task except the keys in ``exclude``."""
    for task_class in DEFAULT_TASKS:
        if task_class.key in exclude:
            continue
        registry.register_task(task_class())
    return registry
