"""
Data contracts shared by the crawl and analysis phases.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional


class QueueState(IntEnum):
    QUEUED = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    FAILED = 3


class UrlStatus(IntEnum):
    PENDING = 0
    CRAWLING = 1
    COMPLETED = 2
    FAILED = 3


class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2


TERMINAL_URL_STATUSES = (UrlStatus.COMPLETED, UrlStatus.FAILED)
PERMANENT_REDIRECT_CODES = (301, 308)
TEMPORARY_REDIRECT_CODES = (302, 303, 307)
REDIRECT_CODES = PERMANENT_REDIRECT_CODES + TEMPORARY_REDIRECT_CODES


@dataclass
class Project:
    id: int
    name: str
    base_url: str
    created_at: float = 0.0


@dataclass
class QueueItem:
    id: int
    project_id: int
    address: str
    priority: int = 0
    depth: int = 0
    host_key: Optional[str] = None
    enqueued_at: float = 0.0
    state: QueueState = QueueState.QUEUED


@dataclass
class Checkpoint:
    id: int
    project_id: int
    created_at: float
    urls_crawled: int
    error_count: int
    queue_size: int
    last_crawled_url: Optional[str]
    status: str
    elapsed_seconds: float
    is_active: bool


@dataclass
class CrawlProgress:
    """Progress counters streamed by the crawl engine."""
    queued: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    elapsed_seconds: float = 0.0
    urls_crawled: int = 0
    error_count: int = 0
    last_crawled_url: Optional[str] = None
    pages_analyzed: int = 0


@dataclass
class Page:
    """Lightweight projection of a page record; rendered HTML is loaded separately."""
    id: int
    project_id: int
    address: str
    normalized_url: str
    scheme: str = ""
    host: str = ""
    path: str = ""
    depth: int = 0
    discovered_from_id: Optional[int] = None
    first_seen: float = 0.0
    last_crawled: Optional[float] = None
    status: UrlStatus = UrlStatus.PENDING
    http_status: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    robots_allowed: bool = True
    is_indexable: Optional[bool] = None
    content_hash: Optional[str] = None
    simhash: Optional[int] = None
    text_length: Optional[int] = None
    title: Optional[str] = None
    meta_description: Optional[str] = None
    html_lang: Optional[str] = None
    canonical_html: Optional[str] = None
    canonical_http: Optional[str] = None
    has_multiple_canonicals: bool = False
    has_cross_domain_canonical: bool = False
    robots_noindex: bool = False
    robots_nofollow: bool = False
    x_robots_tag: Optional[str] = None
    has_robots_conflict: bool = False
    has_meta_refresh: bool = False
    meta_refresh_delay: Optional[int] = None
    meta_refresh_target: Optional[str] = None
    redirect_target: Optional[str] = None
    redirect_chain_length: Optional[int] = None
    redirect_terminal_status: Optional[int] = None
    is_redirect_loop: bool = False
    crawl_error: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def canonical(self) -> Optional[str]:
        """The authoritative canonical: the first one seen, so the HTTP Link header wins over the HTML tag."""
        return self.canonical_http or self.canonical_html

    @property
    def is_html(self) -> bool:
        return "text/html" in (self.content_type or "").lower()

    @property
    def is_success(self) -> bool:
        return self.http_status is not None and 200 <= self.http_status < 300

    @property
    def is_redirect(self) -> bool:
        return self.http_status is not None and 300 <= self.http_status < 400


@dataclass
class PageMetadata:
    """Everything the fetch phase extracts from a response before it is stored."""
    title: Optional[str] = None
    meta_description: Optional[str] = None
    html_lang: Optional[str] = None
    canonical_html: Optional[str] = None
    canonical_http: Optional[str] = None
    has_multiple_canonicals: bool = False
    has_cross_domain_canonical: bool = False
    robots_noindex: bool = False
    robots_nofollow: bool = False
    x_robots_tag: Optional[str] = None
    has_robots_conflict: bool = False
    has_meta_refresh: bool = False
    meta_refresh_delay: Optional[int] = None
    meta_refresh_target: Optional[str] = None
    links: List["Link"] = field(default_factory=list)
    hreflangs: List["Hreflang"] = field(default_factory=list)
    structured_data: List["StructuredData"] = field(default_factory=list)


@dataclass
class Redirect:
    page_id: Optional[int]
    to_url: str
    status_code: int
    position: int = 0


@dataclass
class Link:
    to_url: str
    anchor_text: str = ""
    link_type: str = "hyperlink"  # "hyperlink", "image", "script", "stylesheet"
    is_nofollow: bool = False
    from_page_id: Optional[int] = None
    to_page_id: Optional[int] = None


@dataclass
class Hreflang:
    language: str
    href: str
    source: str = "html"  # "html" or "http"
    page_id: Optional[int] = None


@dataclass
class StructuredData:
    raw: str
    schema_type: Optional[str] = None
    is_valid: bool = True
    error: Optional[str] = None
    page_id: Optional[int] = None


@dataclass
class Finding:
    project_id: int
    task_key: str
    severity: Severity
    code: str
    message: str
    page_id: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0


@dataclass
class ReportRow:
    project_id: int
    task_key: str
    values: Dict[str, Any]
    page_id: Optional[int] = None
    created_at: float = 0.0


@dataclass
class ReportColumn:
    name: str
    column_type: str = "text"  # "text", "integer", "float", "boolean", "url"
    header: Optional[str] = None


@dataclass
class ReportSchema:
    task_key: str
    columns: List[ReportColumn]
    version: int = 1

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]
