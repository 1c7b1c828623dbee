"""
Database operations using the abstraction layer.

This module provides the page record store, project bookkeeping and analysis
result storage. Every function works with both SQLite and PostgreSQL through
the database abstraction layer and opens one short-lived unit of work.
"""

from __future__ import annotations
import json
import logging
import time
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from .database import (
    DatabaseConfig,
    compress_headers,
    compress_html,
    create_connection,
    decompress_headers,
    decompress_html,
    get_global_config,
    sql,
)
from .models import (
    Finding,
    Hreflang,
    Link,
    Page,
    PageMetadata,
    Project,
    Redirect,
    ReportRow,
    Severity,
    StructuredData,
    UrlStatus,
)
from .postgresql_schema import get_postgres_schema_statements

logger = logging.getLogger(__name__)


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT UNIQUE NOT NULL,
  base_url TEXT NOT NULL,
  created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS pages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  address TEXT NOT NULL,
  normalized_url TEXT NOT NULL,
  scheme TEXT,
  host TEXT,
  path TEXT,
  depth INTEGER DEFAULT 0,
  discovered_from_id INTEGER,
  first_seen REAL,
  last_crawled REAL,
  status INTEGER NOT NULL DEFAULT 0,
  http_status INTEGER,
  content_type TEXT,
  content_length INTEGER,
  robots_allowed INTEGER DEFAULT 1,
  is_indexable INTEGER,
  content_hash TEXT,
  simhash TEXT,
  text_length INTEGER,
  title TEXT,
  meta_description TEXT,
  html_lang TEXT,
  canonical_html TEXT,
  canonical_http TEXT,
  has_multiple_canonicals INTEGER DEFAULT 0,
  has_cross_domain_canonical INTEGER DEFAULT 0,
  robots_noindex INTEGER DEFAULT 0,
  robots_nofollow INTEGER DEFAULT 0,
  x_robots_tag TEXT,
  has_robots_conflict INTEGER DEFAULT 0,
  has_meta_refresh INTEGER DEFAULT 0,
  meta_refresh_delay INTEGER,
  meta_refresh_target TEXT,
  redirect_target TEXT,
  redirect_chain_length INTEGER,
  redirect_terminal_status INTEGER,
  is_redirect_loop INTEGER DEFAULT 0,
  crawl_error TEXT,
  headers_compressed BLOB,
  FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
  FOREIGN KEY (discovered_from_id) REFERENCES pages (id) ON DELETE SET NULL,
  UNIQUE(project_id, normalized_url)
);
CREATE INDEX IF NOT EXISTS idx_pages_project_status ON pages(project_id, status);
CREATE INDEX IF NOT EXISTS idx_pages_content_hash ON pages(project_id, content_hash);

CREATE TABLE IF NOT EXISTS page_content (
  page_id INTEGER PRIMARY KEY,
  html_compressed BLOB,
  FOREIGN KEY (page_id) REFERENCES pages (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS crawl_queue (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  address TEXT NOT NULL,
  priority INTEGER NOT NULL DEFAULT 0,
  depth INTEGER NOT NULL DEFAULT 0,
  host_key TEXT,
  enqueued_at REAL NOT NULL,
  updated_at REAL,
  state INTEGER NOT NULL DEFAULT 0,
  FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
  UNIQUE(project_id, address)
);
CREATE INDEX IF NOT EXISTS idx_crawl_queue_dequeue ON crawl_queue(project_id, state, priority DESC, enqueued_at ASC);

CREATE TABLE IF NOT EXISTS checkpoints (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  created_at REAL NOT NULL,
  urls_crawled INTEGER NOT NULL DEFAULT 0,
  error_count INTEGER NOT NULL DEFAULT 0,
  queue_size INTEGER NOT NULL DEFAULT 0,
  last_crawled_url TEXT,
  status TEXT NOT NULL DEFAULT 'InProgress',
  elapsed_seconds REAL NOT NULL DEFAULT 0,
  is_active INTEGER NOT NULL DEFAULT 1,
  FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_project ON checkpoints(project_id, created_at DESC);

CREATE TABLE IF NOT EXISTS redirects (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id INTEGER NOT NULL,
  to_url TEXT NOT NULL,
  status_code INTEGER NOT NULL,
  position INTEGER NOT NULL DEFAULT 0,
  FOREIGN KEY (page_id) REFERENCES pages (id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_redirects_page ON redirects(page_id);

CREATE TABLE IF NOT EXISTS links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  from_page_id INTEGER NOT NULL,
  to_page_id INTEGER,
  to_url TEXT NOT NULL,
  anchor_text TEXT,
  link_type TEXT NOT NULL DEFAULT 'hyperlink',
  is_nofollow INTEGER DEFAULT 0,
  FOREIGN KEY (from_page_id) REFERENCES pages (id) ON DELETE CASCADE,
  FOREIGN KEY (to_page_id) REFERENCES pages (id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_links_from ON links(from_page_id);
CREATE INDEX IF NOT EXISTS idx_links_to ON links(to_page_id);

CREATE TABLE IF NOT EXISTS hreflangs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id INTEGER NOT NULL,
  language TEXT NOT NULL,
  href TEXT NOT NULL,
  source TEXT NOT NULL DEFAULT 'html',
  FOREIGN KEY (page_id) REFERENCES pages (id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_hreflangs_page ON hreflangs(page_id);

CREATE TABLE IF NOT EXISTS structured_data (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id INTEGER NOT NULL,
  schema_type TEXT,
  raw TEXT,
  is_valid INTEGER DEFAULT 1,
  error TEXT,
  FOREIGN KEY (page_id) REFERENCES pages (id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_structured_data_page ON structured_data(page_id);

CREATE TABLE IF NOT EXISTS findings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  page_id INTEGER,
  task_key TEXT NOT NULL,
  severity INTEGER NOT NULL,
  code TEXT NOT NULL,
  message TEXT NOT NULL,
  data_json TEXT,
  created_at REAL NOT NULL,
  FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
  FOREIGN KEY (page_id) REFERENCES pages (id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_findings_project_task ON findings(project_id, task_key);
CREATE INDEX IF NOT EXISTS idx_findings_code ON findings(project_id, code);

CREATE TABLE IF NOT EXISTS report_rows (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL,
  page_id INTEGER,
  task_key TEXT NOT NULL,
  row_json TEXT NOT NULL,
  created_at REAL NOT NULL,
  FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
  FOREIGN KEY (page_id) REFERENCES pages (id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_report_rows_project_task ON report_rows(project_id, task_key);
"""

PAGE_COLUMNS = (
    "id", "project_id", "address", "normalized_url", "scheme", "host", "path", "depth",
    "discovered_from_id", "first_seen", "last_crawled", "status", "http_status",
    "content_type", "content_length", "robots_allowed", "is_indexable", "content_hash",
    "simhash", "text_length", "title", "meta_description", "html_lang", "canonical_html",
    "canonical_http", "has_multiple_canonicals", "has_cross_domain_canonical",
    "robots_noindex", "robots_nofollow", "x_robots_tag", "has_robots_conflict",
    "has_meta_refresh", "meta_refresh_delay", "meta_refresh_target", "redirect_target",
    "redirect_chain_length", "redirect_terminal_status", "is_redirect_loop",
    "crawl_error", "headers_compressed",
)
_PAGE_SELECT = "SELECT " + ", ".join(PAGE_COLUMNS) + " FROM pages"
_BOOL_COLUMNS = {
    "robots_allowed", "has_multiple_canonicals", "has_cross_domain_canonical",
    "robots_noindex", "robots_nofollow", "has_robots_conflict", "has_meta_refresh",
    "is_redirect_loop",
}

# Computed flags analysis tasks may write back to a page.
ANALYSIS_FLAG_COLUMNS = {
    "is_indexable", "redirect_chain_length", "redirect_terminal_status", "is_redirect_loop",
}


def _resolve_config(config: Optional[DatabaseConfig]) -> DatabaseConfig:
    config = config or get_global_config()
    if config is None:
        raise RuntimeError("Database configuration not set")
    return config


def _row_to_page(row) -> Page:
    values = dict(zip(PAGE_COLUMNS, tuple(row)))
    for column in _BOOL_COLUMNS:
        values[column] = bool(values[column])
    if values["is_indexable"] is not None:
        values["is_indexable"] = bool(values["is_indexable"])
    values["status"] = UrlStatus(values["status"])
    values["simhash"] = int(values["simhash"]) if values["simhash"] else None
    values["headers"] = decompress_headers(values.pop("headers_compressed"))
    return Page(**values)


# ------------------ schema ------------------

async def init_db(config: DatabaseConfig = None):
    """Create every table and index for the configured backend."""
    config = _resolve_config(config)
    if config.is_postgres:
        await _ensure_postgres_database(config)
        async with create_connection(config) as conn:
            for statement in get_postgres_schema_statements():
                await conn.execute(statement)
    else:
        async with create_connection(config) as conn:
            for stmt in SQLITE_SCHEMA.split(";\n"):
                if stmt.strip():
                    await conn.execute(stmt)
            await conn.commit()


async def _ensure_postgres_database(config: DatabaseConfig):
    import asyncpg

    admin_conn = await asyncpg.connect(
        host=config.postgres_host,
        port=config.postgres_port,
        database="postgres",
        user=config.postgres_user,
        password=config.postgres_password,
    )
    try:
        exists = await admin_conn.fetchval(
            "SELECT 1 FROM pg_database WHERE datname = $1", config.postgres_database
        )
        if not exists:
            await admin_conn.execute(f'CREATE DATABASE "{config.postgres_database}"')
            logger.info("Created PostgreSQL database %s", config.postgres_database)
    finally:
        await admin_conn.close()


# ------------------ projects ------------------

async def create_project(name: str, base_url: str, config: DatabaseConfig = None) -> Project:
    """Create a project, or return the existing project with the same name."""
    config = _resolve_config(config)
    now = time.time()
    async with create_connection(config) as conn:
        await conn.execute(
            sql(config, "INSERT INTO projects (name, base_url, created_at) VALUES (?, ?, ?) "
                        "ON CONFLICT (name) DO NOTHING"),
            name, base_url, now,
        )
        await conn.commit()
        row = await conn.fetchone(
            sql(config, "SELECT id, name, base_url, created_at FROM projects WHERE name = ?"), name
        )
    return Project(id=row[0], name=row[1], base_url=row[2], created_at=row[3])


async def get_project(project_id: int, config: DatabaseConfig = None) -> Optional[Project]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, "SELECT id, name, base_url, created_at FROM projects WHERE id = ?"), project_id
        )
    return Project(id=row[0], name=row[1], base_url=row[2], created_at=row[3]) if row else None


async def get_project_by_name(name: str, config: DatabaseConfig = None) -> Optional[Project]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, "SELECT id, name, base_url, created_at FROM projects WHERE name = ?"), name
        )
    return Project(id=row[0], name=row[1], base_url=row[2], created_at=row[3]) if row else None


async def delete_project(project_id: int, config: DatabaseConfig = None):
    """Project teardown: every page, queue item, checkpoint and result cascades."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        await conn.execute(sql(config, "DELETE FROM projects WHERE id = ?"), project_id)
        await conn.commit()


# ------------------ page record store ------------------

async def upsert_page(project_id: int, address: str, normalized_url: str, depth: int = 0,
                      discovered_from_id: int = None, config: DatabaseConfig = None) -> Tuple[int, bool]:
    """Get or create the page record for a normalized address.

    Returns (page_id, created). The first discovery wins: depth and parent are
    never overwritten by later rediscoveries.
    """
    config = _resolve_config(config)
    parts = urlsplit(normalized_url)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, """
            INSERT INTO pages (project_id, address, normalized_url, scheme, host, path, depth,
                               discovered_from_id, first_seen, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (project_id, normalized_url) DO NOTHING
            RETURNING id
            """),
            project_id, address, normalized_url, parts.scheme, parts.netloc, parts.path or "/",
            depth, discovered_from_id, time.time(), int(UrlStatus.PENDING),
        )
        if rows:
            await conn.commit()
            return rows[0][0], True
        await conn.commit()
        existing = await conn.fetchone(
            sql(config, "SELECT id FROM pages WHERE project_id = ? AND normalized_url = ?"),
            project_id, normalized_url,
        )
    return existing[0], False


async def get_page(page_id: int, config: DatabaseConfig = None) -> Optional[Page]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(sql(config, _PAGE_SELECT + " WHERE id = ?"), page_id)
    return _row_to_page(row) if row else None


async def get_page_by_address(project_id: int, normalized_url: str, config: DatabaseConfig = None) -> Optional[Page]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, _PAGE_SELECT + " WHERE project_id = ? AND normalized_url = ?"),
            project_id, normalized_url,
        )
    return _row_to_page(row) if row else None


async def set_page_status(page_id: int, status: UrlStatus, error: Optional[str] = None,
                          config: DatabaseConfig = None):
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        await conn.execute(sql(config, "UPDATE pages SET status = ?, crawl_error = ? WHERE id = ?"),
                           int(status), error, page_id)
        await conn.commit()


async def store_crawl_result(page_id: int, *, status: UrlStatus, http_status: Optional[int],
                             content_type: Optional[str], headers: Dict[str, str], html: str,
                             metadata: PageMetadata, hashes: Dict[str, object],
                             redirect_target: Optional[str] = None, robots_allowed: bool = True,
                             error: Optional[str] = None, config: DatabaseConfig = None):
    """Persist everything the fetch phase learned about one page in one transaction.

    Satellite records (links, hreflangs, structured data, redirects) are
    replaced, so re-crawling a page never duplicates them.
    """
    config = _resolve_config(config)
    simhash = hashes.get("content_hash_simhash") or None
    params = (
        int(status), http_status, content_type, len(html.encode("utf-8")) if html else 0,
        robots_allowed, hashes.get("content_hash_sha256") or None, simhash,
        hashes.get("content_length") or 0, metadata.title, metadata.meta_description,
        metadata.html_lang, metadata.canonical_html, metadata.canonical_http,
        metadata.has_multiple_canonicals, metadata.has_cross_domain_canonical,
        metadata.robots_noindex, metadata.robots_nofollow, metadata.x_robots_tag,
        metadata.has_robots_conflict, metadata.has_meta_refresh, metadata.meta_refresh_delay,
        metadata.meta_refresh_target, redirect_target, error, compress_headers(headers or {}),
        time.time(), page_id,
    )
    async with create_connection(config) as conn:
        await conn.begin()
        try:
            await conn.execute(
                sql(config, """
                UPDATE pages SET status = ?, http_status = ?, content_type = ?, content_length = ?,
                    robots_allowed = ?, content_hash = ?, simhash = ?, text_length = ?, title = ?,
                    meta_description = ?, html_lang = ?, canonical_html = ?, canonical_http = ?,
                    has_multiple_canonicals = ?, has_cross_domain_canonical = ?, robots_noindex = ?,
                    robots_nofollow = ?, x_robots_tag = ?, has_robots_conflict = ?,
                    has_meta_refresh = ?, meta_refresh_delay = ?, meta_refresh_target = ?,
                    redirect_target = ?, crawl_error = ?, headers_compressed = ?, last_crawled = ?
                WHERE id = ?
                """),
                *params,
            )
            if html:
                await conn.execute(
                    sql(config, """
                    INSERT INTO page_content (page_id, html_compressed) VALUES (?, ?)
                    ON CONFLICT (page_id) DO UPDATE SET html_compressed = excluded.html_compressed
                    """),
                    page_id, compress_html(html),
                )
            for table, column in (("links", "from_page_id"), ("hreflangs", "page_id"),
                                  ("structured_data", "page_id"), ("redirects", "page_id")):
                await conn.execute(sql(config, f"DELETE FROM {table} WHERE {column} = ?"), page_id)
            if metadata.links:
                await conn.executemany(
                    sql(config, "INSERT INTO links (from_page_id, to_url, anchor_text, link_type, is_nofollow) "
                                "VALUES (?, ?, ?, ?, ?)"),
                    [(page_id, link.to_url, link.anchor_text, link.link_type, link.is_nofollow)
                     for link in metadata.links],
                )
            if metadata.hreflangs:
                await conn.executemany(
                    sql(config, "INSERT INTO hreflangs (page_id, language, href, source) VALUES (?, ?, ?, ?)"),
                    [(page_id, h.language, h.href, h.source) for h in metadata.hreflangs],
                )
            if metadata.structured_data:
                await conn.executemany(
                    sql(config, "INSERT INTO structured_data (page_id, schema_type, raw, is_valid, error) "
                                "VALUES (?, ?, ?, ?, ?)"),
                    [(page_id, sd.schema_type, sd.raw, sd.is_valid, sd.error) for sd in metadata.structured_data],
                )
            if redirect_target and http_status is not None and 300 <= http_status < 400:
                await conn.execute(
                    sql(config, "INSERT INTO redirects (page_id, to_url, status_code, position) VALUES (?, ?, ?, 0)"),
                    page_id, redirect_target, http_status,
                )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def add_redirects(redirects: Sequence[Redirect], config: DatabaseConfig = None):
    config = _resolve_config(config)
    if not redirects:
        return
    async with create_connection(config) as conn:
        await conn.executemany(
            sql(config, "INSERT INTO redirects (page_id, to_url, status_code, position) VALUES (?, ?, ?, ?)"),
            [(r.page_id, r.to_url, r.status_code, r.position) for r in redirects],
        )
        await conn.commit()


async def update_page_flags(page_id: int, flags: Dict[str, object], config: DatabaseConfig = None):
    """Explicit read-modify-write of computed analysis flags on a page."""
    unknown = set(flags) - ANALYSIS_FLAG_COLUMNS
    if unknown:
        raise ValueError(f"Not an analysis flag: {', '.join(sorted(unknown))}")
    if not flags:
        return
    config = _resolve_config(config)
    columns = sorted(flags)
    assignments = ", ".join(f"{column} = ?" for column in columns)
    async with create_connection(config) as conn:
        await conn.execute(
            sql(config, f"UPDATE pages SET {assignments} WHERE id = ?"),
            *[flags[column] for column in columns], page_id,
        )
        await conn.commit()


async def load_page_html(page_id: int, config: DatabaseConfig = None) -> str:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, "SELECT html_compressed FROM page_content WHERE page_id = ?"), page_id
        )
    return decompress_html(row[0]) if row else ""


async def iter_pages(project_id: int, statuses: Iterable[UrlStatus] = None, batch_size: int = 500,
                     config: DatabaseConfig = None) -> AsyncIterator[Page]:
    """Stream every page of a project without loading rendered HTML.

    Keyset pagination keeps each batch in its own short-lived connection so no
    cursor is held open while callers write results.
    """
    config = _resolve_config(config)
    status_values = [int(s) for s in statuses] if statuses else None
    last_id = 0
    while True:
        query = _PAGE_SELECT + " WHERE project_id = ? AND id > ?"
        args: List[object] = [project_id, last_id]
        if status_values:
            query += " AND status IN (" + ", ".join("?" for _ in status_values) + ")"
            args.extend(status_values)
        query += " ORDER BY id LIMIT ?"
        args.append(batch_size)
        async with create_connection(config) as conn:
            rows = await conn.fetchall(sql(config, query), *args)
        if not rows:
            return
        for row in rows:
            page = _row_to_page(row)
            last_id = page.id
            yield page
        if len(rows) < batch_size:
            return


async def count_pages(project_id: int, statuses: Iterable[UrlStatus] = None, config: DatabaseConfig = None) -> int:
    config = _resolve_config(config)
    query = "SELECT COUNT(*) FROM pages WHERE project_id = ?"
    args: List[object] = [project_id]
    if statuses:
        values = [int(s) for s in statuses]
        query += " AND status IN (" + ", ".join("?" for _ in values) + ")"
        args.extend(values)
    async with create_connection(config) as conn:
        row = await conn.fetchone(sql(config, query), *args)
    return row[0] if row else 0


async def resolve_link_targets(project_id: int, config: DatabaseConfig = None) -> int:
    """Point every stored link at the page record of its target, where one exists."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        await conn.execute(
            sql(config, """
            UPDATE links SET to_page_id = (
                SELECT p.id FROM pages p WHERE p.project_id = ? AND p.normalized_url = links.to_url
            )
            WHERE from_page_id IN (SELECT id FROM pages WHERE project_id = ?)
            """),
            project_id, project_id,
        )
        await conn.commit()
        row = await conn.fetchone(
            sql(config, """
            SELECT COUNT(*) FROM links l JOIN pages p ON l.from_page_id = p.id
            WHERE p.project_id = ? AND l.to_page_id IS NOT NULL
            """),
            project_id,
        )
    return row[0] if row else 0


async def get_links_from(page_id: int, config: DatabaseConfig = None) -> List[Link]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "SELECT from_page_id, to_page_id, to_url, anchor_text, link_type, is_nofollow "
                        "FROM links WHERE from_page_id = ? ORDER BY id"),
            page_id,
        )
    return [Link(to_url=r[2], anchor_text=r[3] or "", link_type=r[4], is_nofollow=bool(r[5]),
                 from_page_id=r[0], to_page_id=r[1]) for r in rows]


async def count_inlinks(page_id: int, config: DatabaseConfig = None) -> int:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, "SELECT COUNT(*) FROM links WHERE to_page_id = ? AND from_page_id <> ? "
                        "AND link_type = 'hyperlink'"),
            page_id, page_id,
        )
    return row[0] if row else 0


async def get_hreflangs(page_id: int, config: DatabaseConfig = None) -> List[Hreflang]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "SELECT page_id, language, href, source FROM hreflangs WHERE page_id = ? ORDER BY id"),
            page_id,
        )
    return [Hreflang(page_id=r[0], language=r[1], href=r[2], source=r[3]) for r in rows]


async def get_structured_data(page_id: int, config: DatabaseConfig = None) -> List[StructuredData]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "SELECT page_id, schema_type, raw, is_valid, error FROM structured_data "
                        "WHERE page_id = ? ORDER BY id"),
            page_id,
        )
    return [StructuredData(page_id=r[0], schema_type=r[1], raw=r[2], is_valid=bool(r[3]), error=r[4])
            for r in rows]


async def get_redirect_codes_between(project_id: int, url_a: str, url_b: str,
                                     config: DatabaseConfig = None) -> List[int]:
    """Status codes of every recorded redirect from either URL to the other."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, """
            SELECT DISTINCT r.status_code FROM redirects r JOIN pages p ON r.page_id = p.id
            WHERE p.project_id = ?
              AND ((p.normalized_url = ? AND r.to_url = ?) OR (p.normalized_url = ? AND r.to_url = ?))
            """),
            project_id, url_a, url_b, url_b, url_a,
        )
    return sorted(r[0] for r in rows)


# ------------------ analysis results ------------------

async def insert_findings(findings: Sequence[Finding], config: DatabaseConfig = None):
    """Insert a batch of findings in a single transaction."""
    if not findings:
        return
    config = _resolve_config(config)
    rows = [
        (f.project_id, f.page_id, f.task_key, int(f.severity), f.code, f.message,
         json.dumps(f.data, default=str, ensure_ascii=False), f.created_at or time.time())
        for f in findings
    ]
    async with create_connection(config) as conn:
        await conn.begin()
        try:
            await conn.executemany(
                sql(config, "INSERT INTO findings (project_id, page_id, task_key, severity, code, message, "
                            "data_json, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"),
                rows,
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def insert_report_rows(report_rows: Sequence[ReportRow], config: DatabaseConfig = None):
    """Insert a batch of report rows in a single transaction."""
    if not report_rows:
        return
    config = _resolve_config(config)
    rows = [
        (r.project_id, r.page_id, r.task_key, json.dumps(r.values, default=str, ensure_ascii=False),
         r.created_at or time.time())
        for r in report_rows
    ]
    async with create_connection(config) as conn:
        await conn.begin()
        try:
            await conn.executemany(
                sql(config, "INSERT INTO report_rows (project_id, page_id, task_key, row_json, created_at) "
                            "VALUES (?, ?, ?, ?, ?)"),
                rows,
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def get_findings(project_id: int, task_key: str = None, code: str = None,
                       config: DatabaseConfig = None) -> List[Finding]:
    config = _resolve_config(config)
    query = ("SELECT project_id, page_id, task_key, severity, code, message, data_json, created_at "
             "FROM findings WHERE project_id = ?")
    args: List[object] = [project_id]
    if task_key:
        query += " AND task_key = ?"
        args.append(task_key)
    if code:
        query += " AND code = ?"
        args.append(code)
    query += " ORDER BY id"
    async with create_connection(config) as conn:
        rows = await conn.fetchall(sql(config, query), *args)
    return [
        Finding(project_id=r[0], page_id=r[1], task_key=r[2], severity=Severity(r[3]), code=r[4],
                message=r[5], data=json.loads(r[6]) if r[6] else {}, created_at=r[7])
        for r in rows
    ]


async def get_report_rows(project_id: int, task_key: str, config: DatabaseConfig = None) -> List[ReportRow]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "SELECT project_id, page_id, task_key, row_json, created_at FROM report_rows "
                        "WHERE project_id = ? AND task_key = ? ORDER BY id"),
            project_id, task_key,
        )
    return [ReportRow(project_id=r[0], page_id=r[1], task_key=r[2], values=json.loads(r[3]), created_at=r[4])
            for r in rows]


async def clear_analysis_results(project_id: int, task_key: str = None, config: DatabaseConfig = None):
    """Bulk-delete findings and report rows for a project, or for one task of it."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        await conn.begin()
        try:
            for table in ("findings", "report_rows"):
                if task_key:
                    await conn.execute(
                        sql(config, f"DELETE FROM {table} WHERE project_id = ? AND task_key = ?"),
                        project_id, task_key,
                    )
                else:
                    await conn.execute(sql(config, f"DELETE FROM {table} WHERE project_id = ?"), project_id)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def summarize_findings(project_id: int, config: DatabaseConfig = None) -> List[Tuple[str, str, int, int]]:
    """(task_key, code, severity, count) for every finding code of a project."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, """
            SELECT task_key, code, MAX(severity), COUNT(*) FROM findings
            WHERE project_id = ? GROUP BY task_key, code ORDER BY MAX(severity) DESC, COUNT(*) DESC
            """),
            project_id,
        )
    return [(r[0], r[1], r[2], r[3]) for r in rows]
