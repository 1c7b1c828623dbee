"""
PostgreSQL schema definitions for the crawler database.

This module contains the PostgreSQL equivalent of the SQLite schema,
with proper PostgreSQL data types, constraints, and optimizations.
"""

import re
from typing import List


POSTGRES_SCHEMA = """
-- Projects - one per crawled site
CREATE TABLE IF NOT EXISTS projects (
    id BIGSERIAL PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    base_url TEXT NOT NULL,
    created_at DOUBLE PRECISION NOT NULL
);

-- Page records - identity is (project, normalized address)
CREATE TABLE IF NOT EXISTS pages (
    id BIGSERIAL PRIMARY KEY,
    project_id BIGINT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    address TEXT NOT NULL,
    normalized_url TEXT NOT NULL,
    scheme TEXT,
    host TEXT,
    path TEXT,
    depth INTEGER DEFAULT 0,
    discovered_from_id BIGINT REFERENCES pages (id) ON DELETE SET NULL,
    first_seen DOUBLE PRECISION,
    last_crawled DOUBLE PRECISION,
    status SMALLINT NOT NULL DEFAULT 0,
    http_status INTEGER,
    content_type TEXT,
    content_length INTEGER,
    robots_allowed BOOLEAN DEFAULT TRUE,
    is_indexable BOOLEAN,
    content_hash TEXT,
    simhash TEXT,  -- unsigned 64-bit value does not fit BIGINT
    text_length INTEGER,
    title TEXT,
    meta_description TEXT,
    html_lang TEXT,
    canonical_html TEXT,
    canonical_http TEXT,
    has_multiple_canonicals BOOLEAN DEFAULT FALSE,
    has_cross_domain_canonical BOOLEAN DEFAULT FALSE,
    robots_noindex BOOLEAN DEFAULT FALSE,
    robots_nofollow BOOLEAN DEFAULT FALSE,
    x_robots_tag TEXT,
    has_robots_conflict BOOLEAN DEFAULT FALSE,
    has_meta_refresh BOOLEAN DEFAULT FALSE,
    meta_refresh_delay INTEGER,
    meta_refresh_target TEXT,
    redirect_target TEXT,
    redirect_chain_length INTEGER,
    redirect_terminal_status INTEGER,
    is_redirect_loop BOOLEAN DEFAULT FALSE,
    crawl_error TEXT,
    headers_compressed BYTEA,
    UNIQUE (project_id, normalized_url)
);

CREATE INDEX IF NOT EXISTS idx_pages_project_status ON pages(project_id, status);
CREATE INDEX IF NOT EXISTS idx_pages_content_hash ON pages(project_id, content_hash);

-- Rendered HTML, loaded on demand
CREATE TABLE IF NOT EXISTS page_content (
    page_id BIGINT PRIMARY KEY REFERENCES pages (id) ON DELETE CASCADE,
    html_compressed BYTEA
);

-- Crawl queue
CREATE TABLE IF NOT EXISTS crawl_queue (
    id BIGSERIAL PRIMARY KEY,
    project_id BIGINT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    address TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    depth INTEGER NOT NULL DEFAULT 0,
    host_key TEXT,
    enqueued_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION,
    state SMALLINT NOT NULL DEFAULT 0,
    UNIQUE (project_id, address)
);

CREATE INDEX IF NOT EXISTS idx_crawl_queue_dequeue ON crawl_queue(project_id, state, priority DESC, enqueued_at ASC);

-- Checkpoints
CREATE TABLE IF NOT EXISTS checkpoints (
    id BIGSERIAL PRIMARY KEY,
    project_id BIGINT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    created_at DOUBLE PRECISION NOT NULL,
    urls_crawled INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    queue_size INTEGER NOT NULL DEFAULT 0,
    last_crawled_url TEXT,
    status TEXT NOT NULL DEFAULT 'InProgress',
    elapsed_seconds DOUBLE PRECISION NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_project ON checkpoints(project_id, created_at DESC);

-- Satellite records
CREATE TABLE IF NOT EXISTS redirects (
    id BIGSERIAL PRIMARY KEY,
    page_id BIGINT NOT NULL REFERENCES pages (id) ON DELETE CASCADE,
    to_url TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    position INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_redirects_page ON redirects(page_id);

CREATE TABLE IF NOT EXISTS links (
    id BIGSERIAL PRIMARY KEY,
    from_page_id BIGINT NOT NULL REFERENCES pages (id) ON DELETE CASCADE,
    to_page_id BIGINT REFERENCES pages (id) ON DELETE SET NULL,
    to_url TEXT NOT NULL,
    anchor_text TEXT,
    link_type TEXT NOT NULL DEFAULT 'hyperlink',
    is_nofollow BOOLEAN DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_links_from ON links(from_page_id);
CREATE INDEX IF NOT EXISTS idx_links_to ON links(to_page_id);

CREATE TABLE IF NOT EXISTS hreflangs (
    id BIGSERIAL PRIMARY KEY,
    page_id BIGINT NOT NULL REFERENCES pages (id) ON DELETE CASCADE,
    language TEXT NOT NULL,
    href TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'html'
);

CREATE INDEX IF NOT EXISTS idx_hreflangs_page ON hreflangs(page_id);

CREATE TABLE IF NOT EXISTS structured_data (
    id BIGSERIAL PRIMARY KEY,
    page_id BIGINT NOT NULL REFERENCES pages (id) ON DELETE CASCADE,
    schema_type TEXT,
    raw TEXT,
    is_valid BOOLEAN DEFAULT TRUE,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_structured_data_page ON structured_data(page_id);

-- Analysis results
CREATE TABLE IF NOT EXISTS findings (
    id BIGSERIAL PRIMARY KEY,
    project_id BIGINT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    page_id BIGINT REFERENCES pages (id) ON DELETE CASCADE,
    task_key TEXT NOT NULL,
    severity SMALLINT NOT NULL,
    code TEXT NOT NULL,
    message TEXT NOT NULL,
    data_json TEXT,
    created_at DOUBLE PRECISION NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_findings_project_task ON findings(project_id, task_key);
CREATE INDEX IF NOT EXISTS idx_findings_code ON findings(project_id, code);

CREATE TABLE IF NOT EXISTS report_rows (
    id BIGSERIAL PRIMARY KEY,
    project_id BIGINT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    page_id BIGINT REFERENCES pages (id) ON DELETE CASCADE,
    task_key TEXT NOT NULL,
    row_json TEXT NOT NULL,
    created_at DOUBLE PRECISION NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_report_rows_project_task ON report_rows(project_id, task_key);
"""


def get_postgres_schema_statements() -> List[str]:
    """Get PostgreSQL schema statements as a list."""
    # Remove single-line comments
    schema_clean = re.sub(r'--.*$', '', POSTGRES_SCHEMA, flags=re.MULTILINE)

    statements = []
    for statement in schema_clean.split(';'):
        statement = statement.strip()
        if statement:
            statements.append(statement)

    return statements
