"""
Checkpoint manager: periodic crawl progress snapshots for crash recovery.
"""

from __future__ import annotations
import logging
import time
from typing import List, Optional

from .database import DatabaseConfig, create_connection, get_global_config, sql
from .models import Checkpoint, CrawlProgress

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "InProgress"
STATUS_COMPLETED = "Completed"

_COLUMNS = ("id, project_id, created_at, urls_crawled, error_count, queue_size, "
            "last_crawled_url, status, elapsed_seconds, is_active")


def _resolve_config(config: Optional[DatabaseConfig]) -> DatabaseConfig:
    config = config or get_global_config()
    if config is None:
        raise RuntimeError("Database configuration not set")
    return config


def _row_to_checkpoint(row) -> Checkpoint:
    return Checkpoint(
        id=row[0], project_id=row[1], created_at=row[2], urls_crawled=row[3], error_count=row[4],
        queue_size=row[5], last_crawled_url=row[6], status=row[7], elapsed_seconds=row[8],
        is_active=bool(row[9]),
    )


async def checkpoint_create(project_id: int, snapshot: CrawlProgress, config: DatabaseConfig = None) -> Checkpoint:
    """Write a new active checkpoint, retiring any earlier active one in the same transaction."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        await conn.begin()
        try:
            await conn.execute(
                sql(config, "UPDATE checkpoints SET is_active = ? WHERE project_id = ? AND is_active = ?"),
                False, project_id, True,
            )
            rows = await conn.fetchall(
                sql(config, f"""
                INSERT INTO checkpoints (project_id, created_at, urls_crawled, error_count, queue_size,
                                         last_crawled_url, status, elapsed_seconds, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING {_COLUMNS}
                """),
                project_id, time.time(), snapshot.urls_crawled, snapshot.error_count, snapshot.queued,
                snapshot.last_crawled_url, STATUS_IN_PROGRESS, snapshot.elapsed_seconds, True,
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    checkpoint = _row_to_checkpoint(rows[0])
    logger.debug("Checkpoint %s for project %s: %d crawled, %d queued",
                 checkpoint.id, project_id, checkpoint.urls_crawled, checkpoint.queue_size)
    return checkpoint


async def checkpoint_get_active(project_id: int, config: DatabaseConfig = None) -> Optional[Checkpoint]:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, f"SELECT {_COLUMNS} FROM checkpoints WHERE project_id = ? AND is_active = ? "
                        "ORDER BY created_at DESC, id DESC LIMIT 1"),
            project_id, True,
        )
    return _row_to_checkpoint(row) if row else None


async def checkpoint_deactivate(project_id: int, config: DatabaseConfig = None) -> int:
    """Mark every active checkpoint of a project inactive and Completed."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "UPDATE checkpoints SET is_active = ?, status = ? WHERE project_id = ? AND is_active = ? "
                        "RETURNING id"),
            False, STATUS_COMPLETED, project_id, True,
        )
        await conn.commit()
    return len(rows)


async def checkpoint_prune(project_id: int, keep: int = 5, config: DatabaseConfig = None) -> int:
    """Delete all but the ``keep`` most recent checkpoints of a project."""
    if keep < 0:
        raise ValueError("keep must be >= 0")
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, """
            DELETE FROM checkpoints
            WHERE project_id = ? AND id NOT IN (
                SELECT id FROM checkpoints WHERE project_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
            )
            RETURNING id
            """),
            project_id, project_id, keep,
        )
        await conn.commit()
    if rows:
        logger.debug("Pruned %d checkpoints for project %s", len(rows), project_id)
    return len(rows)


async def checkpoint_list(project_id: int, config: DatabaseConfig = None) -> List[Checkpoint]:
    """Checkpoints of a project, newest first."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, f"SELECT {_COLUMNS} FROM checkpoints WHERE project_id = ? ORDER BY created_at DESC, id DESC"),
            project_id,
        )
    return [_row_to_checkpoint(row) for row in rows]
