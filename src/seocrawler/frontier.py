"""
Persistent crawl queue.

Items move ``Queued -> InProgress -> {Completed, Failed}``. The unique
constraint on (project_id, address) means an address is scheduled at most once
per project, whatever state its earlier item is in.
"""

from __future__ import annotations
import logging
import time
from typing import Dict, Optional, Union

from .database import DatabaseConfig, create_connection, get_global_config, sql
from .models import QueueItem, QueueState

logger = logging.getLogger(__name__)

_ITEM_COLUMNS = "id, project_id, address, priority, depth, host_key, enqueued_at, state"


def _resolve_config(config: Optional[DatabaseConfig]) -> DatabaseConfig:
    config = config or get_global_config()
    if config is None:
        raise RuntimeError("Database configuration not set")
    return config


def _row_to_item(row) -> QueueItem:
    return QueueItem(
        id=row[0], project_id=row[1], address=row[2], priority=row[3], depth=row[4],
        host_key=row[5], enqueued_at=row[6], state=QueueState(row[7]),
    )


async def frontier_enqueue(project_id: int, address: str, priority: int = 0, depth: int = 0,
                           host_key: str = None, config: DatabaseConfig = None) -> Optional[QueueItem]:
    """Schedule an address for crawling.

    Returns the new queue item, or None when the address already has an item
    for this project in any state (a silent no-op).
    """
    config = _resolve_config(config)
    now = time.time()
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, f"""
            INSERT INTO crawl_queue (project_id, address, priority, depth, host_key, enqueued_at, updated_at, state)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (project_id, address) DO NOTHING
            RETURNING {_ITEM_COLUMNS}
            """),
            project_id, address, priority, depth, host_key, now, now, int(QueueState.QUEUED),
        )
        await conn.commit()
    if not rows:
        logger.debug("Already queued: %s", address)
        return None
    return _row_to_item(rows[0])


async def frontier_dequeue(project_id: int, config: DatabaseConfig = None) -> Optional[QueueItem]:
    """Claim the next queued item: highest priority first, FIFO within a priority.

    The select and the Queued -> InProgress transition happen in one statement
    inside a write transaction, so concurrent dequeuers never claim the same item.
    """
    config = _resolve_config(config)
    now = time.time()
    if config.is_postgres:
        query = f"""
        UPDATE crawl_queue SET state = $1, updated_at = $2
        WHERE id = (
            SELECT id FROM crawl_queue
            WHERE project_id = $3 AND state = $4
            ORDER BY priority DESC, enqueued_at ASC, id ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
        )
        RETURNING {_ITEM_COLUMNS}
        """
    else:
        query = f"""
        UPDATE crawl_queue SET state = ?, updated_at = ?
        WHERE id = (
            SELECT id FROM crawl_queue
            WHERE project_id = ? AND state = ?
            ORDER BY priority DESC, enqueued_at ASC, id ASC
            LIMIT 1
        ) AND state = ?
        RETURNING {_ITEM_COLUMNS}
        """
    args = [int(QueueState.IN_PROGRESS), now, project_id, int(QueueState.QUEUED)]
    if not config.is_postgres:
        args.append(int(QueueState.QUEUED))

    async with create_connection(config) as conn:
        await conn.begin()
        try:
            rows = await conn.fetchall(query, *args)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return _row_to_item(rows[0]) if rows else None


async def frontier_complete(item: Union[QueueItem, int], success: bool, config: DatabaseConfig = None) -> bool:
    """Move an InProgress item to Completed or Failed.

    Returns False when the item was not InProgress (already completed, or reset).
    """
    config = _resolve_config(config)
    item_id = item.id if isinstance(item, QueueItem) else item
    new_state = QueueState.COMPLETED if success else QueueState.FAILED
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "UPDATE crawl_queue SET state = ?, updated_at = ? WHERE id = ? AND state = ? RETURNING id"),
            int(new_state), time.time(), item_id, int(QueueState.IN_PROGRESS),
        )
        await conn.commit()
    if isinstance(item, QueueItem) and rows:
        item.state = new_state
    return bool(rows)


async def frontier_reset_in_progress(project_id: int, config: DatabaseConfig = None) -> int:
    """Return every InProgress item of a project to Queued.

    Called once when a crawl starts or resumes, to recover items claimed by a
    process that never completed them.
    """
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "UPDATE crawl_queue SET state = ?, updated_at = ? WHERE project_id = ? AND state = ? RETURNING id"),
            int(QueueState.QUEUED), time.time(), project_id, int(QueueState.IN_PROGRESS),
        )
        await conn.commit()
    if rows:
        logger.info("Reset %d in-progress queue items to queued for project %s", len(rows), project_id)
    return len(rows)


async def frontier_count_by_state(project_id: int, state: QueueState, config: DatabaseConfig = None) -> int:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        row = await conn.fetchone(
            sql(config, "SELECT COUNT(*) FROM crawl_queue WHERE project_id = ? AND state = ?"),
            project_id, int(state),
        )
    return row[0] if row else 0


async def frontier_stats(project_id: int, config: DatabaseConfig = None) -> Dict[QueueState, int]:
    """Item counts for every queue state of a project."""
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "SELECT state, COUNT(*) FROM crawl_queue WHERE project_id = ? GROUP BY state"),
            project_id,
        )
    stats = {state: 0 for state in QueueState}
    for state, count in rows:
        stats[QueueState(state)] = count
    return stats


async def frontier_clear(project_id: int, config: DatabaseConfig = None) -> int:
    config = _resolve_config(config)
    async with create_connection(config) as conn:
        rows = await conn.fetchall(
            sql(config, "DELETE FROM crawl_queue WHERE project_id = ? RETURNING id"), project_id
        )
        await conn.commit()
    return len(rows)
