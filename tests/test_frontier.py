import asyncio
import pytest

from src.seocrawler.frontier import (
    frontier_clear, frontier_complete, frontier_count_by_state, frontier_dequeue, frontier_enqueue,
    frontier_reset_in_progress, frontier_stats,
)
from src.seocrawler.models import QueueState


class TestFrontier:
    async def test_enqueue_is_unique_per_project(self, db, project):
        first = await frontier_enqueue(project.id, "https://example.com/a", config=db)
        again = await frontier_enqueue(project.id, "https://example.com/a", priority=5, config=db)
        assert first is not None
        assert again is None
        assert await frontier_count_by_state(project.id, QueueState.QUEUED, config=db) == 1

    async def test_completed_address_is_not_requeued(self, db, project):
        item = await frontier_enqueue(project.id, "https://example.com/a", config=db)
        await frontier_dequeue(project.id, config=db)
        await frontier_complete(item, True, config=db)
        assert await frontier_enqueue(project.id, "https://example.com/a", config=db) is None
        stats = await frontier_stats(project.id, config=db)
        assert stats[QueueState.COMPLETED] == 1
        assert stats[QueueState.QUEUED] == 0

    async def test_priority_then_fifo(self, db, project):
        await frontier_enqueue(project.id, "https://example.com/low", priority=0, config=db)
        await frontier_enqueue(project.id, "https://example.com/high", priority=10, config=db)
        await frontier_enqueue(project.id, "https://example.com/low2", priority=0, config=db)
        order = []
        while True:
            item = await frontier_dequeue(project.id, config=db)
            if item is None:
                break
            order.append(item.address)
        assert order == ["https://example.com/high", "https://example.com/low", "https://example.com/low2"]

    async def test_concurrent_dequeue_claims_each_item_once(self, db, project):
        for i in range(5):
            await frontier_enqueue(project.id, f"https://example.com/{i}", config=db)
        items = await asyncio.gather(*[frontier_dequeue(project.id, config=db) for _ in range(10)])
        claimed = [item.address for item in items if item is not None]
        assert len(claimed) == 5
        assert len(set(claimed)) == 5
        assert await frontier_count_by_state(project.id, QueueState.IN_PROGRESS, config=db) == 5

    async def test_reset_in_progress_recovers_claimed_items(self, db, project):
        await frontier_enqueue(project.id, "https://example.com/a", config=db)
        await frontier_enqueue(project.id, "https://example.com/b", config=db)
        claimed = await frontier_dequeue(project.id, config=db)
        assert claimed is not None

        assert await frontier_reset_in_progress(project.id, config=db) == 1
        stats = await frontier_stats(project.id, config=db)
        assert stats[QueueState.IN_PROGRESS] == 0
        assert stats[QueueState.QUEUED] == 2

    async def test_failed_items_are_terminal(self, db, project):
        item = await frontier_enqueue(project.id, "https://example.com/a", config=db)
        await frontier_dequeue(project.id, config=db)
        await frontier_complete(item.id, False, config=db)
        assert await frontier_dequeue(project.id, config=db) is None
        assert await frontier_reset_in_progress(project.id, config=db) == 0
        assert await frontier_count_by_state(project.id, QueueState.FAILED, config=db) == 1

    async def test_clear(self, db, project):
        await frontier_enqueue(project.id, "https://example.com/a", config=db)
        assert await frontier_clear(project.id, config=db) == 1
        assert await frontier_dequeue(project.id, config=db) is None
