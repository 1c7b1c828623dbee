import threading
import time
import pytest

from src.seocrawler.aggregation import ArenaRegistry, ProjectArena


class TestProjectArena:
    def test_add_to_group_deduplicates(self):
        arena = ProjectArena(1)
        assert arena.add_to_group("titles", "home", (1, "/a")) == 1
        assert arena.add_to_group("titles", "home", (2, "/b")) == 2
        assert arena.add_to_group("titles", "home", (2, "/b")) == 2
        assert arena.group_snapshot("titles", "home") == [(1, "/a"), (2, "/b")]
        assert arena.group_snapshot("titles", "missing") == []
        assert arena.keys("titles") == ["home"]

    def test_try_claim_is_once_only(self):
        arena = ProjectArena(1)
        assert arena.try_claim("loop", ("a", "b")) is True
        assert arena.try_claim("loop", ("a", "b")) is False
        assert arena.try_claim("loop", ("a", "c")) is True

    def test_try_claim_under_threads(self):
        arena = ProjectArena(1)
        wins = []

        def claim():
            if arena.try_claim("once"):
                wins.append(1)

        threads = [threading.Thread(target=claim) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(wins) == 1

    def test_counters_and_values(self):
        arena = ProjectArena(1)
        arena.increment("pages")
        assert arena.increment("pages", amount=4) == 5
        assert arena.counter("pages") == 5
        assert arena.counter("other") == 0
        arena.set_value("target", "/a", 404)
        assert arena.get_value("target", "/a") == 404
        assert arena.get_value("target", "/b", "none") == "none"

    def test_concurrent_increments_are_not_lost(self):
        arena = ProjectArena(1)

        def bump():
            for _ in range(1000):
                arena.increment("errors", 500)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert arena.counter("errors", 500) == 8000

    def test_concurrent_group_adds(self):
        arena = ProjectArena(1)

        def add(worker):
            for n in range(500):
                arena.add_to_group("shared", "key", (worker, n))
                arena.add_to_group("shared", "key", (worker, n))
                arena.add_to_group("per_page", worker * 1000 + n, "url")

        threads = [threading.Thread(target=add, args=(worker,)) for worker in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(arena.group_snapshot("shared", "key")) == 4000
        assert len(arena.keys("per_page")) == 4000

    def test_large_group_stays_linear(self):
        arena = ProjectArena(1)
        started = time.monotonic()
        for n in range(50_000):
            arena.add_to_group("sitemap_urls", "all", f"https://example.com/{n}")
        assert arena.add_to_group("sitemap_urls", "all", "https://example.com/0") == 50_000
        assert time.monotonic() - started < 5


class TestArenaRegistry:
    def test_lifecycle(self):
        registry = ArenaRegistry()
        arena = registry.get(7)
        assert registry.get(7) is arena
        assert 7 in registry
        arena.add_to_group("g", 1, "x")

        assert registry.release(7) is True
        assert 7 not in registry
        assert registry.peek(7) is None
        assert registry.release(7) is False
        assert registry.get(7).group_snapshot("g", 1) == []
