from collections import Counter

import pytest

from src.seocrawler.accessor import AccessorVersionError, RepositoryAccessor
from src.seocrawler.aggregation import ArenaRegistry
from src.seocrawler.config import AnalysisConfig
from src.seocrawler.db_operations import get_findings, get_report_rows
from src.seocrawler.models import ReportColumn, ReportRow, ReportSchema, Severity
from src.seocrawler.pipeline import (
    AnalysisPipeline, ReportSchemaError, ReportSink, TaskRegistrationError, TaskRegistry, UrlTask,
)
from src.seocrawler.tasks.defaults import register_default_tasks


class TitleTask(UrlTask):
    key = "page_titles"
    display_name = "Page titles"

    def report_schema(self):
        return ReportSchema(self.key, [ReportColumn("url", "url"), ReportColumn("title")])

    async def execute(self, ctx):
        await self.emit(ctx, Severity.INFO, "SEEN", "Page seen", url=ctx.page.address)
        await self.report(ctx, {"url": ctx.page.address, "title": ctx.page.title})

    async def finalize_project(self, ctx):
        await self.emit(ctx, Severity.INFO, "DONE", "Project finalized")


class BrokenTask(UrlTask):
    key = "broken"
    priority = 1

    async def execute(self, ctx):
        raise RuntimeError("boom")

    async def finalize_project(self, ctx):
        raise RuntimeError("boom again")


class FutureTask(UrlTask):
    key = "future"
    required_accessor_version = RepositoryAccessor.VERSION + 1


class CleanupTrackingTask(UrlTask):
    key = "cleanup_tracking"

    def __init__(self):
        self.events = []

    async def execute(self, ctx):
        self.events.append("page")

    def cleanup_project(self, project_id):
        self.events.append(("cleanup", project_id))


class TestTaskRegistry:
    def test_duplicate_key_rejected(self):
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        with pytest.raises(TaskRegistrationError):
            registry.register_task(TitleTask())
        assert len(registry) == 1

    def test_missing_key_rejected(self):
        with pytest.raises(TaskRegistrationError):
            TaskRegistry().register_task(UrlTask())

    def test_schema_registered_with_task(self):
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        assert registry.schema("page_titles").column_names() == ["url", "title"]

    def test_schema_without_task_rejected(self):
        with pytest.raises(ReportSchemaError):
            TaskRegistry().register_report_schema(ReportSchema("nobody", [ReportColumn("url")]))

    def test_schema_with_repeated_column_rejected(self):
        registry = TaskRegistry()
        registry.register_task(BrokenTask())
        with pytest.raises(ReportSchemaError):
            registry.register_report_schema(ReportSchema("broken", [ReportColumn("a"), ReportColumn("a")]))
        with pytest.raises(ReportSchemaError):
            registry.register_report_schema(ReportSchema("broken", []))

    def test_tasks_sorted_by_priority(self):
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        registry.register_task(BrokenTask())
        assert [t.key for t in registry.tasks()] == ["broken", "page_titles"]

    def test_accessor_version_checked(self, db_config):
        registry = TaskRegistry(RepositoryAccessor(db_config))
        with pytest.raises(AccessorVersionError):
            registry.register_task(FutureTask())


class TestReportSink:
    def test_undeclared_column_rejected(self, db_config):
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        sink = ReportSink(db_config, registry)
        sink.validate(ReportRow(1, "page_titles", {"url": "https://example.com/"}))
        with pytest.raises(ReportSchemaError):
            sink.validate(ReportRow(1, "page_titles", {"url": "x", "extra": 1}))
        with pytest.raises(ReportSchemaError):
            sink.validate(ReportRow(1, "broken", {"url": "x"}))


class TestAnalysisPipeline:
    async def test_failing_task_does_not_stop_others(self, db, project, store_page):
        await store_page("https://example.com/", "<html><head><title>Home</title></head><body>Hi</body></html>")
        await store_page("https://example.com/a", "<html><head><title>A</title></head><body>A</body></html>")
        registry = TaskRegistry()
        registry.register_task(BrokenTask())
        registry.register_task(TitleTask())

        analyzed = await AnalysisPipeline(registry, db).run(project)

        assert analyzed == 2
        assert len(await get_findings(project.id, "page_titles", "SEEN", config=db)) == 2
        assert len(await get_findings(project.id, "page_titles", "DONE", config=db)) == 1
        rows = await get_report_rows(project.id, "page_titles", config=db)
        assert sorted(r.values["title"] for r in rows) == ["A", "Home"]

    async def test_rerun_replaces_previous_results(self, db, project, store_page):
        await store_page("https://example.com/", "<html><body>Hi</body></html>")
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        pipeline = AnalysisPipeline(registry, db)

        await pipeline.run(project)
        await pipeline.run(project)

        assert len(await get_findings(project.id, "page_titles", config=db)) == 2

    async def test_cleanup_releases_arena(self, db, project, store_page):
        await store_page("https://example.com/", "<html><body>Hi</body></html>")
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        arenas = ArenaRegistry()
        pipeline = AnalysisPipeline(registry, db, arenas=arenas)

        await pipeline.run(project)
        assert project.id in arenas
        pipeline.cleanup_project(project.id)
        assert project.id not in arenas

    async def test_cleanup_runs_before_each_run(self, db, project, store_page):
        await store_page("https://example.com/", "<html><body>Hi</body></html>")
        task = CleanupTrackingTask()
        registry = TaskRegistry()
        registry.register_task(task)
        pipeline = AnalysisPipeline(registry, db)

        await pipeline.run(project)
        await pipeline.run(project)

        cleanup = ("cleanup", project.id)
        assert task.events == [cleanup, "page", cleanup, "page"]

    async def test_progress_callback(self, db, project, store_page):
        await store_page("https://example.com/", "<html><body>Hi</body></html>")
        registry = TaskRegistry()
        registry.register_task(TitleTask())
        seen = []
        await AnalysisPipeline(registry, db).run(project, on_page=lambda n, page: seen.append((n, page.address)))
        assert seen == [(1, "https://example.com/")]

    async def test_concurrent_pages_match_sequential_run(self, db, project, store_page):
        shared = "<p>" + " ".join(f"word{n}" for n in range(120)) + "</p>"
        await store_page("https://example.com/", "<html><head><title>Home</title></head><body>"
                         + "".join(f"<a href='/p{n}'>P{n}</a>" for n in range(8)) + "</body></html>")
        for n in range(8):
            body = shared if n < 3 else f"<p>Page {n} has its own short text.</p>"
            await store_page(f"https://example.com/p{n}",
                             f"<html><head><title>Same title</title></head><body>{body}</body></html>", depth=1)
        await store_page("https://example.com/gone", status=404, depth=1)
        await store_page("https://example.com/old", status=301, redirect_to="https://example.com/p1", depth=1)
        registry = register_default_tasks(TaskRegistry())

        async def run_with(concurrency):
            config = AnalysisConfig(concurrency=concurrency, check_domain_variants=False)
            analyzed = await AnalysisPipeline(registry, db, config).run(project)
            findings = await get_findings(project.id, config=db)
            return analyzed, Counter((f.task_key, f.code) for f in findings)

        sequential = await run_with(1)
        concurrent = await run_with(4)

        assert sequential[0] == concurrent[0] == 11
        assert concurrent[1] == sequential[1]
        assert sequential[1][("duplicate_content", "EXACT_DUPLICATE")] == 1
        assert sequential[1][("titles_meta", "DUPLICATE_TITLE")] == 1
