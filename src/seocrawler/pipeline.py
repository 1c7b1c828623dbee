"""
Analysis phase: runs every registered task over every crawled page.

Tasks are plain objects registered with a ``TaskRegistry``. For each page the
pipeline builds one ``PageContext`` that all tasks share, so rendered HTML is
loaded at most once per page. Results go to buffered sinks that write in
batches, one transaction per batch.
"""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from . import db_operations
from .accessor import RepositoryAccessor
from .aggregation import ArenaRegistry, ProjectArena
from .config import AnalysisConfig
from .database import DatabaseConfig
from .fetch import Fetcher
from .models import (
    Finding, Link, Page, Project, ReportRow, ReportSchema, Severity, TERMINAL_URL_STATUSES,
)

logger = logging.getLogger(__name__)


class TaskRegistrationError(ValueError):
    """A task could not be registered (duplicate key, missing key)."""


class ReportSchemaError(ValueError):
    """A report schema or report row does not match what the task declared."""


class UrlTask:
    """Base class for analysis tasks.

    Subclasses set ``key`` and ``display_name`` and implement ``execute``.
    Tasks run in ascending ``priority`` order. ``finalize_project`` runs once
    after every page of a project has been analyzed.
    """

    key: str = ""
    display_name: str = ""
    priority: int = 100
    required_accessor_version: int = 1

    def __init__(self):
        self.accessor: Optional[RepositoryAccessor] = None

    def attach(self, accessor: RepositoryAccessor):
        self.accessor = accessor

    async def execute(self, ctx: "PageContext"):
        raise NotImplementedError

    async def finalize_project(self, ctx: "ProjectContext"):
        return None

    def cleanup_project(self, project_id: int):
        return None

    def report_schema(self) -> Optional[ReportSchema]:
        return None

    async def emit(self, ctx: "ProjectContext", severity: Severity, code: str, message: str,
                   page_id: Optional[int] = None, **data):
        """Queue a finding for this task. ``page_id`` defaults to the context page."""
        if page_id is None and isinstance(ctx, PageContext):
            page_id = ctx.page.id
        await ctx.findings.add(Finding(
            project_id=ctx.project.id, task_key=self.key, severity=severity, code=code,
            message=message, page_id=page_id, data=data, created_at=time.time(),
        ))

    async def report(self, ctx: "ProjectContext", values: Dict[str, Any], page_id: Optional[int] = None):
        if page_id is None and isinstance(ctx, PageContext):
            page_id = ctx.page.id
        await ctx.reports.add(ReportRow(
            project_id=ctx.project.id, task_key=self.key, values=values, page_id=page_id,
            created_at=time.time(),
        ))

    def __repr__(self):
        return f"<{type(self).__name__} key={self.key!r} priority={self.priority}>"


class TaskRegistry:
    """Closed set of analysis tasks and the report schemas they declare."""

    def __init__(self, accessor: RepositoryAccessor = None):
        self.accessor = accessor
        self._tasks: Dict[str, UrlTask] = {}
        self._schemas: Dict[str, ReportSchema] = {}

    def register_task(self, task: UrlTask) -> UrlTask:
        if not task.key:
            raise TaskRegistrationError(f"{type(task).__name__} has no key")
        if task.key in self._tasks:
            raise TaskRegistrationError(f"Task key already registered: {task.key}")
        if self.accessor is not None:
            self.accessor.check_version(task.required_accessor_version, task.key)
            task.attach(self.accessor)
        self._tasks[task.key] = task
        schema = task.report_schema()
        if schema is not None:
            self.register_report_schema(schema)
        return task

    def register_report_schema(self, schema: ReportSchema):
        if schema.task_key not in self._tasks:
            raise ReportSchemaError(f"No task registered for report schema {schema.task_key!r}")
        if schema.task_key in self._schemas:
            raise ReportSchemaError(f"Report schema already registered for {schema.task_key!r}")
        names = schema.column_names()
        if not names:
            raise ReportSchemaError(f"Report schema for {schema.task_key!r} has no columns")
        if len(set(names)) != len(names):
            raise ReportSchemaError(f"Report schema for {schema.task_key!r} repeats a column name")
        self._schemas[schema.task_key] = schema

    def attach(self, accessor: RepositoryAccessor):
        """Install an accessor on every registered task, version-checked."""
        for task in self._tasks.values():
            accessor.check_version(task.required_accessor_version, task.key)
        self.accessor = accessor
        for task in self._tasks.values():
            task.attach(accessor)

    def get(self, key: str) -> Optional[UrlTask]:
        return self._tasks.get(key)

    def schema(self, task_key: str) -> Optional[ReportSchema]:
        return self._schemas.get(task_key)

    def tasks(self) -> List[UrlTask]:
        return sorted(self._tasks.values(), key=lambda t: (t.priority, t.key))

    def __len__(self):
        return len(self._tasks)

    def __contains__(self, key: str):
        return key in self._tasks


class FindingSink:
    """Buffers findings and writes them in batches."""

    def __init__(self, db_config: DatabaseConfig, batch_size: int = 500):
        self.db_config = db_config
        self.batch_size = max(1, batch_size)
        self._buffer: List[Finding] = []
        self._lock = asyncio.Lock()
        self.written = 0

    async def add(self, finding: Finding):
        async with self._lock:
            self._buffer.append(finding)
            if len(self._buffer) >= self.batch_size:
                await self._flush_locked()

    async def flush(self):
        async with self._lock:
            await self._flush_locked()

    async def _flush_locked(self):
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        await db_operations.insert_findings(batch, config=self.db_config)
        self.written += len(batch)

    @property
    def pending(self) -> int:
        return len(self._buffer)


class ReportSink:
    """Buffers report rows, validating each against its task's schema."""

    def __init__(self, db_config: DatabaseConfig, registry: TaskRegistry, batch_size: int = 500):
        self.db_config = db_config
        self.registry = registry
        self.batch_size = max(1, batch_size)
        self._buffer: List[ReportRow] = []
        self._lock = asyncio.Lock()
        self.written = 0

    def validate(self, row: ReportRow):
        schema = self.registry.schema(row.task_key)
        if schema is None:
            raise ReportSchemaError(f"Task {row.task_key!r} has no report schema")
        unknown = set(row.values) - set(schema.column_names())
        if unknown:
            raise ReportSchemaError(
                f"Report row for {row.task_key!r} has undeclared columns: {', '.join(sorted(unknown))}"
            )

    async def add(self, row: ReportRow):
        self.validate(row)
        async with self._lock:
            self._buffer.append(row)
            if len(self._buffer) >= self.batch_size:
                await self._flush_locked()

    async def flush(self):
        async with self._lock:
            await self._flush_locked()

    async def _flush_locked(self):
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        await db_operations.insert_report_rows(batch, config=self.db_config)
        self.written += len(batch)


class ProjectContext:
    """What every task sees during one analysis run of a project."""

    def __init__(self, project: Project, findings: FindingSink, reports: ReportSink,
                 accessor: RepositoryAccessor, arena: ProjectArena, config: AnalysisConfig,
                 fetcher: Optional[Fetcher] = None):
        self.project = project
        self.findings = findings
        self.reports = reports
        self.accessor = accessor
        self.arena = arena
        self.config = config
        self.fetcher = fetcher


class PageContext(ProjectContext):
    """Per-page view: the page record plus lazily loaded HTML and links."""

    def __init__(self, page: Page, project: Project, findings: FindingSink, reports: ReportSink,
                 accessor: RepositoryAccessor, arena: ProjectArena, config: AnalysisConfig,
                 fetcher: Optional[Fetcher] = None):
        super().__init__(project, findings, reports, accessor, arena, config, fetcher)
        self.page = page
        self._html: Optional[str] = None
        self._links: Optional[List[Link]] = None

    @property
    def url(self) -> str:
        return self.page.normalized_url

    async def get_html(self) -> str:
        if self._html is None:
            self._html = await self.accessor.load_page_html(self.page.id)
        return self._html

    async def get_links(self) -> List[Link]:
        if self._links is None:
            self._links = await self.accessor.get_links_from(self.page.id)
        return self._links


class AnalysisPipeline:
    """Streams terminal pages of a project through every registered task."""

    def __init__(self, registry: TaskRegistry, db_config: DatabaseConfig,
                 config: AnalysisConfig = None, arenas: ArenaRegistry = None,
                 fetcher: Optional[Fetcher] = None):
        self.registry = registry
        self.db_config = db_config
        self.config = config or AnalysisConfig()
        self.arenas = arenas or ArenaRegistry()
        self.fetcher = fetcher
        if registry.accessor is None:
            registry.attach(RepositoryAccessor(db_config))
        self.accessor = registry.accessor

    async def run(self, project: Project, on_page: Callable[[int, Page], None] = None) -> int:
        """Analyze every Completed or Failed page of ``project``.

        Previous findings and report rows of the project are replaced. Returns
        the number of pages analyzed.
        """
        await db_operations.clear_analysis_results(project.id, config=self.db_config)
        self.cleanup_project(project.id)
        arena = self.arenas.get(project.id)
        linked = await db_operations.resolve_link_targets(project.id, config=self.db_config)
        logger.debug("Resolved %d internal link targets for project %s", linked, project.id)

        findings = FindingSink(self.db_config, self.config.sink_batch_size)
        reports = ReportSink(self.db_config, self.registry, self.config.sink_batch_size)
        tasks = self.registry.tasks()
        concurrency = max(1, self.config.concurrency)
        pending = set()
        analyzed = 0
        started = time.monotonic()
        logger.info("Analyzing project %s with %d tasks", project.name, len(tasks))

        try:
            async for page in self.accessor.iter_pages(project.id, TERMINAL_URL_STATUSES):
                ctx = PageContext(page, project, findings, reports, self.accessor, arena,
                                  self.config, self.fetcher)
                pending.add(asyncio.ensure_future(self._analyze_page(tasks, ctx)))
                if len(pending) >= concurrency:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    for future in done:
                        future.result()
                analyzed += 1
                if on_page:
                    on_page(analyzed, page)
            if pending:
                done, pending = await asyncio.wait(pending)
                for future in done:
                    future.result()

            project_ctx = ProjectContext(project, findings, reports, self.accessor, arena,
                                         self.config, self.fetcher)
            for task in tasks:
                await self._run_task(task, task.finalize_project, project_ctx, "finalize")
        finally:
            for future in pending:
                future.cancel()
            await findings.flush()
            await reports.flush()

        logger.info("Analyzed %d pages of %s in %.1fs (%d findings, %d report rows)",
                    analyzed, project.name, time.monotonic() - started, findings.written, reports.written)
        return analyzed

    async def _analyze_page(self, tasks: List[UrlTask], ctx: PageContext):
        for task in tasks:
            await self._run_task(task, task.execute, ctx, ctx.page.address)

    async def _run_task(self, task: UrlTask, method, ctx: ProjectContext, label: str):
        try:
            await method(ctx)
        except Exception:
            logger.exception("Task %s failed on %s", task.key, label)

    def cleanup_project(self, project_id: int):
        """Run every task's cleanup hook and destroy the project's arena."""
        for task in self.registry.tasks():
            try:
                task.cleanup_project(project_id)
            except Exception:
                logger.exception("Cleanup of task %s failed for project %s", task.key, project_id)
        self.arenas.release(project_id)
