from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Set, Tuple
from urllib.parse import urlsplit

from . import db_operations
from .aggregation import ArenaRegistry
from .checkpoints import (
    checkpoint_create, checkpoint_deactivate, checkpoint_get_active, checkpoint_prune,
)
from .config import CrawlSettings, HttpConfig
from .database import DatabaseConfig
from .fetch import (
    FetchResult, Fetcher, PermanentFetchError, TransientFetchError, backoff_delay, create_fetcher,
    raise_for_outcome,
)
from .frontier import (
    frontier_complete, frontier_dequeue, frontier_enqueue, frontier_reset_in_progress, frontier_stats,
)
from .hashing import generate_content_hashes
from .models import CrawlProgress, PageMetadata, Project, QueueItem, QueueState, UrlStatus
from .parse import (
    SitemapParseError, classify, decode_sitemap_payload, extract_from_sitemap, extract_page_metadata,
    host_key, is_same_site, normalize_url_hardened, resolve_url,
)
from .pipeline import AnalysisPipeline, TaskRegistry
from .robots import RobotsPolicy

logger = logging.getLogger(__name__)

SEED_PRIORITY = 10
LINK_PRIORITY = 0
ASSET_PRIORITY = -5
IDLE_POLL_SECONDS = 0.05
PROGRESS_INTERVAL_SECONDS = 1.0

ProgressCallback = Callable[[CrawlProgress], None]


class HostDelayTracker:
    """Per-host adaptive politeness delay."""

    def __init__(self, http_config: HttpConfig, robots: RobotsPolicy = None):
        self.http_config = http_config
        self.robots = robots
        self.host_delays: Dict[str, float] = {}  # host -> current delay
        self.host_last_request: Dict[str, float] = {}  # host -> timestamp of last request
        self.host_response_counts: Dict[str, Dict[int, int]] = {}  # host -> {status_code: count}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get_delay_for_host(self, host: str) -> float:
        """Get the current delay for a host, respecting robots.txt crawl-delay if enabled."""
        adaptive_delay = self.host_delays.get(host, self.http_config.delay_between_requests)

        if self.http_config.respect_robots_txt and self.robots is not None:
            robots_delay = self.robots.get_crawl_delay(host)
            if robots_delay is not None:
                return max(robots_delay, adaptive_delay)

        return adaptive_delay

    def update_delay_for_host(self, host: str, status_code: int):
        """Update delay for a host based on response status."""
        if host not in self.host_delays:
            self.host_delays[host] = self.http_config.delay_between_requests

        counts = self.host_response_counts.setdefault(host, {})
        counts[status_code] = counts.get(status_code, 0) + 1

        current_delay = self.host_delays[host]

        if status_code in (429, 502, 503, 504):  # Rate limiting or server errors
            new_delay = min(current_delay * self.http_config.delay_increase_factor * 2, self.http_config.max_delay)
            self.host_delays[host] = new_delay
            logger.info("Increased delay for %s to %.2fs (status: %s)", host, new_delay, status_code)
        elif status_code in (408, 420, 423, 451) or status_code >= 500:
            new_delay = min(current_delay * self.http_config.delay_increase_factor, self.http_config.max_delay)
            self.host_delays[host] = new_delay
            logger.info("Increased delay for %s to %.2fs (status: %s)", host, new_delay, status_code)
        elif status_code in (200, 304) and current_delay > self.http_config.delay_between_requests:
            new_delay = max(current_delay * self.http_config.delay_decrease_factor,
                            self.http_config.delay_between_requests, self.http_config.min_delay)
            self.host_delays[host] = new_delay
            if new_delay != current_delay:
                logger.debug("Decreased delay for %s to %.2fs", host, new_delay)

    async def wait_for_host(self, host: str):
        """Wait for the appropriate delay before making a request to a host."""
        if not self.http_config.enable_adaptive_delay:
            if self.http_config.delay_between_requests > 0:
                await asyncio.sleep(self.http_config.delay_between_requests)
            return

        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            last_request_time = self.host_last_request.get(host, 0)
            wait_time = max(0.0, self.get_delay_for_host(host) - (time.time() - last_request_time))
            if wait_time > 0:
                await asyncio.sleep(wait_time)
            self.host_last_request[host] = time.time()

    def get_stats(self) -> Dict[str, Dict]:
        """Get delay statistics for all hosts."""
        return {
            host: {
                'current_delay': delay,
                'response_counts': self.host_response_counts.get(host, {}),
                'last_request': self.host_last_request.get(host, 0),
            }
            for host, delay in self.host_delays.items()
        }


class _RunState:
    """Counters for one crawl run, shared by its workers."""

    def __init__(self, project: Project, settings: CrawlSettings, base_crawled: int = 0,
                 base_errors: int = 0, base_elapsed: float = 0.0):
        self.project = project
        self.settings = settings
        self.started = time.monotonic()
        self.base_elapsed = base_elapsed
        self.crawled = base_crawled
        self.errors = base_errors
        self.since_checkpoint = 0
        self.active = 0
        self.claimed = 0
        self.finished_before = 0
        self.last_url: Optional[str] = None
        self.seen: Set[str] = set()

    @property
    def elapsed(self) -> float:
        return self.base_elapsed + (time.monotonic() - self.started)

    def budget_exhausted(self) -> bool:
        max_pages = self.settings.limits.max_pages
        return bool(max_pages) and self.finished_before + self.claimed >= max_pages


class CrawlEngine:
    """Drives a project through the crawl phase and the analysis phase.

    Workers share one queue in the database, so a crawl can be paused,
    killed or resumed at any point: items a dead process left InProgress
    are put back on the queue on the next start or resume.
    """

    def __init__(self, db_config: DatabaseConfig, settings: CrawlSettings = None,
                 fetcher: Fetcher = None, registry: TaskRegistry = None,
                 on_progress: ProgressCallback = None):
        self.db_config = db_config
        self.settings = settings or CrawlSettings()
        self.registry = registry
        self.on_progress = on_progress
        self.arenas = ArenaRegistry()
        self._fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self._pause = asyncio.Event()
        self._progress = CrawlProgress()
        self._last_progress_emit = 0.0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_fetcher and self._fetcher is not None:
            await self._fetcher.aclose()
            self._fetcher = None

    @property
    def fetcher(self) -> Fetcher:
        if self._fetcher is None:
            self._fetcher = create_fetcher(self.settings.http)
        return self._fetcher

    # ------------------ operational surface ------------------

    async def start_crawl(self, project_id: int, settings: CrawlSettings = None) -> CrawlProgress:
        """Seed the queue from the project's base URL and crawl until done or paused.

        An active checkpoint with work left on the queue means the previous
        run died; the crawl then continues from the queue instead of reseeding.
        """
        if settings is not None:
            self.settings = settings
        project = await self._get_project(project_id)
        self._pause.clear()

        checkpoint = await checkpoint_get_active(project.id, config=self.db_config)
        stats = await frontier_stats(project.id, config=self.db_config)
        pending = stats[QueueState.QUEUED] + stats[QueueState.IN_PROGRESS]
        if checkpoint is not None and pending:
            logger.warning("Project %s has an active checkpoint from an interrupted crawl, resuming", project.name)
            return await self.resume_crawl(project.id)

        state = _RunState(project, self.settings)
        await self._seed(project, state)
        await checkpoint_create(project.id, await self._build_progress(state), config=self.db_config)
        return await self._run(state)

    async def resume_crawl(self, project_id: int) -> CrawlProgress:
        """Continue a paused or crashed crawl from its queue and last checkpoint."""
        project = await self._get_project(project_id)
        self._pause.clear()
        checkpoint = await checkpoint_get_active(project.id, config=self.db_config)
        recovered = await frontier_reset_in_progress(project.id, config=self.db_config)
        if recovered:
            logger.info("Re-queued %d URLs left in progress", recovered)
        if checkpoint is not None:
            logger.info("Resuming %s from checkpoint %d (%d URLs crawled)", project.name, checkpoint.id,
                        checkpoint.urls_crawled)
            state = _RunState(project, self.settings, checkpoint.urls_crawled, checkpoint.error_count,
                              checkpoint.elapsed_seconds)
        else:
            state = _RunState(project, self.settings)
        return await self._run(state)

    async def pause_crawl(self) -> CrawlProgress:
        """Stop dequeuing. In-flight fetches finish and an active checkpoint is written."""
        self.request_pause()
        return replace(self._progress)

    def request_pause(self):
        if not self._pause.is_set():
            logger.info("Pause requested, finishing in-flight requests")
        self._pause.set()

    @property
    def paused(self) -> bool:
        return self._pause.is_set()

    async def run_analysis_phase(self, project_id: int) -> CrawlProgress:
        """Run every registered task over every crawled page of the project."""
        project = await self._get_project(project_id)
        if self.registry is None:
            from .tasks.defaults import register_default_tasks
            self.registry = register_default_tasks(TaskRegistry())
        analysis = self.settings.analysis
        wants_fetcher = analysis.check_domain_variants or analysis.check_robots_txt
        fetcher = self.fetcher if wants_fetcher else self._fetcher
        pipeline = AnalysisPipeline(self.registry, self.db_config, analysis, self.arenas, fetcher)
        started = time.monotonic()
        progress = await self._build_progress(_RunState(project, self.settings))

        def on_page(count, page):
            progress.pages_analyzed = count
            progress.last_crawled_url = page.address
            self._emit_progress(progress)

        try:
            progress.pages_analyzed = await pipeline.run(project, on_page=on_page)
        finally:
            pipeline.cleanup_project(project.id)
        progress.elapsed_seconds = time.monotonic() - started
        self._emit_progress(progress, force=True)
        return progress

    # ------------------ crawl loop ------------------

    async def _get_project(self, project_id: int) -> Project:
        project = await db_operations.get_project(project_id, config=self.db_config)
        if project is None:
            raise ValueError(f"Unknown project id: {project_id}")
        return project

    async def _seed(self, project: Project, state: _RunState):
        start = normalize_url_hardened(project.base_url)
        await self._discover(state, start, depth=0, parent_id=None, priority=SEED_PRIORITY, check_limits=False)
        if state.settings.limits.seed_sitemap:
            parts = urlsplit(start)
            sitemap = f"{parts.scheme}://{parts.netloc}/sitemap.xml"
            await self._discover(state, sitemap, depth=0, parent_id=None, priority=SEED_PRIORITY - 1,
                                 check_limits=False)

    def _within_limits(self, state: _RunState, url: str, depth: int) -> bool:
        limits = state.settings.limits
        if limits.max_depth is not None and depth > limits.max_depth:
            return False
        if limits.same_host_only and not is_same_site(url, state.project.base_url):
            return False
        path = urlsplit(url).path
        return not any(path.startswith(prefix) for prefix in limits.path_exclude_prefixes)

    async def _discover(self, state: _RunState, url: str, depth: int, parent_id: Optional[int],
                        priority: int = LINK_PRIORITY, check_limits: bool = True):
        if url in state.seen:
            return
        if check_limits and not self._within_limits(state, url, depth):
            return
        state.seen.add(url)
        await db_operations.upsert_page(state.project.id, url, url, depth, parent_id, config=self.db_config)
        await frontier_enqueue(state.project.id, url, priority, depth, host_key(url), config=self.db_config)

    async def _run(self, state: _RunState) -> CrawlProgress:
        http = state.settings.http
        robots = RobotsPolicy(http)
        delays = HostDelayTracker(http, robots)
        stats = await frontier_stats(state.project.id, config=self.db_config)
        # Items finished by earlier runs of this crawl count against max_pages
        state.finished_before = stats[QueueState.COMPLETED] + stats[QueueState.FAILED]
        workers = [
            asyncio.ensure_future(self._worker(n, state, robots, delays))
            for n in range(max(1, http.max_concurrency))
        ]
        logger.info("Crawling %s with %d workers", state.project.base_url, len(workers))
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()

        progress = await self._build_progress(state)
        if self._pause.is_set():
            await checkpoint_create(state.project.id, progress, config=self.db_config)
            logger.info("Crawl paused after %d URLs, %d still queued", progress.urls_crawled, progress.queued)
        else:
            await checkpoint_deactivate(state.project.id, config=self.db_config)
            await checkpoint_prune(state.project.id, state.settings.limits.checkpoint_keep, config=self.db_config)
            logger.info("Crawl finished: %d URLs crawled, %d errors in %.1fs",
                        progress.urls_crawled, progress.error_count, progress.elapsed_seconds)
        self._emit_progress(progress, force=True)
        return progress

    async def _worker(self, worker_id: int, state: _RunState, robots: RobotsPolicy, delays: HostDelayTracker):
        while not self._pause.is_set() and not state.budget_exhausted():
            # Counted as active while dequeuing so idle workers never exit
            # while another worker may still produce new URLs. The budget slot
            # is reserved before the await so workers cannot overshoot max_pages.
            state.active += 1
            state.claimed += 1
            item = await frontier_dequeue(state.project.id, config=self.db_config)
            if item is None:
                state.active -= 1
                state.claimed -= 1
                if state.active == 0:
                    return
                await asyncio.sleep(IDLE_POLL_SECONDS)
                continue

            try:
                success = await self._process(item, state, robots, delays)
            except Exception:
                logger.exception("Worker %d failed processing %s", worker_id, item.address)
                success = False
            finally:
                state.active -= 1

            await frontier_complete(item, success, config=self.db_config)
            state.crawled += 1
            state.last_url = item.address
            if not success:
                state.errors += 1
            else:
                state.since_checkpoint += 1
                interval = state.settings.limits.checkpoint_interval
                if interval and state.since_checkpoint >= interval:
                    state.since_checkpoint = 0
                    await checkpoint_create(state.project.id, await self._build_progress(state),
                                            config=self.db_config)
            if self.on_progress is not None and self._progress_due():
                self._emit_progress(await self._build_progress(state))

    async def _fetch(self, url: str, http: HttpConfig, delays: HostDelayTracker) -> Tuple[FetchResult, bool]:
        """Fetch with per-host politeness, retrying transient failures with backoff."""
        host = host_key(url)
        attempt = 0
        while True:
            await delays.wait_for_host(host)
            result = await self.fetcher.fetch(url)
            if result.status:
                delays.update_delay_for_host(host, result.status)
            try:
                raise_for_outcome(result)
                return result, True
            except PermanentFetchError as e:
                logger.debug("Permanent failure: %s", e)
                return result, False
            except TransientFetchError as e:
                if attempt >= http.max_retries:
                    logger.warning("Giving up after %d attempts: %s", attempt + 1, e)
                    return result, False
                delay = backoff_delay(http, attempt)
                attempt += 1
                logger.info("Transient failure (%s), retry %d/%d in %.1fs", e, attempt, http.max_retries, delay)
                await asyncio.sleep(delay)

    async def _process(self, item: QueueItem, state: _RunState, robots: RobotsPolicy,
                       delays: HostDelayTracker) -> bool:
        url = item.address
        project = state.project
        page_id, _ = await db_operations.upsert_page(project.id, url, url, item.depth, config=self.db_config)
        await db_operations.set_page_status(page_id, UrlStatus.CRAWLING, config=self.db_config)
        try:
            return await self._crawl_page(page_id, item, state, robots, delays)
        except Exception as e:
            # Page and queue item both end Failed
            await db_operations.set_page_status(page_id, UrlStatus.FAILED, f"{type(e).__name__}: {e}",
                                                config=self.db_config)
            raise

    async def _crawl_page(self, page_id: int, item: QueueItem, state: _RunState, robots: RobotsPolicy,
                          delays: HostDelayTracker) -> bool:
        url = item.address
        if not await robots.is_allowed(url):
            logger.debug("Blocked by robots.txt: %s", url)
            await db_operations.store_crawl_result(
                page_id, status=UrlStatus.COMPLETED, http_status=None, content_type=None, headers={},
                html="", metadata=PageMetadata(), hashes={}, robots_allowed=False, config=self.db_config,
            )
            return True

        result, success = await self._fetch(url, state.settings.http, delays)
        logger.debug("[%s] %s (depth: %d)", result.status or result.error_kind, url, item.depth)

        kind = classify(result.content_type, url)
        metadata = PageMetadata()
        hashes: Dict[str, object] = {}
        body = ""
        redirect_target = None
        discovered = []

        if 300 <= result.status < 400:
            redirect_target = resolve_url(url, result.location) if result.location else None
            if redirect_target:
                discovered.append((redirect_target, item.depth, LINK_PRIORITY))
        elif success and kind == "sitemap":
            try:
                body = decode_sitemap_payload(result.content or result.text.encode("utf-8"))
                _, locations = extract_from_sitemap(body)
            except SitemapParseError as e:
                logger.info("Unreadable sitemap %s: %s", url, e)
                locations = []
            for location in locations:
                target = resolve_url(url, location)
                if target:
                    discovered.append((target, item.depth + 1, LINK_PRIORITY))
        elif success and kind == "html":
            body = result.text
            metadata = extract_page_metadata(body, url, result.headers)
            hashes = generate_content_hashes(body)
            for link in metadata.links:
                priority = LINK_PRIORITY if link.link_type == "hyperlink" else ASSET_PRIORITY
                discovered.append((link.to_url, item.depth + 1, priority))
            for hreflang in metadata.hreflangs:
                discovered.append((hreflang.href, item.depth + 1, LINK_PRIORITY))

        await db_operations.store_crawl_result(
            page_id,
            status=UrlStatus.COMPLETED if success else UrlStatus.FAILED,
            http_status=result.status or None,
            content_type=result.content_type or None,
            headers=result.headers,
            html=body,
            metadata=metadata,
            hashes=hashes,
            redirect_target=redirect_target,
            error=result.error,
            config=self.db_config,
        )

        for target, depth, priority in discovered:
            await self._discover(state, target, depth, page_id, priority)
        return success

    # ------------------ progress ------------------

    async def _build_progress(self, state: _RunState) -> CrawlProgress:
        stats = await frontier_stats(state.project.id, config=self.db_config)
        self._progress = CrawlProgress(
            queued=stats[QueueState.QUEUED],
            in_progress=stats[QueueState.IN_PROGRESS],
            completed=stats[QueueState.COMPLETED],
            failed=stats[QueueState.FAILED],
            elapsed_seconds=state.elapsed,
            urls_crawled=state.crawled,
            error_count=state.errors,
            last_crawled_url=state.last_url,
        )
        return self._progress

    def _progress_due(self) -> bool:
        return time.monotonic() - self._last_progress_emit >= PROGRESS_INTERVAL_SECONDS

    def _emit_progress(self, progress: CrawlProgress, force: bool = False):
        if self.on_progress is None or not (force or self._progress_due()):
            return
        self._last_progress_emit = time.monotonic()
        try:
            self.on_progress(replace(progress))
        except Exception:
            logger.exception("Progress callback failed")
