import argparse, asyncio, logging, os, signal, sys
from urllib.parse import urlsplit

from src.seocrawler.config import (
    AuthConfig, CrawlLimits, CrawlSettings, HttpConfig, get_database_config, get_user_agent,
)
from src.seocrawler.database import close_pools, set_global_config
from src.seocrawler.db_operations import (
    count_pages, create_project, delete_project, get_findings, get_project_by_name, init_db, summarize_findings,
)
from src.seocrawler.engine import CrawlEngine
from src.seocrawler.frontier import frontier_stats
from src.seocrawler.checkpoints import checkpoint_get_active
from src.seocrawler.models import QueueState, Severity, UrlStatus


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Persistent async SEO crawler: crawl a site, then analyze it for SEO issues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s crawl https://example.com
  %(prog)s crawl https://example.com --max-pages 500 --concurrency 10
  %(prog)s resume example.com
  %(prog)s analyze example.com
  %(prog)s findings example.com --task duplicate_content
        """
    )
    p.add_argument("--log-level", default="WARNING",
                   choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   help="Logging level (default: WARNING)")
    p.add_argument("--db-backend", choices=["sqlite", "postgresql"], default=None,
                   help="Database backend to use (default: sqlite)")
    p.add_argument("--sqlite-path", type=str, default=None,
                   help="SQLite database file (default: ./data/seo.db)")
    p.add_argument("--postgres-host", type=str, default=None, help="PostgreSQL host (default: localhost)")
    p.add_argument("--postgres-port", type=int, default=None, help="PostgreSQL port (default: 5432)")
    p.add_argument("--postgres-db", type=str, default=None, help="PostgreSQL database name")
    p.add_argument("--postgres-user", type=str, default=None, help="PostgreSQL username")
    p.add_argument("--postgres-password", type=str, default=None, help="PostgreSQL password")

    sub = p.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Create a project for a site and crawl it")
    crawl.add_argument("start", help="Base URL of the site")
    crawl.add_argument("--name", type=str, default=None, help="Project name (default: the site's host)")
    _add_crawl_options(crawl)
    crawl.add_argument("--no-analysis", action="store_true", help="Stop after the crawl phase")

    resume = sub.add_parser("resume", help="Resume a paused or interrupted crawl")
    resume.add_argument("name", help="Project name")
    _add_crawl_options(resume)
    resume.add_argument("--no-analysis", action="store_true", help="Stop after the crawl phase")

    analyze = sub.add_parser("analyze", help="Re-run the analysis phase over crawled pages")
    analyze.add_argument("name", help="Project name")
    analyze.add_argument("--concurrency", type=int, default=None, help="Pages analyzed concurrently")
    analyze.add_argument("--no-domain-variants", action="store_true",
                         help="Skip fetching the http/https and www variants of the homepage")
    analyze.add_argument("--no-robots-txt", action="store_true", help="Skip checking that robots.txt exists")

    status = sub.add_parser("status", help="Show queue state and the active checkpoint")
    status.add_argument("name", help="Project name")

    findings = sub.add_parser("findings", help="List findings of a project")
    findings.add_argument("name", help="Project name")
    findings.add_argument("--task", type=str, default=None, help="Only findings of this task key")
    findings.add_argument("--code", type=str, default=None, help="Only findings with this code")
    findings.add_argument("--summary", action="store_true", help="Counts per finding code instead of a list")

    delete = sub.add_parser("delete", help="Delete a project with its pages, queue, checkpoints and findings")
    delete.add_argument("name", help="Project name")
    return p


def _add_crawl_options(p: argparse.ArgumentParser):
    # Crawling behavior
    p.add_argument("--max-pages", type=int, default=None, help="Maximum pages to crawl (default: no limit)")
    p.add_argument("--max-depth", type=int, default=None, help="Maximum crawl depth (default: 3)")
    p.add_argument("--path-exclude", type=str, default="",
                   help="Comma-separated path prefixes to skip (e.g., '/news/,/blog')")
    p.add_argument("--offsite", action="store_true", help="Allow offsite traversal (default: same site only)")
    p.add_argument("--no-sitemap", action="store_true", help="Do not seed /sitemap.xml")
    p.add_argument("--checkpoint-interval", type=int, default=None,
                   help="Pages between checkpoints (default: 50)")

    # User agent options
    p.add_argument("--user-agent", choices=["default", "chrome", "firefox", "googlebot", "mobile", "random"],
                   default="default", help="User agent type to use (default: default)")
    p.add_argument("--custom-ua", type=str, help="Custom user agent string (overrides --user-agent)")

    # HTTP configuration
    p.add_argument("--timeout", type=int, default=None, help="Request timeout in seconds (default: 20)")
    p.add_argument("--concurrency", type=int, default=None, help="Maximum concurrent requests (default: 5)")
    p.add_argument("--delay", type=float, default=None, help="Delay between requests in seconds (default: 0.2)")
    p.add_argument("--ignore-robots", action="store_true", help="Ignore robots.txt")
    p.add_argument("--max-retries", type=int, default=None, help="Retries for transient failures (default: 3)")
    p.add_argument("--retry-delay", type=float, default=None, help="Initial retry delay in seconds (default: 1.0)")
    p.add_argument("--retry-backoff", type=float, default=None, help="Backoff factor for retry delays (default: 2.0)")
    p.add_argument("--no-http2", action="store_true", help="Disable HTTP/2 support (use HTTP/1.1)")
    p.add_argument("--no-brotli", action="store_true", help="Disable Brotli compression support")
    p.add_argument("--http-backend", choices=["auto", "aiohttp", "httpx"], default=None,
                   help="HTTP client backend. 'auto' selects httpx when HTTP/2 is enabled, otherwise aiohttp.")
    p.add_argument("--no-adaptive-delay", action="store_true", help="Disable adaptive delay (use fixed delay only)")

    # Authentication configuration
    p.add_argument("--auth-username", type=str, default="", help="Username for HTTP basic authentication")
    p.add_argument("--auth-password", type=str, default="", help="Password for HTTP basic authentication")
    p.add_argument("--auth-type", choices=["basic", "bearer", "api_key"], default="basic",
                   help="Authentication type (default: basic)")
    p.add_argument("--auth-domain", type=str, default="", help="Restrict authentication to a specific domain")
    p.add_argument("--auth-token", type=str, default="", help="Token for bearer/api_key authentication")
    p.add_argument("--auth-custom-headers", type=str, default="",
                   help="Custom headers in format 'Header1:Value1,Header2:Value2'")


def build_settings(args) -> CrawlSettings:
    settings = CrawlSettings()
    if args.command == "analyze" and args.concurrency is not None:
        settings.analysis.concurrency = args.concurrency
    if getattr(args, "no_domain_variants", False):
        settings.analysis.check_domain_variants = False
    if getattr(args, "no_robots_txt", False):
        settings.analysis.check_robots_txt = False
    settings.run_analysis = not getattr(args, "no_analysis", False)
    if args.command not in ("crawl", "resume"):
        return settings

    excludes = []
    for prefix in (p.strip() for p in args.path_exclude.split(",")):
        if prefix:
            excludes.append(prefix if prefix.startswith("/") else "/" + prefix)
    default_limits = CrawlLimits()
    settings.limits = CrawlLimits(
        max_pages=args.max_pages if args.max_pages is not None else default_limits.max_pages,
        max_depth=args.max_depth if args.max_depth is not None else default_limits.max_depth,
        same_host_only=not args.offsite,
        path_exclude_prefixes=excludes,
        seed_sitemap=not args.no_sitemap,
        checkpoint_interval=(args.checkpoint_interval if args.checkpoint_interval is not None
                             else default_limits.checkpoint_interval),
    )

    auth_config = None
    if (args.auth_username and args.auth_password) or args.auth_token or args.auth_custom_headers:
        custom_headers = {}
        for header_pair in args.auth_custom_headers.split(","):
            if ":" in header_pair:
                header_name, header_value = header_pair.split(":", 1)
                custom_headers[header_name.strip()] = header_value.strip()
        auth_config = AuthConfig(
            username=args.auth_username,
            password=args.auth_password,
            auth_type=args.auth_type,
            domain=args.auth_domain,
            token=args.auth_token,
            custom_headers=custom_headers or None,
        )

    default_http_cfg = HttpConfig()
    settings.http = HttpConfig(
        user_agent=args.custom_ua or get_user_agent(args.user_agent),
        timeout=args.timeout if args.timeout is not None else default_http_cfg.timeout,
        max_concurrency=args.concurrency if args.concurrency is not None else default_http_cfg.max_concurrency,
        delay_between_requests=args.delay if args.delay is not None else default_http_cfg.delay_between_requests,
        http_backend=args.http_backend or default_http_cfg.http_backend,
        respect_robots_txt=not args.ignore_robots,
        enable_http2=not args.no_http2,
        enable_brotli=not args.no_brotli,
        max_retries=args.max_retries if args.max_retries is not None else default_http_cfg.max_retries,
        retry_delay=args.retry_delay if args.retry_delay is not None else default_http_cfg.retry_delay,
        retry_backoff_factor=(args.retry_backoff if args.retry_backoff is not None
                              else default_http_cfg.retry_backoff_factor),
        enable_adaptive_delay=not args.no_adaptive_delay,
        auth=auth_config,
    )
    return settings


def configure_database(args):
    # Environment overrides are read by get_database_config
    overrides = {
        "DB_BACKEND": args.db_backend,
        "POSTGRES_HOST": args.postgres_host,
        "POSTGRES_PORT": str(args.postgres_port) if args.postgres_port else None,
        "POSTGRES_DB": args.postgres_db,
        "POSTGRES_USER": args.postgres_user,
        "POSTGRES_PASSWORD": args.postgres_password,
    }
    for name, value in overrides.items():
        if value:
            os.environ[f"SEOCRAWLER_{name}"] = value
    db_config = get_database_config()
    if args.sqlite_path and not db_config.is_postgres:
        db_config.sqlite_path = args.sqlite_path
    set_global_config(db_config)
    return db_config


def print_progress(progress):
    if progress.pages_analyzed:
        print(f"  analyzed {progress.pages_analyzed} pages", end="\r", flush=True)
        return
    print(f"  crawled {progress.urls_crawled} | queued {progress.queued} | failed {progress.failed} "
          f"| errors {progress.error_count} | {progress.elapsed_seconds:.0f}s", end="\r", flush=True)


async def _require_project(name, db_config):
    project = await get_project_by_name(name, config=db_config)
    if project is None:
        print(f"Error: no project named {name!r}")
        sys.exit(1)
    return project


async def run_crawl(args, db_config, settings):
    if args.command == "crawl":
        name = args.name or (urlsplit(args.start).hostname or args.start)
        project = await create_project(name, args.start, config=db_config)
        print(f"Project {project.name} ({project.base_url})")
    else:
        project = await _require_project(args.name, db_config)

    async with CrawlEngine(db_config, settings, on_progress=print_progress) as engine:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, engine.request_pause)
        except NotImplementedError:
            pass  # Windows event loops

        if args.command == "crawl":
            progress = await engine.start_crawl(project.id)
        else:
            progress = await engine.resume_crawl(project.id)
        print()
        if engine.paused:
            print(f"Paused after {progress.urls_crawled} URLs, {progress.queued} still queued.")
            print(f"Resume with: {sys.argv[0]} resume {project.name}")
            return
        print(f"Crawled {progress.urls_crawled} URLs ({progress.error_count} errors) "
              f"in {progress.elapsed_seconds:.1f}s")

        if settings.run_analysis:
            progress = await engine.run_analysis_phase(project.id)
            print()
            print(f"Analyzed {progress.pages_analyzed} pages")
            await show_summary(project, db_config)


async def run_analyze(args, db_config, settings):
    project = await _require_project(args.name, db_config)
    async with CrawlEngine(db_config, settings, on_progress=print_progress) as engine:
        progress = await engine.run_analysis_phase(project.id)
    print()
    print(f"Analyzed {progress.pages_analyzed} pages in {progress.elapsed_seconds:.1f}s")
    await show_summary(project, db_config)


async def show_status(args, db_config):
    project = await _require_project(args.name, db_config)
    stats = await frontier_stats(project.id, config=db_config)
    print(f"Project {project.name} ({project.base_url})")
    print("Queue:")
    for state in QueueState:
        print(f"  {state.name.lower():<12} {stats[state]}")
    print("Pages:")
    for status in UrlStatus:
        print(f"  {status.name.lower():<12} {await count_pages(project.id, [status], config=db_config)}")
    checkpoint = await checkpoint_get_active(project.id, config=db_config)
    if checkpoint:
        print(f"  active checkpoint #{checkpoint.id}: {checkpoint.urls_crawled} URLs crawled, "
              f"last {checkpoint.last_crawled_url}")


async def remove_project(args, db_config):
    project = await _require_project(args.name, db_config)
    pages = await count_pages(project.id, config=db_config)
    await delete_project(project.id, config=db_config)
    print(f"Deleted project {project.name} and its {pages} pages")


async def show_summary(project, db_config):
    rows = await summarize_findings(project.id, config=db_config)
    if not rows:
        print("No findings.")
        return
    print(f"{'severity':<8} {'task':<20} {'code':<40} count")
    for task_key, code, severity, count in rows:
        print(f"{Severity(severity).name:<8} {task_key:<20} {code:<40} {count}")


async def show_findings(args, db_config):
    project = await _require_project(args.name, db_config)
    if args.summary:
        await show_summary(project, db_config)
        return
    for finding in await get_findings(project.id, args.task, args.code, config=db_config):
        url = finding.data.get("url", "")
        print(f"[{finding.severity.name}] {finding.task_key}/{finding.code}: {finding.message} {url}".rstrip())


async def main(args):
    db_config = configure_database(args)
    await init_db(db_config)
    try:
        if args.command in ("crawl", "resume"):
            await run_crawl(args, db_config, build_settings(args))
        elif args.command == "analyze":
            await run_analyze(args, db_config, build_settings(args))
        elif args.command == "status":
            await show_status(args, db_config)
        elif args.command == "findings":
            await show_findings(args, db_config)
        elif args.command == "delete":
            await remove_project(args, db_config)
    finally:
        await close_pools()


if __name__ == "__main__":
    args = build_parser().parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main(args))
