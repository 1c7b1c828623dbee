from __future__ import annotations

from ..models import Severity
from ..pipeline import PageContext, ProjectContext, UrlTask

TITLE_GROUP = "titles"
DESCRIPTION_GROUP = "descriptions"


class TitlesMetaTask(UrlTask):
    """Title, meta description and language checks for indexable HTML pages.

    Duplicates are collected per project and reported once per group when the
    project is finalized.
    """

    key = "titles_meta"
    display_name = "Titles & Meta"
    priority = 30

    async def execute(self, ctx: PageContext):
        page = ctx.page
        if not (page.is_html and page.is_success):
            return
        cfg = ctx.config

        title = (page.title or "").strip()
        if not title:
            await self.emit(ctx, Severity.ERROR, "MISSING_TITLE", "Page is missing a title tag", url=page.address)
        else:
            length = len(title)
            if length < cfg.title_min_length:
                await self.emit(ctx, Severity.WARNING, "TITLE_TOO_SHORT",
                                f"Title is too short ({length} chars, recommended: {cfg.title_min_length}+)",
                                url=page.address, title=title, length=length)
            elif length > cfg.title_warning_length:
                await self.emit(ctx, Severity.WARNING, "TITLE_TOO_LONG",
                                f"Title is too long ({length} chars, will be truncated in search results)",
                                url=page.address, title=title, length=length)
            elif length > cfg.title_max_length:
                await self.emit(ctx, Severity.WARNING, "TITLE_LONG",
                                f"Title is long ({length} chars, recommended: <{cfg.title_max_length})",
                                url=page.address, title=title, length=length)
            if not page.robots_noindex:
                ctx.arena.add_to_group(TITLE_GROUP, title.lower(), (page.id, page.address))

        description = (page.meta_description or "").strip()
        if not description:
            await self.emit(ctx, Severity.WARNING, "MISSING_DESCRIPTION",
                            "Page is missing a meta description", url=page.address)
        else:
            length = len(description)
            if length < cfg.description_min_length:
                await self.emit(ctx, Severity.WARNING, "DESCRIPTION_TOO_SHORT",
                                f"Meta description is too short ({length} chars)",
                                url=page.address, description=description, length=length)
            elif length > cfg.description_warning_length:
                await self.emit(ctx, Severity.WARNING, "DESCRIPTION_TOO_LONG",
                                f"Meta description is too long ({length} chars)",
                                url=page.address, description=description, length=length)
            elif length > cfg.description_max_length:
                await self.emit(ctx, Severity.INFO, "DESCRIPTION_LONG",
                                f"Meta description is long ({length} chars, recommended: <{cfg.description_max_length})",
                                url=page.address, description=description, length=length)
            if not page.robots_noindex:
                ctx.arena.add_to_group(DESCRIPTION_GROUP, description.lower(), (page.id, page.address))

        if not page.html_lang:
            await self.emit(ctx, Severity.WARNING, "MISSING_LANGUAGE",
                            "Page has no lang attribute on the html element", url=page.address)

        if page.has_robots_conflict:
            await self.emit(ctx, Severity.WARNING, "ROBOTS_CONFLICT",
                            "Meta robots and X-Robots-Tag disagree on indexing",
                            url=page.address, x_robots_tag=page.x_robots_tag)

    async def finalize_project(self, ctx: ProjectContext):
        for group, code, label, severity in (
            (TITLE_GROUP, "DUPLICATE_TITLE", "Title", Severity.ERROR),
            (DESCRIPTION_GROUP, "DUPLICATE_DESCRIPTION", "Meta description", Severity.WARNING),
        ):
            for value in ctx.arena.keys(group):
                members = ctx.arena.group_snapshot(group, value)
                if len(members) < 2:
                    continue
                first_id = members[0][0]
                urls = [address for _, address in members]
                await self.emit(ctx, severity, code,
                                f"{label} \"{value}\" is used on {len(urls)} pages",
                                page_id=first_id, value=value, urls=urls, count=len(urls))
