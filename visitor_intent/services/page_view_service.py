import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import case, literal, update
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.clock import seconds_between, utcnow
from visitor_intent.core.errors import NotFoundError, ValidationError
from visitor_intent.models.tracking import PageView, VisitorSession
from visitor_intent.services.session_service import session_service


logger = logging.getLogger(__name__)


# Order matters: the first category whose keyword appears in the path wins.
PAGE_TYPE_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("services", ("services", "servicios")),
    ("portfolio", ("portfolio", "portafolio", "work", "projects")),
    ("about", ("about", "about-us", "nosotros")),
    ("contact", ("contact", "contacto", "get-started")),
    ("blog", ("blog", "news", "articles")),
    ("pricing", ("pricing", "precios", "plans")),
    ("industries", ("industries", "industrias")),
    ("privacy", ("privacy", "privacidad", "terms")),
)

HOME_PATHS = {"", "es"}

READ_CONTENT_MIN_SECONDS = 30
READ_CONTENT_MIN_SCROLL = 50
BOUNCE_MAX_SECONDS = 10


def determine_page_type(path: Optional[str]) -> str:
    normalized = (path or "").strip().lower().strip("/")
    if normalized in HOME_PATHS:
        return "home"

    for page_type, keywords in PAGE_TYPE_PATTERNS:
        for keyword in keywords:
            if keyword in normalized:
                return page_type
    return "other"


def _non_negative_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected an integer, got {value!r}")


def _scroll_percent(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return min(max(float(value), 0.0), 100.0)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected a scroll percentage, got {value!r}")


class PageViewService:
    async def get_for_session(
        self,
        session: AsyncSession,
        page_view_id: int,
        visitor_session: VisitorSession,
    ) -> PageView:
        row = (
            await session.exec(
                select(PageView).where(
                    and_(
                        PageView.id == page_view_id,
                        PageView.visitor_session_id == visitor_session.id,
                    )
                )
            )
        ).first()
        if row is None:
            raise NotFoundError("Page view not found")
        return row

    async def get_open_page_view(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
    ) -> Optional[PageView]:
        return (
            await session.exec(
                select(PageView)
                .where(
                    and_(
                        PageView.visitor_session_id == visitor_session.id,
                        PageView.exited_at.is_(None),
                    )
                )
                .order_by(PageView.entered_at.desc(), PageView.id.desc())
            )
        ).first()

    async def list_for_session(self, session: AsyncSession, visitor_session: VisitorSession) -> list[PageView]:
        rows = await session.exec(
            select(PageView)
            .where(PageView.visitor_session_id == visitor_session.id)
            .order_by(PageView.entered_at.asc(), PageView.id.asc())
        )
        return rows.all()

    async def open_page_view(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        url: str,
        path: str,
        previous_url: Optional[str] = None,
        now: Optional[datetime] = None,
        **meta: Any,
    ) -> PageView:
        # Imported here to keep the page view <-> event modules acyclic.
        from visitor_intent.services.event_service import EventType, event_service

        if not url or path is None:
            raise ValidationError("url and path are required")
        if visitor_session.is_ended:
            raise ValidationError("Session has ended; start a new session")

        now = now or utcnow()
        previous = await self.get_open_page_view(session, visitor_session)
        if previous is not None:
            await self.mark_as_exit(session, previous, exit_url=url, now=now)

        page_type = determine_page_type(path)
        row = PageView(
            visitor_session_id=visitor_session.id,
            url=url[:500],
            path=path[:500],
            page_title=(meta.get("title") or None),
            page_type=page_type,
            query_params_json=json.dumps(meta.get("query_params") or {}, ensure_ascii=True),
            previous_url=previous_url,
            previous_path=meta.get("previous_path"),
            viewport_width=meta.get("viewport_width"),
            viewport_height=meta.get("viewport_height"),
            document_height=meta.get("document_height"),
            load_time_ms=meta.get("load_time_ms"),
            dom_ready_ms=meta.get("dom_ready_ms"),
            first_contentful_paint_ms=meta.get("fcp_ms"),
            entered_at=now,
            created_at=now,
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)

        await session_service.increment_page_views(session, visitor_session)
        await session_service.touch(session, visitor_session, now=now)
        await session_service.mark_page_visited(session, visitor_session, page_type)

        await event_service.record_event(
            session,
            visitor_session,
            row,
            EventType.PAGE_VIEW.value,
            {"page_type": page_type},
            occurred_at=now,
        )
        return row

    async def update_engagement(
        self,
        session: AsyncSession,
        page_view: PageView,
        metrics: dict[str, Any],
        visitor_session: Optional[VisitorSession] = None,
    ) -> PageView:
        """Merge an engagement beacon into the page view.

        Applied as one UPDATE against the stored row so overlapping beacons
        cannot undo each other: counters are added in place, ``scroll_depth_max``
        only grows and the ``interacted`` / ``read_content`` latches never go
        back to False. Beacons for an exited page view are ignored.
        """
        if page_view.is_exit_page:
            logger.debug("Ignoring engagement for exited page view id=%s", page_view.id)
            return page_view

        time_on_page = _non_negative_int(metrics.get("time_on_page_seconds"))
        engaged_time = _non_negative_int(metrics.get("engaged_time_seconds"))
        scroll_depth = _scroll_percent(metrics.get("scroll_depth"))
        scroll_events = _non_negative_int(metrics.get("scroll_events")) or 0
        click_events = _non_negative_int(metrics.get("click_events")) or 0
        mouse_movements = _non_negative_int(metrics.get("mouse_movements")) or 0
        key_presses = _non_negative_int(metrics.get("key_presses")) or 0

        values: dict[str, Any] = {
            "scroll_events": PageView.scroll_events + scroll_events,
            "click_events": PageView.click_events + click_events,
            "mouse_movements": PageView.mouse_movements + mouse_movements,
            "key_presses": PageView.key_presses + key_presses,
        }

        # SET expressions all see the row as it was before this statement.
        time_after = PageView.time_on_page_seconds
        scroll_max_after = PageView.scroll_depth_max
        if time_on_page is not None:
            values["time_on_page_seconds"] = time_on_page
            time_after = literal(time_on_page)
        if engaged_time is not None:
            values["engaged_time_seconds"] = engaged_time
        if scroll_depth is not None:
            scroll_max_after = case(
                (PageView.scroll_depth_max < scroll_depth, scroll_depth),
                else_=PageView.scroll_depth_max,
            )
            values["scroll_depth"] = scroll_depth
            values["scroll_depth_max"] = scroll_max_after

        if metrics.get("interacted") or scroll_events > 0 or click_events > 0:
            values["interacted"] = True

        values["read_content"] = case(
            (
                and_(
                    time_after >= READ_CONTENT_MIN_SECONDS,
                    scroll_max_after >= READ_CONTENT_MIN_SCROLL,
                ),
                True,
            ),
            else_=PageView.read_content,
        )

        await session.execute(
            update(PageView)
            .where(
                and_(
                    PageView.id == page_view.id,
                    PageView.is_exit_page == False,  # noqa: E712
                )
            )
            .values(values)
        )
        await session.commit()
        await session.refresh(page_view)

        if visitor_session is not None:
            await session_service.refresh_time_totals(session, visitor_session)
            if scroll_depth is not None:
                await session_service.record_scroll_depth(session, visitor_session, scroll_depth)
            await session_service.touch(session, visitor_session)

        return page_view

    async def mark_as_exit(
        self,
        session: AsyncSession,
        page_view: PageView,
        exit_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PageView:
        # Bounce depends on engagement that may have landed from another request.
        await session.refresh(page_view)
        if page_view.is_exit_page:
            return page_view

        now = now or utcnow()
        page_view.is_exit_page = True
        page_view.exit_url = exit_url[:500] if exit_url else None
        page_view.exited_at = now
        page_view.time_on_page_seconds = seconds_between(now, page_view.entered_at) if page_view.entered_at else 0

        if not page_view.interacted and page_view.time_on_page_seconds < BOUNCE_MAX_SECONDS:
            page_view.bounced = True

        session.add(page_view)
        await session.commit()
        await session.refresh(page_view)
        return page_view


page_view_service = PageViewService()
