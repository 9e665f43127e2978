from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import case, func
from sqlmodel import and_, or_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.clock import utcnow
from visitor_intent.core.config import settings
from visitor_intent.models.tracking import IntentLevel, PageView, SessionStatus, VisitorSession
from visitor_intent.services.intent_scoring import get_level_color


PERIODS = {
    "24h": ("Last 24 Hours", timedelta(days=1)),
    "7d": ("Last 7 Days", timedelta(days=7)),
    "30d": ("Last 30 Days", timedelta(days=30)),
    "90d": ("Last 90 Days", timedelta(days=90)),
}
DEFAULT_PERIOD = "7d"

BOUNCE_MAX_SECONDS = 10


def normalize_period(period: Optional[str]) -> str:
    period = (period or "").strip().lower()
    return period if period in PERIODS else DEFAULT_PERIOD


def period_start(period: Optional[str], now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now - PERIODS[normalize_period(period)][1]


def _rate(part: int, total: int) -> float:
    return round((part / total) * 100.0, 1) if total > 0 else 0.0


def _day_key(value: Any) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def format_duration(seconds: Optional[int]) -> str:
    seconds = int(seconds or 0)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def format_session(row: VisitorSession, detailed: bool = False) -> dict[str, Any]:
    data = {
        "id": row.id,
        "uuid": row.uuid,
        "visitor_id": f"{row.visitor_id[:12]}...",
        "intent_score": row.intent_score,
        "intent_level": row.intent_level,
        "intent_color": get_level_color(row.intent_level),
        "status": row.status,
        "page_views": row.page_views_count,
        "events": row.events_count,
        "duration": row.total_time_seconds,
        "duration_formatted": format_duration(row.total_time_seconds),
        "device": row.device_type,
        "browser": row.browser,
        "country": row.country,
        "country_name": row.country_name or row.country,
        "city": row.city,
        "referrer_type": row.referrer_type,
        "landing_page": row.landing_page,
        "source_site": row.source_site,
        "is_returning": row.is_returning,
        "has_lead": row.lead_id is not None,
        "started_form": row.started_form,
        "completed_form": row.completed_form,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "last_activity_at": row.last_activity_at.isoformat() if row.last_activity_at else None,
    }

    if detailed:
        data.update(
            {
                "ip_address": row.ip_address,
                "user_agent": row.user_agent,
                "utm_source": row.utm_source,
                "utm_medium": row.utm_medium,
                "utm_campaign": row.utm_campaign,
                "referrer_url": row.referrer_url,
                "scroll_depth_max": row.scroll_depth_max,
                "visited_pricing": row.visited_pricing,
                "visited_services": row.visited_services,
                "visited_portfolio": row.visited_portfolio,
                "visited_contact": row.visited_contact,
                "clicked_cta": row.clicked_cta,
                "watched_video": row.watched_video,
                "intent_signals": row.intent_signals,
                "lead_id": row.lead_id,
                "elapsed_seconds": row.duration_seconds(),
                "is_live": row.is_live(minutes=settings.LIVE_SESSION_MINUTES),
                "ended_at": row.ended_at.isoformat() if row.ended_at else None,
            }
        )
    return data


def _session_scope(start: datetime, source_site: Optional[str] = None):
    conditions = [VisitorSession.created_at >= start]
    if source_site:
        conditions.append(VisitorSession.source_site == source_site)
    return and_(*conditions)


def _page_view_scope(start: datetime, source_site: Optional[str] = None):
    conditions = [PageView.created_at >= start]
    if source_site:
        site_sessions = select(VisitorSession.id).where(VisitorSession.source_site == source_site)
        conditions.append(PageView.visitor_session_id.in_(site_sessions))
    return and_(*conditions)


class AnalyticsService:
    """Read-only rollups over sessions and page views for dashboards.

    Every rollup takes an optional ``source_site``; when given, only sessions
    captured for that site (and their page views) are counted.
    """

    async def overview_stats(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> dict[str, Any]:
        start = period_start(period, now)
        in_window = _session_scope(start, source_site)

        row = (
            await session.exec(
                select(
                    func.count(VisitorSession.id),
                    func.count(func.distinct(VisitorSession.visitor_id)),
                    func.sum(
                        case(
                            (
                                and_(
                                    VisitorSession.page_views_count == 1,
                                    VisitorSession.total_time_seconds < BOUNCE_MAX_SECONDS,
                                ),
                                1,
                            ),
                            else_=0,
                        )
                    ),
                    func.sum(case((VisitorSession.completed_form == True, 1), else_=0)),  # noqa: E712
                    func.sum(case((VisitorSession.intent_level == IntentLevel.HOT.value, 1), else_=0)),
                    func.sum(case((VisitorSession.intent_level == IntentLevel.QUALIFIED.value, 1), else_=0)),
                    func.sum(case((VisitorSession.is_returning == True, 1), else_=0)),  # noqa: E712
                    func.avg(VisitorSession.intent_score),
                ).where(in_window)
            )
        ).one()
        total_sessions = int(row[0] or 0)
        unique_visitors = int(row[1] or 0)
        bounced = int(row[2] or 0)
        conversions = int(row[3] or 0)
        hot_sessions = int(row[4] or 0)
        qualified_sessions = int(row[5] or 0)
        returning = int(row[6] or 0)
        avg_intent = float(row[7] or 0.0)

        avg_duration = (
            await session.exec(
                select(func.avg(VisitorSession.total_time_seconds)).where(
                    and_(in_window, VisitorSession.status == SessionStatus.ENDED.value)
                )
            )
        ).one()

        total_page_views = int(
            (
                await session.exec(select(func.count(PageView.id)).where(_page_view_scope(start, source_site)))
            ).one()
            or 0
        )

        return {
            "period": normalize_period(period),
            "source_site": source_site,
            "total_sessions": total_sessions,
            "unique_visitors": unique_visitors,
            "total_page_views": total_page_views,
            "avg_session_duration": round(float(avg_duration or 0.0)),
            "avg_pages_per_session": round(total_page_views / total_sessions, 1) if total_sessions > 0 else 0.0,
            "bounce_rate": _rate(bounced, total_sessions),
            "conversion_rate": _rate(conversions, total_sessions),
            "hot_sessions": hot_sessions,
            "qualified_sessions": qualified_sessions,
            "avg_intent_score": round(avg_intent, 1),
            "returning_rate": _rate(returning, total_sessions),
        }

    async def sessions_by_site(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        count = func.count(VisitorSession.id)
        rows = (
            await session.exec(
                select(VisitorSession.source_site, count)
                .where(VisitorSession.created_at >= period_start(period, now))
                .group_by(VisitorSession.source_site)
                .order_by(count.desc(), VisitorSession.source_site.asc())
            )
        ).all()
        return [{"source_site": site, "count": int(total)} for site, total in rows]

    async def traffic_sources(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        count = func.count(VisitorSession.id)
        rows = (
            await session.exec(
                select(VisitorSession.referrer_type, count)
                .where(_session_scope(period_start(period, now), source_site))
                .group_by(VisitorSession.referrer_type)
                .order_by(count.desc(), VisitorSession.referrer_type.asc())
            )
        ).all()
        return [{"referrer_type": referrer_type, "count": int(total)} for referrer_type, total in rows]

    async def intent_distribution(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        count = func.count(VisitorSession.id)
        rows = (
            await session.exec(
                select(VisitorSession.intent_level, count)
                .where(_session_scope(period_start(period, now), source_site))
                .group_by(VisitorSession.intent_level)
                .order_by(count.desc(), VisitorSession.intent_level.asc())
            )
        ).all()
        return [{"intent_level": level, "count": int(total)} for level, total in rows]

    async def top_pages(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        limit: int = 10,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        views = func.count(PageView.id)
        rows = (
            await session.exec(
                select(PageView.path, PageView.page_type, views, func.avg(PageView.time_on_page_seconds))
                .where(_page_view_scope(period_start(period, now), source_site))
                .group_by(PageView.path, PageView.page_type)
                .order_by(views.desc(), PageView.path.asc())
                .limit(min(max(limit, 1), 100))
            )
        ).all()
        return [
            {
                "path": path,
                "page_type": page_type,
                "views": int(total),
                "avg_time": round(float(avg_time or 0.0), 1),
            }
            for path, page_type, total, avg_time in rows
        ]

    async def daily_visitors(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        day = func.date(VisitorSession.created_at)
        rows = (
            await session.exec(
                select(
                    day,
                    func.count(VisitorSession.id),
                    func.count(func.distinct(VisitorSession.visitor_id)),
                    func.avg(VisitorSession.intent_score),
                )
                .where(_session_scope(period_start(period, now), source_site))
                .group_by(day)
                .order_by(day.asc())
            )
        ).all()
        return [
            {
                "date": _day_key(date_value),
                "sessions": int(sessions),
                "visitors": int(visitors),
                "avg_intent": round(float(avg_intent or 0.0), 1),
            }
            for date_value, sessions, visitors, avg_intent in rows
        ]

    async def hot_sessions(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        limit: int = 10,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> list[VisitorSession]:
        rows = await session.exec(
            select(VisitorSession)
            .where(
                and_(
                    _session_scope(period_start(period, now), source_site),
                    or_(
                        VisitorSession.intent_level == IntentLevel.HOT.value,
                        VisitorSession.intent_level == IntentLevel.QUALIFIED.value,
                    ),
                )
            )
            .order_by(VisitorSession.intent_score.desc(), VisitorSession.id.desc())
            .limit(min(max(limit, 1), 100))
        )
        return rows.all()

    async def active_sessions(
        self,
        session: AsyncSession,
        minutes: Optional[int] = None,
        limit: int = 20,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> list[VisitorSession]:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=minutes or settings.ACTIVE_SESSION_MINUTES)
        query = select(VisitorSession).where(VisitorSession.last_activity_at >= cutoff)
        if source_site:
            query = query.where(VisitorSession.source_site == source_site)
        rows = await session.exec(
            query.order_by(VisitorSession.last_activity_at.desc()).limit(min(max(limit, 1), 100))
        )
        return rows.all()

    async def dashboard(
        self,
        session: AsyncSession,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
        source_site: Optional[str] = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        period = normalize_period(period)
        source_site = (source_site or "").strip() or None
        hot = await self.hot_sessions(session, period, now=now, source_site=source_site)
        active = await self.active_sessions(session, now=now, source_site=source_site)
        return {
            "period": period,
            "periods": {key: label for key, (label, _delta) in PERIODS.items()},
            "source_site": source_site,
            "stats": await self.overview_stats(session, period, now=now, source_site=source_site),
            "sites": await self.sessions_by_site(session, period, now=now),
            "hot_sessions": [format_session(row) for row in hot],
            "active_sessions": [format_session(row) for row in active],
            "traffic_sources": await self.traffic_sources(session, period, now=now, source_site=source_site),
            "intent_distribution": await self.intent_distribution(session, period, now=now, source_site=source_site),
            "top_pages": await self.top_pages(session, period, now=now, source_site=source_site),
            "daily_visitors": await self.daily_visitors(session, period, now=now, source_site=source_site),
        }


analytics_service = AnalyticsService()
