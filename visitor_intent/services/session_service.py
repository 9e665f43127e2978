import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import case, func, update
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.clock import seconds_between, utcnow
from visitor_intent.core.config import settings
from visitor_intent.core.errors import NotFoundError, ValidationError
from visitor_intent.models.lead import Lead
from visitor_intent.models.tracking import DEFAULT_SOURCE_SITE, PageView, SessionStatus, VisitorSession
from visitor_intent.services.attribution import classify_referrer, parse_user_agent, referrer_domain


logger = logging.getLogger(__name__)


PAGE_TYPE_FLAGS = {
    "pricing": "visited_pricing",
    "services": "visited_services",
    "portfolio": "visited_portfolio",
    "contact": "visited_contact",
}

LATCH_FLAGS = frozenset(
    {
        *PAGE_TYPE_FLAGS.values(),
        "started_form",
        "completed_form",
        "clicked_cta",
        "watched_video",
    }
)


def _clip(value: Any, max_len: int = 255) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_len]


def generate_session_token(length: Optional[int] = None) -> str:
    length = max(length or settings.SESSION_TOKEN_LENGTH, 64)
    token = secrets.token_urlsafe(length)
    while len(token) < length:
        token += secrets.token_urlsafe(length)
    return token[:length]


class SessionService:
    async def create_session(
        self,
        session: AsyncSession,
        visitor_id: str,
        attribution: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> VisitorSession:
        visitor_id = (visitor_id or "").strip()
        if not visitor_id:
            raise ValidationError("visitor_id is required")
        if len(visitor_id) > 64:
            raise ValidationError("visitor_id must be at most 64 characters")

        data = attribution or {}
        now = now or utcnow()

        previous_sessions = (
            await session.exec(
                select(func.count(VisitorSession.id)).where(
                    and_(
                        VisitorSession.visitor_id == visitor_id,
                        VisitorSession.status == SessionStatus.ENDED.value,
                    )
                )
            )
        ).one()
        first_seen = (
            await session.exec(
                select(func.min(VisitorSession.created_at)).where(VisitorSession.visitor_id == visitor_id)
            )
        ).one()

        referrer_url = _clip(data.get("referrer"), 500)
        domain = referrer_domain(referrer_url)
        utm_medium = _clip(data.get("utm_medium"), 100)
        utm_source = _clip(data.get("utm_source"), 100)
        device = parse_user_agent(data.get("user_agent"))

        row = VisitorSession(
            visitor_id=visitor_id,
            session_token=generate_session_token(),
            ip_address=_clip(data.get("ip_address"), 64),
            user_agent=_clip(data.get("user_agent"), 1024),
            device_type=device["device_type"],
            browser=device["browser"],
            browser_version=device["browser_version"],
            os=device["os"],
            os_version=device["os_version"],
            is_bot=bool(device["is_bot"]),
            country=_clip(data.get("country"), 2),
            country_name=_clip(data.get("country_name"), 100),
            region=_clip(data.get("region"), 100),
            city=_clip(data.get("city"), 100),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            timezone=_clip(data.get("timezone"), 50),
            locale=_clip(data.get("locale"), 5) or "en",
            accept_language=_clip(data.get("accept_language"), 255),
            source_site=_clip(data.get("source_site"), 50) or DEFAULT_SOURCE_SITE,
            referrer_url=referrer_url,
            referrer_domain=domain,
            referrer_type=classify_referrer(domain, utm_medium, utm_source),
            landing_page=_clip(data.get("landing_page"), 500),
            utm_source=utm_source,
            utm_medium=utm_medium,
            utm_campaign=_clip(data.get("utm_campaign"), 100),
            utm_term=_clip(data.get("utm_term"), 100),
            utm_content=_clip(data.get("utm_content"), 100),
            is_returning=int(previous_sessions or 0) > 0,
            previous_sessions_count=int(previous_sessions or 0),
            first_seen_at=first_seen or now,
            status=SessionStatus.ACTIVE.value,
            started_at=now,
            last_activity_at=now,
            created_at=now,
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        logger.info(
            "Visitor session created uuid=%s referrer_type=%s returning=%s",
            row.uuid,
            row.referrer_type,
            row.is_returning,
        )
        return row

    async def get_by_token(self, session: AsyncSession, session_token: str) -> VisitorSession:
        row = (
            await session.exec(select(VisitorSession).where(VisitorSession.session_token == session_token))
        ).first()
        if row is None:
            raise NotFoundError("Session not found")
        return row

    async def get_by_uuid(self, session: AsyncSession, session_uuid: str) -> VisitorSession:
        row = (await session.exec(select(VisitorSession).where(VisitorSession.uuid == session_uuid))).first()
        if row is None:
            raise NotFoundError("Session not found")
        return row

    async def resume_session(
        self,
        session: AsyncSession,
        session_token: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[VisitorSession]:
        if not session_token:
            return None
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.SESSION_RESUME_MINUTES)
        row = (
            await session.exec(
                select(VisitorSession).where(
                    and_(
                        VisitorSession.session_token == session_token,
                        VisitorSession.status != SessionStatus.ENDED.value,
                        VisitorSession.last_activity_at >= cutoff,
                    )
                )
            )
        ).first()
        if row is None:
            return None
        return await self.touch(session, row, now=now)

    async def touch(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        now: Optional[datetime] = None,
    ) -> VisitorSession:
        if visitor_session.is_ended:
            return visitor_session
        visitor_session.last_activity_at = now or utcnow()
        visitor_session.status = SessionStatus.ACTIVE.value
        session.add(visitor_session)
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def mark_idle(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        if visitor_session.status != SessionStatus.ACTIVE.value:
            return visitor_session
        visitor_session.status = SessionStatus.IDLE.value
        session.add(visitor_session)
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def end_session(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        now: Optional[datetime] = None,
    ) -> VisitorSession:
        if visitor_session.is_ended:
            return visitor_session
        now = now or utcnow()
        visitor_session.status = SessionStatus.ENDED.value
        visitor_session.ended_at = now
        visitor_session.total_time_seconds = seconds_between(now, visitor_session.started_at) if visitor_session.started_at else 0
        session.add(visitor_session)
        await session.commit()
        await session.refresh(visitor_session)
        logger.info(
            "Visitor session ended uuid=%s total_time_seconds=%s",
            visitor_session.uuid,
            visitor_session.total_time_seconds,
        )
        return visitor_session

    async def sweep_idle_sessions(self, session: AsyncSession, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.SESSION_IDLE_MINUTES)
        result = await session.execute(
            update(VisitorSession)
            .where(
                and_(
                    VisitorSession.status == SessionStatus.ACTIVE.value,
                    VisitorSession.last_activity_at < cutoff,
                )
            )
            .values(status=SessionStatus.IDLE.value)
        )
        await session.commit()
        swept = int(result.rowcount or 0)
        if swept:
            logger.info("Marked %s visitor sessions idle (inactive since %s)", swept, cutoff.isoformat())
        return swept

    async def link_to_lead(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        lead: Lead,
    ) -> VisitorSession:
        if visitor_session.lead_id is not None and visitor_session.lead_id != lead.id:
            logger.info(
                "Re-linking visitor session uuid=%s from lead_id=%s to lead_id=%s",
                visitor_session.uuid,
                visitor_session.lead_id,
                lead.id,
            )
        visitor_session.lead_id = lead.id
        session.add(visitor_session)
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def get_lead_by_uuid(self, session: AsyncSession, lead_uuid: str) -> Lead:
        lead = (await session.exec(select(Lead).where(Lead.uuid == lead_uuid))).first()
        if lead is None:
            raise NotFoundError("Lead not found")
        return lead

    # Counters are updated in place so concurrent beacons for the same
    # session cannot lose increments.

    async def _increment(self, session: AsyncSession, visitor_session: VisitorSession, column) -> VisitorSession:
        await session.execute(
            update(VisitorSession)
            .where(
                and_(
                    VisitorSession.id == visitor_session.id,
                    VisitorSession.status != SessionStatus.ENDED.value,
                )
            )
            .values({column.key: column + 1})
        )
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def increment_page_views(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        return await self._increment(session, visitor_session, VisitorSession.page_views_count)

    async def increment_events(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        return await self._increment(session, visitor_session, VisitorSession.events_count)

    async def record_scroll_depth(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        scroll_depth: float,
    ) -> VisitorSession:
        incoming = min(max(float(scroll_depth or 0), 0.0), 100.0)
        await session.execute(
            update(VisitorSession)
            .where(
                and_(
                    VisitorSession.id == visitor_session.id,
                    VisitorSession.status != SessionStatus.ENDED.value,
                )
            )
            .values(
                scroll_depth_max=case(
                    (VisitorSession.scroll_depth_max < incoming, incoming),
                    else_=VisitorSession.scroll_depth_max,
                )
            )
        )
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def refresh_time_totals(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        """Roll page view engagement up to the session in a single statement."""
        page_views = PageView.__table__
        owned = page_views.c.visitor_session_id == visitor_session.id
        total_time = select(func.coalesce(func.sum(page_views.c.time_on_page_seconds), 0)).where(owned)
        engaged_time = select(func.coalesce(func.sum(page_views.c.engaged_time_seconds), 0)).where(owned)
        scroll_avg = select(func.coalesce(func.avg(page_views.c.scroll_depth_max), 0.0)).where(owned)

        await session.execute(
            update(VisitorSession)
            .where(
                and_(
                    VisitorSession.id == visitor_session.id,
                    VisitorSession.status != SessionStatus.ENDED.value,
                )
            )
            .values(
                total_time_seconds=total_time.scalar_subquery(),
                engaged_time_seconds=engaged_time.scalar_subquery(),
                scroll_depth_avg=scroll_avg.scalar_subquery(),
            )
        )
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def _latch(self, session: AsyncSession, visitor_session: VisitorSession, flag: str) -> VisitorSession:
        if flag not in LATCH_FLAGS:
            raise ValidationError(f"Unknown session flag: {flag}")
        if getattr(visitor_session, flag):
            return visitor_session
        setattr(visitor_session, flag, True)
        session.add(visitor_session)
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session

    async def mark_page_visited(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        page_type: str,
    ) -> VisitorSession:
        flag = PAGE_TYPE_FLAGS.get(page_type)
        if flag is None:
            return visitor_session
        return await self._latch(session, visitor_session, flag)

    async def mark_form_started(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        return await self._latch(session, visitor_session, "started_form")

    async def mark_form_completed(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        return await self._latch(session, visitor_session, "completed_form")

    async def mark_cta_clicked(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        return await self._latch(session, visitor_session, "clicked_cta")

    async def mark_video_watched(self, session: AsyncSession, visitor_session: VisitorSession) -> VisitorSession:
        return await self._latch(session, visitor_session, "watched_video")

    async def update_intent_score(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        score: float,
        level: str,
        signals: Optional[dict[str, Any]] = None,
    ) -> VisitorSession:
        visitor_session.intent_score = float(score)
        visitor_session.intent_level = level
        visitor_session.intent_signals_json = json.dumps(signals or {}, ensure_ascii=True)
        session.add(visitor_session)
        await session.commit()
        await session.refresh(visitor_session)
        return visitor_session


session_service = SessionService()
