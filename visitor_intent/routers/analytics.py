from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.clock import utcnow
from visitor_intent.core.config import settings
from visitor_intent.core.errors import NotFoundError
from visitor_intent.db.engine import get_session
from visitor_intent.services.analytics_service import analytics_service, format_session
from visitor_intent.services.event_service import event_service
from visitor_intent.services.intent_scoring import intent_scoring_service
from visitor_intent.services.page_view_service import page_view_service
from visitor_intent.services.session_service import session_service


router = APIRouter(prefix="/analytics", tags=["analytics"])

SESSION_DETAIL_EVENT_LIMIT = 100


@router.get("/dashboard")
async def dashboard(
    period: Optional[str] = None,
    source_site: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    return await analytics_service.dashboard(session, period, source_site=source_site)


@router.get("/sessions/{session_uuid}")
async def session_detail(
    session_uuid: str,
    session: AsyncSession = Depends(get_session),
):
    try:
        visitor_session = await session_service.get_by_uuid(session, session_uuid)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    breakdown = await intent_scoring_service.score_session(session, visitor_session)
    page_views = await page_view_service.list_for_session(session, visitor_session)
    events = await event_service.list_for_session(
        session,
        visitor_session,
        limit=SESSION_DETAIL_EVENT_LIMIT,
        newest_first=True,
    )

    return {
        "session": format_session(visitor_session, detailed=True),
        "page_views": [
            {
                "id": pv.id,
                "path": pv.path,
                "page_type": pv.page_type,
                "page_title": pv.page_title,
                "time_on_page": pv.time_on_page_seconds,
                "duration": pv.duration_seconds(),
                "scroll_depth": pv.scroll_depth_max,
                "entered_at": pv.entered_at.isoformat(),
                "exited_at": pv.exited_at.isoformat() if pv.exited_at else None,
                "interacted": pv.interacted,
                "read_content": pv.read_content,
                "bounced": pv.bounced,
            }
            for pv in page_views
        ],
        "events": [
            {
                "id": event.id,
                "type": event.event_type,
                "category": event.event_category,
                "action": event.event_action,
                "label": event.event_label,
                "element_text": event.element_text,
                "intent_points": event.intent_points,
                "occurred_at": event.occurred_at.isoformat(),
            }
            for event in events
        ],
        "intent_breakdown": breakdown.to_dict(),
    }


@router.get("/live")
async def live_sessions(
    source_site: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    rows = await analytics_service.active_sessions(
        session,
        minutes=settings.LIVE_SESSION_MINUTES,
        limit=50,
        source_site=source_site or None,
    )
    return {
        "sessions": [format_session(row) for row in rows],
        "count": len(rows),
        "timestamp": utcnow().isoformat(),
    }
