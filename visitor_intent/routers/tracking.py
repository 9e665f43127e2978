import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.errors import NotFoundError, ValidationError
from visitor_intent.db.engine import get_session
from visitor_intent.services.event_service import event_service
from visitor_intent.services.intent_scoring import intent_scoring_service
from visitor_intent.services.page_view_service import page_view_service
from visitor_intent.services.session_service import session_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["tracking"])


class InitSessionRequest(BaseModel):
    visitor_id: str = Field(min_length=1, max_length=64)
    session_token: Optional[str] = Field(default=None, max_length=128)
    landing_page: str = Field(min_length=1, max_length=500)
    referrer: Optional[str] = Field(default=None, max_length=500)
    utm_source: Optional[str] = Field(default=None, max_length=100)
    utm_medium: Optional[str] = Field(default=None, max_length=100)
    utm_campaign: Optional[str] = Field(default=None, max_length=100)
    utm_term: Optional[str] = Field(default=None, max_length=100)
    utm_content: Optional[str] = Field(default=None, max_length=100)
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    locale: Optional[str] = Field(default=None, max_length=5)
    timezone: Optional[str] = Field(default=None, max_length=50)
    source_site: Optional[str] = Field(default=None, max_length=50)


class PageViewRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)
    url: str = Field(min_length=1, max_length=500)
    path: str = Field(max_length=500)
    title: Optional[str] = Field(default=None, max_length=255)
    previous_url: Optional[str] = Field(default=None, max_length=500)
    previous_path: Optional[str] = Field(default=None, max_length=500)
    query_params: Optional[dict[str, Any]] = None
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    document_height: Optional[int] = None
    load_time_ms: Optional[int] = None
    dom_ready_ms: Optional[int] = None
    fcp_ms: Optional[int] = None


class EventRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)
    page_view_id: Optional[int] = None
    event_type: str = Field(min_length=1, max_length=50)
    event_category: Optional[str] = Field(default=None, max_length=50)
    event_action: Optional[str] = Field(default=None, max_length=100)
    event_label: Optional[str] = Field(default=None, max_length=255)
    element_type: Optional[str] = Field(default=None, max_length=50)
    element_id: Optional[str] = Field(default=None, max_length=100)
    element_class: Optional[str] = Field(default=None, max_length=255)
    element_text: Optional[str] = None
    element_href: Optional[str] = Field(default=None, max_length=500)
    click_x: Optional[int] = None
    click_y: Optional[int] = None
    scroll_position: Optional[float] = Field(default=None, ge=0, le=100)
    viewport_section: Optional[str] = Field(default=None, max_length=50)
    data: Optional[dict[str, Any]] = None
    time_since_page_load_ms: Optional[int] = None
    occurred_at: Optional[datetime] = None


class EngagementRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)
    page_view_id: int
    time_on_page_seconds: int = Field(ge=0)
    engaged_time_seconds: Optional[int] = Field(default=None, ge=0)
    scroll_depth: float = Field(ge=0, le=100)
    scroll_events: Optional[int] = Field(default=None, ge=0)
    click_events: Optional[int] = Field(default=None, ge=0)
    mouse_movements: Optional[int] = Field(default=None, ge=0)
    key_presses: Optional[int] = Field(default=None, ge=0)
    interacted: Optional[bool] = None


class LinkLeadRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)
    lead_id: str = Field(min_length=1, max_length=64)


class EndSessionRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)


def _raise_http(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=422, detail=str(exc))


@router.post("/session")
async def init_session(
    payload: InitSessionRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    resumed = await session_service.resume_session(session, payload.session_token)
    if resumed is not None:
        return {
            "success": True,
            "session_token": resumed.session_token,
            "session_id": resumed.uuid,
            "resumed": True,
            "is_returning": resumed.is_returning,
        }

    attribution = payload.model_dump(exclude={"visitor_id", "session_token"})
    attribution.update(
        {
            "ip_address": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
            "accept_language": request.headers.get("accept-language"),
        }
    )
    try:
        row = await session_service.create_session(session, payload.visitor_id, attribution)
    except ValidationError as exc:
        _raise_http(exc)

    return {
        "success": True,
        "session_token": row.session_token,
        "session_id": row.uuid,
        "resumed": False,
        "is_returning": row.is_returning,
    }


@router.post("/pageview")
async def track_page_view(
    payload: PageViewRequest,
    session: AsyncSession = Depends(get_session),
):
    try:
        visitor_session = await session_service.get_by_token(session, payload.session_token)
        page_view = await page_view_service.open_page_view(
            session,
            visitor_session,
            url=payload.url,
            path=payload.path,
            previous_url=payload.previous_url,
            **payload.model_dump(exclude={"session_token", "url", "path", "previous_url"}),
        )
    except (NotFoundError, ValidationError) as exc:
        _raise_http(exc)

    result = await intent_scoring_service.update_session_score(session, visitor_session)
    return {
        "success": True,
        "page_view_id": page_view.id,
        "page_type": page_view.page_type,
        "intent_score": result.score,
    }


@router.post("/event")
async def track_event(
    payload: EventRequest,
    session: AsyncSession = Depends(get_session),
):
    data = payload.model_dump(exclude={"session_token", "page_view_id", "occurred_at"})
    try:
        visitor_session = await session_service.get_by_token(session, payload.session_token)
        page_view = None
        if payload.page_view_id:
            page_view = await page_view_service.get_for_session(session, payload.page_view_id, visitor_session)
        event = await event_service.record_event(
            session,
            visitor_session,
            page_view,
            payload.event_type,
            data,
            occurred_at=payload.occurred_at,
        )
    except (NotFoundError, ValidationError) as exc:
        _raise_http(exc)

    await event_service.apply_side_effects(session, visitor_session, event.event_type)
    result = await intent_scoring_service.update_session_score(session, visitor_session)
    return {
        "success": True,
        "event_id": event.id,
        "intent_points": event.intent_points,
        "intent_score": result.score,
        "intent_level": result.level,
    }


@router.post("/engagement")
async def update_engagement(
    payload: EngagementRequest,
    session: AsyncSession = Depends(get_session),
):
    try:
        visitor_session = await session_service.get_by_token(session, payload.session_token)
        page_view = await page_view_service.get_for_session(session, payload.page_view_id, visitor_session)
        page_view = await page_view_service.update_engagement(
            session,
            page_view,
            payload.model_dump(exclude={"session_token", "page_view_id"}),
            visitor_session=visitor_session,
        )
    except (NotFoundError, ValidationError) as exc:
        _raise_http(exc)

    return {
        "success": True,
        "scroll_depth_max": page_view.scroll_depth_max,
        "read_content": page_view.read_content,
    }


@router.post("/link-lead")
async def link_lead(
    payload: LinkLeadRequest,
    session: AsyncSession = Depends(get_session),
):
    try:
        visitor_session = await session_service.get_by_token(session, payload.session_token)
        lead = await session_service.get_lead_by_uuid(session, payload.lead_id)
    except NotFoundError as exc:
        _raise_http(exc)

    await session_service.link_to_lead(session, visitor_session, lead)
    await session_service.mark_form_started(session, visitor_session)
    result = await intent_scoring_service.update_session_score(session, visitor_session)
    logger.info("Visitor session uuid=%s linked to lead uuid=%s", visitor_session.uuid, lead.uuid)
    return {"success": True, "intent_score": result.score, "intent_level": result.level}


@router.post("/end")
async def end_session(
    payload: EndSessionRequest,
    session: AsyncSession = Depends(get_session),
):
    try:
        visitor_session = await session_service.get_by_token(session, payload.session_token)
    except NotFoundError as exc:
        _raise_http(exc)

    open_page_view = await page_view_service.get_open_page_view(session, visitor_session)
    if open_page_view is not None:
        await page_view_service.mark_as_exit(session, open_page_view)

    await session_service.end_session(session, visitor_session)
    result = await intent_scoring_service.update_session_score(session, visitor_session)
    return {
        "success": True,
        "final_intent_score": result.score,
        "intent_level": result.level,
        "total_time_seconds": visitor_session.total_time_seconds,
    }
