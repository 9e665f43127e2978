import json
import logging
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.clock import utcnow
from visitor_intent.core.errors import ValidationError
from visitor_intent.models.tracking import PageView, VisitorEvent, VisitorSession
from visitor_intent.services.session_service import session_service


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    CLICK = "click"
    SCROLL = "scroll"
    FORM_START = "form_start"
    FORM_FIELD = "form_field"
    FORM_SUBMIT = "form_submit"
    FORM_ERROR = "form_error"
    VIDEO_PLAY = "video_play"
    VIDEO_PROGRESS = "video_progress"
    VIDEO_COMPLETE = "video_complete"
    CTA_CLICK = "cta_click"
    OUTBOUND_LINK = "outbound_link"
    DOWNLOAD = "download"
    COPY = "copy"
    SHARE = "share"
    VISIBILITY_CHANGE = "visibility_change"
    SESSION_END = "session_end"


class EventCategory(str, Enum):
    NAVIGATION = "navigation"
    ENGAGEMENT = "engagement"
    CONVERSION = "conversion"
    VIDEO = "video"
    FORM = "form"
    SOCIAL = "social"


EVENT_TYPES = frozenset(item.value for item in EventType)
EVENT_CATEGORY_VALUES = frozenset(item.value for item in EventCategory)

INTENT_POINTS = MappingProxyType(
    {
        EventType.PAGE_VIEW.value: 1,
        EventType.CLICK.value: 2,
        EventType.SCROLL.value: 1,
        EventType.FORM_START.value: 15,
        EventType.FORM_FIELD.value: 3,
        EventType.FORM_SUBMIT.value: 50,
        EventType.VIDEO_PLAY.value: 5,
        EventType.VIDEO_PROGRESS.value: 3,
        EventType.VIDEO_COMPLETE.value: 10,
        EventType.CTA_CLICK.value: 20,
        EventType.OUTBOUND_LINK.value: 2,
        EventType.DOWNLOAD.value: 10,
        EventType.SHARE.value: 8,
    }
)

PAGE_TYPE_BONUS = MappingProxyType(
    {
        "pricing": 10,
        "contact": 8,
        "services": 5,
        "portfolio": 4,
    }
)

CONVERSION_EVENTS = frozenset({EventType.FORM_SUBMIT.value, EventType.CTA_CLICK.value})

ENGAGEMENT_EVENTS = frozenset(
    {
        EventType.CLICK.value,
        EventType.SCROLL.value,
        EventType.VIDEO_PLAY.value,
        EventType.VIDEO_COMPLETE.value,
        EventType.FORM_START.value,
        EventType.FORM_FIELD.value,
        EventType.DOWNLOAD.value,
        EventType.SHARE.value,
    }
)

EVENT_CATEGORIES = MappingProxyType(
    {
        EventType.PAGE_VIEW.value: EventCategory.NAVIGATION.value,
        EventType.CLICK.value: EventCategory.ENGAGEMENT.value,
        EventType.SCROLL.value: EventCategory.ENGAGEMENT.value,
        EventType.FORM_START.value: EventCategory.FORM.value,
        EventType.FORM_FIELD.value: EventCategory.FORM.value,
        EventType.FORM_SUBMIT.value: EventCategory.CONVERSION.value,
        EventType.CTA_CLICK.value: EventCategory.CONVERSION.value,
        EventType.VIDEO_PLAY.value: EventCategory.VIDEO.value,
        EventType.VIDEO_PROGRESS.value: EventCategory.VIDEO.value,
        EventType.VIDEO_COMPLETE.value: EventCategory.VIDEO.value,
        EventType.SHARE.value: EventCategory.SOCIAL.value,
    }
)

ELEMENT_TEXT_MAX_LENGTH = 250


def get_intent_points(event_type: str, data: Optional[dict[str, Any]] = None) -> int:
    points = INTENT_POINTS.get(event_type, 0)
    if event_type == EventType.PAGE_VIEW.value:
        page_type = (data or {}).get("page_type") or "other"
        points += PAGE_TYPE_BONUS.get(page_type, 0)
    return points


def is_conversion_event(event_type: str) -> bool:
    return event_type in CONVERSION_EVENTS


def is_engagement_event(event_type: str) -> bool:
    return event_type in ENGAGEMENT_EVENTS


def get_event_category(event_type: str) -> str:
    return EVENT_CATEGORIES.get(event_type, EventCategory.ENGAGEMENT.value)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _clip(value: Any, max_len: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text[:max_len] if text else None


class EventService:
    async def record_event(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        page_view: Optional[PageView],
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> VisitorEvent:
        """Append one event to the session's log.

        ``occurred_at`` is the time reported by the client; the server clock is
        only used when the beacon did not carry one. Point values and the
        conversion/engagement flags are fixed here and never recomputed.
        """
        event_type = (event_type or "").strip().lower()
        if event_type not in EVENT_TYPES:
            logger.warning("Rejected event with unknown type %r for session uuid=%s", event_type, visitor_session.uuid)
            raise ValidationError(f"Unknown event type: {event_type or '<empty>'}")

        data = data or {}
        category = (data.get("event_category") or "").strip().lower() or get_event_category(event_type)
        if category not in EVENT_CATEGORY_VALUES:
            raise ValidationError(f"Unknown event category: {category}")

        now = utcnow()
        occurred_at = _as_naive_utc(occurred_at) if occurred_at else now
        since_start_ms = None
        if visitor_session.started_at:
            since_start_ms = int(abs((occurred_at - visitor_session.started_at).total_seconds()) * 1000)

        extra = data.get("data")
        event = VisitorEvent(
            visitor_session_id=visitor_session.id,
            page_view_id=page_view.id if page_view else None,
            event_type=event_type,
            event_category=category,
            event_action=_clip(data.get("event_action"), 100),
            event_label=_clip(data.get("event_label"), 255),
            element_type=_clip(data.get("element_type"), 50),
            element_id=_clip(data.get("element_id"), 100),
            element_class=_clip(data.get("element_class"), 255),
            element_text=_clip(data.get("element_text"), ELEMENT_TEXT_MAX_LENGTH),
            element_href=_clip(data.get("element_href"), 500),
            click_x=data.get("click_x"),
            click_y=data.get("click_y"),
            scroll_position=data.get("scroll_position"),
            viewport_section=_clip(data.get("viewport_section"), 50),
            data_json=json.dumps(extra if isinstance(extra, dict) else {}, ensure_ascii=True, default=str),
            intent_points=get_intent_points(event_type, data),
            is_conversion_event=is_conversion_event(event_type),
            is_engagement_event=is_engagement_event(event_type),
            time_since_page_load_ms=data.get("time_since_page_load_ms"),
            time_since_session_start_ms=since_start_ms,
            occurred_at=occurred_at,
            created_at=now,
        )
        session.add(event)
        await session.commit()
        await session.refresh(event)

        await session_service.increment_events(session, visitor_session)
        return event

    async def apply_side_effects(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        event_type: str,
    ) -> VisitorSession:
        if event_type == EventType.CTA_CLICK.value:
            await session_service.mark_cta_clicked(session, visitor_session)
        elif event_type in (EventType.VIDEO_PLAY.value, EventType.VIDEO_COMPLETE.value):
            await session_service.mark_video_watched(session, visitor_session)
        elif event_type == EventType.FORM_START.value:
            await session_service.mark_form_started(session, visitor_session)
        elif event_type == EventType.FORM_SUBMIT.value:
            await session_service.mark_form_completed(session, visitor_session)

        return await session_service.touch(session, visitor_session)

    async def list_for_session(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[VisitorEvent]:
        order = VisitorEvent.occurred_at.desc() if newest_first else VisitorEvent.occurred_at.asc()
        query = (
            select(VisitorEvent)
            .where(VisitorEvent.visitor_session_id == visitor_session.id)
            .order_by(order, VisitorEvent.id.asc())
        )
        if limit is not None:
            query = query.limit(min(max(limit, 1), 500))
        rows = await session.exec(query)
        return rows.all()


event_service = EventService()
