import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

from visitor_intent.core.clock import seconds_between, utcnow


DEFAULT_SOURCE_SITE = "main"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    ENDED = "ended"


class IntentLevel(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"
    QUALIFIED = "qualified"


class ReferrerType(str, Enum):
    DIRECT = "direct"
    ORGANIC = "organic"
    SOCIAL = "social"
    PAID = "paid"
    REFERRAL = "referral"
    EMAIL = "email"


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _parse_json_dict(raw: Optional[str]) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
        return parsed if isinstance(parsed, dict) else {}
    except (TypeError, ValueError):
        return {}


class VisitorSession(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    uuid: str = Field(default_factory=_new_uuid, index=True, unique=True)
    visitor_id: str = Field(index=True, max_length=64)
    session_token: str = Field(index=True, unique=True, max_length=128)
    lead_id: Optional[int] = Field(default=None, foreign_key="lead.id", index=True)

    # Device / geo, written once at creation
    ip_address: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    device_type: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None
    is_bot: bool = Field(default=False)
    country: Optional[str] = None
    country_name: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    locale: str = Field(default="en")
    accept_language: Optional[str] = None
    source_site: str = Field(default=DEFAULT_SOURCE_SITE, index=True, max_length=50)

    # Attribution
    referrer_url: Optional[str] = None
    referrer_domain: Optional[str] = None
    referrer_type: str = Field(default=ReferrerType.DIRECT.value, index=True)
    landing_page: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    # Denormalized counters, maintained by the write path
    page_views_count: int = Field(default=0)
    events_count: int = Field(default=0)
    total_time_seconds: int = Field(default=0)
    engaged_time_seconds: int = Field(default=0)
    scroll_depth_avg: float = Field(default=0.0)
    scroll_depth_max: float = Field(default=0.0)

    intent_score: float = Field(default=0.0, index=True)
    intent_level: str = Field(default=IntentLevel.COLD.value, index=True)
    intent_signals_json: str = Field(default="{}")

    # One-way latches: only ever written True
    visited_pricing: bool = Field(default=False)
    visited_services: bool = Field(default=False)
    visited_portfolio: bool = Field(default=False)
    visited_contact: bool = Field(default=False)
    started_form: bool = Field(default=False)
    completed_form: bool = Field(default=False, index=True)
    clicked_cta: bool = Field(default=False)
    watched_video: bool = Field(default=False)

    is_returning: bool = Field(default=False)
    previous_sessions_count: int = Field(default=0)
    first_seen_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    status: str = Field(default=SessionStatus.ACTIVE.value, index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_activity_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    ended_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime,
        sa_column_kwargs={"onupdate": utcnow},
    )

    @property
    def intent_signals(self) -> dict[str, Any]:
        return _parse_json_dict(self.intent_signals_json)

    @property
    def is_ended(self) -> bool:
        return self.status == SessionStatus.ENDED.value

    def duration_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.started_at:
            return 0
        end_time = self.ended_at or now or utcnow()
        return seconds_between(end_time, self.started_at)

    def is_live(self, now: Optional[datetime] = None, minutes: int = 30) -> bool:
        if self.status != SessionStatus.ACTIVE.value or not self.last_activity_at:
            return False
        now = now or utcnow()
        return seconds_between(now, self.last_activity_at) < minutes * 60


class PageView(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    visitor_session_id: int = Field(foreign_key="visitorsession.id", index=True)

    url: str
    path: str = Field(index=True)
    page_title: Optional[str] = None
    page_type: str = Field(default="other", index=True)
    query_params_json: str = Field(default="{}")
    previous_url: Optional[str] = None
    previous_path: Optional[str] = None

    time_on_page_seconds: int = Field(default=0)
    engaged_time_seconds: int = Field(default=0)
    scroll_depth: float = Field(default=0.0)
    scroll_depth_max: float = Field(default=0.0)
    scroll_events: int = Field(default=0)
    click_events: int = Field(default=0)
    mouse_movements: int = Field(default=0)
    key_presses: int = Field(default=0)

    read_content: bool = Field(default=False)
    interacted: bool = Field(default=False)
    bounced: bool = Field(default=False, index=True)

    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    document_height: Optional[int] = None
    load_time_ms: Optional[int] = None
    dom_ready_ms: Optional[int] = None
    first_contentful_paint_ms: Optional[int] = None

    exit_url: Optional[str] = None
    is_exit_page: bool = Field(default=False)
    entered_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    exited_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)

    @property
    def query_params(self) -> dict[str, Any]:
        return _parse_json_dict(self.query_params_json)

    def duration_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.entered_at:
            return 0
        end_time = self.exited_at or now or utcnow()
        return seconds_between(end_time, self.entered_at)


class VisitorEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    visitor_session_id: int = Field(foreign_key="visitorsession.id", index=True)
    page_view_id: Optional[int] = Field(default=None, foreign_key="pageview.id", index=True)

    event_type: str = Field(index=True, max_length=50)
    event_category: str = Field(index=True, max_length=50)
    event_action: Optional[str] = None
    event_label: Optional[str] = None

    element_type: Optional[str] = None
    element_id: Optional[str] = None
    element_class: Optional[str] = None
    element_text: Optional[str] = None
    element_href: Optional[str] = None
    click_x: Optional[int] = None
    click_y: Optional[int] = None
    scroll_position: Optional[float] = None
    viewport_section: Optional[str] = None
    data_json: str = Field(default="{}")

    intent_points: int = Field(default=0)
    is_conversion_event: bool = Field(default=False, index=True)
    is_engagement_event: bool = Field(default=False, index=True)

    time_since_page_load_ms: Optional[int] = None
    time_since_session_start_ms: Optional[int] = None

    # Client-reported time; created_at is the server insert time.
    occurred_at: datetime = Field(sa_type=DateTime, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)

    @property
    def data(self) -> dict[str, Any]:
        return _parse_json_dict(self.data_json)
