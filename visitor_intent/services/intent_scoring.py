"""Rule-based visitor intent scoring.

A session's score is the sum of the points fixed on each of its events, a
one-time bonus for every engagement latch the session has reached and a set of
threshold bonuses read from its rolled-up state (time on site, scroll depth,
return visits, linked lead progress and traffic source). The total is clamped
to [0, 100] after everything has been added, so a brand-new direct visit
scores 0. The same function produces the value that gets persisted on the
session and the breakdown shown to sales staff, so the two can never drift
apart.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Iterable, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.clock import utcnow
from visitor_intent.core.config import settings
from visitor_intent.models.lead import Lead
from visitor_intent.models.tracking import IntentLevel, ReferrerType, VisitorEvent, VisitorSession
from visitor_intent.services.session_service import session_service


logger = logging.getLogger(__name__)


SCORE_MIN = 0.0
SCORE_MAX = 100.0

FLAG_BONUSES = MappingProxyType(
    {
        "visited_pricing": 10,
        "visited_services": 5,
        "visited_portfolio": 4,
        "visited_contact": 8,
        "started_form": 15,
        "completed_form": 25,
        "clicked_cta": 20,
        "watched_video": 10,
    }
)

# Session-level bonuses. Tiers are cumulative: every threshold reached adds
# its points. A brand-new direct visit reaches none of them.
TIME_ON_SITE_TIERS = ((30, 2), (60, 2), (120, 2), (180, 2), (300, 3), (600, 4))
ENGAGED_RATIO_TIERS = ((0.5, 2), (0.7, 2))
TIME_BONUS_CAP = 15

SCROLL_DEPTH_TIERS = ((25, 2), (50, 2), (75, 2), (90, 2))

RETURN_VISIT_BASE = 3
PREVIOUS_SESSION_TIERS = ((2, 2), (3, 2), (5, 3))
RETURN_BONUS_CAP = 10

LEAD_PROGRESS_TIERS = ((25, 2), (50, 3), (75, 5))

SOURCE_BONUSES = MappingProxyType(
    {
        ReferrerType.PAID.value: 4,
        ReferrerType.EMAIL.value: 4,
        ReferrerType.ORGANIC.value: 3,
        ReferrerType.REFERRAL.value: 3,
        ReferrerType.SOCIAL.value: 2,
    }
)
CAMPAIGN_BONUS = 3

LEVEL_ORDER = (
    IntentLevel.COLD.value,
    IntentLevel.WARM.value,
    IntentLevel.HOT.value,
    IntentLevel.QUALIFIED.value,
)

LEVEL_COLORS = MappingProxyType(
    {
        IntentLevel.QUALIFIED.value: "#22c55e",
        IntentLevel.HOT.value: "#ef4444",
        IntentLevel.WARM.value: "#f97316",
    }
)
DEFAULT_LEVEL_COLOR = "#6b7280"

LEVEL_LABELS = MappingProxyType(
    {
        IntentLevel.QUALIFIED.value: "Qualified Lead",
        IntentLevel.HOT.value: "Hot Lead",
        IntentLevel.WARM.value: "Warm Lead",
    }
)
DEFAULT_LEVEL_LABEL = "Cold Visitor"


@dataclass(frozen=True)
class IntentThresholds:
    warm: float
    hot: float
    qualified: float

    def __post_init__(self):
        if not (SCORE_MIN < self.warm < self.hot < self.qualified <= SCORE_MAX):
            raise ValueError("Intent thresholds must satisfy 0 < warm < hot < qualified <= 100")

    @classmethod
    def from_settings(cls) -> "IntentThresholds":
        return cls(
            warm=settings.INTENT_WARM_THRESHOLD,
            hot=settings.INTENT_HOT_THRESHOLD,
            qualified=settings.INTENT_QUALIFIED_THRESHOLD,
        )


@dataclass
class IntentScoreResult:
    score: float
    level: str
    signals: dict[str, int] = field(default_factory=dict)
    raw_total: int = 0
    calculated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "color": get_level_color(self.level),
            "label": get_level_label(self.level),
            "signals": dict(self.signals),
            "raw_total": self.raw_total,
            "calculated_at": self.calculated_at.isoformat(),
        }


def clamp_score(total: float) -> float:
    return min(max(float(total), SCORE_MIN), SCORE_MAX)


def determine_level(
    score: float,
    completed_form: bool = False,
    thresholds: Optional[IntentThresholds] = None,
) -> str:
    """Map a clamped score onto a level.

    ``qualified`` needs both the qualified threshold and a completed form.
    A completed form never lands below ``hot``; without one the ladder stops
    at ``hot`` however high the score goes.
    """
    thresholds = thresholds or IntentThresholds.from_settings()
    if completed_form:
        if score >= thresholds.qualified:
            return IntentLevel.QUALIFIED.value
        return IntentLevel.HOT.value
    if score >= thresholds.hot:
        return IntentLevel.HOT.value
    if score >= thresholds.warm:
        return IntentLevel.WARM.value
    return IntentLevel.COLD.value


def level_rank(level: str) -> int:
    try:
        return LEVEL_ORDER.index(level)
    except ValueError:
        return 0


def get_level_color(level: Optional[str]) -> str:
    return LEVEL_COLORS.get(level or "", DEFAULT_LEVEL_COLOR)


def get_level_label(level: Optional[str]) -> str:
    return LEVEL_LABELS.get(level or "", DEFAULT_LEVEL_LABEL)


def _tiered(value: float, tiers) -> int:
    return sum(points for threshold, points in tiers if value >= threshold)


def session_bonuses(visitor_session: VisitorSession, lead: Optional[Lead] = None) -> dict[str, int]:
    """Points earned from the session's rolled-up state rather than single events."""
    bonuses: dict[str, int] = {}

    total_time = int(visitor_session.total_time_seconds or 0)
    engaged_ratio = (visitor_session.engaged_time_seconds or 0) / total_time if total_time > 0 else 0.0
    bonuses["time:on_site"] = min(
        _tiered(total_time, TIME_ON_SITE_TIERS) + _tiered(engaged_ratio, ENGAGED_RATIO_TIERS),
        TIME_BONUS_CAP,
    )

    bonuses["scroll:depth"] = _tiered(float(visitor_session.scroll_depth_max or 0.0), SCROLL_DEPTH_TIERS)

    if visitor_session.is_returning:
        bonuses["return:visits"] = min(
            RETURN_VISIT_BASE
            + _tiered(int(visitor_session.previous_sessions_count or 0), PREVIOUS_SESSION_TIERS),
            RETURN_BONUS_CAP,
        )

    if lead is not None and lead.total_steps:
        progress = (lead.current_step or 0) / lead.total_steps * 100
        bonuses["lead:progress"] = _tiered(progress, LEAD_PROGRESS_TIERS)

    referrer_type = visitor_session.referrer_type or ReferrerType.DIRECT.value
    bonuses[f"source:{referrer_type}"] = SOURCE_BONUSES.get(referrer_type, 0)
    if visitor_session.utm_campaign:
        bonuses["source:campaign"] = CAMPAIGN_BONUS

    return {key: points for key, points in bonuses.items() if points}


def calculate_score(
    visitor_session: VisitorSession,
    events: Iterable[VisitorEvent],
    thresholds: Optional[IntentThresholds] = None,
    now: Optional[datetime] = None,
    lead: Optional[Lead] = None,
) -> IntentScoreResult:
    signals: dict[str, int] = {}
    total = 0

    for event in events:
        points = int(event.intent_points or 0)
        if not points:
            continue
        key = f"event:{event.event_type}"
        signals[key] = signals.get(key, 0) + points
        total += points

    for flag, bonus in FLAG_BONUSES.items():
        if getattr(visitor_session, flag, False):
            signals[f"flag:{flag}"] = bonus
            total += bonus

    for key, points in session_bonuses(visitor_session, lead).items():
        signals[key] = points
        total += points

    score = round(clamp_score(total), 2)
    level = determine_level(score, bool(visitor_session.completed_form), thresholds)
    return IntentScoreResult(
        score=score,
        level=level,
        signals=signals,
        raw_total=total,
        calculated_at=now or utcnow(),
    )


class IntentScoringService:
    async def score_session(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
    ) -> IntentScoreResult:
        events = (
            await session.exec(
                select(VisitorEvent).where(VisitorEvent.visitor_session_id == visitor_session.id)
            )
        ).all()
        lead = await session.get(Lead, visitor_session.lead_id) if visitor_session.lead_id else None
        return calculate_score(visitor_session, events, lead=lead)

    async def update_session_score(
        self,
        session: AsyncSession,
        visitor_session: VisitorSession,
    ) -> IntentScoreResult:
        result = await self.score_session(session, visitor_session)
        previous_level = visitor_session.intent_level
        await session_service.update_intent_score(
            session,
            visitor_session,
            score=result.score,
            level=result.level,
            signals=result.signals,
        )
        if level_rank(result.level) > level_rank(previous_level):
            logger.info(
                "Visitor session uuid=%s moved from %s to %s (score=%s)",
                visitor_session.uuid,
                previous_level,
                result.level,
                result.score,
            )
        return result


intent_scoring_service = IntentScoringService()
