from visitor_intent.models.lead import Lead
from visitor_intent.models.tracking import (
    IntentLevel,
    PageView,
    ReferrerType,
    SessionStatus,
    VisitorEvent,
    VisitorSession,
)

__all__ = [
    "Lead",
    "IntentLevel", "ReferrerType", "SessionStatus",
    "VisitorSession", "PageView", "VisitorEvent",
]
