import asyncio
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import DateTime

from visitor_intent.core.errors import NotFoundError, ValidationError
from visitor_intent.db.engine import async_session_factory, get_session
from visitor_intent.models.lead import Lead
from visitor_intent.models.tracking import VisitorSession
from visitor_intent.services.session_service import generate_session_token, session_service


def _visitor_id(prefix: str = "visitor") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def test_generate_session_token_is_long_and_unique():
    tokens = {generate_session_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all(len(token) >= 64 for token in tokens)
    assert len(generate_session_token(16)) == 64


def test_create_session_rejects_bad_visitor_ids():
    async def _run(visitor_id):
        async for session in get_session():
            await session_service.create_session(session, visitor_id)

    with pytest.raises(ValidationError):
        asyncio.run(_run(""))
    with pytest.raises(ValidationError):
        asyncio.run(_run("   "))
    with pytest.raises(ValidationError):
        asyncio.run(_run("x" * 65))


def test_create_session_captures_attribution():
    async def _run():
        async for session in get_session():
            return await session_service.create_session(
                session,
                _visitor_id(),
                {
                    "referrer": "https://www.google.com/search?q=agency",
                    "landing_page": "/es/servicios",
                    "user_agent": (
                        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
                        "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
                    ),
                    "locale": "es",
                },
            )

    row = asyncio.run(_run())

    assert row.id is not None
    assert row.uuid
    assert len(row.session_token) >= 64
    assert row.status == "active"
    assert row.referrer_domain == "www.google.com"
    assert row.referrer_type == "organic"
    assert row.device_type == "mobile"
    assert row.os == "iOS"
    assert row.locale == "es"
    assert row.intent_score == 0
    assert row.intent_level == "cold"
    assert row.is_returning is False
    assert row.first_seen_at == row.started_at


def test_returning_visitor_counts_ended_sessions():
    visitor_id = _visitor_id("returning")

    async def _run():
        async for session in get_session():
            first = await session_service.create_session(session, visitor_id)
            await session_service.end_session(session, first)
            second = await session_service.create_session(session, visitor_id)
            return first, second

    first, second = asyncio.run(_run())

    assert first.is_returning is False
    assert second.is_returning is True
    assert second.previous_sessions_count == 1
    assert second.first_seen_at == first.created_at
    assert second.session_token != first.session_token


def test_lookup_by_unknown_token_raises_not_found():
    async def _run():
        async for session in get_session():
            await session_service.get_by_token(session, "missing-token")

    with pytest.raises(NotFoundError):
        asyncio.run(_run())


def test_resume_session_within_window_only():
    start = datetime(2030, 5, 1, 10, 0, 0)

    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id(), now=start)
            resumed = await session_service.resume_session(
                session, row.session_token, now=start + timedelta(minutes=10)
            )
            stale = await session_service.resume_session(
                session, row.session_token, now=start + timedelta(minutes=10, hours=2)
            )
            missing = await session_service.resume_session(session, None)
            return row, resumed, stale, missing

    row, resumed, stale, missing = asyncio.run(_run())

    assert resumed is not None
    assert resumed.id == row.id
    assert resumed.last_activity_at == start + timedelta(minutes=10)
    assert stale is None
    assert missing is None


def test_end_session_is_terminal_and_uses_absolute_duration():
    start = datetime(2030, 6, 1, 12, 0, 0)

    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id(), now=start)
            # Client clock behind the server: ended_at precedes started_at.
            await session_service.end_session(session, row, now=start - timedelta(seconds=30))
            await session_service.touch(session, row, now=start + timedelta(minutes=5))
            await session_service.increment_page_views(session, row)
            await session_service.end_session(session, row, now=start + timedelta(hours=1))
            return row

    row = asyncio.run(_run())

    assert row.status == "ended"
    assert row.total_time_seconds == 30
    assert row.ended_at == start - timedelta(seconds=30)
    assert row.last_activity_at == start
    assert row.page_views_count == 0


def test_counters_increment_in_place():
    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id())
            for _ in range(3):
                await session_service.increment_page_views(session, row)
            await session_service.increment_events(session, row)
            return row

    row = asyncio.run(_run())

    assert row.page_views_count == 3
    assert row.events_count == 1


def test_scroll_depth_max_never_decreases():
    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id())
            seen = []
            for depth in (40, 75, 20, 120):
                await session_service.record_scroll_depth(session, row, depth)
                seen.append(row.scroll_depth_max)
            return seen

    assert asyncio.run(_run()) == [40, 75, 75, 100]


def test_latches_only_go_true():
    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id())
            await session_service.mark_page_visited(session, row, "pricing")
            await session_service.mark_page_visited(session, row, "blog")
            await session_service.mark_cta_clicked(session, row)
            await session_service.mark_cta_clicked(session, row)
            await session_service.mark_form_started(session, row)
            return row

    row = asyncio.run(_run())

    assert row.visited_pricing is True
    assert row.visited_services is False
    assert row.clicked_cta is True
    assert row.started_form is True
    assert row.completed_form is False


def test_sweep_marks_only_stale_active_sessions_idle():
    start = datetime(2030, 7, 1, 9, 0, 0)

    async def _run():
        async for session in get_session():
            stale = await session_service.create_session(session, _visitor_id(), now=start)
            fresh = await session_service.create_session(
                session, _visitor_id(), now=start + timedelta(minutes=50)
            )
            swept = await session_service.sweep_idle_sessions(session, now=start + timedelta(minutes=60))
            await session.refresh(stale)
            await session.refresh(fresh)
            return swept, stale, fresh

    swept, stale, fresh = asyncio.run(_run())

    assert swept >= 1
    assert stale.status == "idle"
    assert fresh.status == "active"


def test_link_to_lead_allows_relinking():
    async def _run():
        async for session in get_session():
            first_lead = Lead(name="First", email=f"{uuid.uuid4().hex[:8]}@example.com")
            second_lead = Lead(name="Second", email=f"{uuid.uuid4().hex[:8]}@example.com")
            session.add(first_lead)
            session.add(second_lead)
            await session.commit()
            await session.refresh(first_lead)
            await session.refresh(second_lead)

            row = await session_service.create_session(session, _visitor_id())
            await session_service.link_to_lead(session, row, first_lead)
            await session_service.link_to_lead(session, row, second_lead)
            found = await session_service.get_lead_by_uuid(session, second_lead.uuid)
            return row, second_lead, found

    row, second_lead, found = asyncio.run(_run())

    assert row.lead_id == second_lead.id
    assert found.id == second_lead.id


def test_mark_idle_then_touch_reactivates():
    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id())
            await session_service.mark_idle(session, row)
            idle_status = row.status
            await session_service.touch(session, row)
            return idle_status, row

    idle_status, row = asyncio.run(_run())

    assert idle_status == "idle"
    assert row.status == "active"


def test_session_duration_and_liveness_helpers():
    start = datetime(2030, 8, 1, 10, 0, 0)
    row = VisitorSession(
        visitor_id="v",
        session_token="t",
        status="active",
        started_at=start,
        last_activity_at=start + timedelta(minutes=2),
    )

    assert row.duration_seconds(now=start + timedelta(minutes=3)) == 180
    assert row.is_live(now=start + timedelta(minutes=4), minutes=5) is True
    assert row.is_live(now=start + timedelta(minutes=10), minutes=5) is False

    row.status = "ended"
    row.ended_at = start + timedelta(seconds=90)
    assert row.duration_seconds(now=start + timedelta(hours=1)) == 90
    assert row.is_live(now=start + timedelta(minutes=3), minutes=5) is False


def test_counters_survive_interleaved_requests():
    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id())

        # Both requests hold a copy loaded before either one writes.
        async with async_session_factory() as first, async_session_factory() as second:
            seen_by_first = await first.get(VisitorSession, row.id)
            seen_by_second = await second.get(VisitorSession, row.id)
            await session_service.increment_page_views(first, seen_by_first)
            await session_service.increment_page_views(second, seen_by_second)
            await session_service.increment_events(first, seen_by_first)
            await session_service.increment_events(second, seen_by_second)
            await session_service.increment_events(first, seen_by_first)
            return seen_by_first

    row = asyncio.run(_run())

    assert row.page_views_count == 2
    assert row.events_count == 3


def test_scroll_depth_max_survives_a_stale_request():
    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id())

        async with async_session_factory() as first, async_session_factory() as second:
            seen_by_first = await first.get(VisitorSession, row.id)
            seen_by_second = await second.get(VisitorSession, row.id)
            await session_service.record_scroll_depth(first, seen_by_first, 80)
            await session_service.record_scroll_depth(second, seen_by_second, 30)
            return seen_by_second

    row = asyncio.run(_run())

    assert row.scroll_depth_max == 80


def test_source_site_defaults_to_main():
    async def _run():
        async for session in get_session():
            default = await session_service.create_session(session, _visitor_id())
            landing = await session_service.create_session(session, _visitor_id(), {"source_site": "landing"})
            return default, landing

    default, landing = asyncio.run(_run())

    assert default.source_site == "main"
    assert landing.source_site == "landing"


def test_naive_utc_timestamps_are_stored_as_given():
    start = datetime(2030, 9, 1, 7, 30, 0)

    async def _run():
        async for session in get_session():
            row = await session_service.create_session(session, _visitor_id(), now=start)
        async for session in get_session():
            return await session.get(VisitorSession, row.id)

    reloaded = asyncio.run(_run())

    assert isinstance(VisitorSession.__table__.c.started_at.type, DateTime)
    assert isinstance(Lead.__table__.c.created_at.type, DateTime)
    assert reloaded.started_at == start
    assert reloaded.started_at.tzinfo is None
