import asyncio
import uuid

from fastapi.testclient import TestClient

from visitor_intent.db.engine import get_session
from visitor_intent.main import app
from visitor_intent.models.lead import Lead


async def _create_lead() -> str:
    async for session in get_session():
        lead = Lead(
            name="Prospect",
            email=f"prospect-{uuid.uuid4().hex[:8]}@example.com",
            current_step=3,
            total_steps=4,
        )
        session.add(lead)
        await session.commit()
        await session.refresh(lead)
        return lead.uuid


def _init(client: TestClient, visitor_id: str, **extra) -> dict:
    response = client.post(
        "/api/track/session",
        json={"visitor_id": visitor_id, "landing_page": "/", **extra},
        headers={"user-agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0.0.0 Safari/537.36"},
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_health():
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_full_tracking_flow_updates_intent():
    lead_uuid = asyncio.run(_create_lead())
    visitor_id = f"api-{uuid.uuid4().hex[:12]}"

    with TestClient(app) as client:
        created = _init(client, visitor_id, referrer="https://www.linkedin.com/feed/")
        token = created["session_token"]
        assert created["resumed"] is False
        assert len(token) >= 64

        resumed = _init(client, visitor_id, session_token=token)
        assert resumed["resumed"] is True
        assert resumed["session_token"] == token
        assert resumed["session_id"] == created["session_id"]

        page = client.post(
            "/api/track/pageview",
            json={"session_token": token, "url": "https://example.com/pricing", "path": "/pricing"},
        )
        assert page.status_code == 200, page.text
        page_body = page.json()
        assert page_body["page_type"] == "pricing"
        # page view with pricing bonus, the visited_pricing flag and the social referrer
        assert page_body["intent_score"] == 23

        event = client.post(
            "/api/track/event",
            json={
                "session_token": token,
                "page_view_id": page_body["page_view_id"],
                "event_type": "cta_click",
                "event_label": "Book a call",
            },
        )
        assert event.status_code == 200, event.text
        assert event.json()["intent_points"] == 20
        assert event.json()["intent_score"] == 63
        assert event.json()["intent_level"] == "hot"

        engagement = client.post(
            "/api/track/engagement",
            json={
                "session_token": token,
                "page_view_id": page_body["page_view_id"],
                "time_on_page_seconds": 40,
                "scroll_depth": 60,
            },
        )
        assert engagement.status_code == 200, engagement.text
        assert engagement.json() == {"success": True, "scroll_depth_max": 60.0, "read_content": True}

        linked = client.post("/api/track/link-lead", json={"session_token": token, "lead_id": lead_uuid})
        assert linked.status_code == 200, linked.text
        # form start, 40s on site, 60% scroll and a lead three steps into four
        assert linked.json()["intent_score"] == 94

        ended = client.post("/api/track/end", json={"session_token": token})
        assert ended.status_code == 200, ended.text
        # ending resets total time to wall clock, dropping the time bonus
        assert ended.json()["final_intent_score"] == 92
        assert ended.json()["intent_level"] == "hot"

        detail = client.get(f"/api/v1/analytics/sessions/{created['session_id']}")
        assert detail.status_code == 200, detail.text
        body = detail.json()

    assert body["session"]["status"] == "ended"
    assert body["session"]["referrer_type"] == "social"
    assert body["session"]["has_lead"] is True
    assert body["session"]["device"] == "desktop"
    assert body["intent_breakdown"]["score"] == body["session"]["intent_score"] == 92
    assert body["intent_breakdown"]["signals"]["flag:clicked_cta"] == 20
    assert body["intent_breakdown"]["signals"]["lead:progress"] == 10
    assert body["intent_breakdown"]["signals"]["source:social"] == 2
    assert [event["type"] for event in body["events"]] == ["cta_click", "page_view"]
    assert len(body["page_views"]) == 1
    assert body["page_views"][0]["exited_at"] is not None
    assert body["page_views"][0]["duration"] >= 0
    assert body["session"]["is_live"] is False


def test_unknown_session_token_returns_404():
    with TestClient(app) as client:
        response = client.post(
            "/api/track/pageview",
            json={"session_token": "nope", "url": "https://example.com/", "path": "/"},
        )
        end = client.post("/api/track/end", json={"session_token": "nope"})
        detail = client.get("/api/v1/analytics/sessions/not-a-session")

    assert response.status_code == 404
    assert end.status_code == 404
    assert detail.status_code == 404


def test_invalid_payloads_return_422():
    with TestClient(app) as client:
        token = _init(client, f"api-{uuid.uuid4().hex[:12]}")["session_token"]

        unknown_type = client.post("/api/track/event", json={"session_token": token, "event_type": "teleport"})
        missing_visitor = client.post("/api/track/session", json={"landing_page": "/"})
        blank_visitor = client.post("/api/track/session", json={"visitor_id": "   ", "landing_page": "/"})
        bad_scroll = client.post(
            "/api/track/engagement",
            json={"session_token": token, "page_view_id": 1, "time_on_page_seconds": 5, "scroll_depth": 140},
        )

    assert unknown_type.status_code == 422
    assert missing_visitor.status_code == 422
    assert blank_visitor.status_code == 422
    assert bad_scroll.status_code == 422


def test_dashboard_and_live_endpoints():
    with TestClient(app) as client:
        _init(client, f"api-{uuid.uuid4().hex[:12]}")
        dashboard = client.get("/api/v1/analytics/dashboard", params={"period": "24h"})
        live = client.get("/api/v1/analytics/live")

    assert dashboard.status_code == 200
    assert dashboard.json()["period"] == "24h"
    assert dashboard.json()["stats"]["total_sessions"] >= 1
    assert live.status_code == 200
    assert live.json()["count"] >= 1


def test_source_site_is_recorded_and_filters_dashboard():
    site = f"lp-{uuid.uuid4().hex[:8]}"

    with TestClient(app) as client:
        created = _init(client, f"api-{uuid.uuid4().hex[:12]}", source_site=site)
        _init(client, f"api-{uuid.uuid4().hex[:12]}")
        detail = client.get(f"/api/v1/analytics/sessions/{created['session_id']}")
        dashboard = client.get("/api/v1/analytics/dashboard", params={"period": "24h", "source_site": site})
        live = client.get("/api/v1/analytics/live", params={"source_site": site})
        too_long = client.post(
            "/api/track/session",
            json={"visitor_id": "v", "landing_page": "/", "source_site": "x" * 51},
        )

    assert detail.json()["session"]["source_site"] == site
    assert dashboard.status_code == 200
    assert dashboard.json()["source_site"] == site
    assert dashboard.json()["stats"]["total_sessions"] == 1
    assert {"source_site": site, "count": 1} in dashboard.json()["sites"]
    assert [row["uuid"] for row in live.json()["sessions"]] == [created["session_id"]]
    assert too_long.status_code == 422


def test_page_view_after_end_returns_422():
    with TestClient(app) as client:
        token = _init(client, f"api-{uuid.uuid4().hex[:12]}")["session_token"]
        client.post("/api/track/end", json={"session_token": token})
        response = client.post(
            "/api/track/pageview",
            json={"session_token": token, "url": "https://example.com/pricing", "path": "/pricing"},
        )

    assert response.status_code == 422
