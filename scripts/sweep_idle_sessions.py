#!/usr/bin/env python3
"""
Mark visitor sessions idle once they pass the inactivity window.

Meant to run from cron every few minutes.

Examples:
    python3 scripts/sweep_idle_sessions.py
    python3 scripts/sweep_idle_sessions.py --rescore
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from sqlmodel import select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from visitor_intent.db.engine import get_session
from visitor_intent.models.tracking import SessionStatus, VisitorSession
from visitor_intent.services.intent_scoring import intent_scoring_service
from visitor_intent.services.session_service import session_service


async def _run(rescore: bool, limit: int) -> dict:
    summary = {"swept": 0, "rescored": 0}
    async for session in get_session():
        summary["swept"] = await session_service.sweep_idle_sessions(session)

        if rescore:
            rows = (
                await session.exec(
                    select(VisitorSession)
                    .where(VisitorSession.status == SessionStatus.IDLE.value)
                    .order_by(VisitorSession.last_activity_at.desc())
                    .limit(limit)
                )
            ).all()
            for row in rows:
                await intent_scoring_service.update_session_score(session, row)
            summary["rescored"] = len(rows)
        break
    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description="Sweep inactive visitor sessions to idle.")
    parser.add_argument(
        "--rescore",
        action="store_true",
        help="Recompute and persist the intent score of idle sessions after the sweep",
    )
    parser.add_argument("--limit", type=int, default=500, help="Max idle sessions to rescore")
    args = parser.parse_args()

    summary = asyncio.run(_run(rescore=args.rescore, limit=max(1, args.limit)))
    print(json.dumps(summary, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
