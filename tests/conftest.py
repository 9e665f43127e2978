import asyncio
import os
import tempfile
from pathlib import Path

import pytest

_DB_PATH = Path(tempfile.gettempdir()) / f"visitor_intent_test_{os.getpid()}.db"

# Must be set before visitor_intent.core.config is first imported.
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"


@pytest.fixture(scope="session", autouse=True)
def _database():
    from visitor_intent.db.engine import engine, init_db

    asyncio.run(init_db())
    yield
    asyncio.run(engine.dispose())
    if _DB_PATH.exists():
        _DB_PATH.unlink()
