import logging
import time
from uuid import uuid4

from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from visitor_intent.core.config import settings


logger = logging.getLogger(__name__)


def _is_postgres_url(database_url: str) -> bool:
    return database_url.startswith("postgresql") or database_url.startswith("postgres")


db_url = settings.DATABASE_URL
db_url_obj = make_url(db_url)
connect_args: dict = {}
engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if _is_postgres_url(db_url):
    # Prevent prepared statement collisions with asyncpg + PgBouncer transaction mode.
    connect_args["statement_cache_size"] = 0
    connect_args["prepared_statement_cache_size"] = 0
    connect_args["prepared_statement_name_func"] = lambda: f"__asyncpg_{uuid4()}__"

    # Transaction poolers (6543) must not see reused connections.
    if db_url_obj.port == 6543:
        engine_kwargs["poolclass"] = NullPool

    if settings.ENVIRONMENT == "production":
        connect_args.setdefault("ssl", "require")

engine = create_async_engine(
    db_url,
    connect_args=connect_args,
    **engine_kwargs,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncSession:
    start_time = time.time()
    async with async_session_factory() as session:
        yield session

    duration = time.time() - start_time
    if duration > 0.2:
        logger.warning("Slow DB Session: %.4fs", duration)


async def init_db():
    from sqlmodel import SQLModel
    from visitor_intent.models import lead  # noqa: F401
    from visitor_intent.models import tracking  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await conn.run_sync(_ensure_session_columns)
        await conn.run_sync(_ensure_lead_columns)


def _ensure_session_columns(sync_conn):
    inspector = inspect(sync_conn)
    if "visitorsession" not in inspector.get_table_names():
        return

    existing = {col["name"] for col in inspector.get_columns("visitorsession")}
    additions = {
        "locale": "VARCHAR(8) DEFAULT 'en'",
        "accept_language": "VARCHAR",
        "timezone": "VARCHAR(64)",
        "is_returning": "BOOLEAN DEFAULT FALSE",
        "previous_sessions_count": "INTEGER DEFAULT 0",
        "first_seen_at": "TIMESTAMP",
        "source_site": "VARCHAR(50) DEFAULT 'main'",
    }

    for column_name, column_type in additions.items():
        if column_name in existing:
            continue
        sync_conn.execute(text(f"ALTER TABLE visitorsession ADD COLUMN {column_name} {column_type}"))


def _ensure_lead_columns(sync_conn):
    inspector = inspect(sync_conn)
    if "lead" not in inspector.get_table_names():
        return

    existing = {col["name"] for col in inspector.get_columns("lead")}
    if "source_site" not in existing:
        sync_conn.execute(text("ALTER TABLE lead ADD COLUMN source_site VARCHAR(50) DEFAULT 'main'"))
