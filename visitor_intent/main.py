import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from visitor_intent.core.config import settings
from visitor_intent.db.engine import engine, init_db


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_AUTO_INIT_ON_STARTUP:
        logger.info("Initializing Database...")
        try:
            await init_db()
            logger.info("Database initialized successfully.")
        except Exception:
            logger.exception("Startup Failure: database initialization failed")
            raise
    else:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connectivity verified.")
    yield
    logger.info("Shutting down...")


from visitor_intent.routers import analytics, tracking  # noqa: E402

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    if process_time > 0.5:
        logger.warning("Slow Request: %s %s took %.4fs", request.method, request.url.path, process_time)

    return response


@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}


app.include_router(tracking.router, prefix="/api")
app.include_router(analytics.router, prefix=settings.API_V1_STR)
