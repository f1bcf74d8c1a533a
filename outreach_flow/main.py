import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from outreach_flow.api.monitoring import CHANNELS, get_engine
from outreach_flow.api.monitoring import router as monitoring_router
from outreach_flow.api.scheduler import router as scheduler_router
from outreach_flow.api.tracking import router as tracking_router
from outreach_flow.config import settings
from outreach_flow.db.init import get_database, init_db
from outreach_flow.wiring import Engine

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
    logger.info("Celery worker and beat should be running in separate processes.")
    logger.info("API endpoints available:")
    logger.info("  - /api/scheduler: sweep and recovery triggers")
    logger.info("  - /api/monitoring: dispatch guard and execution state")
    logger.info("  - /api/track: open pixel and click redirects")
    logger.info("  - /api/track: open pixel and click redirects")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} API"}


@app.get("/health")
async def health_check(engine: Engine = Depends(get_engine)):
    """Database reachability and circuit state per channel"""
    try:
        await get_database().command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    circuits = {}
    for channel in CHANNELS:
        try:
            circuits[channel] = "open" if await engine.guard.is_circuit_open(channel) else "closed"
        except Exception as e:
            circuits[channel] = f"unknown: {str(e)}"

    healthy = db_status == "healthy" and all(state == "closed" for state in circuits.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "database": db_status,
        "circuits": circuits,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(scheduler_router, prefix="/api", tags=["scheduler"])
app.include_router(monitoring_router, prefix="/api", tags=["monitoring"])
app.include_router(tracking_router, prefix="/api", tags=["tracking"])
