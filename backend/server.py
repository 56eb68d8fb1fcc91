from voice_minutes.routes import voice_router, minutes_router
from voice_minutes.db_init import ensure_schema
from voice_minutes.sweeper import AbandonedSessionSweeper, register_sweep_job
from voice_minutes.notifications import drain_pending
from utils.environment import is_test, ENVIRONMENT
from database import db, client, check_db_connection
from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler

# Create the main app
app = FastAPI(title="Voice Minutes - Metered Realtime Voice Sessions")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Voice Minutes API", "version": "1.0.0"}


@api_router.get("/health")
async def health():
    db_ok, db_error = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "ok" if db_ok else db_error,
        "environment": ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


scheduler = AsyncIOScheduler()

api_router.include_router(voice_router)
api_router.include_router(minutes_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Collections, indexes (including the ledger uniqueness index) and package catalog
    await ensure_schema(db)

    if is_test():
        logger.info("Test environment - abandoned session sweep not scheduled")
        return

    register_sweep_job(scheduler, AbandonedSessionSweeper(db))
    scheduler.start()
    logger.info("Scheduler started - abandoned voice session sweep")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down")

    # Let queued notification emails finish before the client goes away
    await drain_pending()

    # Close MongoDB client
    client.close()
