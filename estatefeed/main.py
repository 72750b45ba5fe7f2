"""estatefeed — FastAPI Application Entry Point.

Real-estate feed ingestion service: apartment listing API plus the
collect → inspect → sync feed pipeline.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from estatefeed.database import init_db, test_connection
from estatefeed.scheduler.jobs import start_scheduler, stop_scheduler
from estatefeed.api.apartment_routes import router as apartment_router
from estatefeed.api.feed_routes import router as feed_router
from estatefeed.core.logging import get_logger

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 estatefeed starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    if test_connection():
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("estatefeed shut down")


app = FastAPI(
    title="estatefeed",
    description="Real-estate CRM feed ingestion: snapshot, inspect and reconcile the feed, serve apartment listings.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(apartment_router)
app.include_router(feed_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "estatefeed",
        "version": "1.0.0",
    }
