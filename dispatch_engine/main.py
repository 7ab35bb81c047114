"""
FastAPI application with New Relic APM, CORS, lifespan, and all routers.
"""
import logging
import os

# New Relic must be initialized BEFORE any other imports that it instruments.
if os.getenv("NEW_RELIC_LICENSE_KEY"):
    import newrelic.agent
    newrelic.agent.initialize("newrelic.ini")

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispatch_engine.config import get_settings
from dispatch_engine.database import AsyncSessionLocal
from dispatch_engine.engine import DispatchEngine
from dispatch_engine.exceptions import DispatchError
from dispatch_engine.redis_client import get_redis, close_redis
from dispatch_engine.routers import drivers, requests, zones

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s [%s]", settings.app_name, settings.env)
    redis = await get_redis()
    engine = DispatchEngine(settings, AsyncSessionLocal, redis)
    engine.start_sweeper()
    app.state.engine = engine
    yield
    await engine.shutdown()
    await close_redis()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Ride and delivery dispatch: matching, bidding and cancellation screening",
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


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    logger.info("%s on %s: %s", exc.code, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "code": exc.code},
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Health check (no auth)
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok"}


# Register routers
app.include_router(requests.router)
app.include_router(drivers.router)
app.include_router(zones.router)
