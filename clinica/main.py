import asyncio
import logging
import time
from contextlib import asynccontextmanager

import redis
from arq import create_pool
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models  # noqa: F401 - registers tables with Base
from .cache import AvailabilityCache
from .config import (
    ALLOWED_ORIGINS,
    AVAILABILITY_CACHE_ENABLED,
    AVAILABILITY_CACHE_TTL,
    REDIS_ENABLED,
    SchedulingSettings,
)
from .database import Base, engine
from .domain.scheduling.errors import SchedulingError
from .domain.scheduling.locks import SlotLockRegistry
from .domain.scheduling.router import router as scheduling_router
from .notifications import LoggingNotifier, QueueNotifier
from .redis_client import create_redis_client, get_redis_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    redis_client = None
    arq_pool = None
    if REDIS_ENABLED:
        try:
            redis_client = create_redis_client()
            arq_pool = await create_pool(get_redis_settings())
            logger.info("Redis connection established")
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis unavailable - using in-process cache and log-only notifications: {e}")
            if redis_client is not None:
                redis_client.close()
                redis_client = None

    app.state.redis_client = redis_client
    app.state.availability_cache = AvailabilityCache(
        redis_client=redis_client,
        default_ttl=AVAILABILITY_CACHE_TTL,
        enabled=AVAILABILITY_CACHE_ENABLED,
    )
    app.state.notifier = (
        QueueNotifier(arq_pool, asyncio.get_running_loop()) if arq_pool else LoggingNotifier()
    )
    app.state.slot_locks = SlotLockRegistry()
    app.state.scheduling_settings = SchedulingSettings()
    logger.info(f"📦 Availability cache backend: {app.state.availability_cache.backend}")

    yield

    logger.info("Application shutting down...")
    if arq_pool is not None:
        await arq_pool.close()
    if redis_client is not None:
        redis_client.close()


app = FastAPI(title="Clinica Scheduling API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError):
    """Map the scheduling error taxonomy onto HTTP status codes"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {type(exc).__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "Appointment storage is unavailable, please try again later"},
        )

    logger.warning(f"{request.method} {request.url.path} - {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# CORS Configuration
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(scheduling_router)


@app.get("/")
def root():
    return {"message": "Clinica Scheduling API is running"}


@app.get("/health")
def health(request: Request):
    cache = getattr(request.app.state, "availability_cache", None)
    return {"status": "healthy", "cache": cache.stats() if cache else None}


@app.get("/health/redis")
def redis_health_check(request: Request):
    """Check Redis connectivity for monitoring"""
    redis_client = getattr(request.app.state, "redis_client", None)
    if redis_client is None:
        return {"status": "disabled", "redis": {"connected": False}}

    try:
        start_time = time.time()
        redis_client.ping()
        response_time = (time.time() - start_time) * 1000  # Convert to milliseconds

        info = redis_client.info()
        return {
            "status": "healthy",
            "redis": {
                "connected": True,
                "response_time_ms": round(response_time, 2),
                "version": info.get("redis_version", "unknown"),
                "used_memory_human": info.get("used_memory_human", "unknown"),
            },
        }
    except redis.RedisError as e:
        return {"status": "unhealthy", "redis": {"connected": False, "error": str(e)}}
