"""
Atelier - realtime customer chat with AI auto-reply and human handoff
FastAPI Backend (REST + WebSocket)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import asyncio
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from routers import chat, sessions, admin
from routers.chat_orchestration import get_coordinator, get_gateway
from middleware.rate_limit import RateLimitMiddleware
from logging_config import setup_logging
from errors import ErrorCode, register_exception_handlers
from config import runtime_config

setup_logging()
logger = logging.getLogger(__name__)

APP_NAME = "Atelier"


@dataclass
class StartupHealth:
    """Tracks component health through startup phases."""
    phase: str = "initializing"
    redis: str = "pending"
    postgres: str = "pending"
    auth: str = "pending"
    startup_complete: bool = False


_startup_health = StartupHealth()

# Instance ID - changes on every startup, used by clients to detect restarts
INSTANCE_ID = str(uuid.uuid4())


async def periodic_session_sweep(interval_s: int, inactive_hours: int):
    """Periodically close sessions nobody has touched for ``inactive_hours``."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            coordinator = await get_coordinator()
            await coordinator.sweep_inactive(inactive_hours)
        except Exception as e:
            logger.error(f"Inactive session sweep error: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    _startup_health.phase = "connecting"

    from services.database import get_database, close_database
    from services.redis_client import get_redis, close_redis

    db = await get_database()
    _startup_health.postgres = "ok" if db.available else "fallback"
    if not db.available:
        logger.warning("PostgreSQL unavailable: chat sessions are kept in memory only")

    redis = await get_redis()
    _startup_health.redis = "ok" if redis.available else "fallback"
    if not redis.available:
        mode = "closed" if runtime_config.is_production else "open"
        logger.warning(f"Redis unavailable: rate limiting fails {mode}")

    # Operator accounts and JWTs
    from services.admin_auth import get_auth_manager
    auth_manager = get_auth_manager()
    auth_manager.initialize()
    await auth_manager.initialize_async()
    _startup_health.auth = "setup_required" if auth_manager.setup_required else "ok"
    if auth_manager.setup_required:
        logger.info("Operator auth: no accounts yet (register the first admin account)")

    # Realtime gateway: the auth manager vouches for operator sockets
    gateway = get_gateway()
    gateway.set_token_verifier(auth_manager.verify_token)
    await gateway.init()
    await get_coordinator()

    sweep_task = asyncio.create_task(
        periodic_session_sweep(runtime_config.sweep_interval_s, runtime_config.session_inactive_hours)
    )

    _startup_health.phase = "ready"
    _startup_health.startup_complete = True
    logger.info(f"{APP_NAME} is ready to chat")
    yield

    # Shutdown
    sweep_task.cancel()
    await gateway.shutdown()
    await close_redis()
    await close_database()
    logger.info(f"{APP_NAME} signing off")


app = FastAPI(
    title=APP_NAME,
    description="Realtime customer chat with AI auto-reply and human operators",
    version="1.0.0",
    lifespan=lifespan,
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# Chat payloads are small; 1MB is generous
MAX_BODY_SIZE_API = 1 * 1024 * 1024


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests with bodies exceeding the size limit."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_BODY_SIZE_API:
            return JSONResponse(
                status_code=413,
                content={
                    "success": False,
                    "error": {
                        "code": ErrorCode.VALIDATION_OUT_OF_RANGE.value,
                        "message": f"Request body too large (limit {MAX_BODY_SIZE_API} bytes)",
                        "details": None,
                        "operation": request.url.path,
                        "recoverable": True,
                        "context": None,
                    },
                },
            )
        return await call_next(request)


app.add_middleware(SecurityHeadersMiddleware)

# Request body size limit
app.add_middleware(RequestSizeLimitMiddleware)

# Rate limiting middleware (Redis-backed)
app.add_middleware(RateLimitMiddleware)

# CORS - explicit origins from CORS_ORIGINS, otherwise local dev frontends
_cors_origins = runtime_config.get_cors_origins()
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

register_exception_handlers(app)

# Chat router is mounted WITHOUT /api prefix so WebSocket is at /ws/chat
app.include_router(chat.router, tags=["chat"])
# Sessions and admin routers carry their own /api prefixes
app.include_router(sessions.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    """Health check - reports PostgreSQL / Redis modes and live rooms."""
    from services.database import get_database
    from services.redis_client import get_redis

    checks = {}

    redis = await get_redis()
    redis_health = await redis.health_check()
    checks["redis"] = redis_health.get("status", "unknown")

    db = await get_database()
    db_health = await db.health_check()
    checks["postgres"] = db_health.get("status", "unknown")

    all_ok = all(v == "connected" for v in checks.values())
    return {
        "status": "healthy" if all_ok else "degraded",
        "service": APP_NAME.lower(),
        "instance_id": INSTANCE_ID,
        "checks": checks,
        "active_rooms": get_gateway().room_count(),
        "startup_phase": _startup_health.phase,
        "startup_complete": _startup_health.startup_complete,
    }
