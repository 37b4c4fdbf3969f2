"""
Caregiver Sync Backend - FastAPI Application
Remote monitoring of automated insulin delivery for caregivers.
"""
import logging
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Callable, Deque, Dict, Tuple

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

UNLIMITED_PATHS = ("/health", "/ready", "/")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers; responses are never cached."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding one-minute window per client.

    Remote commands (bolus, carbs, overrides) are counted in their own,
    stricter window.
    """

    def __init__(self, app, requests_per_minute: int = 60, commands_per_minute: int = 10):
        super().__init__(app)
        self.limits = {"read": requests_per_minute, "command": commands_per_minute}
        self.windows: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)

    @staticmethod
    def bucket(request: Request) -> str:
        if "/commands" in request.url.path and request.method != "GET":
            return "command"
        return "read"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNLIMITED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        bucket = self.bucket(request)
        window = self.windows[(client_ip, bucket)]

        current_time = time.monotonic()
        while window and current_time - window[0] >= 60:
            window.popleft()

        if len(window) >= self.limits[bucket]:
            logger.warning(f"Rate limit hit for {client_ip} ({bucket})")
            return JSONResponse(
                status_code=429,
                content={"detail": f"Too many {bucket} requests. Try again later."}
            )

        window.append(current_time)
        return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start polling every configured looper; stop on shutdown."""
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    from services.looper_service import get_looper_registry
    registry = get_looper_registry()
    registry.start_all(settings.sync_interval_seconds)
    logger.info(f"Polling {len(registry.loopers())} looper(s) every {settings.sync_interval_seconds}s")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    await registry.stop_all()


settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Remote monitoring companion for automated insulin delivery",
    lifespan=lifespan
)

# Last added runs first
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=settings.rate_limit_per_minute,
    commands_per_minute=settings.command_rate_limit_per_minute
)

cors_origins = settings.cors_origins_list
if settings.debug:
    cors_origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": settings.app_version}


@app.get("/ready")
async def readiness_check():
    """Ready once every configured looper has a current glucose reading."""
    from services.looper_service import get_looper_registry
    registry = get_looper_registry()

    checks = {
        looper.id: registry.get(looper.id).synchronizer.current_snapshot().currentGlucose is not None
        for looper in registry.loopers()
    }
    ready = all(checks.values())
    return JSONResponse(status_code=200 if ready else 503, content={"ready": ready, "loopers": checks})


@app.get("/")
async def root():
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs"
    }


from api.v1 import loopers, websocket

app.include_router(loopers.router, prefix="/api/v1", tags=["Loopers"])
app.include_router(websocket.router, prefix="/api/v1", tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
