"""multiauth service

Main FastAPI application entry point.
Builds the provider registry and orchestrator at startup and exposes
them through the /auth routes.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from multiauth.api.routes import auth
from multiauth.config.settings import Settings, get_settings
from multiauth.core.auth import AuthOrchestrator, create_default_registry, create_rate_limiter
from multiauth.infrastructure.redis.client import RedisClient
from multiauth.infrastructure.storage import RedisBroadcastChannel, RedisKeyValueStore

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def build_orchestrator(
    settings: Settings, redis_client: Optional[RedisClient] = None
) -> AuthOrchestrator:
    """Create the registry and orchestrator for the configured backend"""
    storage = channel = None
    if redis_client is not None:
        client = redis_client.get_client()
        storage = RedisKeyValueStore(client)
        channel = RedisBroadcastChannel(client, settings.session_channel_name)

    registry = create_default_registry(settings, storage=storage, channel=channel)
    orchestrator = AuthOrchestrator(registry, rate_limiter=create_rate_limiter(settings))
    await orchestrator.initialize()
    return orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    logger.info(f"Environment: {settings.environment}")

    redis_client = None
    if settings.session_backend == "redis":
        redis_client = RedisClient(settings)
        try:
            await redis_client.connect()
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    app.state.orchestrator = await build_orchestrator(settings, redis_client)
    logger.info(f"Session backend: {settings.session_backend}")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.service_name}")
    await app.state.orchestrator.shutdown()
    if redis_client is not None:
        await redis_client.disconnect()


# Create FastAPI application
app = FastAPI(
    title="multiauth",
    version=settings.service_version,
    description="Multi-provider authentication and session orchestration service",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)


# Health check endpoint
@app.get("/health")
async def root_health_check():
    """Service health with per-provider health checks"""
    orchestrator: Optional[AuthOrchestrator] = getattr(app.state, "orchestrator", None)
    providers = {}
    if orchestrator is not None:
        providers = {
            name: health.model_dump(mode="json")
            for name, health in (await orchestrator.health_check()).items()
        }
    healthy = orchestrator is not None and all(p["healthy"] for p in providers.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": settings.service_name,
            "version": settings.service_version,
            "environment": settings.environment,
            "providers": providers,
        },
    )


app.include_router(auth.router, tags=["authentication"])


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Please try again later."
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "multiauth.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
