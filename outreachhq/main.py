"""
OutreachHQ API - FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .database import engine, Base, SessionLocal
from .engine.locks import CampaignLocks
from .engine.orchestrator import GenerationOrchestrator
from .engine.registry import CampaignRegistry
from .errors import CampaignError
from .limiter import limiter
from .logging_config import api_logger
from .middleware import SecurityHeadersMiddleware, RequestLoggingMiddleware
from .responses import api_exception_handler, campaign_error_handler
from .routes import (
    campaigns_router,
    recipients_router,
    templates_router,
    events_router,
)
from .routes.events import emit_campaign_update, emit_run_progress
from .services.delivery import OutboxPublisher
from .services.generation import HttpGenerationService
from .services.recipients import DatabaseRecipientSource

settings = get_settings()

# Create tables (in production, use Alembic migrations instead)
Base.metadata.create_all(bind=engine)


def build_registry() -> CampaignRegistry:
    """Wire the engine to its production collaborators."""
    locks = CampaignLocks()
    orchestrator = GenerationOrchestrator.from_settings(
        settings,
        HttpGenerationService.from_settings(settings),
        DatabaseRecipientSource(SessionLocal),
        locks,
    )
    orchestrator.add_listener(emit_run_progress)
    return CampaignRegistry(
        orchestrator,
        OutboxPublisher(SessionLocal),
        locks,
        notifier=emit_campaign_update,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    # Built inside the running loop so the engine's locks and tasks share it
    app.state.registry = build_registry()
    api_logger.info("Campaign engine started", environment=settings.environment)

    yield

    await app.state.registry.orchestrator.drain()
    api_logger.info("Campaign engine stopped")


app = FastAPI(
    title=settings.app_name,
    description="Campaign generation and refinement engine",
    version="1.0.0",
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(CampaignError, campaign_error_handler)
app.add_exception_handler(StarletteHTTPException, api_exception_handler)
app.add_exception_handler(Exception, api_exception_handler)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware (only in debug mode)
if settings.debug:
    app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Request-ID",
    ],
    max_age=3600,
)

# Routes
app.include_router(campaigns_router)
app.include_router(recipients_router)
app.include_router(templates_router)
app.include_router(events_router)


@app.get("/api/health")
def health_check():
    """Health check endpoint for load balancers and monitoring."""
    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": "1.0.0",
    }
