"""
Flyer Wizard - FastAPI Backend

Main entry point for the backend API server.
Exposes the shopping-list migration wizard over REST.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from backend.api.routes import router, wizard_error_handler
from backend.core.config import settings
from backend.services.wizard_service import get_wizard_service
from flyer_wizard.errors import WizardError
from flyer_wizard.logging_config import get_logger, setup_logging

DEBUG_LOG = os.environ.get("DEBUG_LOG", os.environ.get("DEBUG_MODE", "false")).lower() in (
    "true",
    "1",
    "yes",
    "on",
)
setup_logging(
    service_name=os.environ.get("LOGFIRE_SERVICE_NAME", "flyer-wizard-backend"),
    level="DEBUG" if DEBUG_LOG else "INFO",
)
logger = get_logger(__name__)


# =============================================================================
# Logfire Instrumentation (optional)
# =============================================================================

USE_LOGFIRE = os.environ.get("USE_LOGFIRE", "false").lower() in ("true", "1", "yes")
_logfire_ready = False

if USE_LOGFIRE:
    import logfire

    if os.environ.get("LOGFIRE_TOKEN"):
        _logfire_ready = True
    else:
        logger.warning("USE_LOGFIRE is set but LOGFIRE_TOKEN is empty; instrumentation disabled")


# =============================================================================
# Lifespan Manager
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - Startup: connect Redis, Elasticsearch and SQLite
    - Shutdown: close connections
    """
    logger.info("Starting Flyer Wizard Backend")
    logger.info(f"Debug mode: {settings.debug}")

    wizard_service = get_wizard_service()
    await wizard_service.initialize()
    logger.info("Wizard service initialized")

    yield

    logger.info("Shutting down backend")
    await wizard_service.close()


# =============================================================================
# FastAPI App
# =============================================================================


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
## 🛒 Flyer Wizard API

Migrates shopping-list items whose weekly-flyer offers expired to current offers.

### Features:
- 🔍 Brand-aware two-pass product matching
- 📊 Deterministic ranking with explanations
- 🏪 At most two stores per migration
- ✅ Atomic, idempotent completion with staleness checks

### Endpoints:
- `POST /api/wizard/sessions` - Start a session
- `GET /api/wizard/sessions/{id}/suggestions` - Suggestions for an item
- `POST /api/wizard/sessions/{id}/decisions` - Record a decision
- `POST /api/wizard/sessions/{id}/complete` - Apply all decisions
- `GET /api/health` - Check service health
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# =============================================================================
# CORS Middleware
# =============================================================================


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Routers + Error Handlers
# =============================================================================


app.include_router(router, prefix="/api", tags=["API"])
app.add_exception_handler(WizardError, wizard_error_handler)


# =============================================================================
# Logfire FastAPI Instrumentation
# =============================================================================

if USE_LOGFIRE and _logfire_ready:
    logfire.instrument_fastapi(app)
    logfire.instrument_redis()
    logger.info("Logfire: FastAPI + Redis instrumented")


# =============================================================================
# Root Redirect
# =============================================================================


@app.get("/", include_in_schema=False)
async def root_redirect():
    """Redirect root to API docs."""
    return RedirectResponse(url="/docs")


# =============================================================================
# Main Entry Point
# =============================================================================


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
