"""
API Routes

Defines all HTTP endpoints for the migration wizard. Each wizard endpoint
maps 1:1 onto a WizardSessionManager operation; engine errors are turned
into ErrorResponse bodies by `wizard_error_handler`.
"""

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request, Response, status
from fastapi.responses import JSONResponse

from backend.api.schemas import (
    BulkDecisionRequest,
    BulkDecisionResponse,
    CompleteRequest,
    CompleteResponse,
    DecisionRequest,
    ErrorResponse,
    HealthResponse,
    ListStatusResponse,
    ServiceHealth,
    SessionInfo,
    SessionResponse,
    SnapshotsResponse,
    StartSessionRequest,
    SuggestionsResponse,
)
from backend.core.config import settings
from backend.services.wizard_service import WizardService, get_wizard_manager, get_wizard_service
from flyer_wizard.errors import WizardError
from flyer_wizard.logging_config import get_logger
from flyer_wizard.models import StaleData
from flyer_wizard.wizard import WizardSessionManager

logger = get_logger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter()

Manager = Annotated[WizardSessionManager, Depends(get_wizard_manager)]

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Session or item not found"},
    409: {"model": ErrorResponse, "description": "Session busy, locked or terminal"},
    410: {"model": ErrorResponse, "description": "Session expired"},
    422: {"model": ErrorResponse, "description": "Invalid decision or input"},
    503: {"model": ErrorResponse, "description": "Search or session store unavailable"},
}


# =============================================================================
# Error Mapping
# =============================================================================


STATUS_BY_CODE = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "SESSION_BUSY": status.HTTP_409_CONFLICT,
    "LIST_LOCKED": status.HTTP_409_CONFLICT,
    "SESSION_TERMINAL": status.HTTP_409_CONFLICT,
    "SESSION_EXPIRED": status.HTTP_410_GONE,
    "INVALID_DECISION": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NO_PRODUCT_MASTER": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NO_EXPIRED_ITEMS": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "SEARCH_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "SESSION_STORE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "COMMIT_FAILED": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(error: WizardError) -> int:
    return STATUS_BY_CODE.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


async def wizard_error_handler(request: Request, exc: WizardError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    body = ErrorResponse(error=exc.message, code=exc.code, details=exc.details)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


# =============================================================================
# Session Lifecycle
# =============================================================================


@router.post(
    "/wizard/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Start a migration session",
    description="Create a wizard session for the list's expired flyer items.",
)
async def start_session(request: StartSessionRequest, manager: Manager) -> SessionResponse:
    session = await manager.start_session(
        list_id=request.list_id,
        filters=request.to_filters(),
        user_id=request.user_id,
    )
    return SessionResponse(session=SessionInfo.from_session(session))


@router.get(
    "/wizard/sessions/{session_id}",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    summary="Fetch a session",
)
async def get_session(session_id: str, manager: Manager) -> SessionResponse:
    session = await manager.get_session(session_id)
    return SessionResponse(session=SessionInfo.from_session(session))


@router.get(
    "/wizard/lists/{list_id}",
    response_model=ListStatusResponse,
    summary="Migration status of a list",
    description="Migratable item count and the list's active session, for UI badges.",
)
async def list_status(list_id: int, manager: Manager) -> ListStatusResponse:
    active = await manager.get_active_session(list_id)
    return ListStatusResponse(
        list_id=list_id,
        migratable_items=await manager.count_migratable_items(list_id),
        has_active_session=active is not None,
        active_session_id=active.id if active else None,
    )


@router.post(
    "/wizard/sessions/{session_id}/cancel",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel a session",
)
async def cancel_session(session_id: str, manager: Manager) -> SessionResponse:
    session = await manager.cancel(session_id)
    return SessionResponse(session=SessionInfo.from_session(session))


# =============================================================================
# Suggestions + Decisions
# =============================================================================


@router.get(
    "/wizard/sessions/{session_id}/suggestions",
    response_model=SuggestionsResponse,
    responses=ERROR_RESPONSES,
    summary="Suggestions for the current or a specific item",
)
async def get_suggestions(
    session_id: str,
    manager: Manager,
    item_id: Optional[int] = None,
) -> SuggestionsResponse:
    data = await manager.get_suggestions(session_id, item_id=item_id)
    return SuggestionsResponse(data=data)


@router.post(
    "/wizard/sessions/{session_id}/decisions",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    summary="Record a decision for one item",
)
async def record_decision(
    session_id: str,
    request: DecisionRequest,
    manager: Manager,
) -> SessionResponse:
    session = await manager.record_decision(
        session_id,
        item_id=request.item_id,
        action=request.action,
        offer_id=request.offer_id,
    )
    return SessionResponse(session=SessionInfo.from_session(session))


@router.post(
    "/wizard/sessions/{session_id}/bulk-decisions",
    response_model=BulkDecisionResponse,
    responses=ERROR_RESPONSES,
    summary="Apply one decision to many undecided items",
)
async def apply_bulk_decision(
    session_id: str,
    request: BulkDecisionRequest,
    manager: Manager,
) -> BulkDecisionResponse:
    data = await manager.apply_bulk_decision(
        session_id,
        action=request.action,
        item_ids=request.item_ids,
        category=request.category,
    )
    return BulkDecisionResponse(data=data)


@router.post(
    "/wizard/sessions/{session_id}/complete",
    response_model=CompleteResponse,
    responses={**ERROR_RESPONSES, 409: {"model": CompleteResponse, "description": "Stale data"}},
    summary="Apply all decisions to the shopping list",
    description=(
        "Revalidates against the live catalog and applies every decision atomically. "
        "Retries with the same idempotency key (body or Idempotency-Key header) "
        "return the original result."
    ),
)
async def complete_session(
    session_id: str,
    response: Response,
    manager: Manager,
    request: Optional[CompleteRequest] = None,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
) -> CompleteResponse:
    key = (request.idempotency_key if request else None) or idempotency_key
    outcome = await manager.complete(session_id, idempotency_key=key)
    if isinstance(outcome, StaleData):
        response.status_code = status.HTTP_409_CONFLICT
        return CompleteResponse(success=False, status="stale", stale=outcome)
    return CompleteResponse(success=True, status="completed", result=outcome)


@router.get(
    "/wizard/sessions/{session_id}/snapshots",
    response_model=SnapshotsResponse,
    responses=ERROR_RESPONSES,
    summary="Offer snapshots recorded at completion",
)
async def get_session_snapshots(session_id: str, manager: Manager) -> SnapshotsResponse:
    return SnapshotsResponse(data=await manager.get_snapshots(session_id))


# =============================================================================
# Health Check Endpoint
# =============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of Redis and Elasticsearch.",
)
async def health_check(
    service: Annotated[WizardService, Depends(get_wizard_service)],
) -> HealthResponse:
    checks = await service.health_check()
    services = {name: ServiceHealth(**check) for name, check in checks.items()}
    overall_healthy = all(s.status == "ok" for s in services.values())
    return HealthResponse(
        status="healthy" if overall_healthy else "unhealthy",
        services=services,
        timestamp=datetime.now(),
    )


# =============================================================================
# Root Endpoint (for testing)
# =============================================================================


@router.get(
    "/",
    summary="API Root",
    description="Basic endpoint to verify API is running.",
)
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs",
    }
