"""
Pydantic Schemas for API Request/Response

Defines the data models used in API endpoints. Engine models from
`flyer_wizard.models` are embedded directly where their shape is already
what the client needs.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from flyer_wizard.models import (
    BulkDecisionResult,
    CompletionResult,
    DecisionAction,
    ItemSuggestions,
    OfferSnapshot,
    StaleData,
    StoreSelection,
    WizardFilters,
    WizardProgress,
    WizardSession,
    WizardState,
)


# =============================================================================
# Request Schemas
# =============================================================================


class StartSessionRequest(BaseModel):
    """Request body for starting a migration session."""

    list_id: int = Field(..., ge=1, description="Shopping list to migrate")
    user_id: Optional[int] = Field(default=None, description="Owner of the list")
    store_ids: list[int] = Field(
        default_factory=list, description="Restrict the loose search pass to these stores"
    )
    preferred_store_ids: list[int] = Field(
        default_factory=list, description="Stores that earn the preferred-store bonus"
    )
    max_stores: int = Field(
        default=2, description="Store cap; clamped to 1..2", examples=[2]
    )
    same_brand_only: bool = Field(default=False)
    max_price_increase_ratio: Optional[float] = Field(
        default=None, ge=0, description="Reject offers pricier than original * (1 + ratio)"
    )
    category: Optional[str] = Field(default=None, max_length=255)

    def to_filters(self) -> WizardFilters:
        return WizardFilters(
            store_ids=self.store_ids,
            preferred_store_ids=self.preferred_store_ids,
            max_stores=self.max_stores,
            same_brand_only=self.same_brand_only,
            max_price_increase_ratio=self.max_price_increase_ratio,
            category=self.category,
        )


class DecisionRequest(BaseModel):
    """Request body for recording one item decision."""

    item_id: int
    action: DecisionAction
    offer_id: Optional[int] = Field(
        default=None, description="Required for replace; must be a shown suggestion"
    )


class BulkDecisionRequest(BaseModel):
    action: DecisionAction
    item_ids: Optional[list[int]] = None
    category: Optional[str] = Field(default=None, max_length=255)


class CompleteRequest(BaseModel):
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Retries with the same key return the original result",
        examples=["abc"],
    )


# =============================================================================
# Response Schemas
# =============================================================================


class SessionInfo(BaseModel):
    """Session summary returned by lifecycle endpoints."""

    id: str
    list_id: int
    state: WizardState
    dataset_version: int
    total_items: int
    current_item_index: int
    progress: WizardProgress
    selected_stores: Optional[StoreSelection] = None
    filters: WizardFilters
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: WizardSession) -> "SessionInfo":
        return cls(
            id=session.id,
            list_id=session.list_id,
            state=session.state,
            dataset_version=session.dataset_version,
            total_items=len(session.items),
            current_item_index=session.current_item_index,
            progress=session.progress(),
            selected_stores=session.selected_stores,
            filters=session.filters,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )


class SessionResponse(BaseModel):
    success: bool = Field(default=True)
    session: SessionInfo


class SuggestionsResponse(BaseModel):
    success: bool = Field(default=True)
    data: ItemSuggestions


class BulkDecisionResponse(BaseModel):
    success: bool = Field(default=True)
    data: BulkDecisionResult


class CompleteResponse(BaseModel):
    """Either the completion result or the stale-data report."""

    success: bool
    status: Literal["completed", "stale"]
    result: Optional[CompletionResult] = None
    stale: Optional[StaleData] = None


class SnapshotsResponse(BaseModel):
    success: bool = Field(default=True)
    data: list[OfferSnapshot]


class ListStatusResponse(BaseModel):
    list_id: int
    migratable_items: int
    has_active_session: bool
    active_session_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response schema."""

    success: bool = Field(default=False)
    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Stable error code")
    details: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Health Check Schemas
# =============================================================================


class ServiceHealth(BaseModel):
    """Health status of a single service."""

    status: str = Field(..., description="ok or error")
    latency_ms: Optional[int] = Field(None, description="Response latency")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: str = Field(..., description="Overall status: healthy or unhealthy")
    services: dict[str, ServiceHealth] = Field(
        ..., description="Status of each service"
    )
    timestamp: datetime = Field(..., description="Check timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "services": {
                    "redis": {"status": "ok", "latency_ms": 2},
                    "elasticsearch": {"status": "ok", "latency_ms": 15},
                },
                "timestamp": "2026-02-02T08:30:00Z",
            }
        }
