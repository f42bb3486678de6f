"""
Pydantic models for the migration wizard.

Catalog reference data (CanonicalProduct, FlyerOffer), the shopping-list
entry being migrated (ListItem), the per-session working set
(CandidateSuggestion, SessionItem, Decision, WizardSession), the audit
record (OfferSnapshot) and the typed outcomes returned to callers
(NoCandidates, StaleData, CompletionResult).

Flexible JSON fields of the storage layer are never exposed here: each
structure has explicit fields and is serialized only at the store boundary.
"""

from datetime import date, datetime, timezone
from datetime import time as dt_time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator


# =============================================================================
# Enums
# =============================================================================


class SearchMode(str, Enum):
    STRICT = "strict"
    LOOSE = "loose"


class WizardState(str, Enum):
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATES = {WizardState.COMPLETED, WizardState.CANCELLED, WizardState.EXPIRED}


class DecisionAction(str, Enum):
    REPLACE = "replace"
    KEEP = "keep"
    REMOVE = "remove"
    SKIP = "skip"


# =============================================================================
# Catalog
# =============================================================================


class CanonicalProduct(BaseModel):
    """Product master: one deduplicated catalog entry."""

    id: int
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    package_size: Optional[float] = None
    package_unit: Optional[str] = None


class FlyerOffer(BaseModel):
    """A store-specific, time-bounded appearance of a product in a flyer."""

    id: int
    canonical_product_id: Optional[int] = None
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    store_id: int
    store_name: str = ""
    price: float = Field(..., ge=0)
    package_size: Optional[float] = None
    package_unit: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    @field_validator("valid_from", "valid_to", mode="before")
    @classmethod
    def _expand_plain_dates(cls, value, info: ValidationInfo):
        # A plain date covers the whole day: from its start, to its end.
        if isinstance(value, str) and len(value) == 10:
            value = date.fromisoformat(value)
        if isinstance(value, date) and not isinstance(value, datetime):
            bound = dt_time.max if info.field_name == "valid_to" else dt_time.min
            return datetime.combine(value, bound, tzinfo=timezone.utc)
        return value

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_valid_at(self, at: datetime) -> bool:
        if self.valid_from is not None and self.valid_from > at:
            return False
        if self.valid_to is not None and self.valid_to < at:
            return False
        return True


class ListItem(BaseModel):
    """A shopping-list entry with its origin offer and product master links."""

    id: int
    list_id: int
    description: str = ""
    quantity: float = 1.0
    offer: Optional[FlyerOffer] = None
    product: Optional[CanonicalProduct] = None

    @property
    def is_free_text(self) -> bool:
        return self.offer is None and self.product is None

    @property
    def original_store_id(self) -> Optional[int]:
        return self.offer.store_id if self.offer else None

    @property
    def original_price(self) -> Optional[float]:
        return self.offer.price if self.offer else None

    @property
    def brand(self) -> Optional[str]:
        if self.product and self.product.brand:
            return self.product.brand
        return self.offer.brand if self.offer else None

    @property
    def package_size(self) -> Optional[float]:
        if self.product and self.product.package_size is not None:
            return self.product.package_size
        return self.offer.package_size if self.offer else None

    @property
    def package_unit(self) -> Optional[str]:
        if self.product and self.product.package_unit:
            return self.product.package_unit
        return self.offer.package_unit if self.offer else None

    def needs_migration(self, at: datetime) -> bool:
        """Linked to a product master and no longer backed by a valid offer."""
        if self.product is None:
            return False
        return self.offer is None or not self.offer.is_valid_at(at)


# =============================================================================
# Search
# =============================================================================


class SearchFilters(BaseModel):
    store_ids: list[int] = Field(default_factory=list)
    category: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    valid_at: Optional[datetime] = None
    mode: SearchMode = SearchMode.STRICT
    limit: int = Field(default=20, ge=1, le=100)


class SearchHit(BaseModel):
    """One scored result from the similarity search capability."""

    offer: FlyerOffer
    raw_score: float


# =============================================================================
# Scoring
# =============================================================================


class ScoringWeights(BaseModel):
    """Additive bonuses applied on top of the raw similarity score."""

    same_brand: float = 3.0
    original_store: float = 2.0
    preferred_store: float = 2.0
    size: float = 1.0
    cheaper: float = 1.0


class ScoreBreakdown(BaseModel):
    similarity: float = 0.0
    brand: float = 0.0
    original_store: float = 0.0
    preferred_store: float = 0.0
    size: float = 0.0
    price: float = 0.0
    total: float = 0.0


class CandidateSuggestion(BaseModel):
    offer: FlyerOffer
    raw_score: float
    search_pass: int = 1
    same_brand: bool = False
    score: float = 0.0
    rank: int = 0
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    price_delta: Optional[float] = None
    explanation: str = ""
    promoted: bool = False
    out_of_selection: bool = False

    @property
    def offer_id(self) -> int:
        return self.offer.id

    @property
    def store_id(self) -> int:
        return self.offer.store_id


class RankingContext(BaseModel):
    preferred_store_ids: list[int] = Field(default_factory=list)
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    size_tolerance: float = 0.2
    currency_symbol: str = "€"


# =============================================================================
# Store selection
# =============================================================================


class StoreSelection(BaseModel):
    store_ids: list[int] = Field(default_factory=list)
    coverage: dict[int, list[int]] = Field(default_factory=dict)
    uncovered_item_ids: list[int] = Field(default_factory=list)
    coverage_percent: float = 0.0
    total_price: float = 0.0
    savings: float = 0.0
    explanation: str = ""


# =============================================================================
# Session
# =============================================================================


class WizardFilters(BaseModel):
    """Global filter configuration of one wizard session."""

    store_ids: list[int] = Field(default_factory=list)
    preferred_store_ids: list[int] = Field(default_factory=list)
    max_stores: int = 2
    same_brand_only: bool = False
    max_price_increase_ratio: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = None


class NoCandidates(BaseModel):
    """Valid outcome: nothing met the similarity/price criteria for an item."""

    item_id: int
    reason: str
    manual_search_required: bool = False


class SessionItem(BaseModel):
    item: ListItem
    # None until generated; the most recently generated set is authoritative.
    suggestions: Optional[list[CandidateSuggestion]] = None
    pool_size: int = 0
    no_candidates: Optional[NoCandidates] = None

    @property
    def item_id(self) -> int:
        return self.item.id

    def find_suggestion(self, offer_id: int) -> Optional[CandidateSuggestion]:
        for suggestion in self.suggestions or []:
            if suggestion.offer_id == offer_id:
                return suggestion
        return None


class Decision(BaseModel):
    item_id: int
    action: DecisionAction
    offer_id: Optional[int] = None
    decided_at: datetime
    bulk: bool = False
    stale: bool = False


class WizardProgress(BaseModel):
    current_item: int
    total_items: int
    items_replaced: int
    items_kept: int
    items_removed: int
    items_skipped: int
    percent_complete: float


class StaleItem(BaseModel):
    item_id: int
    offer_id: int
    reason: str


class StaleData(BaseModel):
    """Returned by Complete instead of applying anything."""

    session_id: str
    dataset_version: int
    live_dataset_version: int
    stale_items: list[StaleItem] = Field(default_factory=list)
    message: str = ""


class CompletionResult(BaseModel):
    session_id: str
    list_id: int
    items_replaced: int = 0
    items_kept: int = 0
    items_removed: int = 0
    items_skipped: int = 0
    snapshots_recorded: int = 0
    store_count: int = 0
    total_estimated_price: float = 0.0
    summary: str = ""
    completed_at: datetime


class WizardSession(BaseModel):
    id: str
    list_id: int
    user_id: Optional[int] = None
    state: WizardState = WizardState.INITIALIZED
    filters: WizardFilters = Field(default_factory=WizardFilters)
    dataset_version: int
    items: list[SessionItem] = Field(default_factory=list)
    decisions: dict[int, Decision] = Field(default_factory=dict)
    current_item_index: int = 0
    selected_stores: Optional[StoreSelection] = None
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    revision: int = 0
    idempotency_key: Optional[str] = None
    completion: Optional[CompletionResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_expired(self, now: datetime) -> bool:
        return not self.is_terminal and now >= self.expires_at

    def get_item(self, item_id: int) -> Optional[SessionItem]:
        for session_item in self.items:
            if session_item.item_id == item_id:
                return session_item
        return None

    def undecided_items(self) -> list[SessionItem]:
        return [i for i in self.items if i.item_id not in self.decisions]

    def all_decided(self) -> bool:
        return bool(self.items) and not self.undecided_items()

    def stale_decisions(self) -> list[Decision]:
        return [d for d in self.decisions.values() if d.stale]

    def progress(self) -> WizardProgress:
        counts = {action: 0 for action in DecisionAction}
        for decision in self.decisions.values():
            counts[decision.action] += 1
        total = len(self.items)
        percent = (len(self.decisions) / total * 100.0) if total else 0.0
        return WizardProgress(
            current_item=self.current_item_index,
            total_items=total,
            items_replaced=counts[DecisionAction.REPLACE],
            items_kept=counts[DecisionAction.KEEP],
            items_removed=counts[DecisionAction.REMOVE],
            items_skipped=counts[DecisionAction.SKIP],
            percent_complete=round(percent, 1),
        )


class BulkDecisionResult(BaseModel):
    session_id: str
    action: DecisionAction
    applied_item_ids: list[int] = Field(default_factory=list)
    untouched_item_ids: list[int] = Field(default_factory=list)
    explanation: str = ""
    progress: WizardProgress


class ItemSuggestions(BaseModel):
    """Suggestions shown for one item, or the reason there are none."""

    session_id: str
    item_id: int
    item_index: int
    suggestions: list[CandidateSuggestion] = Field(default_factory=list)
    no_candidates: Optional[NoCandidates] = None
    selected_store_ids: list[int] = Field(default_factory=list)


# =============================================================================
# Persistence records
# =============================================================================


class ListChange(BaseModel):
    """One row operation of the atomic shopping-list update."""

    item_id: int
    action: DecisionAction
    offer: Optional[FlyerOffer] = None


class OfferSnapshot(BaseModel):
    """Immutable record of an offer as presented or selected."""

    item_id: int
    session_id: str
    offer_id: int
    canonical_product_id: Optional[int] = None
    store_id: int
    product_name: str
    brand: Optional[str] = None
    price: float
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    rank: int
    score: float
    selected: bool
    explanation: str = ""
    snapshot_reason: str = "wizard_migration"
    created_at: datetime


# =============================================================================
# Tuning
# =============================================================================


class WizardConfig(BaseModel):
    session_ttl_minutes: int = 30
    idempotency_ttl_hours: int = 24
    lock_ttl_seconds: int = 30
    retention_hours: int = 24
    max_stores: int = 2
    top_k: int = 5
    min_candidates: int = 3
    pass1_limit: int = 20
    pass2_limit: int = 30
    loose_penalty: float = Field(default=0.8, gt=0, lt=1)
    size_tolerance: float = 0.2
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    min_additional_coverage: int = 2
    min_savings: float = 5.0
    currency_symbol: str = "€"
