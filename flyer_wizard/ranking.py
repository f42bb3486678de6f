"""
Deterministic Ranking Engine

score = raw similarity + fixed additive bonuses (same brand, original
store, preferred store, package size within tolerance, cheaper than the
original). Weights come from `ScoringWeights`; nothing is multiplicative
or learned.

Order: score DESC, price ASC, offer id ASC. The key is total over distinct
offers, so the output is independent of input order, dict iteration order
and wall-clock time.
"""

from typing import Optional

from flyer_wizard.models import (
    CandidateSuggestion,
    ListItem,
    RankingContext,
    ScoreBreakdown,
    WizardFilters,
)
from flyer_wizard.normalize import normalize_unit
from flyer_wizard.pipeline_logger import log_rank


def size_within_tolerance(
    original_size: Optional[float],
    original_unit: Optional[str],
    candidate_size: Optional[float],
    candidate_unit: Optional[str],
    tolerance: float,
) -> bool:
    if not original_size or candidate_size is None:
        return False
    if normalize_unit(original_unit) != normalize_unit(candidate_unit):
        return False
    return abs(candidate_size - original_size) / original_size <= tolerance


def score_breakdown(
    item: ListItem,
    candidate: CandidateSuggestion,
    context: RankingContext,
) -> ScoreBreakdown:
    weights = context.weights
    offer = candidate.offer
    breakdown = ScoreBreakdown(similarity=candidate.raw_score)

    if candidate.same_brand:
        breakdown.brand = weights.same_brand
    if item.original_store_id is not None and offer.store_id == item.original_store_id:
        breakdown.original_store = weights.original_store
    if offer.store_id in set(context.preferred_store_ids):
        breakdown.preferred_store = weights.preferred_store
    if size_within_tolerance(
        item.package_size,
        item.package_unit,
        offer.package_size,
        offer.package_unit,
        context.size_tolerance,
    ):
        breakdown.size = weights.size
    original_price = item.original_price
    if original_price and offer.price < original_price:
        breakdown.price = weights.cheaper

    breakdown.total = round(
        breakdown.similarity
        + breakdown.brand
        + breakdown.original_store
        + breakdown.preferred_store
        + breakdown.size
        + breakdown.price,
        6,
    )
    return breakdown


def score(item: ListItem, candidate: CandidateSuggestion, context: RankingContext) -> float:
    return score_breakdown(item, candidate, context).total


def rank_key(candidate: CandidateSuggestion) -> tuple[float, float, int]:
    return (-candidate.score, candidate.offer.price, candidate.offer.id)


def rank_candidates(
    item: ListItem,
    candidates: list[CandidateSuggestion],
    context: RankingContext,
) -> list[CandidateSuggestion]:
    """Score every candidate and return new objects in rank order (rank starts at 1)."""
    scored = []
    for candidate in candidates:
        breakdown = score_breakdown(item, candidate, context)
        original_price = item.original_price
        price_delta = (
            round(candidate.offer.price - original_price, 2)
            if original_price is not None
            else None
        )
        scored.append(
            candidate.model_copy(
                update={
                    "score": breakdown.total,
                    "breakdown": breakdown,
                    "price_delta": price_delta,
                    "explanation": generate_explanation(item, candidate, breakdown, context),
                }
            )
        )

    scored.sort(key=rank_key)
    ranked = [c.model_copy(update={"rank": i}) for i, c in enumerate(scored, start=1)]

    if ranked:
        log_rank(
            "Candidates ranked",
            {
                "item_id": item.id,
                "count": len(ranked),
                "top_offer": ranked[0].offer.id,
                "top_score": ranked[0].score,
            },
        )
    return ranked


def ensure_same_brand(
    ranked: list[CandidateSuggestion],
    top_k: int,
    pool: Optional[list[CandidateSuggestion]] = None,
) -> list[CandidateSuggestion]:
    """
    Cut to top-K while keeping at least one same-brand offer.

    If the pool holds a same-brand candidate but none made the top-K, the
    best same-brand one takes the last slot. Ranks are renumbered by the
    shown position.
    """
    pool = ranked if pool is None else pool
    top_k = max(1, top_k)
    shown = list(ranked[:top_k])

    if not any(c.same_brand for c in shown):
        best_same = next((c for c in sorted(pool, key=rank_key) if c.same_brand), None)
        if best_same is not None:
            promoted = best_same.model_copy(
                update={
                    "promoted": True,
                    "explanation": f"{best_same.explanation} (same-brand alternative)",
                }
            )
            shown = shown[: top_k - 1] + [promoted]

    return [c.model_copy(update={"rank": i}) for i, c in enumerate(shown, start=1)]


def filter_candidates(
    item: ListItem,
    candidates: list[CandidateSuggestion],
    filters: WizardFilters,
) -> tuple[list[CandidateSuggestion], Optional[str]]:
    """
    Apply the session's brand/price strategy.

    Returns the kept candidates and, when everything was filtered out, the
    reason to report as NoCandidates.
    """
    if not candidates:
        return [], "no matching offers found"

    kept = list(candidates)
    if filters.same_brand_only:
        kept = [c for c in kept if c.same_brand]
        if not kept:
            return [], "no same-brand offers found"

    original_price = item.original_price
    if filters.max_price_increase_ratio is not None and original_price:
        limit = original_price * (1 + filters.max_price_increase_ratio)
        kept = [c for c in kept if c.offer.price <= limit + 1e-9]
        if not kept:
            return [], "no offers within the allowed price increase"

    return kept, None


# =============================================================================
# Explanations
# =============================================================================


def generate_explanation(
    item: ListItem,
    candidate: CandidateSuggestion,
    breakdown: ScoreBreakdown,
    context: RankingContext,
) -> str:
    """
    Human-readable summary, e.g.:
      "Same brand, similar size, €0.50 cheaper"
      "Different brand, 12% more expensive (€1.20), at your preferred store"
    """
    offer = candidate.offer
    parts = []

    if candidate.same_brand:
        parts.append("Same brand")
    elif item.brand and offer.brand:
        parts.append("Different brand")
    else:
        parts.append("Similar product")

    if offer.package_size is not None and offer.package_unit:
        parts.append("similar size" if breakdown.size else "different size")

    price_text = price_explanation(item.original_price, offer.price, context.currency_symbol)
    if price_text:
        parts.append(price_text)

    if breakdown.original_store:
        parts.append("at your usual store")
    elif breakdown.preferred_store:
        parts.append("at your preferred store")

    return ", ".join(parts)


def price_explanation(
    original_price: Optional[float],
    suggested_price: float,
    currency: str = "€",
) -> str:
    """'same price', '€0.50 cheaper', '20% cheaper (€1.20)', '€0.10 more expensive'."""
    if not original_price or not suggested_price:
        return ""

    diff = suggested_price - original_price
    if abs(diff) < 0.01:
        return "same price"

    if diff < 0:
        saved = abs(diff)
        if saved < 1.0:
            return f"{currency}{saved:.2f} cheaper"
        percent = saved / original_price * 100
        return f"{percent:.0f}% cheaper ({currency}{saved:.2f})"

    if diff > 1.0:
        percent = diff / original_price * 100
        return f"{percent:.0f}% more expensive ({currency}{diff:.2f})"
    return f"{currency}{diff:.2f} more expensive"


def summarize_decisions(replaced: int, kept: int, removed: int, skipped: int) -> str:
    """Summary for a completed session: '3 replaced, 1 kept and 1 removed'."""
    total = replaced + kept + removed + skipped
    if total and replaced == total:
        return f"All {total} items replaced with suggested alternatives"

    parts = []
    if replaced:
        parts.append(f"{replaced} replaced")
    if kept:
        parts.append(f"{kept} kept without an offer")
    if removed:
        parts.append(f"{removed} removed")
    if skipped:
        parts.append(f"{skipped} skipped")
    if not parts:
        return "No changes"
    if len(parts) == 1:
        return parts[0]
    return ", ".join(parts[:-1]) + " and " + parts[-1]
