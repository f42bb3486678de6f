"""
Store Selection Strategy

Greedy, explainable choice of at most two stores for a whole session:

1. Per store: coverage (items with at least one candidate there) and the
   total price of the best-ranked candidate per covered item.
2. Order stores by coverage DESC, total price ASC, store id ASC and take the
   first one unconditionally.
3. With max_stores == 2, a second store is accepted only if it covers at
   least `min_additional_coverage` new items OR saves at least
   `min_savings` on items the first store already covers.

Not optimal on purpose; a 2-store cap does not justify a set-cover solver.
"""

from typing import Optional

from flyer_wizard.models import CandidateSuggestion, StoreSelection, WizardConfig
from flyer_wizard.pipeline_logger import log_stores
from flyer_wizard.ranking import ensure_same_brand


MAX_STORES_CAP = 2


def clamp_max_stores(max_stores: int) -> int:
    return min(max(1, max_stores), MAX_STORES_CAP)


def best_price_by_store(
    candidates_by_item: dict[int, list[CandidateSuggestion]],
) -> dict[int, dict[int, float]]:
    """store_id -> {item_id: price of the best-ranked candidate at that store}."""
    prices: dict[int, dict[int, float]] = {}
    for item_id in sorted(candidates_by_item):
        for candidate in candidates_by_item[item_id]:
            per_item = prices.setdefault(candidate.store_id, {})
            # Candidates arrive in rank order; the first one per store wins.
            if item_id not in per_item:
                per_item[item_id] = candidate.offer.price
    return prices


def select_stores(
    candidates_by_item: dict[int, list[CandidateSuggestion]],
    max_stores: int,
    config: Optional[WizardConfig] = None,
) -> StoreSelection:
    """
    Pick the stores a session's suggestions are restricted to.

    Args:
        candidates_by_item: Ranked candidates per item id (empty lists allowed)
        max_stores: Requested cap; clamped to [1, 2]
        config: Thresholds for accepting a second store

    Returns:
        StoreSelection with per-store covered items, uncovered items,
        estimated total and savings versus the first store alone.
    """
    config = config or WizardConfig()
    max_stores = clamp_max_stores(max_stores)
    prices = best_price_by_store(candidates_by_item)
    total_items = len(candidates_by_item)

    if not prices:
        selection = StoreSelection(
            uncovered_item_ids=sorted(candidates_by_item),
            explanation="No stores selected - no available alternatives",
        )
        log_stores("No store has candidates", {"items": total_items})
        return selection

    ordered = sorted(
        prices,
        key=lambda store_id: (-len(prices[store_id]), sum(prices[store_id].values()), store_id),
    )
    first = ordered[0]
    selected = [first]

    if max_stores == 2:
        second = _pick_second_store(first, ordered[1:], prices, config)
        if second is not None:
            selected.append(second)

    selection = _build_selection(candidates_by_item, prices, selected)
    log_stores(
        "Stores selected",
        {
            "max_stores": max_stores,
            "selected": selection.store_ids,
            "coverage_percent": selection.coverage_percent,
            "savings": selection.savings,
        },
    )
    return selection


def _pick_second_store(
    first: int,
    others: list[int],
    prices: dict[int, dict[int, float]],
    config: WizardConfig,
) -> Optional[int]:
    first_prices = prices[first]
    best: Optional[tuple[tuple[int, float, float, int], int]] = None

    for store_id in others:
        store_prices = prices[store_id]
        additional = sum(1 for item_id in store_prices if item_id not in first_prices)
        savings = round(
            sum(
                max(0.0, first_prices[item_id] - price)
                for item_id, price in store_prices.items()
                if item_id in first_prices
            ),
            2,
        )
        if additional < config.min_additional_coverage and savings < config.min_savings:
            continue
        key = (-additional, -savings, sum(store_prices.values()), store_id)
        if best is None or key < best[0]:
            best = (key, store_id)

    return best[1] if best else None


def _build_selection(
    candidates_by_item: dict[int, list[CandidateSuggestion]],
    prices: dict[int, dict[int, float]],
    selected: list[int],
) -> StoreSelection:
    first_prices = prices[selected[0]]
    coverage: dict[int, list[int]] = {store_id: [] for store_id in selected}
    uncovered: list[int] = []
    total_price = 0.0
    savings = 0.0

    for item_id in sorted(candidates_by_item):
        offers = [(prices[s][item_id], index, s) for index, s in enumerate(selected) if item_id in prices[s]]
        if not offers:
            uncovered.append(item_id)
            continue
        price, _, store_id = min(offers)
        coverage[store_id].append(item_id)
        total_price += price
        if item_id in first_prices:
            savings += first_prices[item_id] - price

    total_items = len(candidates_by_item)
    covered = total_items - len(uncovered)
    coverage_percent = round(covered / total_items * 100.0, 1) if total_items else 0.0

    return StoreSelection(
        store_ids=selected,
        coverage=coverage,
        uncovered_item_ids=uncovered,
        coverage_percent=coverage_percent,
        total_price=round(total_price, 2),
        savings=round(savings, 2),
        explanation=_explain(selected, covered, total_items, savings),
    )


def _explain(selected: list[int], covered: int, total_items: int, savings: float) -> str:
    if len(selected) == 1:
        return f"Selected 1 store covering {covered} of {total_items} items"
    text = f"Selected 2 stores covering {covered} of {total_items} items"
    if savings >= 0.01:
        text += f", saving €{savings:.2f}"
    return text


def filter_to_stores(
    ranked: list[CandidateSuggestion],
    store_ids: list[int],
    top_k: int,
) -> list[CandidateSuggestion]:
    """
    Restrict one item's ranked candidates to the selected stores.

    The best same-brand candidate stays visible even outside the selection,
    labelled as an out-of-selection alternative.
    """
    if not store_ids:
        return ensure_same_brand(ranked, top_k)

    allowed = set(store_ids)
    in_selection = [c for c in ranked if c.store_id in allowed]
    shown = ensure_same_brand(in_selection, top_k)

    if any(c.same_brand for c in shown):
        return shown
    best_same = next((c for c in ranked if c.same_brand), None)
    if best_same is None:
        return shown

    alternative = best_same.model_copy(
        update={
            "out_of_selection": True,
            "promoted": True,
            "explanation": f"{best_same.explanation} (available at another store)",
        }
    )
    shown = shown[: max(1, top_k) - 1] + [alternative]
    return [c.model_copy(update={"rank": i}) for i, c in enumerate(shown, start=1)]
