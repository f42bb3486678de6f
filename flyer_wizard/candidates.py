"""
Two-Pass Candidate Finder

Builds a brand-aware candidate pool for one expiring list item:

  Pass 1 (strict): brand + canonical name, scoped to the item's original
                   store (or the session's store filter). Skipped when the
                   product has no brand.
  Pass 2 (loose):  canonical name only. Runs only when pass 1 returned
                   fewer than `min_candidates`; scores are multiplied by
                   `loose_penalty` and offers already seen are dropped.

Read-only: the finder never mutates the item, the session or the catalog.
"""

from datetime import datetime
from typing import Optional

from flyer_wizard.errors import NoProductMaster
from flyer_wizard.models import (
    CandidateSuggestion,
    ListItem,
    SearchFilters,
    SearchMode,
    WizardConfig,
    WizardFilters,
)
from flyer_wizard.normalize import normalize_text, same_brand
from flyer_wizard.pipeline_logger import log_search
from flyer_wizard.search_adapter import SimilaritySearch


class TwoPassCandidateFinder:
    def __init__(self, search: SimilaritySearch, config: Optional[WizardConfig] = None):
        self.search = search
        self.config = config or WizardConfig()

    async def find_candidates(
        self,
        item: ListItem,
        filters: WizardFilters,
        as_of: Optional[datetime] = None,
    ) -> list[CandidateSuggestion]:
        """
        Return pass-1 candidates followed by new pass-2 candidates.

        Raises NoProductMaster when the item carries no product link and
        SearchUnavailable when the adapter fails. An empty list is a valid
        outcome (no offer matched).
        """
        product = item.product
        if product is None:
            raise NoProductMaster(item.id)

        brand = normalize_text(product.brand)
        name = normalize_text(product.name)
        original_offer_id = item.offer.id if item.offer else None

        seen: set[int] = set()
        candidates: list[CandidateSuggestion] = []

        def collect(hits, search_pass: int, penalty: float = 1.0) -> int:
            added = 0
            for hit in hits:
                offer_id = hit.offer.id
                if offer_id in seen or offer_id == original_offer_id:
                    continue
                seen.add(offer_id)
                candidates.append(
                    CandidateSuggestion(
                        offer=hit.offer,
                        raw_score=round(hit.raw_score * penalty, 6),
                        search_pass=search_pass,
                        same_brand=same_brand(hit.offer.brand, product.brand),
                    )
                )
                added += 1
            return added

        pass1_count = 0
        if brand:
            if item.original_store_id is not None:
                store_scope = [item.original_store_id]
            else:
                store_scope = list(filters.store_ids)
            pass1_filters = SearchFilters(
                store_ids=store_scope,
                category=filters.category,
                valid_at=as_of,
                mode=SearchMode.STRICT,
                limit=self.config.pass1_limit,
            )
            hits = await self.search.search(f"{brand} {name}", pass1_filters)
            pass1_count = collect(hits, search_pass=1)

        pass2_count = 0
        if pass1_count < self.config.min_candidates:
            pass2_filters = SearchFilters(
                store_ids=list(filters.store_ids),
                category=filters.category,
                valid_at=as_of,
                mode=SearchMode.LOOSE,
                limit=self.config.pass2_limit,
            )
            hits = await self.search.search(name, pass2_filters)
            pass2_count = collect(hits, search_pass=2, penalty=self.config.loose_penalty)

        log_search(
            "Two-pass search completed",
            {
                "item_id": item.id,
                "brand": brand or None,
                "pass1": pass1_count,
                "pass2": pass2_count,
                "has_same_brand": any(c.same_brand for c in candidates),
            },
        )
        return candidates
