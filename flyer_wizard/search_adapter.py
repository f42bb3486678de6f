"""
Similarity Search Adapter

Uniform contract over the external full-text/fuzzy search capability:
given a query and filters, return scored flyer offers. The index itself
(analyzers, trigram fields, ingestion) is owned by the catalog pipeline;
this module only queries it.

Raw scores are normalized into [0, 1] against the best hit of the same
call, so they are comparable within one call but not across calls with
different query text.
"""

import asyncio
from typing import Any, Optional, Protocol

from elasticsearch import ApiError, Elasticsearch, TransportError

from flyer_wizard.errors import SearchUnavailable
from flyer_wizard.models import FlyerOffer, SearchFilters, SearchHit, SearchMode
from flyer_wizard.normalize import normalize_text, validate_query
from flyer_wizard.pipeline_logger import log_error, log_search


class SimilaritySearch(Protocol):
    async def search(self, query: str, filters: SearchFilters) -> list[SearchHit]:
        ...

    async def get_offers(self, offer_ids: list[int]) -> dict[int, FlyerOffer]:
        ...


SEARCH_FIELDS = ["name_normalized^2", "brand_normalized", "category_normalized"]


class ElasticsearchSimilaritySearch:
    """Similarity search over the flyer-offer index in Elasticsearch."""

    def __init__(self, es: Elasticsearch, index_name: str = "flyer_offers"):
        self.es = es
        self.index_name = index_name

    @classmethod
    def connect(
        cls,
        host: str = "localhost",
        port: int = 9200,
        scheme: str = "http",
        username: Optional[str] = None,
        password: Optional[str] = None,
        index_name: str = "flyer_offers",
    ) -> "ElasticsearchSimilaritySearch":
        es_url = f"{scheme}://{host}:{port}"
        if username and password:
            es = Elasticsearch(es_url, basic_auth=(username, password), verify_certs=False)
        else:
            es = Elasticsearch(es_url, verify_certs=False)
        log_search("Elasticsearch client created", {"url": es_url, "index": index_name})
        return cls(es, index_name=index_name)

    def build_query(self, query: str, filters: SearchFilters) -> dict[str, Any]:
        """Build the bool query for one pass (strict = all terms, loose = half)."""
        match: dict[str, Any] = {
            "query": query,
            "fields": SEARCH_FIELDS,
            "type": "best_fields",
            "fuzziness": "AUTO",
        }
        if filters.mode == SearchMode.STRICT:
            match["operator"] = "and"
        else:
            match["operator"] = "or"
            match["minimum_should_match"] = "50%"

        filter_clause: list[dict[str, Any]] = []
        if filters.store_ids:
            filter_clause.append({"terms": {"store_id": sorted(filters.store_ids)}})
        if filters.category:
            filter_clause.append({"term": {"category_normalized": normalize_text(filters.category)}})
        price_range: dict[str, float] = {}
        if filters.min_price is not None:
            price_range["gte"] = filters.min_price
        if filters.max_price is not None:
            price_range["lte"] = filters.max_price
        if price_range:
            filter_clause.append({"range": {"price": price_range}})
        if filters.valid_at is not None:
            at = filters.valid_at.isoformat()
            filter_clause.append({"range": {"valid_from": {"lte": at}}})
            filter_clause.append({"range": {"valid_to": {"gte": at}}})

        return {"bool": {"must": [{"multi_match": match}], "filter": filter_clause}}

    async def search(self, query: str, filters: SearchFilters) -> list[SearchHit]:
        normalized = validate_query(query)
        body = self.build_query(normalized, filters)
        try:
            response = await asyncio.to_thread(
                self.es.search,
                index=self.index_name,
                query=body,
                size=filters.limit,
            )
        except (ApiError, TransportError) as e:
            log_error("SEARCH", f"Elasticsearch search failed for '{normalized}'", e)
            raise SearchUnavailable(
                "similarity search is unavailable",
                {"query": normalized, "mode": filters.mode.value},
            ) from e

        hits = response["hits"]["hits"]
        max_score = response["hits"].get("max_score") or max(
            (hit.get("_score") or 0.0 for hit in hits), default=0.0
        )

        results = []
        for hit in hits:
            score = hit.get("_score") or 0.0
            raw = score / max_score if max_score else 0.0
            results.append(
                SearchHit(
                    offer=offer_from_source(hit["_source"], hit.get("_id")),
                    raw_score=round(min(1.0, raw), 6),
                )
            )

        log_search(
            "Search completed",
            {"query": normalized, "mode": filters.mode.value, "hits": len(results)},
        )
        return results

    async def get_offers(self, offer_ids: list[int]) -> dict[int, FlyerOffer]:
        """Fetch current catalog state for the given offers; missing ids are omitted."""
        if not offer_ids:
            return {}
        try:
            response = await asyncio.to_thread(
                self.es.mget,
                index=self.index_name,
                ids=[str(offer_id) for offer_id in sorted(set(offer_ids))],
            )
        except (ApiError, TransportError) as e:
            log_error("SEARCH", "Elasticsearch mget failed", e)
            raise SearchUnavailable("offer lookup is unavailable", {"offer_ids": offer_ids}) from e

        offers: dict[int, FlyerOffer] = {}
        for doc in response.get("docs", []):
            if not doc.get("found"):
                continue
            offer = offer_from_source(doc["_source"], doc.get("_id"))
            offers[offer.id] = offer
        return offers

    async def ping(self) -> bool:
        return bool(await asyncio.to_thread(self.es.ping))


def offer_from_source(source: dict[str, Any], doc_id: Optional[str] = None) -> FlyerOffer:
    """Map an index document onto a FlyerOffer."""
    offer_id = source.get("offer_id", doc_id)
    return FlyerOffer(
        id=int(offer_id),
        canonical_product_id=source.get("canonical_product_id"),
        name=source.get("name", ""),
        brand=source.get("brand") or None,
        category=source.get("category") or None,
        store_id=int(source.get("store_id", 0)),
        store_name=source.get("store_name", ""),
        price=float(source.get("price", 0.0)),
        package_size=source.get("package_size"),
        package_unit=source.get("package_unit"),
        valid_from=source.get("valid_from"),
        valid_to=source.get("valid_to"),
    )
