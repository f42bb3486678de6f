"""In-memory fakes and builders shared by the test modules."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockNotOwnedError

from flyer_wizard.errors import SearchUnavailable
from flyer_wizard.models import (
    CandidateSuggestion,
    CanonicalProduct,
    FlyerOffer,
    ListItem,
    SearchFilters,
    SearchHit,
    SearchMode,
)
from flyer_wizard.normalize import normalize_text


NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _run(coro: Any):
    return asyncio.run(coro)


# =============================================================================
# Builders
# =============================================================================


def make_offer(
    offer_id: int,
    name: str,
    brand: Optional[str] = None,
    store_id: int = 1,
    price: float = 1.0,
    size: Optional[float] = None,
    unit: Optional[str] = None,
    current: bool = True,
    category: Optional[str] = None,
    product_id: Optional[int] = None,
) -> FlyerOffer:
    if current:
        valid_from, valid_to = NOW - timedelta(days=1), NOW + timedelta(days=6)
    else:
        valid_from, valid_to = NOW - timedelta(days=8), NOW - timedelta(days=1)
    return FlyerOffer(
        id=offer_id,
        canonical_product_id=product_id,
        name=name,
        brand=brand,
        category=category,
        store_id=store_id,
        store_name=f"Store {store_id}",
        price=price,
        package_size=size,
        package_unit=unit,
        valid_from=valid_from,
        valid_to=valid_to,
    )


def make_product(
    product_id: int,
    name: str,
    brand: Optional[str] = None,
    size: Optional[float] = None,
    unit: Optional[str] = None,
    category: Optional[str] = None,
) -> CanonicalProduct:
    return CanonicalProduct(
        id=product_id,
        name=name,
        brand=brand,
        category=category,
        package_size=size,
        package_unit=unit,
    )


def make_item(
    item_id: int,
    product: Optional[CanonicalProduct] = None,
    offer: Optional[FlyerOffer] = None,
    list_id: int = 1,
    quantity: float = 1.0,
    description: str = "",
) -> ListItem:
    return ListItem(
        id=item_id,
        list_id=list_id,
        description=description or (product.name if product else "free text"),
        quantity=quantity,
        offer=offer,
        product=product,
    )


def make_candidate(
    offer: FlyerOffer,
    raw_score: float = 1.0,
    same_brand: bool = False,
    search_pass: int = 1,
) -> CandidateSuggestion:
    return CandidateSuggestion(
        offer=offer,
        raw_score=raw_score,
        same_brand=same_brand,
        search_pass=search_pass,
    )


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# =============================================================================
# Fakes
# =============================================================================


class FakeLock:
    """Mirrors redis.asyncio.lock.Lock: token ownership, TTL, reacquire."""

    def __init__(self, redis: "FakeRedis", name: str, timeout: Optional[float] = None):
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.token: Optional[str] = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        ex = int(self.timeout) if self.timeout is not None else None
        if not await self.redis.set(self.name, token, ex=ex, nx=True):
            return False
        self.token = token
        return True

    async def release(self) -> None:
        token, self.token = self.token, None
        if token is None or self.redis.store.get(self.name) != token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        await self.redis.delete(self.name)

    async def reacquire(self) -> bool:
        if self.token is None or self.redis.store.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot reacquire a lock that's no longer owned")
        self.redis.ttls[self.name] = int(self.timeout)
        return True


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def ping(self):
        return True

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys: str):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def incr(self, key: str):
        value = int(self.store.get(key, "0")) + 1
        self.store[key] = str(value)
        return value

    def lock(self, name: str, timeout=None, blocking=True, thread_local=True):
        return FakeLock(self, name, timeout)

    async def aclose(self):
        return None


class BrokenRedis(FakeRedis):
    async def get(self, key: str):
        raise RedisConnectionError("connection refused")

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        raise RedisConnectionError("connection refused")


class FakeSearch:
    """
    Token-overlap search over an in-memory offer catalog.

    Strict mode needs every query token; loose mode needs half of them.
    raw_score = matched tokens / query tokens.
    """

    def __init__(self, offers: list[FlyerOffer] = ()):
        self.offers: dict[int, FlyerOffer] = {o.id: o for o in offers}
        self.calls: list[tuple[str, SearchFilters]] = []
        self.fail = False

    async def search(self, query: str, filters: SearchFilters) -> list[SearchHit]:
        self.calls.append((query, filters))
        if self.fail:
            raise SearchUnavailable("similarity search is unavailable")

        tokens = normalize_text(query).split()
        hits = []
        for offer in sorted(self.offers.values(), key=lambda o: o.id):
            if filters.store_ids and offer.store_id not in filters.store_ids:
                continue
            if filters.valid_at is not None and not offer.is_valid_at(filters.valid_at):
                continue
            if filters.category and normalize_text(offer.category) != normalize_text(filters.category):
                continue
            words = set(normalize_text(f"{offer.brand or ''} {offer.name}").split())
            matched = sum(1 for token in tokens if token in words)
            if filters.mode == SearchMode.STRICT and matched < len(tokens):
                continue
            if filters.mode == SearchMode.LOOSE and matched * 2 < len(tokens):
                continue
            hits.append(SearchHit(offer=offer, raw_score=round(matched / len(tokens), 6)))

        hits.sort(key=lambda h: (-h.raw_score, h.offer.id))
        return hits[: filters.limit]

    async def get_offers(self, offer_ids: list[int]) -> dict[int, FlyerOffer]:
        if self.fail:
            raise SearchUnavailable("offer lookup is unavailable")
        return {i: self.offers[i] for i in offer_ids if i in self.offers}


class FakeCatalog:
    def __init__(self, version: int = 1):
        self.version = version

    async def current_version(self) -> int:
        return self.version

    def bump(self) -> None:
        self.version += 1


class FakeElasticsearch:
    """Records search/mget calls and replays canned responses."""

    def __init__(self, search_response: dict | None = None, mget_response: dict | None = None, error=None):
        self.search_response = search_response or {"hits": {"max_score": None, "hits": []}}
        self.mget_response = mget_response or {"docs": []}
        self.error = error
        self.search_calls: list[dict] = []
        self.mget_calls: list[dict] = []

    def search(self, **kwargs):
        self.search_calls.append(kwargs)
        if self.error:
            raise self.error
        return self.search_response

    def mget(self, **kwargs):
        self.mget_calls.append(kwargs)
        if self.error:
            raise self.error
        return self.mget_response

    def ping(self):
        return self.error is None


# =============================================================================
# Shared grocery dataset
# =============================================================================


MILK = make_product(1, "Milk", brand="Dvaro", size=1.0, unit="l", category="Dairy")
BREAD = make_product(2, "Batonas", brand="Vilniaus", category="Bakery")
COFFEE = make_product(3, "Coffee", brand="Paulig", category="Coffee")
BUTTER = make_product(4, "Butter", brand="Rokiskio", category="Dairy")


def grocery_list() -> list[ListItem]:
    """
    List 1: three expired flyer items, one free-text entry and one item
    whose offer is still valid.
    """
    return [
        make_item(1, MILK, make_offer(11, "Milk", "Dvaro", store_id=1, price=1.50, size=1.0, unit="l", current=False)),
        make_item(2, BREAD, make_offer(12, "Batonas", "Vilniaus", store_id=1, price=1.00, current=False)),
        make_item(3, COFFEE, make_offer(13, "Coffee", "Paulig", store_id=2, price=5.00, current=False)),
        make_item(4, None, None, description="something sweet"),
        make_item(5, BUTTER, make_offer(14, "Butter", "Rokiskio", store_id=1, price=2.50)),
    ]


def grocery_catalog() -> list[FlyerOffer]:
    """Current offers; store 1 covers all three expired items, store 2 only coffee."""
    return [
        make_offer(101, "Milk", "Dvaro", store_id=1, price=1.60, size=1.0, unit="l", category="Dairy"),
        make_offer(102, "Milk", "Rokiskio", store_id=1, price=1.20, size=1.0, unit="l", category="Dairy"),
        make_offer(201, "Batonas", "Vilniaus", store_id=1, price=0.90, category="Bakery"),
        make_offer(301, "Coffee", "Paulig", store_id=2, price=4.50, category="Coffee"),
        make_offer(302, "Coffee", "Jacobs", store_id=1, price=4.00, category="Coffee"),
    ]
