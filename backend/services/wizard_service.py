"""
Wizard Service

Wires the migration engine to its collaborators (Redis, Elasticsearch,
SQLite) for use in FastAPI. Connections are created lazily on startup.
"""

import asyncio
from time import perf_counter
from typing import Optional

from redis.exceptions import RedisError

from backend.core.config import settings
from flyer_wizard.database import Database
from flyer_wizard.list_store import SQLiteShoppingListStore
from flyer_wizard.logging_config import get_logger
from flyer_wizard.search_adapter import ElasticsearchSimilaritySearch
from flyer_wizard.session_store import RedisCatalogVersion, RedisSessionStore, create_redis_client
from flyer_wizard.snapshots import OfferSnapshotRecorder
from flyer_wizard.wizard import WizardSessionManager

logger = get_logger(__name__)


class WizardService:
    """Owns the engine and its connections for the lifetime of the process."""

    def __init__(self):
        self._manager: Optional[WizardSessionManager] = None
        self._redis = None
        self._search: Optional[ElasticsearchSimilaritySearch] = None
        self._db: Optional[Database] = None

    async def initialize(self) -> None:
        if self._manager is not None:
            return

        config = settings.wizard_config()
        self._redis = create_redis_client(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
        )
        self._search = ElasticsearchSimilaritySearch.connect(
            host=settings.es_host,
            port=settings.es_port,
            scheme=settings.es_scheme,
            username=settings.es_user or None,
            password=settings.es_password or None,
            index_name=settings.es_index,
        )
        self._db = Database(settings.database_path)
        await asyncio.to_thread(self._db.init_schema)

        self._manager = WizardSessionManager(
            sessions=RedisSessionStore(self._redis, config),
            lists=SQLiteShoppingListStore(self._db),
            search=self._search,
            snapshots=OfferSnapshotRecorder(self._db),
            catalog=RedisCatalogVersion(self._redis),
            config=config,
        )
        logger.info("Wizard engine initialized")

    @property
    def manager(self) -> WizardSessionManager:
        if self._manager is None:
            raise RuntimeError("Wizard service not initialized. Call initialize() first.")
        return self._manager

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
        if self._search is not None:
            self._search.es.close()
        if self._db is not None:
            self._db.close()

    async def health_check(self) -> dict[str, dict]:
        """Ping Redis and Elasticsearch; returns per-service status dicts."""
        results: dict[str, dict] = {}

        start = perf_counter()
        try:
            ok = self._redis is not None and await self._redis.ping()
            latency = int((perf_counter() - start) * 1000)
            results["redis"] = {"status": "ok" if ok else "error", "latency_ms": latency}
        except RedisError as e:
            results["redis"] = {"status": "error", "error": str(e)[:100]}

        start = perf_counter()
        try:
            ok = self._search is not None and await self._search.ping()
            latency = int((perf_counter() - start) * 1000)
            results["elasticsearch"] = {"status": "ok" if ok else "error", "latency_ms": latency}
        except Exception as e:
            results["elasticsearch"] = {"status": "error", "error": str(e)[:100]}

        return results


# Global service instance
_wizard_service: Optional[WizardService] = None


def get_wizard_service() -> WizardService:
    """Get the global wizard service instance."""
    global _wizard_service
    if _wizard_service is None:
        _wizard_service = WizardService()
    return _wizard_service


def get_wizard_manager() -> WizardSessionManager:
    return get_wizard_service().manager
