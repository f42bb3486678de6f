"""
Wizard Session Store

Redis-backed persistence for WizardSession state between requests.

Keys:
  wizard:session:{session_id}                    session JSON (TTL: expiry + retention)
  wizard:list:{list_id}:active                   id of the list's non-terminal session
  wizard:lock:{session_id}                       per-session mutation lock (redis Lock)
  wizard:idempotency:{session_id}:{key}          cached CompletionResult (24h)
  catalog:dataset_version                        monotonic catalog freshness marker
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError, RedisError

from flyer_wizard.errors import SessionBusy, SessionStoreUnavailable
from flyer_wizard.models import CompletionResult, WizardConfig, WizardSession
from flyer_wizard.pipeline_logger import log_error, log_session


SESSION_KEY = "wizard:session:{session_id}"
LIST_KEY = "wizard:list:{list_id}:active"
LOCK_KEY = "wizard:lock:{session_id}"
IDEMPOTENCY_KEY = "wizard:idempotency:{session_id}:{key}"
DATASET_VERSION_KEY = "catalog:dataset_version"


def create_redis_client(
    host: str = "127.0.0.1",
    port: int = 6379,
    password: str = "",
    db: int = 0,
) -> aioredis.Redis:
    return aioredis.Redis(
        host=host,
        port=port,
        password=password or None,
        db=db,
        decode_responses=True,
    )


class CatalogVersionSource(Protocol):
    async def current_version(self) -> int:
        ...


class RedisCatalogVersion:
    """
    Dataset version published by the catalog ingestion side.

    The flyer pipeline bumps the counter whenever offers change; the wizard
    only reads it.
    """

    def __init__(self, redis: aioredis.Redis, key: str = DATASET_VERSION_KEY):
        self._redis = redis
        self._key = key

    async def current_version(self) -> int:
        try:
            raw = await self._redis.get(self._key)
        except RedisError as e:
            log_error("SESSION", "Dataset version read failed", e)
            raise SessionStoreUnavailable("catalog version is unavailable") from e
        return int(raw) if raw is not None else 0

    async def bump(self) -> int:
        try:
            return int(await self._redis.incr(self._key))
        except RedisError as e:
            log_error("SESSION", "Dataset version bump failed", e)
            raise SessionStoreUnavailable("catalog version is unavailable") from e


class RedisSessionStore:
    """
    Usage:
        store = RedisSessionStore(create_redis_client("redis"))
        async with store.lock(session.id):
            session = await store.get(session.id)
            ...
            await store.save(session, expected_revision=session.revision)
    """

    def __init__(self, redis: aioredis.Redis, config: Optional[WizardConfig] = None):
        self._redis = redis
        self.config = config or WizardConfig()

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def get(self, session_id: str) -> Optional[WizardSession]:
        raw = await self._call("get", SESSION_KEY.format(session_id=session_id))
        if raw is None:
            return None
        return WizardSession.model_validate_json(raw)

    async def save(
        self,
        session: WizardSession,
        expected_revision: Optional[int] = None,
    ) -> WizardSession:
        """
        Write the session, bumping its revision.

        With `expected_revision`, the write only happens if the stored copy
        still has that revision; otherwise SessionBusy is raised.
        """
        key = SESSION_KEY.format(session_id=session.id)
        if expected_revision is not None:
            stored = await self.get(session.id)
            if stored is not None and stored.revision != expected_revision:
                log_session(
                    "Revision conflict",
                    {"session": session.id, "expected": expected_revision, "stored": stored.revision},
                )
                raise SessionBusy(session.id)

        saved = session.model_copy(update={"revision": session.revision + 1})
        await self._call("set", key, saved.model_dump_json(), ex=self._session_ttl(saved))
        log_session(
            "Session saved",
            {"session": saved.id, "state": saved.state.value, "revision": saved.revision},
        )
        return saved

    async def delete(self, session_id: str) -> None:
        await self._call("delete", SESSION_KEY.format(session_id=session_id))

    def _session_ttl(self, session: WizardSession) -> int:
        remaining = session.expires_at - session.updated_at
        retention = timedelta(hours=self.config.retention_hours)
        return max(1, int((remaining + retention).total_seconds()))

    # -------------------------------------------------------------------------
    # List pointer
    # -------------------------------------------------------------------------

    async def claim_list(self, list_id: int, session_id: str) -> bool:
        """Point the list at `session_id` if no other session holds it."""
        ttl = int(timedelta(minutes=self.config.session_ttl_minutes).total_seconds())
        claimed = await self._call(
            "set", LIST_KEY.format(list_id=list_id), session_id, ex=ttl, nx=True
        )
        return bool(claimed)

    async def get_active_session_id(self, list_id: int) -> Optional[str]:
        return await self._call("get", LIST_KEY.format(list_id=list_id))

    async def release_list(self, list_id: int, session_id: str) -> None:
        key = LIST_KEY.format(list_id=list_id)
        if await self._call("get", key) == session_id:
            await self._call("delete", key)

    # -------------------------------------------------------------------------
    # Lock
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, session_id: str):
        """
        Hold the per-session mutation lock; fail fast with SessionBusy.

        Yields the redis Lock so long-running work can extend it with
        `keep_alive`. Release is an atomic compare-and-delete, so a lock that
        expired and was taken by another caller is left alone.
        """
        key = LOCK_KEY.format(session_id=session_id)
        lock = self._redis.lock(
            key,
            timeout=self.config.lock_ttl_seconds,
            blocking=False,
            thread_local=False,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            log_error("SESSION", "Redis lock acquire failed", e)
            raise SessionStoreUnavailable("session store is unavailable", {"operation": "lock"}) from e
        if not acquired:
            log_session("Lock busy", {"session": session_id})
            raise SessionBusy(session_id)
        try:
            yield lock
        finally:
            try:
                await lock.release()
            except LockNotOwnedError:
                log_session("Lock expired before release", {"session": session_id})

    async def keep_alive(self, lock: Lock, session_id: str) -> None:
        """Reset the lock's TTL; SessionBusy if it was lost in the meantime."""
        try:
            await lock.reacquire()
        except LockNotOwnedError as e:
            log_session("Lock lost", {"session": session_id})
            raise SessionBusy(session_id) from e
        except RedisError as e:
            log_error("SESSION", "Redis lock extend failed", e)
            raise SessionStoreUnavailable("session store is unavailable", {"operation": "lock"}) from e

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    async def get_completion(self, session_id: str, key: str) -> Optional[CompletionResult]:
        raw = await self._call("get", IDEMPOTENCY_KEY.format(session_id=session_id, key=key))
        if raw is None:
            return None
        return CompletionResult.model_validate_json(raw)

    async def store_completion(self, session_id: str, key: str, result: CompletionResult) -> None:
        ttl = int(timedelta(hours=self.config.idempotency_ttl_hours).total_seconds())
        await self._call(
            "set",
            IDEMPOTENCY_KEY.format(session_id=session_id, key=key),
            result.model_dump_json(),
            ex=ttl,
        )

    async def ping(self) -> bool:
        return bool(await self._call("ping"))

    async def _call(self, method: str, *args, **kwargs):
        try:
            return await getattr(self._redis, method)(*args, **kwargs)
        except RedisError as e:
            log_error("SESSION", f"Redis {method} failed", e)
            raise SessionStoreUnavailable("session store is unavailable", {"operation": method}) from e


def session_expiry(created_at: datetime, config: WizardConfig) -> datetime:
    return created_at + timedelta(minutes=config.session_ttl_minutes)
