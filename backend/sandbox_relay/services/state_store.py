"""
Sandbox State Store - Durable per-tenant sandbox record

Holds one SandboxRecord per tenant key:
1. Identity of the bound sandbox (survives backend restarts)
2. Dev server preview URL
3. Ordered conversation log

Backends:
- Redis (REDIS_URL set): JSON document per tenant, every mutation is an
  optimistic WATCH/MULTI transaction so concurrent writers never lose updates
- In-process (REDIS_URL empty): dict guarded by an asyncio.Lock; single worker only

Redis Key Structure:
- {REDIS_STATE_PREFIX}{tenant_key} -> SandboxRecord (JSON)
"""

import asyncio
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from pydantic import ValidationError as PydanticValidationError

from sandbox_relay.core.config import settings
from sandbox_relay.core.exceptions import StateStoreError
from sandbox_relay.core.logging_config import logger
from sandbox_relay.schemas.sandbox import Message, SandboxRecord, now_ms


Mutation = Callable[[SandboxRecord], SandboxRecord]


class SandboxStateStore:
    """
    Per-tenant sandbox state with atomic read-modify-write operations.

    Every public operation is atomic with respect to a single tenant key.
    Storage failures raise StateStoreError; callers treat them as fatal for
    the current request.
    """

    def __init__(self, redis_url: Optional[str] = None, prefix: Optional[str] = None):
        self._redis_url = settings.REDIS_URL if redis_url is None else redis_url
        self._prefix = prefix or settings.REDIS_STATE_PREFIX
        self._redis: Optional[aioredis.Redis] = None
        self._local: Dict[str, str] = {}
        self._local_lock = asyncio.Lock()

    @property
    def backend(self) -> str:
        return "redis" if self._redis_url else "memory"

    async def connect(self) -> None:
        """Connect to Redis when configured (fail fast if unreachable)"""
        if not self._redis_url:
            logger.warning("[StateStore] REDIS_URL not set, using in-process store")
            return
        if self._redis is not None:
            return

        try:
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            logger.info("[StateStore] Connected to Redis")
        except RedisError as e:
            self._redis = None
            raise StateStoreError(f"Redis connection failed: {e}") from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    async def ping(self) -> bool:
        """Readiness check for the configured backend"""
        if not self._redis_url:
            return True
        try:
            return bool(await self._client().ping())
        except (RedisError, StateStoreError) as e:
            logger.warning(f"[StateStore] Ping failed: {e}")
            return False

    def _key(self, tenant_key: str) -> str:
        return f"{self._prefix}{tenant_key}"

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            # Lazily connect so the store also works outside the app lifespan
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self._redis

    @staticmethod
    def _decode(raw: Optional[str], tenant_key: str) -> SandboxRecord:
        if not raw:
            return SandboxRecord()
        try:
            return SandboxRecord.model_validate_json(raw)
        except PydanticValidationError as e:
            raise StateStoreError(f"Corrupt sandbox record: {e}", tenant_key) from e

    async def _mutate(self, tenant_key: str, mutate: Mutation) -> SandboxRecord:
        """Load (or default) the record, apply ``mutate`` and save it atomically"""
        key = self._key(tenant_key)

        if not self._redis_url:
            async with self._local_lock:
                record = mutate(self._decode(self._local.get(key), tenant_key))
                self._local[key] = record.model_dump_json()
                return record

        async def apply(pipe) -> SandboxRecord:
            raw = await pipe.get(key)
            record = mutate(self._decode(raw, tenant_key))
            pipe.multi()
            pipe.set(key, record.model_dump_json())
            return record

        try:
            return await self._client().transaction(apply, key, value_from_callable=True)
        except RedisError as e:
            logger.error(f"[StateStore] Redis error for tenant {tenant_key}: {e}")
            raise StateStoreError(f"State store unavailable: {e}", tenant_key) from e

    # ==================== Operations ====================

    async def get_state(self, tenant_key: str) -> SandboxRecord:
        """Current record, creating the default one if absent; bumps last_accessed_at"""
        def touch(record: SandboxRecord) -> SandboxRecord:
            record.last_accessed_at = now_ms()
            return record

        return await self._mutate(tenant_key, touch)

    async def set_sandbox(self, tenant_key: str, sandbox_id: str) -> SandboxRecord:
        """Bind a sandbox id; keeps the dev server URL and conversation"""
        def bind(record: SandboxRecord) -> SandboxRecord:
            now = now_ms()
            record.sandbox_id = sandbox_id
            record.is_initialized = True
            record.created_at = record.created_at or now
            record.last_accessed_at = now
            return record

        record = await self._mutate(tenant_key, bind)
        logger.log_sandbox_event(sandbox_id, "bound", tenant_key=tenant_key)
        return record

    async def reset(self, tenant_key: str) -> SandboxRecord:
        """Re-initialize the record to its unbound shape (unrecoverable sandbox loss)"""
        record = await self._mutate(tenant_key, lambda _: SandboxRecord())
        logger.warning(f"[StateStore] Record reset for tenant {tenant_key}")
        return record

    async def set_dev_server_url(self, tenant_key: str, url: Optional[str]) -> SandboxRecord:
        def update(record: SandboxRecord) -> SandboxRecord:
            record.dev_server_url = url
            record.last_accessed_at = now_ms()
            return record

        return await self._mutate(tenant_key, update)

    async def add_message(self, tenant_key: str, message: Message) -> SandboxRecord:
        def append(record: SandboxRecord) -> SandboxRecord:
            record.messages.append(message)
            record.last_accessed_at = now_ms()
            return record

        return await self._mutate(tenant_key, append)

    async def clear_messages(self, tenant_key: str) -> SandboxRecord:
        """Truncate the conversation; sandbox identity and URL are untouched"""
        def clear(record: SandboxRecord) -> SandboxRecord:
            record.messages = []
            record.last_accessed_at = now_ms()
            return record

        return await self._mutate(tenant_key, clear)


# Global instance
state_store = SandboxStateStore()


async def get_state_store() -> SandboxStateStore:
    """Get state store (FastAPI dependency)"""
    return state_store
