"""Redis key-value store.

Implements KeyValueStorePort on redis.asyncio so that several processes
share cached results and ledger balances. Ledger consumption runs as a Lua
script, making refill-and-decrement a single atomic step on the server.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from redis import exceptions as redis_exceptions

from apiguard.application.ports import KeyValueStorePort
from apiguard.domain.entities import LedgerEntry
from apiguard.domain.exceptions import StorageError, StorageUnavailableError

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from apiguard.domain.entities import LedgerDefaults

logger = structlog.get_logger(__name__)

# Loads the entry (or its defaults) and applies refill up to ARGV[2].
# ARGV: 1 amount, 2 now, 3-5 default initial/max/rate, 6 owner.
_LOAD_AND_REFILL_LUA = """
    local key = KEYS[1]
    local now = tonumber(ARGV[2])
    local owner = ARGV[6]

    local data = redis.call('HMGET', key, 'available_tokens', 'max_tokens', 'tokens_per_minute', 'last_refill_at')
    local available = tonumber(data[1])
    local max_tokens = tonumber(data[2])
    local rate = tonumber(data[3])
    local last_refill = tonumber(data[4])

    if available == nil then
        available = tonumber(ARGV[3])
        max_tokens = tonumber(ARGV[4])
        rate = tonumber(ARGV[5])
        last_refill = now
    end

    local elapsed = now - last_refill
    if elapsed > 0 then
        available = math.min(max_tokens, available + (elapsed / 60) * rate)
        last_refill = now
    end
"""

# Returns {consumed, available, max_tokens, tokens_per_minute, last_refill_at}.
# Floats travel as strings: Redis truncates Lua numbers to integers.
CONSUME_LEDGER_SCRIPT = _LOAD_AND_REFILL_LUA + """
    local tokens = tonumber(ARGV[1])
    local consumed = 0
    if available >= tokens then
        available = available - tokens
        consumed = 1
    end

    redis.call('HSET', key,
        'owner', owner,
        'available_tokens', tostring(available),
        'max_tokens', tostring(max_tokens),
        'tokens_per_minute', tostring(rate),
        'last_refill_at', tostring(last_refill))

    return {consumed, tostring(available), tostring(max_tokens), tostring(rate), tostring(last_refill)}
"""

# Returns {available, max_tokens, tokens_per_minute, last_refill_at}.
SET_LEDGER_MAX_SCRIPT = _LOAD_AND_REFILL_LUA + """
    max_tokens = tonumber(ARGV[1])
    available = math.min(available, max_tokens)

    redis.call('HSET', key,
        'owner', owner,
        'available_tokens', tostring(available),
        'max_tokens', tostring(max_tokens),
        'tokens_per_minute', tostring(rate),
        'last_refill_at', tostring(last_refill))

    return {tostring(available), tostring(max_tokens), tostring(rate), tostring(last_refill)}
"""


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def _entry_from_script(owner: str, fields: list[Any]) -> LedgerEntry:
    available, max_tokens, rate, last_refill = fields
    return LedgerEntry(
        owner=owner,
        available_tokens=float(_text(available)),
        max_tokens=int(float(_text(max_tokens))),
        tokens_per_minute=float(_text(rate)),
        last_refill_at=float(_text(last_refill)),
    )


class RedisKeyValueStore(KeyValueStorePort):
    """Shared store on Redis.

    Keys are namespaced: ``{namespace}:cache:{key}`` for cached values and
    ``{namespace}:ledger:{owner}`` (a hash) for ledger entries.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: Redis | None = None,
        namespace: str = "apiguard",
    ):
        """Initialize Redis store.

        Args:
            redis_url: Connection URL, used when no client is given
            client: Optional pre-configured client (for testing)
            namespace: Prefix for every key written by this store
        """
        if client is None and redis_url is None:
            msg = "RedisKeyValueStore needs a redis_url or a client"
            raise ValueError(msg)
        self._redis_url = redis_url
        self._external_client = client
        self._owned_client: Redis | None = None
        self._namespace = namespace

    def _get_client(self) -> Redis:
        """Get or create the Redis client."""
        if self._external_client is not None:
            return self._external_client

        if self._owned_client is None:
            from redis.asyncio import Redis

            self._owned_client = Redis.from_url(self._redis_url, decode_responses=True)
            logger.info("redis_store_connected", namespace=self._namespace)

        return self._owned_client

    async def close(self) -> None:
        """Close Redis client if owned."""
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError) as e:
            logger.error("redis_store_unavailable", action=action, error=str(e))
            raise StorageUnavailableError(
                f"Redis unavailable during {action}",
                details={"error": str(e)},
            ) from e
        except redis_exceptions.RedisError as e:
            logger.error("redis_store_error", action=action, error=str(e))
            raise StorageError(f"Redis error during {action}: {e}") from e

    def _cache_key(self, key: str) -> str:
        return f"{self._namespace}:cache:{key}"

    def _ledger_key(self, owner: str) -> str:
        return f"{self._namespace}:ledger:{owner}"

    # === Cache operations ===

    async def get(self, key: str) -> Any | None:
        with self._translate_errors("get"):
            raw = await self._get_client().get(self._cache_key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> None:
        payload = json.dumps(value)
        with self._translate_errors("set"):
            if ttl is not None:
                await self._get_client().setex(self._cache_key(key), ttl, payload)
            else:
                await self._get_client().set(self._cache_key(key), payload)

    async def delete(self, key: str) -> bool:
        with self._translate_errors("delete"):
            removed = await self._get_client().delete(self._cache_key(key))
        return bool(removed)

    async def clear_prefix(self, prefix: str) -> int:
        client = self._get_client()
        removed = 0
        with self._translate_errors("clear_prefix"):
            batch: list[str] = []
            async for key in client.scan_iter(match=f"{self._cache_key(prefix)}*"):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
        logger.debug("redis_store_prefix_cleared", prefix=prefix, removed=removed)
        return removed

    # === Ledger operations ===

    async def load_ledger(self, owner: str) -> LedgerEntry | None:
        with self._translate_errors("load_ledger"):
            data = await self._get_client().hgetall(self._ledger_key(owner))
        if not data:
            return None
        fields = {_text(k): _text(v) for k, v in data.items()}
        return LedgerEntry(
            owner=owner,
            available_tokens=float(fields["available_tokens"]),
            max_tokens=int(float(fields["max_tokens"])),
            tokens_per_minute=float(fields["tokens_per_minute"]),
            last_refill_at=float(fields["last_refill_at"]),
        )

    async def save_ledger(self, entry: LedgerEntry) -> None:
        with self._translate_errors("save_ledger"):
            await self._get_client().hset(
                self._ledger_key(entry.owner),
                mapping={
                    "owner": entry.owner,
                    "available_tokens": repr(entry.available_tokens),
                    "max_tokens": str(entry.max_tokens),
                    "tokens_per_minute": repr(entry.tokens_per_minute),
                    "last_refill_at": repr(entry.last_refill_at),
                },
            )

    async def delete_ledger(self, owner: str) -> bool:
        with self._translate_errors("delete_ledger"):
            removed = await self._get_client().delete(self._ledger_key(owner))
        return bool(removed)

    async def consume_ledger(
        self,
        owner: str,
        tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> tuple[bool, LedgerEntry]:
        with self._translate_errors("consume_ledger"):
            result = await self._get_client().eval(
                CONSUME_LEDGER_SCRIPT,
                1,
                self._ledger_key(owner),
                tokens,
                repr(now),
                defaults.initial_tokens,
                defaults.max_tokens,
                repr(defaults.tokens_per_minute),
                owner,
            )
        consumed, *fields = result
        return int(consumed) == 1, _entry_from_script(owner, fields)

    async def set_ledger_max(
        self,
        owner: str,
        max_tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> LedgerEntry:
        with self._translate_errors("set_ledger_max"):
            result = await self._get_client().eval(
                SET_LEDGER_MAX_SCRIPT,
                1,
                self._ledger_key(owner),
                max_tokens,
                repr(now),
                defaults.initial_tokens,
                defaults.max_tokens,
                repr(defaults.tokens_per_minute),
                owner,
            )
        return _entry_from_script(owner, result)


__all__ = ["CONSUME_LEDGER_SCRIPT", "SET_LEDGER_MAX_SCRIPT", "RedisKeyValueStore"]
