from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from trustgate.logging import get_logger

logger = get_logger(__name__)

# Outcome codes shared with MemoryCache.consume_challenge
CONSUME_OK = "ok"
CONSUME_EXPIRED = "challenge_expired"
CONSUME_EMAIL_REQUIRED = "email_code_required"
CONSUME_MFA_REQUIRED = "mfa_code_required"
CONSUME_INVALID = "challenge_invalid"


class RedisCache:
    """Thin Redis wrapper for ephemeral engine state (challenges, policy cache)."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Flip one boolean field of a JSON value without touching its TTL
    _SET_FLAG_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local ok, data = pcall(cjson.decode, raw)
if not ok or type(data) ~= 'table' then
  return -1
end
data[ARGV[1]] = true
redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
return 1
"""

    # Check challenge prerequisites and delete in one step (at-most-once consume)
    _CONSUME_CHALLENGE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {'challenge_expired'}
end
local ok, data = pcall(cjson.decode, raw)
if not ok or type(data) ~= 'table' then
  return {'challenge_invalid'}
end
if data['email_verified'] ~= true then
  return {'email_code_required'}
end
if data['requires_mfa'] == true and data['mfa_verified'] ~= true then
  return {'mfa_code_required'}
end
redis.call('DEL', KEYS[1])
return {'ok', raw}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._set_flag = self.client.register_script(self._SET_FLAG_SCRIPT)
        self._consume_challenge = self.client.register_script(
            self._CONSUME_CHALLENGE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as cache miss
            logger.warning("cache_entry_corrupted", key=key)
            return None

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -2 when the key is absent, -1 when it never expires."""
        return int(await self.client.ttl(key))

    async def set_flag(self, key: str, field: str) -> bool:
        """Atomically set ``field`` to true on a JSON value, keeping its TTL.

        Returns False when the key is absent or its payload is not a JSON object.
        """
        result = await self._set_flag(keys=[key], args=[field])
        return int(result) == 1

    async def consume_challenge(self, key: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Delete a fully verified challenge and return its payload.

        Returns (outcome, payload) where outcome is one of the CONSUME_* codes
        and payload is only set for CONSUME_OK.
        """
        result = await self._consume_challenge(keys=[key])
        outcome = result[0]
        if outcome != CONSUME_OK:
            return outcome, None
        try:
            return CONSUME_OK, json.loads(result[1])
        except (json.JSONDecodeError, TypeError, IndexError):
            return CONSUME_INVALID, None
