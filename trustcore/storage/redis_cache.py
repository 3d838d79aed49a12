from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for federation state and cross-process locks."""

    # Delete the lock only if we still own it
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    # Push the lock expiry out only while we still own it
    _EXTEND_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)
        self._extend_lock = self.client.register_script(self._EXTEND_LOCK_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Whole seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(
        self, state: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        data = dict(payload)
        data["expires_at"] = expires_at.astimezone(timezone.utc).isoformat()
        await self.client.set(
            f"federation:state:{state}", json.dumps(data), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Atomically consume a federation state so it can be used only once."""
        cached = await self.client.getdel(f"federation:state:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted payload, already deleted
            return None
        return data if isinstance(data, dict) else None

    async def acquire_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        acquired = await self.client.set(
            f"lock:{name}", owner, nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(acquired)

    async def extend_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        result = await self._extend_lock(
            keys=[f"lock:{name}"], args=[owner, max(1, int(ttl_seconds))]
        )
        return bool(result)

    async def release_lock(self, name: str, owner: str) -> bool:
        result = await self._release_lock(keys=[f"lock:{name}"], args=[owner])
        return bool(result)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
