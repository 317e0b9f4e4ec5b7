from __future__ import annotations

import contextlib
import json
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from warden.logging import get_logger
from warden.storage.errors import StoreUnavailable
from warden.storage.models import TokenCacheEntry

logger = get_logger(__name__)


class RedisTokenStore:
    """Token cache kept in Redis.

    Layout: one hash per token (payload, last_activity, user_id), a sorted set
    of tokens scored by last_activity for expiry sweeps, and a set of tokens
    per user for the person-deletion cascade. Each conditional operation is a
    Lua script so the check and the mutation execute as one step on the server.
    Every key a script touches is passed in KEYS, but the activity set is shared
    by all tokens, so the scripts span hash slots and Redis Cluster is not
    supported; use a standalone or replicated server.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    _INSERT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'payload', ARGV[2], 'last_activity', ARGV[3], 'user_id', ARGV[4])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
if ARGV[4] ~= '' then
  redis.call('SADD', KEYS[3], ARGV[1])
end
return 1
"""

    # returns the payload when the idle time falls inside [min_idle, max_idle]
    _RENEW_SCRIPT = """
local last = redis.call('HGET', KEYS[1], 'last_activity')
if not last then
  return false
end
local idle = tonumber(ARGV[2]) - tonumber(last)
if idle < tonumber(ARGV[3]) or idle > tonumber(ARGV[4]) then
  return false
end
redis.call('HSET', KEYS[1], 'last_activity', ARGV[2])
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return redis.call('HGET', KEYS[1], 'payload')
"""

    _DELETE_SCRIPT = """
local removed = redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('SREM', KEYS[3], ARGV[1])
return removed
"""

    # delete-where-still-expired: re-reads last_activity inside the script
    _DELETE_IF_EXPIRED_SCRIPT = """
local last = redis.call('HGET', KEYS[1], 'last_activity')
if not last then
  redis.call('ZREM', KEYS[2], ARGV[1])
  return 0
end
if tonumber(ARGV[2]) - tonumber(last) <= tonumber(ARGV[3]) then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('SREM', KEYS[3], ARGV[1])
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "warden",
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._insert = self.client.register_script(self._INSERT_SCRIPT)
        self._renew = self.client.register_script(self._RENEW_SCRIPT)
        self._delete = self.client.register_script(self._DELETE_SCRIPT)
        self._delete_if_expired = self.client.register_script(
            self._DELETE_IF_EXPIRED_SCRIPT
        )

    def _token_key(self, token: str) -> str:
        return f"{self.prefix}:token:{token}"

    @property
    def _activity_key(self) -> str:
        return f"{self.prefix}:token_activity"

    def _user_key(self, user_id: Optional[object]) -> str:
        return f"{self.prefix}:user_tokens:{'' if user_id is None else user_id}"

    def _owner_key(self, token: str) -> str:
        """Per-user set key for a stored token; user_id never changes after insert."""
        with self._guard("get_token_owner"):
            user_id = self.client.hget(self._token_key(token), "user_id")
        return self._user_key(user_id or None)

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "redis_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                "token cache unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def insert_token(self, entry: TokenCacheEntry) -> bool:
        user_id = "" if entry.user_id is None else str(entry.user_id)
        with self._guard("insert_token"):
            inserted = self._insert(
                keys=[
                    self._token_key(entry.token),
                    self._activity_key,
                    self._user_key(entry.user_id),
                ],
                args=[entry.token, json.dumps(entry.payload), entry.last_activity, user_id],
            )
        return bool(inserted)

    def get_token(self, token: str) -> Optional[TokenCacheEntry]:
        with self._guard("get_token"):
            payload, last_activity = self.client.hmget(
                self._token_key(token), "payload", "last_activity"
            )
        if payload is None or last_activity is None:
            return None
        return TokenCacheEntry(
            token=token, payload=json.loads(payload), last_activity=int(last_activity)
        )

    def renew_token(
        self, token: str, now: int, *, min_idle: int, max_idle: int
    ) -> Optional[TokenCacheEntry]:
        with self._guard("renew_token"):
            payload = self._renew(
                keys=[self._token_key(token), self._activity_key],
                args=[token, now, min_idle, max_idle],
            )
        if not payload:
            return None
        return TokenCacheEntry(token=token, payload=json.loads(payload), last_activity=now)

    def delete_token(self, token: str) -> bool:
        owner_key = self._owner_key(token)
        with self._guard("delete_token"):
            removed = self._delete(
                keys=[self._token_key(token), self._activity_key, owner_key],
                args=[token],
            )
        return bool(removed)

    def delete_token_if_expired(self, token: str, now: int, ttl_seconds: int) -> bool:
        owner_key = self._owner_key(token)
        with self._guard("delete_token_if_expired"):
            removed = self._delete_if_expired(
                keys=[self._token_key(token), self._activity_key, owner_key],
                args=[token, now, ttl_seconds],
            )
        return bool(removed)

    def delete_expired(self, now: int, ttl_seconds: int) -> int:
        with self._guard("delete_expired"):
            candidates = self.client.zrangebyscore(
                self._activity_key, "-inf", f"({now - ttl_seconds}"
            )
        deleted = 0
        for token in candidates:
            if self.delete_token_if_expired(token, now, ttl_seconds):
                deleted += 1
        return deleted

    def delete_user_tokens(self, user_id: int) -> int:
        user_key = self._user_key(user_id)
        with self._guard("delete_user_tokens"):
            tokens = self.client.smembers(user_key)
        deleted = 0
        for token in tokens:
            if self.delete_token(token):
                deleted += 1
        with self._guard("delete_user_tokens"):
            self.client.delete(user_key)
        return deleted
