"""Login and reset-request throttling shared across replicas through Redis."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError

# KEYS[1]: attempt set for one scope/email digest. ARGV: window_ms, limit, now_ms.
_RECORD_ATTEMPT_LUA: Final[str] = """
local attempts = KEYS[1]
local counter = attempts .. ':seq'
local window_ms = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', attempts, 0, now_ms - window_ms)
if redis.call('ZCARD', attempts) >= limit then
    return 0
end
local seq = redis.call('INCR', counter)
redis.call('PEXPIRE', counter, window_ms)
redis.call('ZADD', attempts, now_ms, now_ms .. ':' .. seq)
redis.call('PEXPIRE', attempts, window_ms)
return 1
"""


class RedisSlidingWindowRateLimiter:
    """Counts attempts per rate key in a sorted set scored by epoch milliseconds.

    Keys arrive already digested (``login:<sha256 prefix>``), so no email
    address is written to Redis. A successful login calls ``reset`` to clear
    the failures recorded for that address.
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "credential-rate",
    ) -> None:
        self._client = client
        self._limit = max_requests
        self._window_ms = window_seconds * 1000
        self._prefix = key_prefix
        self._record_attempt = client.register_script(_RECORD_ATTEMPT_LUA)

    def _attempts_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def allow(self, key: str) -> bool:
        now_ms = int(time.time() * 1000)
        attempts_key = self._attempts_key(key)
        try:
            admitted = self._record_attempt(keys=[attempts_key], args=[self._window_ms, self._limit, now_ms])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                return self._record_attempt_unscripted(attempts_key, now_ms)
            raise
        return int(admitted) == 1

    def reset(self, key: str) -> None:
        attempts_key = self._attempts_key(key)
        self._client.delete(attempts_key, f"{attempts_key}:seq")

    def _record_attempt_unscripted(self, attempts_key: str, now_ms: int) -> bool:
        # Same steps as the script, without atomicity; used where EVAL is disabled.
        counter_key = f"{attempts_key}:seq"
        self._client.zremrangebyscore(attempts_key, 0, now_ms - self._window_ms)
        if self._client.zcard(attempts_key) >= self._limit:
            return False
        seq = self._client.incr(counter_key)
        self._client.pexpire(counter_key, self._window_ms)
        self._client.zadd(attempts_key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(attempts_key, self._window_ms)
        return True
