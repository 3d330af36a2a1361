# sync_engine/infrastructure/ratelimit/redis_token_bucket.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple

import redis
from redis.exceptions import NoScriptError

from sync_engine.core.config import settings

logger = logging.getLogger(__name__)


"""
全局令牌桶限流（多个 worker 进程共享同一个 Redis key），单位：rpm。
    key: {prefix}:{env}:{vendor}:{account}

    Lua 原子步骤：
      1) 用 Redis 服务器时间（TIME）补桶，避免多主机时钟偏差
      2) tokens >= 1 则消耗 1 个并 allowed=1；否则返回需要等待的毫秒 wait_ms
      3) 持久化 tokens/ts，并设置 TTL（空闲自动清理）
"""
class RedisTokenBucketLimiter:

    LUA_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local refill_per_ms = tonumber(ARGV[2])
    local ttl_ms = tonumber(ARGV[3])

    local t = redis.call('TIME')
    local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

    local data = redis.call('HMGET', key, 'tokens', 'ts')
    local tokens = tonumber(data[1])
    local ts = tonumber(data[2])

    if tokens == nil or ts == nil then
        tokens = capacity
        ts = now
    else
        local delta = now - ts
        if delta < 0 then delta = 0 end
        tokens = math.min(capacity, tokens + delta * refill_per_ms)
        ts = now
    end

    local allowed = 0
    local wait_ms = 0
    if tokens >= 1 then
        tokens = tokens - 1
        allowed = 1
    else
        wait_ms = math.ceil((1 - tokens) / refill_per_ms)
        if wait_ms < 0 then wait_ms = 0 end
    end

    redis.call('HSET', key, 'tokens', tokens, 'ts', ts)
    if ttl_ms > 0 then
      redis.call('PEXPIRE', key, ttl_ms)
    end
    return {allowed, tostring(tokens), wait_ms}
    """

    def __init__(self, client, key: str, max_rpm: int, burst: int = 5,
                 ttl_ms: int = 120000, max_wait_ms: Optional[int] = 5000):
        self.r = client
        self.key = key
        self.capacity = max(1, int(burst))
        self.refill_per_ms = float(max_rpm) / 60_000.0
        self.ttl_ms = int(ttl_ms)
        self.max_wait_ms = max_wait_ms
        self._sha = self.r.script_load(self.LUA_SCRIPT)

    @classmethod
    def for_meta(cls, account: Optional[str]) -> Optional["RedisTokenBucketLimiter"]:
        """META_GLOBAL_RL_ENABLED=false 时返回 None（调用方不限流）。"""
        if not settings.META_GLOBAL_RL_ENABLED:
            return None

        client = redis.from_url(settings.META_GLOBAL_RL_REDIS_URL, decode_responses=True)
        acct = (account or "account").replace(":", "_")
        key = f"{settings.META_GLOBAL_RL_KEY_PREFIX}:{settings.ENVIRONMENT}:meta:{acct}"
        return cls(
            client=client,
            key=key,
            max_rpm=settings.META_GLOBAL_RL_MAX_RPM,
            burst=settings.META_GLOBAL_RL_BURST,
            ttl_ms=120000,
            max_wait_ms=settings.META_GLOBAL_RL_MAX_WAIT_MS,
        )

    def _eval(self) -> Tuple[bool, int]:
        args = (self.capacity, self.refill_per_ms, self.ttl_ms)
        try:
            res = self.r.evalsha(self._sha, 1, self.key, *args)
        except NoScriptError:
            # Redis 重启后脚本缓存丢失：重载再试一次
            self._sha = self.r.script_load(self.LUA_SCRIPT)
            res = self.r.evalsha(self._sha, 1, self.key, *args)

        allowed = int(res[0]) == 1
        wait_ms = 0 if allowed else max(0, int(float(res[2])))
        if self.max_wait_ms is not None and wait_ms > self.max_wait_ms:
            wait_ms = self.max_wait_ms
        return allowed, wait_ms

    def acquire_once(self) -> Tuple[bool, int]:
        """尝试消费 1 个令牌；返回 (allowed, wait_ms)。"""
        return self._eval()

    def acquire(self, *, sleep: Callable[[float], None] = time.sleep, max_rounds: int = 50) -> bool:
        """阻塞直到拿到令牌（最多 max_rounds 轮）；拿不到返回 False，由调用方决定是否照常发请求。"""
        for _ in range(max_rounds):
            allowed, wait_ms = self._eval()
            if allowed:
                return True
            logger.debug("ratelimit.wait key=%s wait_ms=%s", self.key, wait_ms)
            sleep(max(wait_ms, 10) / 1000.0)
        logger.warning("ratelimit.give_up key=%s rounds=%s", self.key, max_rounds)
        return False
