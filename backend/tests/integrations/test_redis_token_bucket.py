from redis.exceptions import NoScriptError

from sync_engine.core.config import settings
from sync_engine.infrastructure.ratelimit import RedisTokenBucketLimiter


class FakeRedis:
    """只模拟 script_load / evalsha；results 依次作为 Lua 脚本返回值。"""

    def __init__(self, results, *, flush_once=False):
        self.results = list(results)
        self.flush_once = flush_once
        self.loads = 0
        self.keys = []

    def script_load(self, script):
        self.loads += 1
        return f"sha-{self.loads}"

    def evalsha(self, sha, numkeys, key, *args):
        if self.flush_once:
            self.flush_once = False
            raise NoScriptError("NOSCRIPT No matching script")
        self.keys.append(key)
        return self.results.pop(0)


def test_acquire_waits_until_token_available(fake_sleep):
    r = FakeRedis([[0, "0.2", 800], [0, "0.6", 300], [1, "0", 0]])
    limiter = RedisTokenBucketLimiter(r, "meta:rl:test:meta:42", max_rpm=60, burst=1)

    assert limiter.acquire(sleep=fake_sleep) is True
    assert fake_sleep.calls == [0.8, 0.3]
    assert r.keys == ["meta:rl:test:meta:42"] * 3


def test_wait_is_capped_by_max_wait(fake_sleep):
    r = FakeRedis([[0, "0", 60000], [1, "0", 0]])
    limiter = RedisTokenBucketLimiter(r, "k", max_rpm=1, max_wait_ms=2000)

    assert limiter.acquire_once() == (False, 2000)
    assert limiter.acquire_once() == (True, 0)


def test_gives_up_after_max_rounds(fake_sleep):
    r = FakeRedis([[0, "0", 5]] * 3)
    limiter = RedisTokenBucketLimiter(r, "k", max_rpm=1)

    assert limiter.acquire(sleep=fake_sleep, max_rounds=3) is False
    # 最短等待 10ms
    assert fake_sleep.calls == [0.01, 0.01, 0.01]


def test_script_reloaded_after_redis_restart():
    r = FakeRedis([[1, "4", 0]], flush_once=True)
    limiter = RedisTokenBucketLimiter(r, "k", max_rpm=120)

    assert limiter.acquire_once() == (True, 0)
    assert r.loads == 2


def test_for_meta_disabled_returns_none(monkeypatch):
    monkeypatch.setattr(settings, "META_GLOBAL_RL_ENABLED", False)
    assert RedisTokenBucketLimiter.for_meta("42") is None
