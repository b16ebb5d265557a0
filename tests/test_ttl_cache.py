import asyncio
import sys

sys.path.insert(0, '.')

from cache.ttl_cache import TTLCache


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(clock, **cfg):
    return TTLCache({'cache': cfg}, time_fn=clock)


def test_get_returns_value_until_expiry():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set('x', 42, ttl=1000)

    clock.now = 500
    assert cache.get('x') == 42
    clock.now = 1000
    assert cache.get('x') == 42
    clock.now = 1500
    assert cache.get('x') is None
    # expired entry is evicted on read, not only by the sweep
    assert 'x' not in cache.keys()


def test_has_and_delete():
    clock = FakeClock()
    cache = _cache(clock, default_ttl_s=10)
    cache.set('a', {'v': 1})
    assert cache.has('a')
    assert cache.delete('a') is True
    assert cache.delete('a') is False
    assert not cache.has('a')


def test_default_ttl_from_config():
    clock = FakeClock()
    cache = _cache(clock, default_ttl_s=5)
    cache.set('a', 1)
    clock.now = 5.5
    assert cache.get('a') is None


def test_extend_pushes_expiry_back():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set('a', 'v', ttl=10)
    assert cache.extend('a', 20) is True
    assert cache.extend('missing', 20) is False
    clock.now = 25
    assert cache.get('a') == 'v'
    clock.now = 31
    assert cache.get('a') is None


def test_sweep_removes_only_expired_entries():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set('short', 1, ttl=1)
    cache.set('long', 2, ttl=100)
    clock.now = 10
    assert cache.sweep() == 1
    assert cache.keys() == ['long']


def test_set_many_and_get_many_skip_missing():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set_many([('a', 1), ('b', 2)], ttl=10)
    assert cache.get_many(['a', 'b', 'c']) == {'a': 1, 'b': 2}


def test_stats_and_entry_info():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set('a', [1, 2, 3], ttl=10)
    cache.set('b', 'x', ttl=1)
    clock.now = 4
    stats = cache.stats()
    assert stats['total_entries'] == 2
    assert stats['active_entries'] == 1
    assert stats['expired_entries'] == 1
    assert stats['average_age_s'] == 4
    assert stats['total_size'] > 0

    info = cache.entry_info('a')
    assert info['age_s'] == 4
    assert info['time_to_expiry_s'] == 6
    assert info['is_expired'] is False
    assert cache.entry_info('missing') is None


def test_start_stop_idempotent_and_clears():
    async def run():
        cache = TTLCache({'cache': {'sweep_interval_s': 0.01}})
        await cache.start()
        await cache.start()
        cache.set('a', 1, ttl=100)
        await asyncio.sleep(0.03)
        assert cache.get('a') == 1
        await cache.stop()
        await cache.stop()
        assert len(cache) == 0
        assert cache.running is False

    asyncio.run(run())


def test_extend_does_not_revive_expired_entry():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set('x', 42, ttl=10)
    clock.now = 20
    assert cache.extend('x', 100) is False
    assert cache.get('x') is None
    assert cache.keys() == []
