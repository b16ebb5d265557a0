import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from signals.validation import (
    MissingRequiredFields,
    SignatureMismatch,
    UnknownSignalType,
    UnsupportedTimeframe,
    UnsupportedVenue,
    ValidationFailure,
    canonical_payload,
    sign_payload,
)
from signals.webhook_store import SignalStore, parse_signal_time, signal_id


SECRET = 'test_secret'
NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _store(clock=None, **cfg):
    cfg.setdefault('webhook_secret', SECRET)
    return SignalStore({'signals': cfg}, time_fn=clock or FakeClock())


def _payload(**overrides):
    payload = {
        'signal_type': 'CRITICAL_SHORTS',
        'symbol': 'BTCUSDT',
        'timeframe': '1h',
        'exchange': 'BINANCE',
        'timestamp': '2023-11-14T22:13:20Z',
        'price': 36500.0,
    }
    payload.update(overrides)
    return payload


def _submit(store, payload, secret=SECRET):
    return asyncio.run(store.submit(payload, sign_payload(payload, secret)))


def test_canonical_payload_is_compact_and_ordered():
    assert canonical_payload({'b': 1, 'a': [1, 2]}) == b'{"b":1,"a":[1,2]}'


def test_submit_returns_deterministic_id():
    store = _store()
    payload = _payload()
    sid = _submit(store, payload)
    assert sid == signal_id('CRITICAL_SHORTS', 'BTCUSDT', 'BINANCE', '2023-11-14T22:13:20Z')
    stored = store.get(sid)
    assert stored['description'].startswith('Critical short signal detected for BTCUSDT on BINANCE')
    assert stored['signal_time'] == NOW
    assert stored['strength'] == 'medium'


def test_resubmission_is_idempotent():
    store = _store()
    first = _submit(store, _payload())
    second = _submit(store, _payload(price=36600.0))
    assert first == second
    assert len(store) == 1
    assert store.get(first)['price'] == 36600.0


def test_missing_timestamp_uses_arrival_time():
    clock = FakeClock()
    store = _store(clock)
    payload = _payload()
    del payload['timestamp']
    sid = _submit(store, payload)
    assert sid == signal_id('CRITICAL_SHORTS', 'BTCUSDT', 'BINANCE', int(NOW * 1000))
    assert store.get(sid)['signal_time'] == NOW


def test_capacity_evicts_oldest_entry():
    store = _store(max_signals=1000)
    ids = [_submit(store, _payload(timestamp=i)) for i in range(1001)]
    assert len(store) == 1000
    assert store.get(ids[0]) is None
    assert store.get(ids[1]) is not None
    assert store.get(ids[-1]) is not None


@pytest.mark.parametrize('payload, signature, expected', [
    (_payload(), 'bad-signature', SignatureMismatch),
    (_payload(), None, SignatureMismatch),
    ({'signal_type': 'FEAR_ZONE', 'symbol': 'ETHUSDT'}, 'sign', MissingRequiredFields),
    (_payload(signal_type='MOON'), 'sign', UnknownSignalType),
    (_payload(timeframe='15m'), 'sign', UnsupportedTimeframe),
    (_payload(exchange='BYBIT'), 'sign', UnsupportedVenue),
])
def test_validation_failures_leave_store_untouched(payload, signature, expected):
    store = _store()
    existing = _submit(store, _payload(symbol='SOLUSDT'))
    if signature == 'sign':
        signature = sign_payload(payload, SECRET)

    with pytest.raises(expected) as exc_info:
        asyncio.run(store.submit(payload, signature))

    assert isinstance(exc_info.value, ValidationFailure)
    assert len(store) == 1
    assert store.get(existing) is not None


def test_validation_kinds_are_distinct():
    kinds = {cls.kind for cls in (SignatureMismatch, MissingRequiredFields, UnknownSignalType,
                                  UnsupportedTimeframe, UnsupportedVenue)}
    assert len(kinds) == 5


def test_missing_fields_are_listed():
    store = _store()
    payload = {'signal_type': 'FEAR_ZONE', 'symbol': 'ETHUSDT'}
    with pytest.raises(MissingRequiredFields) as exc_info:
        asyncio.run(store.submit(payload, sign_payload(payload, SECRET)))
    assert exc_info.value.missing == ['timeframe', 'exchange']


def test_signature_with_wrong_secret_is_rejected():
    store = _store()
    with pytest.raises(SignatureMismatch):
        _submit(store, _payload(), secret='other')


def test_subscriber_failure_is_isolated():
    store = _store()
    delivered = []

    def broken(signal):
        raise RuntimeError('boom')

    async def healthy(signal):
        delivered.append(signal.id)

    store.subscribe(broken)
    store.subscribe(healthy)
    sid = _submit(store, _payload())
    assert delivered == [sid]

    failures = asyncio.run(store.notify_subscribers(store._signals[sid]))
    assert len(failures) == 1
    assert failures[0].signal_id == sid
    assert isinstance(failures[0].error, RuntimeError)

    store.unsubscribe(healthy)
    store.unsubscribe(broken)
    assert store.get_service_info()['subscribers_count'] == 0


def test_recent_filters_and_sorts_newest_first():
    store = _store()
    _submit(store, _payload(timestamp=NOW - 300))
    _submit(store, _payload(timestamp=NOW - 100, signal_type='FEAR_ZONE'))
    _submit(store, _payload(timestamp=NOW - 200, symbol='ETHUSDT'))

    recent = store.get_recent()
    assert [s['signal_time'] for s in recent] == [NOW - 100, NOW - 200, NOW - 300]
    assert len(store.get_recent(limit=2)) == 2
    assert [s['symbol'] for s in store.get_by_symbol('ETHUSDT')] == ['ETHUSDT']
    assert [s['signal_type'] for s in store.get_by_type('FEAR_ZONE')] == ['FEAR_ZONE']
    assert store.get_recent(signal_type='CRITICAL_SHORTS', symbol='BTCUSDT')[0]['signal_time'] == NOW - 300


def test_stats_counts_by_bucket():
    store = _store()
    _submit(store, _payload(timestamp=NOW - 30 * 60))
    _submit(store, _payload(timestamp=NOW - 5 * 3600, exchange='OKX'))
    _submit(store, _payload(timestamp=NOW - 3 * 86400, signal_type='FEAR_ZONE'))

    stats = store.get_stats()
    assert stats['total'] == 3
    assert stats['by_type'] == {'CRITICAL_SHORTS': 2, 'FEAR_ZONE': 1}
    assert stats['by_exchange'] == {'BINANCE': 2, 'OKX': 1}
    assert stats['by_symbol'] == {'BTCUSDT': 3}
    assert stats['recent_1h'] == 1
    assert stats['recent_24h'] == 2
    assert stats['last_signal']['signal_time'] == NOW - 30 * 60


def test_cleanup_removes_old_signals():
    store = _store()
    _submit(store, _payload(timestamp=NOW - 8 * 86400))
    _submit(store, _payload(timestamp=NOW - 86400))
    assert store.cleanup_old_signals() == 1
    assert len(store) == 1
    assert store.cleanup_old_signals(max_age_s=3600) == 1
    assert len(store) == 0


def test_parse_signal_time_formats():
    assert parse_signal_time('2023-11-14T22:13:20Z', 0.0) == NOW
    assert parse_signal_time(NOW * 1000, 0.0) == NOW
    assert parse_signal_time(str(int(NOW)), 0.0) == NOW
    assert parse_signal_time('yesterday', 5.0) == 5.0
    assert parse_signal_time(None, 5.0) == 5.0


@pytest.mark.parametrize('payload', [
    ['not', 'an', 'object'],
    'garbage body',
    None,
    {'signal_type': object()},
])
def test_unauthenticated_garbage_is_a_signature_failure(payload):
    store = _store()
    with pytest.raises(SignatureMismatch):
        asyncio.run(store.submit(payload, 'deadbeef'))
    assert len(store) == 0


def test_signed_non_object_payload_reports_missing_fields():
    store = _store()
    payload = ['CRITICAL_SHORTS', 'BTCUSDT']
    with pytest.raises(MissingRequiredFields) as exc_info:
        asyncio.run(store.submit(payload, sign_payload(payload, SECRET)))
    assert exc_info.value.missing == ['signal_type', 'symbol', 'timeframe', 'exchange']
