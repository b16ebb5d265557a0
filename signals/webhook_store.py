import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from api.metrics import metrics
from config import config
from config.utils import config_section
from monitoring.async_utils import gather_isolated
from .validation import ValidationFailure, WebhookValidator


logger = logging.getLogger(__name__)

SERVICE_NAME = 'TradingView Webhook Service'
SERVICE_VERSION = '1.0.0'

_DEFAULTS = {
    'webhook_secret': 'default_secret',
    'max_signals': 1000,
    'retention_days': 7,
    'valid_signal_types': ['CRITICAL_SHORTS', 'FEAR_ZONE'],
    'valid_timeframes': ['1h', '4h', '1d'],
    'valid_exchanges': ['BINANCE', 'OKX', 'BINGX'],
}

_DESCRIPTIONS = {
    'CRITICAL_SHORTS': "Critical short signal detected for {symbol} on {exchange}. High short interest detected.",
    'FEAR_ZONE': "Fear zone signal for {symbol} on {exchange}. Price entering fear territory.",
}


class SubscriberFailure(Exception):
    def __init__(self, subscriber: str, signal_id: str, error: BaseException):
        self.subscriber = subscriber
        self.signal_id = signal_id
        self.error = error
        super().__init__(f"Subscriber {subscriber} failed on signal {signal_id}: {error}")


@dataclass(frozen=True)
class Signal:
    id: str
    signal_type: str
    symbol: str
    timeframe: str
    exchange: str
    timestamp: Any
    signal_time: float
    received_at: float
    description: str
    price: Optional[float] = None
    strength: str = 'medium'
    conditions: List[Any] = field(default_factory=list)
    version: str = '1.0'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_signal_time(value: Any, fallback: float) -> float:
    """Epoch seconds from an ISO string or epoch seconds/milliseconds."""
    if value is None or value == '':
        return fallback
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        return ts / 1000.0 if ts > 1e11 else ts
    text = str(value).strip()
    try:
        ts = float(text)
        return ts / 1000.0 if ts > 1e11 else ts
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).timestamp()
    except ValueError:
        logger.debug("Unparseable signal timestamp %r, using arrival time", value)
        return fallback


def signal_id(signal_type: str, symbol: str, exchange: str, timestamp: Any) -> str:
    data = f"{signal_type}_{symbol}_{exchange}_{timestamp}"
    return hashlib.md5(data.encode('utf-8')).hexdigest()


def describe(signal_type: str, symbol: str, exchange: str) -> str:
    template = _DESCRIPTIONS.get(signal_type)
    if template is None:
        return f"Signal received for {symbol}"
    return template.format(symbol=symbol, exchange=exchange)


class SignalStore:
    """Bounded, insertion-ordered store of verified webhook signals.

    Accepted signals are fanned out to every subscriber; a failing
    subscriber is logged and never affects the submission or its peers.
    """

    def __init__(self, config_obj=None, time_fn: Callable[[], float] = time.time):
        cfg = config_section(config_obj if config_obj is not None else config, 'signals', _DEFAULTS)
        self.max_signals = int(cfg['max_signals'])
        self.retention_s = float(cfg['retention_days']) * 86400
        self.validator = WebhookValidator(
            secret=str(cfg['webhook_secret']),
            signal_types=cfg['valid_signal_types'],
            timeframes=cfg['valid_timeframes'],
            exchanges=cfg['valid_exchanges'],
        )
        self._time = time_fn
        self._signals: 'OrderedDict[str, Signal]' = OrderedDict()
        self._subscribers: List[Callable[[Signal], Any]] = []

    def __len__(self) -> int:
        return len(self._signals)

    async def submit(self, payload: Dict[str, Any], signature: Optional[str]) -> str:
        """Validate, store and fan out one webhook payload; returns the signal id."""
        try:
            data = self.validator.validate(payload, signature)
        except ValidationFailure as e:
            metrics.record_signal_rejected(e.kind)
            logger.warning("Rejected webhook signal (%s): %s", e.kind, e.message)
            raise

        now = self._time()
        raw_ts = data.get('timestamp')
        id_ts = raw_ts if raw_ts not in (None, '') else int(now * 1000)
        sid = signal_id(data['signal_type'], data['symbol'], data['exchange'], id_ts)
        signal = Signal(
            id=sid,
            signal_type=data['signal_type'],
            symbol=data['symbol'],
            timeframe=data['timeframe'],
            exchange=data['exchange'],
            timestamp=raw_ts if raw_ts not in (None, '') else datetime.fromtimestamp(now).astimezone().isoformat(),
            signal_time=parse_signal_time(raw_ts, now),
            received_at=now,
            description=describe(data['signal_type'], data['symbol'], data['exchange']),
            price=data.get('price'),
            strength=data.get('strength') or 'medium',
            conditions=list(data.get('conditions') or []),
            version=str(data.get('version') or '1.0'),
        )
        self._save(signal)
        logger.info(
            "Signal %s stored: %s %s %s %s",
            sid, signal.signal_type, signal.symbol, signal.timeframe, signal.exchange,
        )
        await self.notify_subscribers(signal)
        return sid

    def _save(self, signal: Signal):
        # an existing id keeps its position; only new ids count toward eviction order
        self._signals[signal.id] = signal
        evicted = 0
        while len(self._signals) > self.max_signals:
            self._signals.popitem(last=False)
            evicted += 1
        metrics.record_signal_accepted(signal.signal_type, len(self._signals))
        if evicted:
            metrics.record_signal_evicted('capacity', len(self._signals), evicted)

    def subscribe(self, callback: Callable[[Signal], Any]):
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        logger.info("Signal subscriber added (total %s)", len(self._subscribers))

    def unsubscribe(self, callback: Callable[[Signal], Any]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)
        logger.info("Signal subscriber removed (total %s)", len(self._subscribers))

    async def notify_subscribers(self, signal: Signal) -> List[SubscriberFailure]:
        calls = [
            (getattr(cb, '__qualname__', None) or repr(cb), lambda cb=cb: cb(signal))
            for cb in list(self._subscribers)
        ]
        failures = []
        for name, _, error in await gather_isolated(calls):
            if error is None:
                continue
            failure = SubscriberFailure(name, signal.id, error)
            metrics.record_subscriber_failure()
            logger.error("%s", failure)
            failures.append(failure)
        logger.debug("Signal %s delivered to %s subscribers", signal.id, len(calls))
        return failures

    def get(self, signal_id: str) -> Optional[Dict[str, Any]]:
        signal = self._signals.get(signal_id)
        return signal.to_dict() if signal is not None else None

    def get_recent(self, limit: int = 50, signal_type: Optional[str] = None,
                   symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        selected = [
            s for s in self._signals.values()
            if (signal_type is None or s.signal_type == signal_type)
            and (symbol is None or s.symbol == symbol)
        ]
        selected.sort(key=lambda s: s.signal_time, reverse=True)
        return [s.to_dict() for s in selected[:max(limit, 0)]]

    def get_by_symbol(self, symbol: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self.get_recent(limit, symbol=symbol)

    def get_by_type(self, signal_type: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self.get_recent(limit, signal_type=signal_type)

    def get_stats(self) -> Dict[str, Any]:
        now = self._time()
        stats = {
            'total': len(self._signals),
            'by_type': {},
            'by_exchange': {},
            'by_symbol': {},
            'recent_24h': 0,
            'recent_1h': 0,
            'last_signal': None,
        }
        latest: Optional[Signal] = None
        for s in self._signals.values():
            for bucket, name in (('by_type', s.signal_type), ('by_exchange', s.exchange), ('by_symbol', s.symbol)):
                stats[bucket][name] = stats[bucket].get(name, 0) + 1
            if s.signal_time > now - 86400:
                stats['recent_24h'] += 1
            if s.signal_time > now - 3600:
                stats['recent_1h'] += 1
            if latest is None or s.signal_time > latest.signal_time:
                latest = s
        if latest is not None:
            stats['last_signal'] = latest.to_dict()
        return stats

    def cleanup_old_signals(self, max_age_s: Optional[float] = None) -> int:
        max_age_s = self.retention_s if max_age_s is None else max_age_s
        cutoff = self._time() - max_age_s
        stale = [sid for sid, s in self._signals.items() if s.signal_time < cutoff]
        for sid in stale:
            del self._signals[sid]
        if stale:
            metrics.record_signal_evicted('age', len(self._signals), len(stale))
            logger.info("Removed %s signals older than %.0fs", len(stale), max_age_s)
        return len(stale)

    def get_service_info(self) -> Dict[str, Any]:
        return {
            'name': SERVICE_NAME,
            'version': SERVICE_VERSION,
            'status': 'active',
            'subscribers_count': len(self._subscribers),
            'signals_count': len(self._signals),
            'max_signals': self.max_signals,
            'valid_signal_types': list(self.validator.signal_types),
            'valid_timeframes': list(self.validator.timeframes),
            'valid_exchanges': list(self.validator.exchanges),
            'last_updated': self._time(),
        }
