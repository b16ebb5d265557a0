import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import websockets

from api.metrics import metrics
from config import config
from config.utils import config_section, get_config_section
from ingest.liquidation_feeds import (
    SIDE_LONG,
    SIDE_SHORT,
    BinanceForceOrderFeed,
    LiquidationEvent,
    OKXLiquidationFeed,
    VenueConnection,
    VenueFeed,
)
from monitoring.async_utils import cancel_tasks, run_periodic


logger = logging.getLogger(__name__)

_DEFAULTS = {
    'reconnect_delay_s': 5.0,
    'aggregation_interval_s': 300.0,
    'window_s': 86400.0,
    'sweep_interval_s': 86400.0,
}


def format_usd(value: float) -> str:
    if value >= 1e9:
        return f"${value / 1e9:.2f}B"
    if value >= 1e6:
        return f"${value / 1e6:.2f}M"
    if value >= 1e3:
        return f"${value / 1e3:.2f}K"
    return f"${value:.2f}"


@dataclass
class VenueAggregate:
    venue: str
    total: float = 0.0
    longs: float = 0.0
    shorts: float = 0.0
    events: int = 0
    computed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['total_formatted'] = format_usd(self.total)
        return data


@dataclass
class GlobalAggregate:
    total: float = 0.0
    longs: float = 0.0
    shorts: float = 0.0
    computed_at: Optional[float] = None
    venues: Dict[str, VenueAggregate] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_24h': self.total,
            'longs_24h': self.longs,
            'shorts_24h': self.shorts,
            'total_formatted': format_usd(self.total),
            'longs_formatted': format_usd(self.longs),
            'shorts_formatted': format_usd(self.shorts),
            'last_update': self.computed_at,
            'exchanges': {name: agg.to_dict() for name, agg in self.venues.items()},
        }


def default_feeds(cfg: Dict[str, Any]) -> List[VenueFeed]:
    venues = get_config_section(cfg, 'venues')
    feeds: List[VenueFeed] = []
    if 'binance' in venues or not venues:
        binance_cfg = venues.get('binance') or {}
        url = binance_cfg.get('url')
        feeds.append(BinanceForceOrderFeed(url) if url else BinanceForceOrderFeed())
    if 'okx' in venues or not venues:
        okx_cfg = venues.get('okx') or {}
        kwargs = {k: okx_cfg[k] for k in ('url', 'inst_type') if okx_cfg.get(k)}
        feeds.append(OKXLiquidationFeed(**kwargs))
    return feeds


class LiquidationAggregator:
    """Owns per-venue liquidation logs and their rolling 24h aggregates.

    Streams append to the logs; a timer recomputes the aggregates from the
    logs and readers only ever see the last computed snapshot.
    """

    def __init__(
        self,
        feeds: Optional[Sequence[VenueFeed]] = None,
        config_obj=None,
        connect: Callable[..., Any] = websockets.connect,
        time_fn: Callable[[], float] = time.time,
    ):
        cfg = config_section(config_obj if config_obj is not None else config, 'liquidations', _DEFAULTS)
        self.reconnect_delay_s = float(cfg['reconnect_delay_s'])
        self.aggregation_interval_s = float(cfg['aggregation_interval_s'])
        self.window_s = float(cfg['window_s'])
        self.sweep_interval_s = float(cfg['sweep_interval_s'])
        self._time = time_fn

        self.feeds = list(feeds) if feeds is not None else default_feeds(cfg)
        self.connections: Dict[str, VenueConnection] = {
            feed.venue: VenueConnection(
                feed,
                self.record_event,
                reconnect_delay_s=self.reconnect_delay_s,
                connect=connect,
                time_fn=time_fn,
            )
            for feed in self.feeds
        }
        # insertion-ordered per venue; the dict key doubles as the dedup key
        self._events: Dict[str, Dict[Tuple[str, str, float], LiquidationEvent]] = {
            venue: {} for venue in self.connections
        }
        self._aggregate = GlobalAggregate(
            venues={venue: VenueAggregate(venue=venue) for venue in self.connections}
        )
        self._tasks: List[asyncio.Task] = []
        self.running = False

    def _is_running(self) -> bool:
        return self.running

    async def start(self):
        if self.running:
            return
        self.running = True
        logger.info("Starting liquidation aggregator for %s", ", ".join(self.connections) or "no venues")
        self._tasks = [
            asyncio.create_task(conn.run(self._is_running)) for conn in self.connections.values()
        ]
        self._tasks.append(asyncio.create_task(
            run_periodic('liquidation_aggregate', self.aggregation_interval_s, self.aggregate, self._is_running)
        ))
        self._tasks.append(asyncio.create_task(
            run_periodic('liquidation_sweep', self.sweep_interval_s, self.sweep, self._is_running)
        ))

    async def stop(self):
        if not self.running:
            return
        self.running = False
        for conn in self.connections.values():
            await conn.close()
        await cancel_tasks(self._tasks)
        self._tasks = []
        logger.info("Liquidation aggregator stopped")

    def record_event(self, event: LiquidationEvent) -> bool:
        """Append an event to its venue log; returns False for duplicates."""
        log = self._events.setdefault(event.venue, {})
        if event.key in log:
            metrics.record_liquidation(event.venue, duplicate=True)
            return False
        log[event.key] = event
        metrics.record_liquidation(event.venue)
        return True

    def aggregate(self, now: Optional[float] = None) -> GlobalAggregate:
        started = time.monotonic()
        now = self._time() if now is None else now
        cutoff = now - self.window_s

        result = GlobalAggregate(computed_at=now)
        for venue, log in self._events.items():
            venue_agg = VenueAggregate(venue=venue, computed_at=now)
            for event in log.values():
                if event.event_time < cutoff:
                    continue
                venue_agg.total += event.notional
                venue_agg.events += 1
                if event.side == SIDE_LONG:
                    venue_agg.longs += event.notional
                elif event.side == SIDE_SHORT:
                    venue_agg.shorts += event.notional
            result.venues[venue] = venue_agg
            result.total += venue_agg.total
            result.longs += venue_agg.longs
            result.shorts += venue_agg.shorts
            metrics.update_liquidation_totals(venue, venue_agg.longs, venue_agg.shorts)

        self._aggregate = result
        metrics.record_liquidation_aggregation(time.monotonic() - started)
        logger.info(
            "Liquidations aggregated: total=%s longs=%s shorts=%s",
            format_usd(result.total),
            format_usd(result.longs),
            format_usd(result.shorts),
        )
        return result

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._time() if now is None else now
        cutoff = now - self.window_s
        removed = 0
        for log in self._events.values():
            stale = [key for key, event in log.items() if event.event_time < cutoff]
            for key in stale:
                del log[key]
            removed += len(stale)
        logger.info("Swept %s liquidation events older than %.0fs", removed, self.window_s)
        return removed

    def get_aggregate(self) -> Dict[str, Any]:
        return self._aggregate.to_dict()

    def get_venue_aggregate(self, venue: str) -> Dict[str, Any]:
        agg = self._aggregate.venues.get(venue)
        if agg is None:
            agg = VenueAggregate(venue=venue)
        return agg.to_dict()

    def event_count(self, venue: Optional[str] = None) -> int:
        if venue is not None:
            return len(self._events.get(venue, {}))
        return sum(len(log) for log in self._events.values())

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'connections': {venue: conn.state.value for venue, conn in self.connections.items()},
            'events_stored': self.event_count(),
            'last_update': self._aggregate.computed_at,
        }
