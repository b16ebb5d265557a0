import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import websockets

from api.metrics import metrics
from .market_models import to_float


logger = logging.getLogger(__name__)

SIDE_LONG = 'long'
SIDE_SHORT = 'short'


class StreamDisconnect(Exception):
    """A venue session ended; handled by reconnecting, never surfaced to callers."""

    def __init__(self, venue: str, reason: str):
        self.venue = venue
        self.reason = reason
        super().__init__(f"{venue} stream disconnected: {reason}")


@dataclass(frozen=True)
class LiquidationEvent:
    venue: str
    symbol: str
    side: str
    quantity: float
    price: float
    notional: float
    event_time: float

    @property
    def key(self) -> Tuple[str, str, float]:
        # Second/millisecond granularity as delivered by the venue; two distinct
        # fills for one symbol inside the same tick share a key.
        return (self.venue, self.symbol, self.event_time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def make_event(venue: str, symbol: str, side: str, quantity: float, price: float,
               event_time: float) -> LiquidationEvent:
    return LiquidationEvent(
        venue=venue,
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        notional=quantity * price,
        event_time=event_time,
    )


class VenueFeed(ABC):
    """Venue-specific endpoint, subscription and message normalization."""

    venue: str = ''

    def __init__(self, url: str):
        self.url = url

    def subscribe_messages(self) -> List[Dict[str, Any]]:
        return []

    @abstractmethod
    def normalize(self, message: Any, received_at: float) -> List[LiquidationEvent]:
        """Turn one decoded message into zero or more events; raise on malformed input."""


class BinanceForceOrderFeed(VenueFeed):
    venue = 'binance'

    def __init__(self, url: str = 'wss://fstream.binance.com/ws/!forceOrder@arr'):
        super().__init__(url)

    def normalize(self, message: Any, received_at: float) -> List[LiquidationEvent]:
        items = message if isinstance(message, list) else [message]
        events = []
        for item in items:
            if not isinstance(item, dict) or item.get('e') != 'forceOrder':
                continue
            order = item.get('o') or item
            # SELL closes a long position, BUY closes a short one
            order_side = str(order.get('S', '')).upper()
            if order_side in ('SELL', 'LONG'):
                side = SIDE_LONG
            elif order_side in ('BUY', 'SHORT'):
                side = SIDE_SHORT
            else:
                raise ValueError(f"unknown order side {order_side!r}")
            ts_ms = order.get('T') or item.get('E')
            if ts_ms is None:
                raise ValueError('forceOrder without timestamp')
            quantity = to_float(order.get('q'))
            price = to_float(order.get('p'))
            event = make_event(self.venue, order['s'], side, quantity, price, int(ts_ms) / 1000.0)
            if event.notional > 0:
                events.append(event)
        return events


class OKXLiquidationFeed(VenueFeed):
    venue = 'okx'

    def __init__(self, url: str = 'wss://ws.okx.com:8443/ws/v5/public', inst_type: str = 'SWAP'):
        super().__init__(url)
        self.inst_type = inst_type

    def subscribe_messages(self) -> List[Dict[str, Any]]:
        return [{
            'op': 'subscribe',
            'args': [{'channel': 'liquidation-orders', 'instType': self.inst_type}],
        }]

    def normalize(self, message: Any, received_at: float) -> List[LiquidationEvent]:
        if not isinstance(message, dict):
            raise ValueError('OKX message is not an object')
        if 'event' in message:
            if message['event'] == 'error':
                logger.warning("OKX subscription error: %s", message.get('msg'))
            return []
        events = []
        for item in message.get('data') or []:
            inst_id = item.get('instId')
            if not inst_id:
                continue
            details = item.get('details') or [item]
            for detail in details:
                pos_side = str(detail.get('posSide', '')).lower()
                if pos_side not in (SIDE_LONG, SIDE_SHORT):
                    continue
                quantity = to_float(detail.get('sz'))
                price = to_float(detail.get('bkPx') or detail.get('last'))
                ts_ms = detail.get('ts')
                event_time = int(ts_ms) / 1000.0 if ts_ms else received_at
                event = make_event(self.venue, inst_id, pos_side, quantity, price, event_time)
                if event.notional > 0:
                    events.append(event)
        return events


class ConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


class VenueConnection:
    """One venue's long-lived stream with unconditional fixed-delay reconnect."""

    def __init__(
        self,
        feed: VenueFeed,
        on_event: Callable[[LiquidationEvent], Any],
        reconnect_delay_s: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
        time_fn: Callable[[], float] = time.time,
    ):
        self.feed = feed
        self.venue = feed.venue
        self.on_event = on_event
        self.reconnect_delay_s = reconnect_delay_s
        self._connect = connect
        self._time = time_fn
        self._ws = None
        self.state = ConnectionState.DISCONNECTED
        self.sessions = 0
        self.last_message_at: Optional[float] = None

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        logger.debug("%s stream %s -> %s", self.venue, self.state.value, state.value)
        self.state = state
        metrics.mark_venue_connected(self.venue, state is ConnectionState.CONNECTED)

    def handle_message(self, raw: Any) -> int:
        """Decode, normalize and record one message. Malformed input is dropped."""
        try:
            message = json.loads(raw)
            events = self.feed.normalize(message, self._time())
        except Exception as e:
            metrics.record_drop(self.venue)
            logger.warning("Dropping malformed %s message: %s", self.venue, e)
            return 0
        for event in events:
            self.on_event(event)
        return len(events)

    async def _session(self):
        async with self._connect(self.feed.url, ping_interval=20, close_timeout=5) as ws:
            self._ws = ws
            self._set_state(ConnectionState.CONNECTED)
            self.sessions += 1
            logger.info("Connected to %s liquidation stream", self.venue)
            for msg in self.feed.subscribe_messages():
                await ws.send(json.dumps(msg))
            async for raw in ws:
                self.last_message_at = self._time()
                self.handle_message(raw)
        raise StreamDisconnect(self.venue, 'closed by peer')

    async def run(self, is_running: Callable[[], bool]):
        while is_running():
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._session()
            except asyncio.CancelledError:
                break
            except StreamDisconnect as e:
                logger.warning("%s", e)
            except Exception as e:
                logger.error("%s stream error: %s", self.venue, e)
            finally:
                self._ws = None
                self._set_state(ConnectionState.DISCONNECTED)

            if not is_running():
                break
            metrics.record_reconnect(self.venue)
            logger.info("Reconnecting to %s in %.1fs", self.venue, self.reconnect_delay_s)
            try:
                await asyncio.sleep(self.reconnect_delay_s)
            except asyncio.CancelledError:
                break

    async def close(self):
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Closing %s stream failed: %s", self.venue, e)
