from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

SOURCE_PRIMARY = 'primary'
SOURCE_SECONDARY = 'secondary'


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def base_symbol(symbol: str) -> str:
    """``BTC-USDT`` / ``btcusdt`` / ``btc`` -> ``BTC``."""
    cleaned = (symbol or '').upper().replace('-USDT', '').replace('/USDT', '')
    if cleaned.endswith('USDT') and len(cleaned) > 4:
        cleaned = cleaned[:-4]
    return cleaned


@dataclass
class Ticker:
    symbol: str
    price: float
    change_abs: float = 0.0
    change_pct: float = 0.0
    volume: float = 0.0
    quote_volume: float = 0.0
    high: float = 0.0
    low: float = 0.0
    open: float = 0.0
    bid: Optional[float] = None
    ask: Optional[float] = None
    market_cap: Optional[float] = None
    market_cap_rank: Optional[int] = None
    change_7d_pct: Optional[float] = None
    change_30d_pct: Optional[float] = None
    ath: Optional[float] = None
    ath_change_pct: Optional[float] = None
    atl: Optional[float] = None
    atl_change_pct: Optional[float] = None
    name: Optional[str] = None
    image: Optional[str] = None
    source: str = SOURCE_PRIMARY
    enriched: bool = False
    last_update: float = field(default=0.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
