import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from api.metrics import metrics
from config import config
from config.utils import config_section
from monitoring.async_utils import cancel_tasks, run_periodic


logger = logging.getLogger(__name__)

_DEFAULTS = {
    'default_ttl_s': 30.0,
    'sweep_interval_s': 60.0,
}


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def _approx_size(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(repr(value))


class TTLCache:
    """In-memory key/value store with per-entry expiry.

    Expired entries are removed lazily on read and by a periodic sweep, so
    keys that are written once and never read again do not accumulate.
    """

    def __init__(self, config_obj=None, time_fn: Callable[[], float] = time.time):
        cfg = config_section(config_obj if config_obj is not None else config, 'cache', _DEFAULTS)
        self.default_ttl_s = float(cfg['default_ttl_s'])
        self.sweep_interval_s = float(cfg['sweep_interval_s'])
        self._time = time_fn
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        if self.running:
            return
        self.running = True
        self._sweep_task = asyncio.create_task(
            run_periodic('cache_sweep', self.sweep_interval_s, self.sweep, lambda: self.running)
        )
        logger.info("TTL cache sweep started (every %.0fs)", self.sweep_interval_s)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await cancel_tasks([self._sweep_task])
        self._sweep_task = None
        self.clear()
        logger.info("TTL cache stopped")

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._time()
        ttl_s = self.default_ttl_s if ttl is None else float(ttl)
        self._entries[key] = CacheEntry(key=key, value=value, created_at=now, expires_at=now + ttl_s)
        metrics.update_cache_entries(len(self._entries))

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._time()):
            del self._entries[key]
            metrics.record_cache_eviction('lazy')
            metrics.update_cache_entries(len(self._entries))
            return None
        return entry

    def get(self, key: str) -> Any:
        entry = self._live_entry(key)
        metrics.record_cache_read(entry is not None)
        return entry.value if entry is not None else None

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        metrics.update_cache_entries(len(self._entries))
        return removed

    def clear(self) -> None:
        self._entries.clear()
        metrics.update_cache_entries(0)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def extend(self, key: str, delta: float) -> bool:
        """Push an entry's expiry back by ``delta`` seconds, keeping its value."""
        entry = self._live_entry(key)
        if entry is None:
            return False
        entry.expires_at += float(delta)
        return True

    def set_many(self, items: Iterable[Tuple[str, Any]], ttl: Optional[float] = None) -> None:
        for key, value in items:
            self.set(key, value, ttl)

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        result = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                result[key] = value
        return result

    def sweep(self) -> int:
        now = self._time()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            metrics.record_cache_eviction('sweep', len(expired))
            metrics.update_cache_entries(len(self._entries))
            logger.debug("Swept %s expired cache entries", len(expired))
        return len(expired)

    def entry_info(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._time()
        return {
            'key': key,
            'value': entry.value,
            'created_at': entry.created_at,
            'expires_at': entry.expires_at,
            'age_s': now - entry.created_at,
            'time_to_expiry_s': entry.expires_at - now,
            'is_expired': entry.is_expired(now),
            'size': _approx_size(entry.value),
        }

    def stats(self) -> Dict[str, Any]:
        # Diagnostic only; sizes are serialized lengths, not memory usage.
        now = self._time()
        active = 0
        expired = 0
        total_age = 0.0
        total_size = 0
        for entry in self._entries.values():
            total_size += _approx_size(entry.value)
            if entry.is_expired(now):
                expired += 1
            else:
                active += 1
                total_age += now - entry.created_at
        return {
            'total_entries': len(self._entries),
            'active_entries': active,
            'expired_entries': expired,
            'total_size': total_size,
            'average_age_s': total_age / active if active else 0.0,
        }
