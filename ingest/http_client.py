import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


class UpstreamUnavailable(Exception):
    """A single upstream provider call failed or returned unusable data."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")


class UpstreamAPIError(UpstreamUnavailable):
    def __init__(self, source: str, status: int, code: Optional[Any], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(source, f"status={status}, code={code}, msg={msg}")


class RESTClient:
    """Thin JSON-over-HTTP client with one lazily created aiohttp session."""

    def __init__(
        self,
        source: str,
        base_url: str,
        timeout_s: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.source = source
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": "market-data-core/1.0",
        }
        self.headers.update(headers or {})
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None}

        async with session.get(url, params=query) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg") or payload.get("error")
                raise UpstreamAPIError(self.source, resp.status, code, msg, text)

            return payload
