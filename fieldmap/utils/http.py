# fieldmap/utils/http.py
import asyncio
import time
import httpx
from typing import Optional

async def get_json(url: str, params: Optional[dict] = None, headers: Optional[dict] = None, timeout: float = 30.0):
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        r = await client.get(url, params=params, headers=headers)
        r.raise_for_status()
        return r.json()

async def post_form(url: str, data: dict, headers: Optional[dict] = None, timeout: float = 30.0):
    # long polygon geometries do not fit in a query string
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        r = await client.post(url, data=data, headers=headers)
        r.raise_for_status()
        return r.json()


class MinIntervalLimiter:
    """Keeps at least ``interval`` seconds between consecutive requests to one service."""

    def __init__(self, interval: float):
        self.interval = interval
        self._last = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            elapsed = time.monotonic() - self._last
            if elapsed < self.interval:
                await asyncio.sleep(self.interval - elapsed)
            self._last = time.monotonic()
