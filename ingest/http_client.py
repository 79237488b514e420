import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from errors import ProviderError
from ingest.rate_limiter import MinIntervalLimiter


class JSONHTTPClient:
    """Shared aiohttp session for one upstream API with bounded timeouts."""

    def __init__(
        self,
        base_url: str,
        provider: str,
        timeout_s: float = 15.0,
        limiter: Optional[MinIntervalLimiter] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.limiter = limiter
        self.headers = dict(headers or {})
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(headers=self.headers)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Any] = None,
    ) -> Any:
        if self.limiter is not None:
            await self.limiter.acquire()
        session = await self._get_session()
        url = f"{self.base_url}{path}" if path else self.base_url
        try:
            async with session.request(
                method.upper(),
                url,
                params=params,
                json=payload,
                timeout=self.timeout,
            ) as resp:
                text = await resp.text()
                content_type = resp.headers.get("Content-Type", "")
                body: Any = text
                if "json" in content_type:
                    try:
                        body = json.loads(text)
                    except ValueError:
                        body = text
                if resp.status >= 400:
                    raise ProviderError(
                        f"{self.provider} HTTP {resp.status}: {text[:200]}",
                        self.provider,
                        status=resp.status,
                        endpoint=path,
                    )
                return body
        except ProviderError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(
                f"{self.provider} request failed: {exc!r}",
                self.provider,
                endpoint=path,
            ) from exc

    async def get(self, path: str = "", params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str = "", payload: Optional[Any] = None,
                   params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("POST", path, params=params, payload=payload)
