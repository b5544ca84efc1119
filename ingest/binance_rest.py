import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


class TransientNetworkError(Exception):
    """A market-data, order or persistence call failed; retry on the next natural cycle."""


class BinanceAPIError(TransientNetworkError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class ExecutionError(TransientNetworkError):
    """An order could not be placed; the caller rolls the trade back."""


class BinanceRESTClient:
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, timeout_s: Optional[float] = None):
        exchange_cfg = config.section('exchange')
        # USDⓈ-M futures base URL
        self.base_url = (base_url or exchange_cfg.get('rest_url', 'https://fapi.binance.com')).rstrip("/")
        self.api_key: Optional[str] = api_key or exchange_cfg.get('api_key')
        self.api_secret: Optional[str] = api_secret or exchange_cfg.get('api_secret')
        self.timeout_s = float(timeout_s or exchange_cfg.get('request_timeout_s', 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                )
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params.setdefault("timestamp", int(time.time() * 1000))
        params.setdefault("recvWindow", 5000)
        query = urlencode(params, doseq=True)
        params["signature"] = hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return params

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {}

        if signed:
            if not self.has_credentials:
                raise RuntimeError("Binance API key/secret required for signed request")
            params = self._sign(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method.upper(), url, params=params, headers=headers) as resp:
                text = await resp.text()
                content_type = resp.headers.get("Content-Type", "")
                payload: Any = text
                if "application/json" in content_type:
                    try:
                        payload = json.loads(text)
                    except ValueError:
                        payload = text

                if resp.status >= 400:
                    code = None
                    msg = None
                    if isinstance(payload, dict):
                        code = payload.get("code")
                        msg = payload.get("msg")
                    raise BinanceAPIError(resp.status, code, msg, text)

                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"{method.upper()} {path} failed: {exc!r}") from exc

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
