import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


class BybitAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Bybit API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class BybitRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        recv_window_ms: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ):
        exchange_cfg = config.section('exchange')
        self.base_url = (base_url or exchange_cfg.get('rest_url') or "https://api.bybit.com").rstrip("/")
        self.api_key: Optional[str] = api_key or exchange_cfg.get("api_key")
        self.api_secret: Optional[str] = api_secret or exchange_cfg.get("api_secret")
        self.recv_window_ms = int(recv_window_ms or exchange_cfg.get("recv_window_ms", 5000))
        self.timeout_s = float(timeout_s or exchange_cfg.get("request_timeout_s", 10))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def sign(self, timestamp: int, payload: str) -> str:
        """v5 signature over ``timestamp + api_key + recv_window + payload``."""
        if not self.api_key or not self.api_secret:
            raise RuntimeError("Bybit API key/secret required for signed request")
        message = f"{timestamp}{self.api_key}{self.recv_window_ms}{payload}"
        return hmac.new(
            self.api_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _signed_headers(self, payload: str) -> Dict[str, str]:
        timestamp = int(time.time() * 1000)
        return {
            "X-BAPI-API-KEY": self.api_key or "",
            "X-BAPI-TIMESTAMP": str(timestamp),
            "X-BAPI-RECV-WINDOW": str(self.recv_window_ms),
            "X-BAPI-SIGN": self.sign(timestamp, payload),
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {"Content-Type": "application/json"}

        query = urlencode(params, doseq=True)
        data = json.dumps(body, separators=(",", ":")) if body is not None else None
        if signed:
            # GET signs the query string, POST signs the raw JSON body
            headers.update(self._signed_headers(data if data is not None else query))

        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        async with session.request(
            method.upper(),
            url,
            data=data,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            payload: Any
            try:
                payload = json.loads(text)
            except ValueError:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("retCode")
                    msg = payload.get("retMsg")
                raise BybitAPIError(resp.status, code, msg, text)

            return payload

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("POST", path, body=body or {}, signed=signed)
