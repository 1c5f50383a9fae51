"""实时连接不可用时使用的非流式 HTTP 客户端。"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from relay_core.config.settings import settings
from relay_core.domain.exceptions import NetworkError


class FallbackClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self._base_url = (base_url or settings.relay_url).rstrip("/")
        self._timeout = settings.http_timeout if timeout is None else timeout

    async def chat(self, message: str, user_id: Optional[str]) -> Dict[str, Any]:
        return await self._request("POST", "/api/chat", json={"message": message, "userId": user_id})

    async def history(self, user_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/api/history", params={"userId": user_id})

    async def clear(self, user_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/clear", json={"userId": user_id})

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, trust_env=False) as client:
                resp = await client.request(method, f"{self._base_url}{path}", **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(message="Relay unreachable", details=str(e))
        try:
            data = resp.json()
        except ValueError:
            data = {"error": resp.text or f"HTTP {resp.status_code}"}
        if resp.status_code >= 400 and "error" not in data:
            data["error"] = f"HTTP {resp.status_code}"
        return data
