"""Cloudflare Workers AI 推理后端适配器。

对应后端的 run(model, messages, stream) 调用：
- URL: {base_url}/accounts/{account_id}/ai/run/{model}
- 认证: Authorization: Bearer <api_token>
- 非流式响应: {"result": {"response": "..."}, "success": true, ...}
- 流式响应: text/event-stream，每帧 `data: {"response": "..."}`，以 `data: [DONE]` 结束。

本适配器只负责 HTTP 调用与错误翻译，流式分块原样交给 StreamDecoder 解析。
"""

import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from relay_core.config.settings import settings
from relay_core.domain.exceptions import (
    BackendFaultError,
    NetworkError,
    RateLimitError,
    StreamFault,
    ValidationError,
)
from relay_core.domain.models import Message
from relay_core.providers.registry import WORKERS_AI_CONFIG, ModelConfig


class WorkersAIClient:
    """Workers AI 客户端实现。"""

    name = "workers_ai"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 非流式 ----

    async def complete(self, messages: List[Message], model: str) -> str:
        model_cfg = WORKERS_AI_CONFIG.resolve(model)
        payload = self._build_payload(messages, model_cfg, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._url(model_cfg), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(message="Inference backend unreachable", details=str(e))
        if resp.status_code == 429:
            raise RateLimitError(message="Workers AI rate limit", details=resp.text)
        if resp.status_code >= 400:
            raise BackendFaultError(message="Workers AI request failed", details=resp.text, backend_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendFaultError(message="Workers AI returned malformed JSON", details=str(e))
        return self._extract_text(data)

    # ---- 流式 ----

    async def complete_streaming(self, messages: List[Message], model: str) -> AsyncIterator[bytes]:
        model_cfg = WORKERS_AI_CONFIG.resolve(model)
        payload = self._build_payload(messages, model_cfg, stream=True)
        started = False
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    self._url(model_cfg),
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code == 429:
                        body = await resp.aread()
                        raise RateLimitError(message="Workers AI rate limit", details=body.decode("utf-8", "replace"))
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise BackendFaultError(
                            message="Workers AI request failed",
                            details=body.decode("utf-8", "replace"),
                            backend_status=resp.status_code,
                        )
                    async for chunk in resp.aiter_bytes():
                        if not chunk:
                            continue
                        started = True
                        yield chunk
        except httpx.RequestError as e:
            if started:
                # 已经开始输出后断开，必须作为终止性错误上报
                raise StreamFault(message="Inference stream interrupted", details=str(e))
            raise NetworkError(message="Inference backend unreachable", details=str(e))

    # ---- 辅助方法 ----

    def _url(self, model_cfg: ModelConfig) -> str:
        account = getattr(self._settings, "workers_ai_account_id", None)
        if not account:
            raise ValidationError(code="MISSING_ACCOUNT_ID", message="WORKERS_AI_ACCOUNT_ID not set")
        base = getattr(self._settings, "workers_ai_base_url", None) or WORKERS_AI_CONFIG.base_url
        return f"{base}/accounts/{account}/ai/run/{model_cfg.provider_model}"

    def _headers(self) -> Dict[str, str]:
        token = getattr(self._settings, "workers_ai_api_token", None)
        if not token:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="WORKERS_AI_API_TOKEN not set")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _build_payload(messages: List[Message], model_cfg: ModelConfig, stream: bool) -> dict:
        return {
            "messages": [m.to_dict() for m in messages],
            "max_tokens": model_cfg.max_tokens,
            "temperature": model_cfg.default_temperature,
            "stream": stream,
        }

    @staticmethod
    def _extract_text(data: Any) -> str:
        """兼容多种返回格式：response → text → content → 原始 JSON。"""

        result = data.get("result", data) if isinstance(data, dict) else data
        if isinstance(result, dict):
            for key in ("response", "text", "content"):
                value = result.get(key)
                if isinstance(value, str) and value:
                    return value
            return json.dumps(result, ensure_ascii=False)
        return str(result)
