"""对外 API 服务模块。

提供非流式的回退接口（请求/响应），供 WebSocket 不可用时的客户端调用：

- chat: {message, userId} -> {history[], response, userId} 或 {error}
- history: {userId} -> {messages[]}
- clear: {userId} -> {success}
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from relay_core.config.settings import settings
from relay_core.domain.exceptions import InferenceError, ValidationError
from relay_core.domain.models import Message, log_to_payload
from relay_core.infrastructure.logging.logger import log_event, logger
from relay_core.infrastructure.storage.json_store import JsonFileStore, MemoryKeyValueStore
from relay_core.providers import create_provider
from relay_core.providers.base import InferenceClient
from relay_core.sessions.context import build_context_window
from relay_core.sessions.history_store import HistoryStore


APOLOGY = "I'm having trouble connecting to my AI brain right now. Please try again later."


class ChatService:
    """非流式对话服务，与 WebSocket 中继共用同一个 HistoryStore。"""

    def __init__(self, store: HistoryStore, provider: InferenceClient, model: Optional[str] = None):
        self.store = store
        self.provider = provider
        self.model = model or settings.default_model

    async def chat(self, message: Optional[str], user_id: Optional[str] = None) -> Dict[str, Any]:
        """追加用户消息、调用模型、追加助手回答。

        推理失败时用户消息保持已持久化，不记录助手回答，
        返回面向用户的致歉文本并把原因放在 error 字段。
        """
        if not isinstance(message, str) or not message.strip():
            raise ValidationError(code="MISSING_MESSAGE", message="Message is required")
        identity = user_id or str(uuid4())
        log_ctx = {"identity": identity, "surface": "fallback"}

        log = await self.store.append(identity, Message(role="user", content=message))
        context = build_context_window(log)
        log_event(
            logging.INFO,
            "Calling provider",
            log_ctx,
            provider=getattr(self.provider, "name", "unknown"),
            model=self.model,
            message_count=len(context),
            history_length=len(log),
        )
        try:
            reply = await self.provider.complete(context, self.model)
        except (InferenceError, ValidationError) as e:
            log_event(logging.ERROR, "Inference failed", log_ctx, code=e.code, details=e.details or e.message)
            return {
                "userId": identity,
                "history": log_to_payload(log),
                "response": APOLOGY,
                "error": e.details or e.message,
                "code": e.code,
            }

        log = await self.store.append(identity, Message(role="assistant", content=reply))
        log_event(logging.INFO, "Stored assistant message", log_ctx, length=len(reply))
        return {"userId": identity, "history": log_to_payload(log), "response": reply}

    async def history(self, user_id: Optional[str]) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError(code="MISSING_USER_ID", message="userId is required")
        log = await self.store.read(user_id)
        return {"messages": log_to_payload(log)}

    async def clear(self, user_id: Optional[str]) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError(code="MISSING_USER_ID", message="userId is required")
        await self.store.clear(user_id)
        return {"success": True}


_store: Optional[HistoryStore] = None
_service: Optional[ChatService] = None


def get_default_store() -> HistoryStore:
    """获取默认的 HistoryStore 实例（单例）。"""
    global _store
    if _store is None:
        _store = HistoryStore(
            backend=JsonFileStore(root=settings.storage_root),
            backup=MemoryKeyValueStore(),
        )
    return _store


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""
    global _service
    if _service is None:
        _service = ChatService(store=get_default_store(), provider=create_provider())
        logger.info("Chat service initialised", extra={"extra": {"provider": _service.provider.name}})
    return _service
