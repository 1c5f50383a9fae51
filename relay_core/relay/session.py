"""单连接的会话中继控制器。

状态机：UNBOUND → BOUND → AWAITING_RESPONSE → BOUND（循环），任意状态都可进入终态 CLOSED。

- connect: 解析或生成身份并绑定到本连接，回复 connected；重复 connect 视为重新绑定。
- chat: 需要已绑定；先持久化用户消息，再构造上下文、发出 status=thinking、
  驱动 StreamDecoder 逐个转发 chunk，正常结束后持久化助手消息并回复 complete。
  流失败时只回复 error，不记录不完整的助手回答。
- history: 可直接携带 userId，不要求本连接已绑定。
- clear: 需要已绑定。
- 未知类型与格式错误只回复 error，不改变状态。

连接关闭时正在进行的流读取被取消，不再通知客户端，也不持久化部分文本。
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Any, Optional
from uuid import uuid4

from relay_core.config.settings import settings
from relay_core.domain.exceptions import (
    BusinessError,
    NotConnected,
    StreamFault,
    TransportLost,
    ValidationError,
)
from relay_core.domain.models import ClientRequest, Message, RelayEvent, StreamState
from relay_core.infrastructure.logging.logger import log_event, logger
from relay_core.providers.base import InferenceClient
from relay_core.sessions.context import build_context_window
from relay_core.sessions.history_store import HistoryStore
from relay_core.streaming.decoder import StreamDecoder


EventSink = Callable[[RelayEvent], Awaitable[None]]

GENERATION_FAILED = "Failed to generate AI response"
NOT_CONNECTED = "Not connected. Send a connect message first."


class RelayState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    AWAITING_RESPONSE = "awaiting_response"
    CLOSED = "closed"


class SessionRelay:
    def __init__(
        self,
        store: HistoryStore,
        provider: InferenceClient,
        send: EventSink,
        model: Optional[str] = None,
        connection_id: Optional[str] = None,
        max_context: Optional[int] = None,
        idle_timeout: Optional[float] = None,
    ):
        self._store = store
        self._provider = provider
        self._send = send
        self._model = model or settings.default_model
        self._max_context = settings.max_context_messages if max_context is None else max_context
        self._idle_timeout = settings.stream_idle_timeout if idle_timeout is None else idle_timeout
        self.connection_id = connection_id or f"conn-{uuid4().hex}"
        self.identity: Optional[str] = None
        self.state = RelayState.UNBOUND

    async def handle_raw(self, raw: str) -> None:
        """解析一帧客户端 JSON 并处理；格式错误只回复 error。"""
        try:
            request = ClientRequest.from_json(raw)
        except ValidationError as e:
            await self._emit_error(e)
            return
        await self.handle(request)

    async def handle(self, request: ClientRequest) -> None:
        if self.state is RelayState.CLOSED:
            return
        handlers: Dict[str, Callable[[ClientRequest], Awaitable[None]]] = {
            "connect": self._connect,
            "chat": self._chat,
            "history": self._history,
            "clear": self._clear,
        }
        handler = handlers.get(request.type)
        try:
            if handler is None:
                raise ValidationError(code="UNKNOWN_REQUEST", message="Unknown message type", details=request.type)
            await handler(request)
        except TransportLost:
            raise
        except BusinessError as e:
            await self._emit_error(e)
        except Exception as e:
            logger.exception(
                "Failed to process message",
                extra={"extra": self._log_ctx(request_type=request.type)},
            )
            await self._emit(RelayEvent.error("Failed to process message", "INTERNAL_ERROR", str(e)))

    async def close(self) -> None:
        """释放连接级资源；不改动历史存储。"""
        if self.state is RelayState.CLOSED:
            return
        previous = self.state
        self.state = RelayState.CLOSED
        log_event(logging.INFO, "Session closed", self._log_ctx(), previous_state=previous.value)

    # ---- 请求处理 ----

    async def _connect(self, request: ClientRequest) -> None:
        self.identity = request.user_id or str(uuid4())
        self.state = RelayState.BOUND
        log_event(logging.INFO, "Session bound", self._log_ctx(), generated=request.user_id is None)
        await self._emit(RelayEvent.connected(self.identity))

    async def _chat(self, request: ClientRequest) -> None:
        identity = self._require_bound()
        content = request.content
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(code="MISSING_CONTENT", message="Message content is required")

        log = await self._store.append(identity, Message(role="user", content=content))
        context = build_context_window(log, max_context=self._max_context)
        await self._emit(RelayEvent.thinking())

        self.state = RelayState.AWAITING_RESPONSE
        stream_state = StreamState(message_id=request.message_id)
        log_event(
            logging.INFO,
            "Calling provider (stream)",
            self._log_ctx(),
            provider=getattr(self._provider, "name", "unknown"),
            model=self._model,
            message_count=len(context),
            history_length=len(log),
        )
        try:
            await self._relay_stream(context, stream_state)
        except TransportLost:
            raise
        except BusinessError as e:
            self._log_failure(stream_state, e.code, e.details or e.message)
            await self._emit(RelayEvent.error(GENERATION_FAILED, e.code, e.details or e.message))
            return
        except Exception as e:
            fault = StreamFault(message=GENERATION_FAILED, details=str(e))
            self._log_failure(stream_state, fault.code, fault.details)
            await self._emit(RelayEvent.error(GENERATION_FAILED, fault.code, fault.details))
            return
        finally:
            if self.state is RelayState.AWAITING_RESPONSE:
                self.state = RelayState.BOUND

        await self._store.append(identity, Message(role="assistant", content=stream_state.accumulated_text))
        log_event(
            logging.INFO,
            "Stored assistant message",
            self._log_ctx(),
            message_id=request.message_id,
            deltas=stream_state.delta_count,
            length=len(stream_state.accumulated_text),
        )
        await self._emit(RelayEvent.complete(request.message_id))

    async def _history(self, request: ClientRequest) -> None:
        identity = request.user_id or self.identity
        if not identity:
            raise ValidationError(code="MISSING_USER_ID", message="User ID is required")
        log = await self._store.read(identity)
        await self._emit(RelayEvent.history(log))

    async def _clear(self, request: ClientRequest) -> None:
        identity = self._require_bound()
        await self._store.clear(identity)
        await self._emit(RelayEvent.cleared())

    # ---- 流转发 ----

    async def _relay_stream(self, context, stream_state: StreamState) -> None:
        decoder = StreamDecoder()
        stream = self._provider.complete_streaming(context, self._model)
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self._idle_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise StreamFault(
                        code="STREAM_TIMEOUT",
                        message="Inference stream timed out",
                        details=f"No data within {self._idle_timeout}s",
                    )
                await self._forward(decoder.decode(chunk), stream_state)
            await self._forward(decoder.flush(), stream_state)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _forward(self, delta: Optional[str], stream_state: StreamState) -> None:
        if not delta:
            return
        stream_state.add(delta)
        await self._emit(RelayEvent.chunk(delta))

    # ---- 辅助方法 ----

    def _require_bound(self) -> str:
        if self.identity is None or self.state is RelayState.UNBOUND:
            raise NotConnected(message=NOT_CONNECTED)
        return self.identity

    async def _emit(self, event: RelayEvent) -> None:
        if self.state is RelayState.CLOSED:
            return
        await self._send(event)

    async def _emit_error(self, error: BusinessError) -> None:
        log_event(logging.WARNING, "Request rejected", self._log_ctx(), code=error.code, error=error.message)
        await self._emit(RelayEvent.error(error.message, error.code, error.details))

    def _log_failure(self, stream_state: StreamState, code: str, details: Optional[str]) -> None:
        log_event(
            logging.ERROR,
            "Inference stream failed",
            self._log_ctx(),
            message_id=stream_state.message_id,
            code=code,
            details=details,
            discarded_deltas=stream_state.delta_count,
        )

    def _log_ctx(self, **fields: Any) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {"connection_id": self.connection_id, "identity": self.identity}
        ctx.update(fields)
        return ctx
