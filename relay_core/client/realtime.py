"""客户端连接管理。

维护到中继的一条实时连接，意外断开后按线性退避重连；
重连次数耗尽或连接暂时不可用时，请求改走非流式的 HTTP 回退通道。
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import websockets
from websockets.exceptions import WebSocketException

from relay_core.client.fallback import FallbackClient
from relay_core.client.reconnect import AsyncioScheduler, LinkState, ReconnectPolicy, Scheduler
from relay_core.config.settings import settings
from relay_core.domain.exceptions import TransportLost
from relay_core.domain.models import ClientRequest, RelayEvent
from relay_core.infrastructure.logging.logger import logger

Callback = Callable[[Dict[str, Any]], None]

# 回调可订阅的额外事件：重连耗尽后触发一次
CONNECTION_LOST = "connection_lost"


class Transport(Protocol):
    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> Any:
        ...

    async def close(self) -> None:
        ...


ConnectFactory = Callable[[str], Awaitable[Transport]]


def _ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        base_url = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        base_url = "ws://" + base_url[len("http://"):]
    return base_url.rstrip("/") + "/api/ws"


async def _default_connect(url: str) -> Transport:
    return await websockets.connect(url)


class ChatClient:
    """带重连与 HTTP 回退的实时聊天客户端。

    通过 on() 订阅事件；实时通道与回退通道投递相同类型的事件。
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        user_id: Optional[str] = None,
        policy: Optional[ReconnectPolicy] = None,
        scheduler: Optional[Scheduler] = None,
        connect: Optional[ConnectFactory] = None,
        fallback: Optional[FallbackClient] = None,
    ):
        base = base_url or settings.relay_url
        self.ws_url = _ws_url(base)
        self.user_id = user_id
        self.policy = policy or ReconnectPolicy()
        self._scheduler = scheduler or AsyncioScheduler()
        self._connect_factory = connect or _default_connect
        self._fallback = fallback or FallbackClient(base)
        self._callbacks: Dict[str, List[Callback]] = defaultdict(list)
        self._transport: Optional[Transport] = None
        self._reader: Optional[asyncio.Task] = None
        self._retry: Optional[asyncio.Task] = None
        self._closing = False
        self.connected = False
        self.lost: Optional[TransportLost] = None

    # ---- observers ----
    def on(self, event_type: str, callback: Callback) -> None:
        self._callbacks[event_type].append(callback)

    def _dispatch(self, event_type: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._callbacks.get(event_type, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("Client callback for %s failed", event_type)

    @property
    def in_fallback(self) -> bool:
        return self.policy.exhausted

    # ---- lifecycle ----
    async def start(self) -> bool:
        """建立实时连接；失败时进入重连流程。连接成功返回 True。"""

        self._closing = False
        try:
            await self._open()
            return True
        except (OSError, WebSocketException, TransportLost) as e:
            logger.warning("Realtime connect failed: %s", e)
            self._on_link_lost()
            return False

    async def close(self) -> None:
        self._closing = True
        self.connected = False
        for task in (self._retry, self._reader):
            if task and not task.done():
                task.cancel()
        if self._transport is not None:
            await self._discard(self._transport)
            self._transport = None
        self.policy.state = LinkState.IDLE

    @staticmethod
    async def _discard(transport: Transport) -> None:
        try:
            await transport.close()
        except (OSError, WebSocketException):
            pass

    async def _open(self) -> None:
        transport = await self._connect_factory(self.ws_url)
        await transport.send(ClientRequest("connect", user_id=self.user_id).to_json())
        while True:
            try:
                raw = await transport.recv()
            except (OSError, WebSocketException) as e:
                await self._discard(transport)
                raise TransportLost(message="Link closed during handshake", details=str(e))
            try:
                event = RelayEvent.from_json(raw)
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                await self._discard(transport)
                raise TransportLost(message="Malformed handshake frame", details=str(e))
            if event.type == "connected":
                break
            self._dispatch(event.type, event.fields)

        self._transport = transport
        self.user_id = event.fields.get("userId") or self.user_id
        self.connected = True
        self.lost = None
        self.policy.on_connected()
        logger.info("Realtime link established", extra={"extra": {"user_id": self.user_id}})
        self._dispatch("connected", event.fields)
        self._reader = asyncio.create_task(self._read_loop(transport))

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                raw = await transport.recv()
                try:
                    event = RelayEvent.from_json(raw)
                except (ValueError, KeyError, TypeError, AttributeError):
                    logger.warning("Ignoring malformed frame from relay")
                    continue
                self._dispatch(event.type, event.fields)
        except (OSError, WebSocketException) as e:
            logger.warning("Realtime link lost: %s", e)
        finally:
            if self._transport is transport:
                self._transport = None
                self.connected = False
                if not self._closing:
                    self._on_link_lost()

    def _on_link_lost(self) -> None:
        delay = self.policy.next_delay()
        if delay is None:
            logger.error("Reconnect attempts exhausted; using HTTP fallback")
            self.lost = TransportLost(message="Connection lost", details=f"after {self.policy.max_attempts} attempts")
            self._dispatch(CONNECTION_LOST, self.lost.to_payload())
            return
        logger.info(
            "Reconnecting in %.1fs",
            delay,
            extra={"extra": {"attempt": self.policy.attempt, "max_attempts": self.policy.max_attempts}},
        )
        self._retry = self._scheduler.schedule(delay, self._reconnect)

    async def _reconnect(self) -> None:
        if self._closing:
            return
        try:
            await self._open()
        except (OSError, WebSocketException, TransportLost) as e:
            logger.warning("Reconnect attempt %d failed: %s", self.policy.attempt, e)
            self._on_link_lost()

    # ---- requests ----
    async def send_message(self, content: str, message_id: Optional[str] = None) -> str:
        """发送一条聊天消息并返回 messageId。

        实时通道下回答以 chunk/complete 事件到达；
        回退通道下整段回答作为一个 chunk 投递，随后是 complete 或 error。
        """

        message_id = message_id or str(uuid.uuid4())
        if self.connected and self._transport is not None:
            await self._send(ClientRequest("chat", content=content, message_id=message_id))
            return message_id

        data = await self._fallback.chat(content, self.user_id)
        if data.get("userId"):
            self.user_id = data["userId"]
        if data.get("response"):
            self._dispatch("chunk", {"content": data["response"]})
        if data.get("error"):
            self._dispatch("error", {"error": data["error"], "code": data.get("code")})
        else:
            self._dispatch("complete", {"messageId": message_id})
        return message_id

    async def request_history(self) -> None:
        if self.connected and self._transport is not None:
            await self._send(ClientRequest("history", user_id=self.user_id))
            return
        if not self.user_id:
            return
        data = await self._fallback.history(self.user_id)
        self._dispatch("history", {"messages": data.get("messages", [])})

    async def clear_history(self) -> None:
        if self.connected and self._transport is not None:
            await self._send(ClientRequest("clear"))
            return
        if not self.user_id:
            return
        data = await self._fallback.clear(self.user_id)
        if data.get("success"):
            self._dispatch("cleared", {})
        else:
            self._dispatch("error", {"error": data.get("error", "Clear failed"), "code": data.get("code")})

    async def _send(self, request: ClientRequest) -> None:
        try:
            await self._transport.send(request.to_json())
        except (OSError, WebSocketException) as e:
            raise TransportLost(message="Not connected to relay", details=str(e))
