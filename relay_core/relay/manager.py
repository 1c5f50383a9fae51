"""服务端连接管理。

每个连接拥有自己的 SessionRelay，登记在按连接 ID 索引的归属表里；
不同连接之间不共享任何会话对象，身份到存储的访问每次都经由 HistoryStore。

每个连接运行两个协程：读协程把收到的帧放进队列，工作协程按顺序处理，
所以读协程能在流式回答期间及时发现断线并取消工作协程。
"""

import asyncio
import logging
from typing import Dict, List, Optional, Protocol

from relay_core.config.settings import settings
from relay_core.domain.exceptions import TransportLost
from relay_core.domain.models import RelayEvent
from relay_core.infrastructure.logging.logger import log_event
from relay_core.providers.base import InferenceClient
from relay_core.relay.session import SessionRelay
from relay_core.sessions.history_store import HistoryStore


class Connection(Protocol):
    """一条双向文本帧连接；对端关闭时 receive_text/send_text 抛出 TransportLost。"""

    async def receive_text(self) -> str:
        ...

    async def send_text(self, data: str) -> None:
        ...


class ConnectionManager:
    def __init__(
        self,
        store: HistoryStore,
        provider: InferenceClient,
        model: Optional[str] = None,
        idle_timeout: Optional[float] = None,
    ):
        self._store = store
        self._provider = provider
        self._model = model or settings.default_model
        self._idle_timeout = idle_timeout
        self._sessions: Dict[str, SessionRelay] = {}

    def active_sessions(self) -> List[SessionRelay]:
        return list(self._sessions.values())

    def sessions_for(self, identity: str) -> List[SessionRelay]:
        return [relay for relay in self._sessions.values() if relay.identity == identity]

    async def serve(self, connection: Connection, connection_id: Optional[str] = None) -> None:
        """处理一条连接直到对端断开。"""

        async def send(event: RelayEvent) -> None:
            await connection.send_text(event.to_json())

        relay = SessionRelay(
            store=self._store,
            provider=self._provider,
            send=send,
            model=self._model,
            connection_id=connection_id,
            idle_timeout=self._idle_timeout,
        )
        self._sessions[relay.connection_id] = relay
        log_event(logging.INFO, "Connection accepted", {"connection_id": relay.connection_id}, active=len(self._sessions))

        inbox: "asyncio.Queue[str]" = asyncio.Queue()
        worker = asyncio.create_task(self._work(relay, inbox))
        try:
            while not worker.done():
                try:
                    raw = await connection.receive_text()
                except TransportLost:
                    break
                inbox.put_nowait(raw)
        finally:
            await relay.close()
            worker.cancel()
            await asyncio.wait([worker])
            self._sessions.pop(relay.connection_id, None)
            log_event(
                logging.INFO,
                "Connection released",
                {"connection_id": relay.connection_id, "identity": relay.identity},
                active=len(self._sessions),
            )

    @staticmethod
    async def _work(relay: SessionRelay, inbox: "asyncio.Queue[str]") -> None:
        while True:
            raw = await inbox.get()
            try:
                await relay.handle_raw(raw)
            except TransportLost:
                return
