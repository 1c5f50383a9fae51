"""实时客户端的重连策略与调度抽象。"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from relay_core.config.settings import settings


class LinkState(str, Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


@dataclass
class ReconnectPolicy:
    """显式的重连状态机。

    Attributes:
        max_attempts: 重连次数上限，耗尽后进入 EXHAUSTED。
        base_delay: 第 n 次重连前等待 n * base_delay 秒。
        attempt: 当前已安排的重连次数；连接成功后归零。
    """

    max_attempts: int = field(default_factory=lambda: settings.reconnect_max_attempts)
    base_delay: float = field(default_factory=lambda: settings.reconnect_base_delay)
    attempt: int = 0
    state: LinkState = LinkState.IDLE

    def on_connected(self) -> None:
        self.attempt = 0
        self.state = LinkState.CONNECTED

    def next_delay(self) -> Optional[float]:
        """进入下一次重连并返回等待秒数；达到 max_attempts 后返回 None。"""

        if self.attempt >= self.max_attempts:
            self.state = LinkState.EXHAUSTED
            return None
        self.attempt += 1
        self.state = LinkState.RECONNECTING
        return self.attempt * self.base_delay

    @property
    def exhausted(self) -> bool:
        return self.state is LinkState.EXHAUSTED


Action = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    def schedule(self, delay: float, action: Action) -> asyncio.Task:
        ...


class AsyncioScheduler:
    """以 asyncio 任务的形式在 delay 秒后执行 action。"""

    def schedule(self, delay: float, action: Action) -> asyncio.Task:
        async def _run() -> None:
            await asyncio.sleep(delay)
            await action()

        return asyncio.create_task(_run())
