"""客户端连接管理。

- reconnect: 重连状态机与调度抽象。
- fallback: 实时连接不可用时的 HTTP 回退通道。
- realtime: 对外的 ChatClient。
"""

from relay_core.client.fallback import FallbackClient
from relay_core.client.realtime import CONNECTION_LOST, ChatClient
from relay_core.client.reconnect import AsyncioScheduler, LinkState, ReconnectPolicy, Scheduler

__all__ = [
    "AsyncioScheduler",
    "CONNECTION_LOST",
    "ChatClient",
    "FallbackClient",
    "LinkState",
    "ReconnectPolicy",
    "Scheduler",
]
