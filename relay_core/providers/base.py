"""推理后端抽象接口。

SessionRelay 不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个后端实现一个 InferenceClient（如 WorkersAIClient）。
- 调用方负责把上下文裁剪到上限并在最前面放上 system 提示词，
  这里只负责发请求、把失败翻译成 InferenceError 分类。

这样可以在不改中继代码的前提下接入更多后端。
"""

from typing import AsyncIterator, List, Protocol

from relay_core.domain.models import Message, RawChunk


class InferenceClient(Protocol):
    """推理后端客户端协议。

    实现者需要提供：
    - name: 后端名称，用于日志。
    - complete(messages, model): 单次调用，返回完整回答文本。
    - complete_streaming(messages, model): 返回惰性、有限、不可重启的原始分块序列；
      连接中途断开必须抛出 StreamFault，而不是静默结束。
    """

    name: str

    async def complete(self, messages: List[Message], model: str) -> str:
        ...

    def complete_streaming(self, messages: List[Message], model: str) -> AsyncIterator[RawChunk]:
        ...
