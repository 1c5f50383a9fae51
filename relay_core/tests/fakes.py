"""测试共用的推理后端替身与事件收集器。"""

import asyncio
import copy
import json
import threading

from relay_core.domain.models import RelayEvent


def sse(**fields) -> bytes:
    return f"data: {json.dumps(fields)}\n\n".encode("utf-8")


DONE = b"data: [DONE]\n\n"


class FakeProvider:
    """按脚本输出分块的推理后端。

    - chunks: 依次产出的原始分块。
    - fail_after: 产出这么多分块后抛出 error。
    - hang: 分块产出完后一直挂起，不结束流。
    """

    name = "fake"

    def __init__(self, chunks=(), error=None, fail_after=None, hang=False, reply="ok"):
        self.chunks = list(chunks)
        self.error = error
        self.fail_after = fail_after
        self.hang = hang
        self.reply = reply
        self.calls = []
        self.closed = False

    async def complete(self, messages, model):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return self.reply

    async def complete_streaming(self, messages, model):
        self.calls.append(list(messages))
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.error
                yield chunk
                await asyncio.sleep(0)
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise self.error
            if self.hang:
                await asyncio.sleep(3600)
        finally:
            self.closed = True


class EventCollector:
    def __init__(self):
        self.events = []
        self.chunk_seen = asyncio.Event()

    async def __call__(self, event: RelayEvent) -> None:
        self.events.append(event)
        if event.type == "chunk":
            self.chunk_seen.set()

    @property
    def types(self):
        return [e.type for e in self.events]

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


class ThreadedBackend:
    """put 在线程中执行的持久化后端，gate 关闭时写入会阻塞在线程里。"""

    def __init__(self):
        self.data = {}
        self.gate = threading.Event()
        self.gate.set()
        self.writing = threading.Event()

    async def get(self, key):
        return copy.deepcopy(self.data.get(key))

    async def put(self, key, value):
        await asyncio.to_thread(self._put, key, copy.deepcopy(value))

    async def delete(self, key):
        self.data.pop(key, None)

    def _put(self, key, value):
        self.writing.set()
        self.gate.wait(5)
        self.data[key] = value

    def contents(self, key):
        return [m["content"] for m in self.data.get(key, [])]


class YieldingBackend:
    """每次读写都让出事件循环，使并发追加真正交错。"""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return copy.deepcopy(self.data.get(key))

    async def put(self, key, value):
        await asyncio.sleep(0)
        self.data[key] = copy.deepcopy(value)

    async def delete(self, key):
        self.data.pop(key, None)
