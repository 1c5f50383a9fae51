"""流式响应解码器。

把推理后端的原始分块（文本、字节、SSE 帧）还原为干净、有序的文本增量，
是整个系统中唯一做帧解析的地方，客户端不再做任何启发式提取。

帧语法（逐行）：
- 只处理以 "data:" 开头的行（先 trim），去掉前缀和两侧空白得到 payload；
- 空 payload 与 "[DONE]" 不产生文本，后者标记数据结束；
- payload 能解析为 JSON 对象时，取 response、text 中第一个非空字符串；
  两者都没有（元数据帧，如 usage）则贡献空文本；
- JSON 解析失败时，payload 原样作为文本。

同一分块内所有行的文本拼接成一个增量；没有文本的分块不产生事件。
分块末尾被切断的 JSON 帧会保留到下一个分块再解析，字节流用增量 UTF-8 解码。
解码器状态只属于一次推理调用，不可重启。
"""

import codecs
import json
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Mapping, Optional

from relay_core.domain.models import RawChunk


DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
DELTA_FIELDS = ("response", "text")


class StreamDecoder:
    """单次流的有状态解码器。"""

    def __init__(self, encoding: str = "utf-8"):
        # 增量解码器保证跨分块的多字节字符不被截断
        self._bytes_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self.finished = False
        self.chunks_seen = 0
        self._partial = ""

    def decode(self, chunk: RawChunk) -> Optional[str]:
        """解码一个分块，返回本分块的文本增量；无文本时返回 None。"""
        self.chunks_seen += 1
        text = self._partial + self._to_text(chunk)
        self._partial = ""
        lines = text.split("\n")
        last = lines[-1]
        if last and self._is_cut_frame(last):
            # 分块在一个 JSON 帧中间被切断，留到下一个分块拼接
            self._partial = last
            lines = lines[:-1]
        pieces = []
        for line in lines:
            fragment = self._parse_line(line)
            if fragment:
                pieces.append(fragment)
        delta = "".join(pieces)
        return delta or None

    def flush(self) -> Optional[str]:
        """流结束时冲刷残留的不完整字节与未闭合的帧。"""
        tail = self._partial + self._bytes_decoder.decode(b"", final=True)
        self._partial = ""
        if not tail:
            return None
        pieces = [self._parse_line(line) for line in tail.split("\n")]
        return "".join(pieces) or None

    def iter_deltas(self, chunks: Iterable[RawChunk]) -> Iterator[str]:
        for chunk in chunks:
            delta = self.decode(chunk)
            if delta:
                yield delta
        tail = self.flush()
        if tail:
            yield tail

    async def aiter_deltas(self, chunks: AsyncIterable[RawChunk]) -> AsyncIterator[str]:
        async for chunk in chunks:
            delta = self.decode(chunk)
            if delta:
                yield delta
        tail = self.flush()
        if tail:
            yield tail

    def _to_text(self, chunk: RawChunk) -> str:
        if isinstance(chunk, str):
            return chunk
        if isinstance(chunk, (bytes, bytearray, memoryview)):
            return self._bytes_decoder.decode(bytes(chunk))
        if isinstance(chunk, Mapping):
            # {"0": 100, "1": 97, ...}：某些运行时把字节数组序列化成这种映射
            try:
                ordered = sorted(chunk.items(), key=lambda kv: int(kv[0]))
                return self._bytes_decoder.decode(bytes(int(v) for _, v in ordered))
            except (TypeError, ValueError):
                return str(chunk)
        if isinstance(chunk, list):
            try:
                return self._bytes_decoder.decode(bytes(chunk))
            except (TypeError, ValueError):
                return str(chunk)
        return str(chunk)

    @staticmethod
    def _is_cut_frame(line: str) -> bool:
        trimmed = line.strip()
        if not trimmed.startswith(DATA_PREFIX):
            return False
        payload = trimmed[len(DATA_PREFIX):].strip()
        if not payload.startswith("{"):
            return False
        try:
            json.loads(payload)
        except ValueError:
            return True
        return False

    def _parse_line(self, line: str) -> str:
        trimmed = line.strip()
        if not trimmed.startswith(DATA_PREFIX):
            return ""
        payload = trimmed[len(DATA_PREFIX):].strip()
        if not payload:
            return ""
        if payload == DONE_MARKER:
            self.finished = True
            return ""
        try:
            data = json.loads(payload)
        except ValueError:
            return payload
        if not isinstance(data, dict):
            return ""
        for name in DELTA_FIELDS:
            value = data.get(name)
            if isinstance(value, str) and value:
                return value
        return ""
