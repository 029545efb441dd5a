"""流式响应的分帧解析。

支持两种分帧方式：

- event-stream (SSE): 以空行分隔记录，每条记录取其 data 字段（多行 data 以换行拼接），
  忽略注释行以及 event/id/retry 字段。
- 换行分隔 (NDJSON): 每行一个负载，丢弃空行；无法独立解析为 JSON 的行静默丢弃。

两种方式都识别结束标记 "[DONE]"（裸写或带 "data:" 前缀），视为流结束，
结束标记本身永远不会作为内容产出。

解析器以文本片段为单位增量喂入（feed），跨块被截断的记录会被缓存到下一块再拼接，
因此产出的每个单元都是完整的。
"""

import codecs
import json
from enum import Enum
from typing import AsyncIterable, AsyncIterator, List, Optional

from chat_core.infrastructure.logging.logger import logger

DONE_SENTINEL = "[DONE]"


class Framing(str, Enum):
    EVENT_STREAM = "event-stream"
    NDJSON = "ndjson"


def framing_for_content_type(content_type: Optional[str]) -> Framing:
    """根据 Content-Type 选择分帧方式；text/plain 也按 SSE 处理。"""

    ct = (content_type or "").lower()
    if "text/event-stream" in ct or "text/plain" in ct:
        return Framing.EVENT_STREAM
    return Framing.NDJSON


def is_sentinel(text: str) -> bool:
    s = text.strip()
    if s.startswith("data:"):
        s = s[5:].strip()
    return s == DONE_SENTINEL


class WireFormatParser:
    """把原始字节流解码为有序的文本负载序列。

    一个实例只对应一次响应，不可重复使用；遇到结束标记后 done 为 True，之后的输入全部忽略。
    """

    def __init__(self, framing: Framing):
        self.framing = framing
        self.done = False
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        """喂入一段已解码文本，返回其中完整的负载。"""

        if self.done or not text:
            return []
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")
        if self.framing is Framing.EVENT_STREAM:
            return self._drain_events(final=False)
        return self._drain_lines(final=False)

    def flush(self) -> List[str]:
        """流结束时处理缓冲区里残留的最后一条记录。"""

        if self.done:
            return []
        if self.framing is Framing.EVENT_STREAM:
            out = self._drain_events(final=True)
        else:
            out = self._drain_lines(final=True)
        self.done = True
        return out

    async def parse(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
        """按顺序产出负载，直到底层流关闭或遇到结束标记。"""

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in chunks:
            for payload in self.feed(decoder.decode(chunk)):
                yield payload
            if self.done:
                return
        for payload in self.feed(decoder.decode(b"", final=True)):
            yield payload
        for payload in self.flush():
            yield payload

    # ---- SSE ----

    def _drain_events(self, final: bool) -> List[str]:
        out: List[str] = []
        while True:
            idx = self._buffer.find("\n\n")
            if idx == -1:
                if not final:
                    break
                record, self._buffer = self._buffer, ""
            else:
                record, self._buffer = self._buffer[:idx], self._buffer[idx + 2:]
            for data in self._event_payloads(record):
                if is_sentinel(data):
                    self.done = True
                    self._buffer = ""
                    return out
                out.append(data)
            if idx == -1:
                break
        return out

    @staticmethod
    def _event_payloads(record: str) -> List[str]:
        payloads: List[str] = []
        data_lines: List[str] = []
        for line in record.split("\n"):
            if not line or line.startswith(":"):
                continue
            if line.lstrip().startswith(("{", "[")):
                # 不规范的后端：记录里直接是裸 JSON 行，每行单独作为负载
                payloads.append(line.strip())
                continue
            name, _sep, value = line.partition(":")
            if name != "data":
                continue
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
        data = "\n".join(data_lines)
        if data.strip():
            payloads.insert(0, data)
        return payloads

    # ---- NDJSON ----

    def _drain_lines(self, final: bool) -> List[str]:
        out: List[str] = []
        parts = self._buffer.split("\n")
        if final:
            self._buffer = ""
        else:
            self._buffer = parts.pop()
        for raw in parts:
            line = raw.strip()
            if not line:
                continue
            if is_sentinel(line):
                self.done = True
                self._buffer = ""
                break
            if line.startswith("data:"):
                line = line[5:].strip()
            try:
                json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Dropped malformed stream line", extra={"extra": {"length": len(line)}})
                continue
            out.append(line)
        return out
