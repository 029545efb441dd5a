"""后端传输层。

该包下的模块负责：
- 流式响应分帧解析 (wire)。
- 单个负载的增量文本提取 (extractor)。
- 后端线协议族分发表 (families) 与预设 (registry)。
- 出站请求构造 (request_builder)。
- 一次聊天补全调用的完整编排 (transport)。
"""

from chat_core.providers.registry import profile_from_preset
from chat_core.providers.request_builder import BuiltRequest, RequestBuilder
from chat_core.providers.transport import StreamResult, StreamState, StreamTransport

__all__ = [
    "BuiltRequest",
    "RequestBuilder",
    "StreamResult",
    "StreamState",
    "StreamTransport",
    "profile_from_preset",
]
