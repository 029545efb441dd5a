"""从单个流式负载中提取文本增量。

两种提取方式：
- 用户声明的字段路径，例如 "choices[0].delta.content"（点号访问 + 单层数组下标）。
- 后端族内置规则：按固定优先级依次尝试各族的响应形状，第一个命中的生效。

任何情况下都不抛异常：无法解析、形状不认识、路径缺失都返回空字符串。
"""

import json
import re
from typing import Any, Iterable, Optional

from chat_core.domain.exceptions import ExtractionError
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.families import DEFAULT_CONTENT_PATHS, get_family
from chat_core.providers.wire import is_sentinel

_INDEXED_SEGMENT = re.compile(r"^(?P<key>[^\[\]]*)\[(?P<index>\d+)\]$")


def resolve_path(obj: Any, path: str) -> Any:
    """按点号路径取值，任一段缺失时返回 None。"""

    current = obj
    for segment in path.split("."):
        if current is None:
            return None
        match = _INDEXED_SEGMENT.match(segment)
        if match:
            key = match.group("key")
            if key:
                current = current.get(key) if isinstance(current, dict) else None
            index = int(match.group("index"))
            if isinstance(current, list) and 0 <= index < len(current):
                current = current[index]
            else:
                return None
        else:
            current = current.get(segment) if isinstance(current, dict) else None
    return current


def decode_payload(payload: str) -> Any:
    """严格解析一个负载，失败时抛 ExtractionError。"""

    text = payload.strip()
    if text.startswith("data:"):
        text = text[5:].strip()
    if not text:
        raise ExtractionError(code="EMPTY_PAYLOAD", message="empty payload")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ExtractionError(code="INVALID_PAYLOAD", message=str(e))


def first_text(obj: Any, paths: Iterable[str]) -> str:
    for path in paths:
        value = resolve_path(obj, path)
        if isinstance(value, str) and value:
            return value
    return ""


class ResponseExtractor:
    """按后端族或声明路径提取增量文本。

    content_path 优先于 family；两者都没有时使用通用规则顺序。
    """

    def __init__(self, family: Optional[str] = None, content_path: Optional[str] = None):
        self._content_path = content_path
        self._paths = get_family(family).content_paths if family else DEFAULT_CONTENT_PATHS

    def extract(self, payload: str) -> str:
        if is_sentinel(payload):
            return ""
        try:
            parsed = decode_payload(payload)
        except ExtractionError as e:
            logger.debug("Unparseable stream payload", extra={"extra": {"code": e.code}})
            return ""
        return self.extract_parsed(parsed)

    def extract_parsed(self, parsed: Any) -> str:
        if self._content_path:
            value = resolve_path(parsed, self._content_path)
            return value if isinstance(value, str) else ""
        return first_text(parsed, self._paths)
