"""领域对象与 JSON 兼容 dict 之间的转换。

时间统一写成 UTC ISO-8601 并以 "Z" 结尾，读取时兼容 "+00:00" 与毫秒时间戳。
本地缓存、离线变更日志与远端存储适配器共用这一套编码。
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from chat_core.domain.models import (
    Attachment,
    ChangeKind,
    ChangeRecord,
    Conversation,
    Message,
)


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def attachment_to_dict(att: Attachment) -> Dict[str, Any]:
    return {
        "type": att.type,
        "url": att.url,
        "file_name": att.file_name,
        "file_size": att.file_size,
    }


def attachment_from_dict(data: Dict[str, Any]) -> Attachment:
    return Attachment(
        type=data["type"],
        url=data["url"],
        file_name=data.get("file_name"),
        file_size=data.get("file_size"),
    )


def message_to_dict(msg: Message) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "timestamp": format_ts(msg.timestamp),
    }
    if msg.model_name:
        payload["model_name"] = msg.model_name
    if msg.model_id:
        payload["model_id"] = msg.model_id
    if msg.attachments:
        payload["attachments"] = [attachment_to_dict(a) for a in msg.attachments]
    return payload


def message_from_dict(data: Dict[str, Any]) -> Message:
    return Message(
        id=data["id"],
        role=data["role"],
        content=data.get("content") or "",
        timestamp=parse_ts(data["timestamp"]),
        model_name=data.get("model_name"),
        model_id=data.get("model_id"),
        attachments=[attachment_from_dict(a) for a in data.get("attachments") or []],
    )


def messages_to_list(messages: List[Message]) -> List[Dict[str, Any]]:
    return [message_to_dict(m) for m in messages]


def messages_from_list(items: List[Dict[str, Any]]) -> List[Message]:
    return [message_from_dict(m) for m in items]


def conversation_to_dict(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "messages": messages_to_list(conv.messages),
        "created_at": format_ts(conv.created_at),
        "updated_at": format_ts(conv.updated_at),
        "is_saved": conv.is_saved,
    }


def conversation_from_dict(data: Dict[str, Any]) -> Conversation:
    return Conversation(
        id=data["id"],
        title=data.get("title") or "",
        messages=messages_from_list(data.get("messages") or []),
        created_at=parse_ts(data["created_at"]),
        updated_at=parse_ts(data["updated_at"]),
        is_saved=bool(data.get("is_saved", False)),
    )


def conversation_changes(conv: Conversation, include_messages: bool = True) -> Dict[str, Any]:
    """RemoteStore.update_conversation 使用的变更字段。"""

    changes: Dict[str, Any] = {
        "title": conv.title,
        "updated_at": format_ts(conv.updated_at),
        "is_saved": conv.is_saved,
    }
    if include_messages:
        changes["messages"] = messages_to_list(conv.messages)
    return changes


def change_to_dict(record: ChangeRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "kind": record.kind.value,
        "target_id": record.target_id,
        "payload": record.payload,
        "timestamp": format_ts(record.timestamp),
    }


def change_from_dict(data: Dict[str, Any]) -> ChangeRecord:
    return ChangeRecord(
        id=data["id"],
        kind=ChangeKind(data["kind"]),
        target_id=data["target_id"],
        payload=data.get("payload") or {},
        timestamp=parse_ts(data["timestamp"]),
    )
