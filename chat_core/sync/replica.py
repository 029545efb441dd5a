"""本地会话副本。

LocalReplicaStore 是调用方能看到的唯一会话列表。对外返回的都是深拷贝快照，
所有修改都必须经过本类的方法，这样流式更新与同步引擎的整体替换不会互相踩到引用。

结构性修改（新增、删除、重命名、替换消息）会立即写回本地持久化存储；
流式内容更新 set_message_content 只改内存，由调用方在完成时调用 save()。
"""

import copy
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.codec import conversation_from_dict, conversation_to_dict
from chat_core.domain.collaborators import LocalStorage
from chat_core.domain.exceptions import BusinessError, ConversationNotFoundError, MessageNotFoundError
from chat_core.domain.models import Conversation, Message, utcnow
from chat_core.infrastructure.logging.logger import logger

DEFAULT_TITLE = "新对话"


class LocalReplicaStore:
    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        user_id: str = "anonymous",
        cache_key: Optional[str] = None,
    ):
        self._storage = storage
        self._key = f"{cache_key or settings.cache_key}:{user_id}"
        # 列表顺序即展示顺序，新会话插在最前
        self._items: Dict[str, Conversation] = {}

    # ---- 持久化 ----

    def load(self) -> int:
        """从本地存储恢复副本，返回加载的会话数。损坏的条目被跳过。"""

        if self._storage is None:
            return 0
        raw = self._storage.get(self._key) or []
        items: Dict[str, Conversation] = {}
        for entry in raw:
            try:
                conv = conversation_from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipped corrupt cached conversation", extra={"extra": {"error": str(e)}})
                continue
            items[conv.id] = conv
        self._items = items
        return len(items)

    def save(self) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set(self._key, [conversation_to_dict(c) for c in self._items.values()])
        except BusinessError as e:
            # 本地缓存写失败不影响内存中的副本
            logger.error("Failed to persist local replica", extra={"extra": {"code": e.code, "error": e.message}})

    # ---- 查询 ----

    def list_conversations(self) -> List[Conversation]:
        return [copy.deepcopy(c) for c in self._items.values()]

    def ids(self) -> List[str]:
        return list(self._items)

    def get(self, conversation_id: str) -> Conversation:
        return copy.deepcopy(self._require(conversation_id))

    def find(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._items.get(conversation_id)
        return copy.deepcopy(conv) if conv else None

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    # ---- 会话级修改 ----

    def create_conversation(
        self,
        title: str = DEFAULT_TITLE,
        conversation_id: Optional[str] = None,
        messages: Optional[Iterable[Message]] = None,
    ) -> Conversation:
        now = utcnow()
        conv = Conversation(
            id=conversation_id or str(uuid4()),
            title=title,
            messages=[copy.deepcopy(m) for m in messages or []],
            created_at=now,
            updated_at=now,
        )
        self.put(conv)
        return copy.deepcopy(conv)

    def put(self, conversation: Conversation) -> None:
        """整体写入一个会话；已存在时原位替换，不存在时插在最前。"""

        conv = copy.deepcopy(conversation)
        conv.messages.sort(key=lambda m: m.timestamp)
        if conv.id in self._items:
            self._items[conv.id] = conv
        else:
            self._items = {conv.id: conv, **self._items}
        self.save()

    def remove(self, conversation_id: str) -> Conversation:
        conv = self._require(conversation_id)
        del self._items[conversation_id]
        self.save()
        return conv

    def rename(self, conversation_id: str, title: str, at: Optional[datetime] = None) -> Conversation:
        conv = self._require(conversation_id)
        conv.title = title
        conv.updated_at = at or utcnow()
        self.save()
        return copy.deepcopy(conv)

    def mark_saved(self, conversation_id: str, at: Optional[datetime] = None) -> Conversation:
        conv = self._require(conversation_id)
        conv.is_saved = True
        conv.updated_at = at or utcnow()
        self.save()
        return copy.deepcopy(conv)

    # ---- 消息级修改 ----

    def append_messages(self, conversation_id: str, *messages: Message) -> Conversation:
        conv = self._require(conversation_id)
        conv.messages.extend(copy.deepcopy(m) for m in messages)
        conv.updated_at = utcnow()
        self.save()
        return copy.deepcopy(conv)

    def replace_messages(
        self,
        conversation_id: str,
        messages: Iterable[Message],
        at: Optional[datetime] = None,
    ) -> Conversation:
        conv = self._require(conversation_id)
        conv.messages = [copy.deepcopy(m) for m in messages]
        conv.updated_at = at or utcnow()
        self.save()
        return copy.deepcopy(conv)

    def set_message_content(self, conversation_id: str, message_id: str, content: str) -> None:
        """流式更新：只改内存，不刷新 updated_at，也不落盘。"""

        self._require_message(conversation_id, message_id).content = content

    def remove_message(self, conversation_id: str, message_id: str) -> None:
        conv = self._require(conversation_id)
        before = len(conv.messages)
        conv.messages = [m for m in conv.messages if m.id != message_id]
        if len(conv.messages) == before:
            raise MessageNotFoundError(code="MESSAGE_NOT_FOUND", message=message_id, conversation_id=conversation_id)
        self.save()

    # ---- 内部 ----

    def _require(self, conversation_id: str) -> Conversation:
        conv = self._items.get(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        return conv

    def _require_message(self, conversation_id: str, message_id: str) -> Message:
        for msg in self._require(conversation_id).messages:
            if msg.id == message_id:
                return msg
        raise MessageNotFoundError(code="MESSAGE_NOT_FOUND", message=message_id, conversation_id=conversation_id)
