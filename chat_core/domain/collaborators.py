"""外部协作方协议。

核心只依赖这些协议，不关心具体实现（Supabase、REST、本地文件等）：

- IdentityProvider: 提供稳定的用户标识与连通状态。
- RemoteStore: 按用户标识对会话做增删改查。update 在目标不存在时必须返回 None
  而不是抛异常，调用方据此回退到 create。其他失败一律抛 RemoteStoreError。
- LocalStorage: 以字符串为键存取不透明的结构化数据，供离线变更日志与本地缓存使用。
"""

from typing import Any, Dict, List, Optional, Protocol

from chat_core.domain.models import Conversation


class IdentityProvider(Protocol):
    user_id: str

    def is_online(self) -> bool:
        ...


class RemoteStore(Protocol):
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        """返回该用户的全部会话快照（含消息）。"""
        ...

    async def create_conversation(self, user_id: str, conversation: Conversation) -> Conversation:
        ...

    async def update_conversation(
        self,
        user_id: str,
        conversation_id: str,
        changes: Dict[str, Any],
    ) -> Optional[Conversation]:
        """changes 可包含 title / messages / updated_at / is_saved，目标不存在时返回 None。"""
        ...

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        ...


class LocalStorage(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...
