"""对外 API 服务模块。

提供组装入口与简化的函数接口供上层应用（UI、脚本）调用。
远端存储与身份提供方由上层注入，其余依赖按 settings 默认构造。
"""

from typing import Any, Dict, List, Optional

from chat_core.agents.session_controller import ChatSessionController, Notifier
from chat_core.config.settings import settings
from chat_core.domain.codec import format_ts
from chat_core.domain.collaborators import IdentityProvider, LocalStorage, RemoteStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import BackendProfile, ConflictStrategy
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonFileStorage
from chat_core.providers.transport import StreamTransport
from chat_core.sync.journal import ChangeJournal
from chat_core.sync.reconcile import ReconciliationEngine
from chat_core.sync.replica import LocalReplicaStore


_controller: Optional[ChatSessionController] = None


def build_controller(
    remote: RemoteStore,
    identity: IdentityProvider,
    storage: Optional[LocalStorage] = None,
    transport: Optional[StreamTransport] = None,
    strategy: Optional[ConflictStrategy] = None,
    notifier: Optional[Notifier] = None,
) -> ChatSessionController:
    """按当前用户组装一个会话控制器，并从本地缓存恢复会话副本。"""
    storage = storage or JsonFileStorage(root=settings.storage_root)
    replica = LocalReplicaStore(storage, user_id=identity.user_id)
    loaded = replica.load()
    journal = ChangeJournal(storage, user_id=identity.user_id)
    engine = ReconciliationEngine(replica, journal, remote, strategy=strategy)
    logger.info(
        "Controller ready",
        extra={"extra": {
            "user_id": identity.user_id,
            "cached_conversations": loaded,
            "pending_changes": len(journal),
            "strategy": engine.strategy.value,
        }},
    )
    return ChatSessionController(
        replica,
        journal,
        remote,
        identity,
        transport=transport,
        engine=engine,
        notifier=notifier,
    )


def configure(remote: RemoteStore, identity: IdentityProvider, **kwargs) -> ChatSessionController:
    """设置默认控制器（单例）。用户切换时重新调用即可。"""
    global _controller
    _controller = build_controller(remote, identity, **kwargs)
    return _controller


def get_default_controller() -> ChatSessionController:
    if _controller is None:
        raise BusinessError(code="NOT_CONFIGURED", message="Call configure() before using the service API", http_status=500)
    return _controller


async def run_chat(
    user_input: str,
    profile: BackendProfile,
    conversation_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """发送一条消息并等待回复结束。

    Returns:
        包含会话ID、助手消息与最终状态的字典；输入为空或会话忙碌时返回 None。

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    controller = get_default_controller()
    try:
        outcome = await controller.send_message(conversation_id, user_input, profile)
    except BusinessError as e:
        logger.error(f"Chat failed: {e.message}", extra={"extra": {
            "conversation_id": conversation_id,
            "code": e.code,
        }})
        raise
    if outcome is None:
        return None
    return {
        "conversation_id": outcome.conversation_id,
        "assistant_message": {
            "id": outcome.assistant_message_id,
            "content": outcome.content,
        },
        "state": outcome.state.value,
        "error": outcome.error.message if outcome.error else None,
        "persisted": outcome.persisted,
        "title": outcome.title,
    }


def list_conversations() -> List[Dict[str, Any]]:
    """列出所有会话。

    Returns:
        会话列表，每项包含 id, title, message_count, created_at, updated_at, is_saved
    """
    controller = get_default_controller()
    return [
        {
            "id": c.id,
            "title": c.title,
            "message_count": len(c.messages),
            "created_at": format_ts(c.created_at),
            "updated_at": format_ts(c.updated_at),
            "is_saved": c.is_saved,
            "busy": controller.is_busy(c.id),
        }
        for c in controller.conversations()
    ]


def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息。"""
    conv = get_default_controller().get_conversation(conversation_id)
    return [
        {
            "id": m.id,
            "role": m.role,
            "content": m.content,
            "timestamp": format_ts(m.timestamp),
            "model_name": m.model_name,
            "attachments": [{"type": a.type, "url": a.url, "file_name": a.file_name} for a in m.attachments],
        }
        for m in conv.messages
    ]


async def translate(
    text: str,
    source_language: str,
    target_language: str,
    profile: BackendProfile,
) -> Dict[str, Any]:
    """翻译一段文本。

    Returns:
        包含 translated_text, success, error 的字典
    """
    result = await get_default_controller().translate(text, source_language, target_language, profile)
    return {
        "translated_text": result.translated_text,
        "success": result.success,
        "error": result.error,
    }
