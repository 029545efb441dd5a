"""会话控制器。

把流式传输层、本地副本、离线变更日志与同步引擎串起来，对 UI 暴露一组会话操作：
新建 / 重命名 / 删除 / 清空会话，发送 / 重试 / 编辑 / 分支 / 删除消息，停止生成，
以及连通性变化时的同步。

持久化规则：
- 在线时直接写远端；update 返回 None（远端不存在）时回退到 create。
- 写远端抛出 RemoteStoreError 时降级为离线模式，通知一次，并把本次修改记入离线变更日志。
- 离线时所有修改只写本地副本与离线变更日志，恢复连接后由同步引擎回放。

同一会话同时只允许一个进行中的生成，忙碌的会话不会被同步引擎触碰。
"""

import asyncio
import copy
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Set
from uuid import uuid4

from chat_core.agents.title import generate_title
from chat_core.agents.translation import TranslationResult, translate_text
from chat_core.config.settings import settings
from chat_core.domain.codec import conversation_changes, conversation_to_dict, format_ts, messages_to_list
from chat_core.domain.collaborators import IdentityProvider, RemoteStore
from chat_core.domain.exceptions import (
    BusinessError,
    MessageNotFoundError,
    RemoteStoreError,
    TemplateError,
    ValidationError,
)
from chat_core.domain.models import Attachment, BackendProfile, ChangeKind, Conversation, Message, utcnow
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.transport import StreamState, StreamTransport
from chat_core.sync.journal import ChangeJournal
from chat_core.sync.reconcile import ReconciliationEngine, SyncReport
from chat_core.sync.replica import DEFAULT_TITLE, LocalReplicaStore

# (level, message)，level 为 "info" / "warning" / "error"
Notifier = Callable[[str, str], None]

OFFLINE_NOTICE = "网络连接已断开，已切换到离线模式，修改将在恢复连接后同步"
BRANCH_SUFFIX = " (分支)"
EXPORT_LABELS = {"user": "用户", "assistant": "AI助手", "system": "系统"}


@dataclass
class SendOutcome:
    """一次发送 / 重试 / 编辑的结果。

    persisted 表示本次结果已直接写入远端；False 时修改在离线变更日志中等待同步。
    title 为首轮问答后在等待窗口内生成的标题。
    """

    conversation_id: str
    assistant_message_id: str
    state: StreamState
    content: str = ""
    error: Optional[BusinessError] = None
    persisted: bool = False
    title: Optional[str] = None


def _log_notice(level: str, message: str) -> None:
    logger.info("User notice", extra={"extra": {"level": level, "notice": message}})


def _after(ts: datetime) -> datetime:
    """返回严格晚于 ts 的当前时间，保证助手消息排在对应的用户消息之后。"""

    return max(utcnow(), ts + timedelta(milliseconds=1))


class ChatSessionController:
    def __init__(
        self,
        replica: LocalReplicaStore,
        journal: ChangeJournal,
        remote: RemoteStore,
        identity: IdentityProvider,
        transport: Optional[StreamTransport] = None,
        engine: Optional[ReconciliationEngine] = None,
        notifier: Optional[Notifier] = None,
        title_timeout: Optional[float] = None,
        title_max_width: Optional[int] = None,
        translation_timeout: Optional[float] = None,
    ):
        self._replica = replica
        self._journal = journal
        self._remote = remote
        self._identity = identity
        self._transport = transport or StreamTransport()
        self._engine = engine or ReconciliationEngine(replica, journal, remote)
        self._notify = notifier or _log_notice
        self._title_timeout = title_timeout if title_timeout is not None else settings.title_timeout
        self._title_max_width = title_max_width or settings.title_max_width
        self._translation_timeout = translation_timeout
        self._offline = not identity.is_online()
        # 进行中的生成：conversation_id -> 取消信号
        self._inflight: Dict[str, asyncio.Event] = {}
        self._background: Set[asyncio.Task] = set()

    # ---- 状态 ----

    @property
    def is_offline(self) -> bool:
        return self._offline

    @property
    def busy_ids(self) -> FrozenSet[str]:
        return frozenset(self._inflight)

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._inflight

    def conversations(self) -> List[Conversation]:
        return self._replica.list_conversations()

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self._replica.get(conversation_id)

    # ---- 会话级操作 ----

    async def create_conversation(self, title: str = DEFAULT_TITLE) -> Conversation:
        conv = self._replica.create_conversation(title)
        await self._persist_create(conv)
        return conv

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        title = title.strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="Title must not be empty", conversation_id=conversation_id)
        conv = self._replica.rename(conversation_id, title)
        payload = {"title": conv.title, "updated_at": format_ts(conv.updated_at)}

        async def push() -> None:
            updated = await self._remote.update_conversation(self._user_id, conv.id, payload)
            if updated is None:
                await self._remote.create_conversation(self._user_id, self._replica.get(conv.id))

        await self._write_through(ChangeKind.UPDATE_TITLE, conv.id, payload, push)
        return conv

    async def delete_conversation(self, conversation_id: str) -> bool:
        """删除会话。正在生成的会话不能删除，返回 False。"""

        if self.is_busy(conversation_id):
            logger.warning("Delete rejected: conversation busy", extra={"extra": {"conversation_id": conversation_id}})
            return False
        self._replica.remove(conversation_id)

        async def push() -> None:
            await self._remote.delete_conversation(self._user_id, conversation_id)

        await self._write_through(ChangeKind.DELETE_CONVERSATION, conversation_id, {}, push)
        return True

    async def clear_conversation(self, conversation_id: str) -> Conversation:
        if self.is_busy(conversation_id):
            raise ValidationError(code="CONVERSATION_BUSY", message="Conversation is generating", conversation_id=conversation_id)
        conv = self._replica.replace_messages(conversation_id, [])
        await self._persist_messages(conversation_id)
        return conv

    async def branch_conversation(self, conversation_id: str, message_id: Optional[str] = None) -> Conversation:
        """从指定消息（默认最后一条用户消息）处分出一个新会话，包含该消息及之前的全部消息。"""

        source = self._replica.get(conversation_id)
        if message_id is None:
            user_indices = [i for i, m in enumerate(source.messages) if m.role == "user"]
            if not user_indices:
                raise ValidationError(code="NOTHING_TO_BRANCH", message="No user message to branch from", conversation_id=conversation_id)
            cut = user_indices[-1]
        else:
            cut = self._index_of(source, message_id)

        messages = []
        for msg in source.messages[: cut + 1]:
            cloned = copy.deepcopy(msg)
            cloned.id = str(uuid4())
            messages.append(cloned)
        conv = self._replica.create_conversation(f"{source.title}{BRANCH_SUFFIX}", messages=messages)
        if source.is_saved:
            conv = self._replica.mark_saved(conv.id, at=conv.updated_at)
        await self._persist_create(conv)
        logger.info(
            "Branched conversation",
            extra={"extra": {"source_id": conversation_id, "branch_id": conv.id, "messages": len(messages)}},
        )
        return conv

    # ---- 消息级操作 ----

    async def send_message(
        self,
        conversation_id: Optional[str],
        content: str,
        profile: BackendProfile,
        attachments: Optional[List[Attachment]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[SendOutcome]:
        """发送一条用户消息并流式接收回复。

        输入为空或会话正在生成时忽略本次调用，返回 None。
        conversation_id 为 None 时先新建会话。
        """

        text = (content or "").strip()
        if not text and not attachments:
            return None
        if conversation_id is not None and self.is_busy(conversation_id):
            logger.warning("Send ignored: conversation busy", extra={"extra": {"conversation_id": conversation_id}})
            return None
        if attachments and not profile.supports_multimodal:
            logger.warning(
                "Backend does not accept attachments, they will not be sent",
                extra={"extra": {"profile_id": profile.id, "attachments": len(attachments)}},
            )

        if conversation_id is None:
            conv = await self.create_conversation()
        else:
            conv = self._replica.get(conversation_id)
        is_first = not conv.messages

        user_msg = Message(
            id=str(uuid4()),
            role="user",
            content=text,
            timestamp=utcnow(),
            attachments=list(attachments or []),
        )
        placeholder = self._placeholder(profile, after=user_msg.timestamp)
        self._replica.append_messages(conv.id, user_msg, placeholder)
        history = conv.messages + [user_msg]
        return await self._exchange(conv.id, history, placeholder.id, profile, cancel, first_message=text if is_first else None)

    async def retry_message(
        self,
        conversation_id: str,
        assistant_message_id: str,
        profile: BackendProfile,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[SendOutcome]:
        """重新生成一条助手回复：截掉它之后的消息，用它之前的历史再请求一次。"""

        if self.is_busy(conversation_id):
            return None
        conv = self._replica.get(conversation_id)
        idx = self._index_of(conv, assistant_message_id)
        target = conv.messages[idx]
        if target.role != "assistant" or idx == 0 or conv.messages[idx - 1].role != "user":
            raise ValidationError(
                code="NOT_RETRYABLE",
                message="Only an assistant reply to a user message can be retried",
                conversation_id=conversation_id,
                message_id=assistant_message_id,
            )

        history = conv.messages[:idx]
        placeholder = self._placeholder(profile, after=history[-1].timestamp, message_id=target.id)
        placeholder.timestamp = target.timestamp
        self._replica.replace_messages(conversation_id, history + [placeholder])
        return await self._exchange(conversation_id, history, placeholder.id, profile, cancel)

    async def edit_message(
        self,
        conversation_id: str,
        user_message_id: str,
        content: str,
        profile: BackendProfile,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[SendOutcome]:
        """编辑一条用户消息并重新生成回复，该消息之后的内容被丢弃。"""

        text = (content or "").strip()
        if not text or self.is_busy(conversation_id):
            return None
        conv = self._replica.get(conversation_id)
        idx = self._index_of(conv, user_message_id)
        edited = conv.messages[idx]
        if edited.role != "user":
            raise ValidationError(
                code="NOT_EDITABLE",
                message="Only user messages can be edited",
                conversation_id=conversation_id,
                message_id=user_message_id,
            )
        edited.content = text

        following = conv.messages[idx + 1] if idx + 1 < len(conv.messages) else None
        reuse_id = following.id if following is not None and following.role == "assistant" else None
        placeholder = self._placeholder(profile, after=edited.timestamp, message_id=reuse_id)
        history = conv.messages[:idx] + [edited]
        self._replica.replace_messages(conversation_id, history + [placeholder])
        return await self._exchange(conversation_id, history, placeholder.id, profile, cancel)

    async def delete_message(self, conversation_id: str, message_id: str) -> List[str]:
        """删除一条消息及与之配对的消息（用户消息连同其后的回复，回复连同其前的提问）。"""

        if self.is_busy(conversation_id):
            raise ValidationError(code="CONVERSATION_BUSY", message="Conversation is generating", conversation_id=conversation_id)
        conv = self._replica.get(conversation_id)
        idx = self._index_of(conv, message_id)
        doomed = {idx}
        msg = conv.messages[idx]
        if msg.role == "user" and idx + 1 < len(conv.messages) and conv.messages[idx + 1].role == "assistant":
            doomed.add(idx + 1)
        elif msg.role == "assistant" and idx > 0 and conv.messages[idx - 1].role == "user":
            doomed.add(idx - 1)

        removed = [conv.messages[i].id for i in sorted(doomed)]
        kept = [m for i, m in enumerate(conv.messages) if i not in doomed]
        self._replica.replace_messages(conversation_id, kept)
        await self._persist_messages(conversation_id)
        return removed

    def stop_generation(self, conversation_id: str) -> bool:
        cancel = self._inflight.get(conversation_id)
        if cancel is None:
            return False
        cancel.set()
        logger.info("Generation stop requested", extra={"extra": {"conversation_id": conversation_id}})
        return True

    def export_conversation(self, conversation_id: str) -> str:
        conv = self._replica.get(conversation_id)
        lines = [f"# {conv.title}", ""]
        for msg in conv.messages:
            label = EXPORT_LABELS.get(msg.role, msg.role)
            lines.append(f"{label}: {msg.content}")
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    # ---- 同步 ----

    async def set_connectivity(self, online: bool) -> Optional[SyncReport]:
        """连通性变化的入口。离线 → 在线时触发一次同步并返回报告。"""

        if not online:
            if not self._offline:
                self._offline = True
                self._notify("warning", OFFLINE_NOTICE)
            return None
        if not self._offline:
            return None
        return await self.synchronize()

    async def synchronize(self) -> SyncReport:
        report = await self._engine.reconcile(self._user_id, skip_ids=self.busy_ids, is_busy=self.is_busy)
        if report.error is None:
            self._offline = False
        self._notify("info" if report.ok else "warning", report.summary())
        return report

    async def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
        profile: BackendProfile,
        on_update: Optional[Callable[[str], None]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> TranslationResult:
        """用当前后端翻译一段文本，不读写任何会话。"""

        return await translate_text(
            self._transport,
            profile,
            text,
            source_language,
            target_language,
            on_update=on_update,
            cancel=cancel,
            timeout=self._translation_timeout,
        )

    async def wait_background(self) -> None:
        """等待后台任务（例如超时后仍在进行的标题生成）结束。"""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---- 内部：生成 ----

    async def _exchange(
        self,
        conversation_id: str,
        history: List[Message],
        assistant_id: str,
        profile: BackendProfile,
        cancel: Optional[asyncio.Event],
        first_message: Optional[str] = None,
    ) -> SendOutcome:
        cancel = cancel or asyncio.Event()
        self._inflight[conversation_id] = cancel
        try:
            result = await self._transport.send(
                profile,
                history,
                on_update=lambda text: self._replica.set_message_content(conversation_id, assistant_id, text),
                cancel=cancel,
            )
        except asyncio.CancelledError:
            self._drop_placeholder(conversation_id, assistant_id)
            raise
        finally:
            self._inflight.pop(conversation_id, None)

        outcome = SendOutcome(
            conversation_id=conversation_id,
            assistant_message_id=assistant_id,
            state=result.state,
            content=result.content,
            error=result.error,
        )

        if result.state is StreamState.COMPLETED:
            self._replica.mark_saved(conversation_id)
            outcome.persisted = await self._persist_messages(conversation_id)
            if first_message:
                outcome.title = await self._title_with_deadline(conversation_id, first_message, profile)
            return outcome

        if result.state is StreamState.ABORTED:
            if result.content:
                self._replica.save()
                outcome.persisted = await self._persist_messages(conversation_id)
            else:
                self._drop_placeholder(conversation_id, assistant_id)
            return outcome

        self._drop_placeholder(conversation_id, assistant_id)
        message = result.error.message if result.error else "unknown error"
        self._notify("error", f"发送消息失败：{message}")
        if isinstance(result.error, TemplateError):
            raise result.error
        return outcome

    def _placeholder(self, profile: BackendProfile, after: datetime, message_id: Optional[str] = None) -> Message:
        return Message(
            id=message_id or str(uuid4()),
            role="assistant",
            content="",
            timestamp=_after(after),
            model_name=profile.display_model,
            model_id=profile.id,
        )

    def _drop_placeholder(self, conversation_id: str, message_id: str) -> None:
        try:
            self._replica.remove_message(conversation_id, message_id)
        except BusinessError as e:
            logger.warning("Placeholder already gone", extra={"extra": {"conversation_id": conversation_id, "error": e.message}})

    # ---- 内部：标题 ----

    async def _title_with_deadline(self, conversation_id: str, first_message: str, profile: BackendProfile) -> Optional[str]:
        """等待标题生成至多 title_timeout 秒；超时后任务继续在后台完成并写入标题。"""

        task = asyncio.ensure_future(self._apply_title(conversation_id, first_message, profile))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._title_timeout)
        except asyncio.TimeoutError:
            logger.info("Title generation still running", extra={"extra": {"conversation_id": conversation_id}})
            return None

    async def _apply_title(self, conversation_id: str, first_message: str, profile: BackendProfile) -> Optional[str]:
        title = await generate_title(self._transport, profile, first_message, self._title_max_width)
        if not title or conversation_id not in self._replica:
            return None
        try:
            await self.rename_conversation(conversation_id, title)
        except BusinessError as e:
            logger.warning("Failed to apply generated title", extra={"extra": {"conversation_id": conversation_id, "error": e.message}})
            return None
        return title

    # ---- 内部：持久化 ----

    @property
    def _user_id(self) -> str:
        return self._identity.user_id

    async def _persist_create(self, conv: Conversation) -> bool:
        async def push() -> None:
            await self._remote.create_conversation(self._user_id, conv)

        return await self._write_through(
            ChangeKind.CREATE_CONVERSATION, conv.id, {"conversation": conversation_to_dict(conv)}, push
        )

    async def _persist_messages(self, conversation_id: str) -> bool:
        conv = self._replica.get(conversation_id)
        payload = {"messages": messages_to_list(conv.messages), "updated_at": format_ts(conv.updated_at)}

        async def push() -> None:
            updated = await self._remote.update_conversation(self._user_id, conv.id, conversation_changes(conv))
            if updated is None:
                await self._remote.create_conversation(self._user_id, conv)

        return await self._write_through(ChangeKind.UPDATE_MESSAGES, conversation_id, payload, push)

    async def _write_through(
        self,
        kind: ChangeKind,
        conversation_id: str,
        payload: Dict,
        push: Callable[[], Awaitable[None]],
    ) -> bool:
        """在线时写远端并返回 True；离线或写失败时记入离线变更日志并返回 False。"""

        if not self._offline:
            try:
                await push()
                return True
            except RemoteStoreError as e:
                logger.warning(
                    "Remote write failed, switching to offline mode",
                    extra={"extra": {"kind": kind.value, "conversation_id": conversation_id, "error": e.message}},
                )
                self._offline = True
                self._notify("warning", OFFLINE_NOTICE)
        self._journal.record(kind, conversation_id, payload)
        return False

    @staticmethod
    def _index_of(conv: Conversation, message_id: str) -> int:
        for i, msg in enumerate(conv.messages):
            if msg.id == message_id:
                return i
        raise MessageNotFoundError(code="MESSAGE_NOT_FOUND", message=message_id, conversation_id=conv.id)
