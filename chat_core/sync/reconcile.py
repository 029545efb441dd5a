"""本地副本与远端存储的对账。

一次对账（离线 → 在线时触发，或显式调用）：

1. 拉取当前用户的远端会话快照。
2. 两边都存在的会话，updated_at 不同或消息序列不同即视为冲突。
3. 按策略解决冲突：local / remote 无条件替换；latest 取 updated_at 较大的一方；
   merge 按消息 id 取并集、按时间排序，标题取较新一方，updated_at 取两者最大值。
4. 逐个持久化解决结果。单个失败不影响其余会话，失败会话的离线变更保留不回放。
5. 按原始时间顺序回放离线变更日志，成功移除，失败保留；
   对发生过冲突的会话，update_messages 回放的是合并结果而不是排队时的原始内容。
6. 返回已同步 / 仍待处理的计数。

引擎是幂等的，部分失败后可以安全地再次调用。
正在流式生成的会话由调用方通过 skip_ids 与 is_busy 排除，本轮不触碰；
对账进行中才开始生成的会话同样会在下一次触碰前被 is_busy 拦下。
"""

import copy
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from chat_core.config.settings import settings
from chat_core.domain.codec import (
    conversation_changes,
    conversation_from_dict,
    format_ts,
    messages_from_list,
    messages_to_list,
)
from chat_core.domain.collaborators import RemoteStore
from chat_core.domain.exceptions import RemoteStoreError
from chat_core.domain.models import (
    ChangeKind,
    ChangeRecord,
    ConflictRecord,
    ConflictStrategy,
    Conversation,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.sync.journal import ChangeJournal
from chat_core.sync.replica import LocalReplicaStore


@dataclass
class SyncReport:
    """一次对账的汇总。pending 为仍待处理的条目数（未清空的日志条目 + 持久化失败的冲突）。"""

    synced: int = 0
    pending: int = 0
    conflicts: int = 0
    pulled: int = 0
    failed_ids: List[str] = field(default_factory=list)
    skipped_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.pending == 0

    def summary(self) -> str:
        if self.error:
            return f"同步失败：{self.error}，{self.pending} 项待同步"
        if self.pending:
            return f"已同步 {self.synced} 项，{self.pending} 项待同步"
        return f"已同步 {self.synced} 项"


def _signature(conv: Conversation) -> List[Tuple]:
    return [(m.id, m.role, m.content, m.timestamp) for m in conv.messages]


def detect_conflict(local: Conversation, remote: Conversation) -> bool:
    """updated_at 不同或消息序列逐条不同即为冲突，不会漏报。"""

    if local.updated_at != remote.updated_at:
        return True
    return _signature(local) != _signature(remote)


def merge_conversations(local: Conversation, remote: Conversation) -> Conversation:
    """合并两份快照，是唯一能同时保留两边独立修改的策略。

    同一 id 的消息取 updated_at 较新一方的版本（相同时取 local）。
    排序稳定：时间戳相同的消息保持 local 在前的相对顺序。
    """

    newer = remote if remote.updated_at > local.updated_at else local
    order: List[str] = []
    by_id = {}
    for msg in list(local.messages) + list(remote.messages):
        if msg.id not in by_id:
            order.append(msg.id)
            by_id[msg.id] = msg
    for msg in newer.messages:
        by_id[msg.id] = msg
    messages = sorted((copy.deepcopy(by_id[mid]) for mid in order), key=lambda m: m.timestamp)
    return Conversation(
        id=local.id,
        title=newer.title,
        messages=messages,
        created_at=min(local.created_at, remote.created_at),
        updated_at=max(local.updated_at, remote.updated_at),
        is_saved=local.is_saved or remote.is_saved,
    )


def resolve_conflict(conflict: ConflictRecord) -> Conversation:
    local, remote = conflict.local, conflict.remote
    if conflict.strategy is ConflictStrategy.LOCAL_WINS:
        resolved = copy.deepcopy(local)
    elif conflict.strategy is ConflictStrategy.REMOTE_WINS:
        resolved = copy.deepcopy(remote)
    elif conflict.strategy is ConflictStrategy.LATEST_WINS:
        resolved = copy.deepcopy(remote if remote.updated_at > local.updated_at else local)
    else:
        resolved = merge_conversations(local, remote)
    conflict.resolved = True
    conflict.resolved_snapshot = resolved
    return resolved


class _BusyGuard:
    """本轮不触碰的会话：调用方给出的 skip_ids 加上实时的忙碌检查。"""

    def __init__(self, skip_ids: Iterable[str], is_busy: Optional[Callable[[str], bool]]):
        self.skipped = set(skip_ids)
        self._is_busy = is_busy

    def blocks(self, conversation_id: str) -> bool:
        if conversation_id in self.skipped:
            return True
        if self._is_busy is not None and self._is_busy(conversation_id):
            self.skipped.add(conversation_id)
            return True
        return False


class ReconciliationEngine:
    def __init__(
        self,
        replica: LocalReplicaStore,
        journal: ChangeJournal,
        remote: RemoteStore,
        strategy: Optional[ConflictStrategy] = None,
    ):
        self._replica = replica
        self._journal = journal
        self._remote = remote
        self.strategy = strategy or ConflictStrategy(settings.conflict_strategy)

    async def reconcile(
        self,
        user_id: str,
        skip_ids: Iterable[str] = (),
        is_busy: Optional[Callable[[str], bool]] = None,
    ) -> SyncReport:
        """is_busy 在每次触碰会话前实时检查，覆盖对账进行中才开始生成的会话。"""

        report = SyncReport()
        guard = _BusyGuard(skip_ids, is_busy)
        log_ctx = {"user_id": user_id, "strategy": self.strategy.value}

        try:
            remote_list = await self._remote.list_conversations(user_id)
        except RemoteStoreError as e:
            report.error = e.message
            report.pending = len(self._journal)
            logger.error("Reconciliation aborted: remote unavailable", extra={"extra": {**log_ctx, "error": e.message}})
            return report
        remote_by_id = {c.id: c for c in remote_list}

        resolutions = await self._resolve_conflicts(user_id, remote_by_id, guard, report)
        self._pull_remote_only(remote_by_id, guard, report)
        await self._replay_journal(user_id, remote_by_id, resolutions, guard, report)

        report.pending = len(self._journal) + len(report.failed_ids)
        report.skipped_ids = sorted(guard.skipped & (set(self._replica.ids()) | set(remote_by_id)))
        logger.info(
            "Reconciliation finished",
            extra={"extra": {
                **log_ctx,
                "synced": report.synced,
                "pending": report.pending,
                "conflicts": report.conflicts,
                "pulled": report.pulled,
            }},
        )
        return report

    # ---- 冲突 ----

    async def _resolve_conflicts(
        self,
        user_id: str,
        remote_by_id: Dict[str, Conversation],
        guard: "_BusyGuard",
        report: SyncReport,
    ) -> Dict[str, Conversation]:
        resolutions: Dict[str, Conversation] = {}
        for conv_id in self._replica.ids():
            remote = remote_by_id.get(conv_id)
            if remote is None or guard.blocks(conv_id):
                continue
            # 上一轮 await 期间本地可能已变化，读取与写回之间不能有 await
            local = self._replica.get(conv_id)
            if not detect_conflict(local, remote):
                continue
            report.conflicts += 1
            conflict = ConflictRecord(conversation_id=conv_id, local=local, remote=remote, strategy=self.strategy)
            resolved = resolve_conflict(conflict)
            resolutions[conv_id] = resolved
            self._replica.put(resolved)
            if not detect_conflict(resolved, remote):
                # 远端已经是解决结果，无需写回
                report.synced += 1
                continue
            try:
                await self._upsert(user_id, resolved)
            except RemoteStoreError as e:
                report.failed_ids.append(conv_id)
                logger.warning(
                    "Failed to persist conflict resolution",
                    extra={"extra": {"conversation_id": conv_id, "error": e.message}},
                )
                continue
            remote_by_id[conv_id] = resolved
            report.synced += 1
        return resolutions

    def _pull_remote_only(self, remote_by_id: Dict[str, Conversation], guard: "_BusyGuard", report: SyncReport) -> None:
        queued_deletes = {
            r.target_id for r in self._journal.pending() if r.kind is ChangeKind.DELETE_CONVERSATION
        }
        for conv_id, remote in remote_by_id.items():
            if conv_id in self._replica or conv_id in queued_deletes or guard.blocks(conv_id):
                continue
            self._replica.put(remote)
            report.pulled += 1

    # ---- 回放 ----

    async def _replay_journal(
        self,
        user_id: str,
        remote_by_id: Dict[str, Conversation],
        resolutions: Dict[str, Conversation],
        guard: "_BusyGuard",
        report: SyncReport,
    ) -> None:
        failed = set(report.failed_ids)
        for entry in self._journal.pending():
            if entry.target_id in failed or guard.blocks(entry.target_id):
                continue
            try:
                await self._replay(user_id, entry, remote_by_id, resolutions)
            except RemoteStoreError as e:
                logger.warning(
                    "Replay failed, entry kept",
                    extra={"extra": {"change_id": entry.id, "kind": entry.kind.value, "error": e.message}},
                )
                continue
            self._journal.remove(entry.id)
            report.synced += 1

    async def _replay(
        self,
        user_id: str,
        entry: ChangeRecord,
        remote_by_id: Dict[str, Conversation],
        resolutions: Dict[str, Conversation],
    ) -> None:
        conv_id = entry.target_id
        resolved = resolutions.get(conv_id)

        if entry.kind is ChangeKind.DELETE_CONVERSATION:
            await self._remote.delete_conversation(user_id, conv_id)
            remote_by_id.pop(conv_id, None)
            return

        snapshot = resolved or self._replica.find(conv_id) or self._snapshot_from_payload(entry)

        if entry.kind is ChangeKind.CREATE_CONVERSATION:
            if snapshot is None:
                return
            await self._upsert(user_id, snapshot)
            remote_by_id[conv_id] = snapshot
            return

        if resolved is not None:
            updated_at = format_ts(resolved.updated_at)
        else:
            updated_at = entry.payload.get("updated_at") or format_ts(entry.timestamp)

        if entry.kind is ChangeKind.UPDATE_TITLE:
            title = resolved.title if resolved else entry.payload.get("title", "")
            changes = {"title": title, "updated_at": updated_at}
        else:
            # 冲突过的会话回放合并结果，避免把冲突重新带回远端
            if resolved is not None:
                messages = messages_to_list(resolved.messages)
            else:
                messages = entry.payload.get("messages") or []
            changes = {
                "messages": messages,
                "updated_at": updated_at,
                "is_saved": True,
            }

        updated = await self._remote.update_conversation(user_id, conv_id, changes)
        if updated is None and snapshot is not None:
            # 远端目标已消失，回退到 create
            if entry.kind is ChangeKind.UPDATE_MESSAGES and resolved is None:
                snapshot = copy.deepcopy(snapshot)
                snapshot.messages = messages_from_list(changes["messages"])
            await self._remote.create_conversation(user_id, snapshot)
            remote_by_id[conv_id] = snapshot

    @staticmethod
    def _snapshot_from_payload(entry: ChangeRecord) -> Optional[Conversation]:
        data = entry.payload.get("conversation")
        return conversation_from_dict(data) if data else None

    async def _upsert(self, user_id: str, conv: Conversation) -> None:
        updated = await self._remote.update_conversation(user_id, conv.id, conversation_changes(conv))
        if updated is None:
            await self._remote.create_conversation(user_id, conv)
