"""离线优先的同步子系统。

- replica: 本地会话副本，调用方可见的唯一读模型。
- journal: 远端不可达期间的离线变更日志（outbox）。
- reconcile: 恢复连接后的冲突检测、解决与日志回放。
"""

from chat_core.sync.journal import ChangeJournal
from chat_core.sync.reconcile import ReconciliationEngine, SyncReport, merge_conversations
from chat_core.sync.replica import LocalReplicaStore

__all__ = [
    "ChangeJournal",
    "LocalReplicaStore",
    "ReconciliationEngine",
    "SyncReport",
    "merge_conversations",
]
