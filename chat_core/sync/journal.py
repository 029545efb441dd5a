"""离线变更日志（outbox）。

远端不可达时，修改操作把"本应产生的效果"记成 ChangeRecord 追加到这里；
恢复连接后由 ReconciliationEngine 按原始时间顺序回放，成功一条移除一条，
失败的保留到下一轮。每条记录有唯一 id，移除后不会被再次回放。
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.codec import change_from_dict, change_to_dict
from chat_core.domain.collaborators import LocalStorage
from chat_core.domain.models import ChangeKind, ChangeRecord, utcnow
from chat_core.infrastructure.logging.logger import logger


class ChangeJournal:
    def __init__(self, storage: LocalStorage, user_id: str, journal_key: Optional[str] = None):
        self._storage = storage
        self._key = f"{journal_key or settings.journal_key}:{user_id}"
        self._records: List[ChangeRecord] = self._load()

    def record(
        self,
        kind: ChangeKind,
        target_id: str,
        payload: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> ChangeRecord:
        entry = ChangeRecord(
            id=f"chg-{uuid4().hex}",
            kind=kind,
            target_id=target_id,
            payload=dict(payload or {}),
            timestamp=at or utcnow(),
        )
        self._records.append(entry)
        self._persist()
        logger.info(
            "Journaled offline change",
            extra={"extra": {"change_id": entry.id, "kind": kind.value, "target_id": target_id}},
        )
        return entry

    def pending(self) -> List[ChangeRecord]:
        """按记录时间排序的待回放条目（时间相同时保持追加顺序）。"""

        return sorted(self._records, key=lambda r: r.timestamp)

    def remove(self, change_id: str) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != change_id]
        removed = len(self._records) != before
        if removed:
            self._persist()
        return removed

    def clear(self) -> None:
        self._records = []
        self._persist()

    def __len__(self) -> int:
        return len(self._records)

    def _load(self) -> List[ChangeRecord]:
        records: List[ChangeRecord] = []
        for item in self._storage.get(self._key) or []:
            try:
                records.append(change_from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipped corrupt journal entry", extra={"extra": {"error": str(e)}})
        return records

    def _persist(self) -> None:
        self._storage.set(self._key, [change_to_dict(r) for r in self._records])
