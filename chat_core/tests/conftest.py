import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from chat_core.domain.codec import messages_from_list, parse_ts
from chat_core.domain.exceptions import ApiError, RemoteStoreError
from chat_core.domain.models import BackendProfile, Conversation, Message
from chat_core.infrastructure.storage.json_store import JsonFileStorage
from chat_core.providers.transport import StreamResult, StreamState
from chat_core.sync.journal import ChangeJournal
from chat_core.sync.replica import LocalReplicaStore

T0 = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)


def ts(minutes: int = 0, seconds: int = 0) -> datetime:
    return T0 + timedelta(minutes=minutes, seconds=seconds)


def make_message(mid: str, role: str = "user", content: str = "", at: Optional[datetime] = None) -> Message:
    return Message(id=mid, role=role, content=content or mid, timestamp=at or T0)


def make_conversation(cid: str, messages: List[Message], updated_at: datetime, title: str = "t") -> Conversation:
    return Conversation(
        id=cid,
        title=title,
        messages=messages,
        created_at=T0,
        updated_at=updated_at,
        is_saved=True,
    )


class MemoryStorage:
    def __init__(self):
        self.data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self.data.get(key))

    def set(self, key: str, value: Any) -> None:
        self.data[key] = copy.deepcopy(value)


class FakeRemoteStore:
    """内存远端。fail_ops / fail_ids 用于注入 RemoteStoreError。

    设置 list_gate 后 list_conversations 会在返回前等待它，list_started 标记已进入等待。
    """

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.calls: List[tuple] = []
        self.fail_ops: set = set()
        self.fail_ids: set = set()
        self.list_gate: Optional[asyncio.Event] = None
        self.list_started = asyncio.Event()

    def seed(self, conv: Conversation) -> None:
        self.conversations[conv.id] = copy.deepcopy(conv)

    def _check(self, op: str, conversation_id: Optional[str] = None) -> None:
        self.calls.append((op, conversation_id))
        if op in self.fail_ops or (conversation_id is not None and conversation_id in self.fail_ids):
            raise RemoteStoreError(code="REMOTE_UNAVAILABLE", message=f"{op} failed")

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        self._check("list")
        snapshot = [copy.deepcopy(c) for c in self.conversations.values()]
        self.list_started.set()
        if self.list_gate is not None:
            await self.list_gate.wait()
        return snapshot

    async def create_conversation(self, user_id: str, conversation: Conversation) -> Conversation:
        self._check("create", conversation.id)
        self.conversations[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    async def update_conversation(self, user_id: str, conversation_id: str, changes: Dict[str, Any]) -> Optional[Conversation]:
        self._check("update", conversation_id)
        conv = self.conversations.get(conversation_id)
        if conv is None:
            return None
        if "title" in changes:
            conv.title = changes["title"]
        if "messages" in changes:
            conv.messages = messages_from_list(changes["messages"])
        if "updated_at" in changes:
            conv.updated_at = parse_ts(changes["updated_at"])
        if "is_saved" in changes:
            conv.is_saved = bool(changes["is_saved"])
        return copy.deepcopy(conv)

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        self._check("delete", conversation_id)
        self.conversations.pop(conversation_id, None)

    def ops(self, op: str) -> List[Optional[str]]:
        return [cid for name, cid in self.calls if name == op]


class FakeIdentity:
    def __init__(self, user_id: str = "u1", online: bool = True):
        self.user_id = user_id
        self.online = online

    def is_online(self) -> bool:
        return self.online


class FakeTransport:
    """按脚本回放的传输层。

    script 中每一项对应一次 send：
    - ("ok", ["He", "llo"])：逐段推送累积文本后完成
    - ("fail", "boom")：直接失败
    - ("hang", ["partial"])：推送后阻塞，直到 cancel 被设置，然后中止
    - ("slow", ("title", 0.5))：等待若干秒后完成（用于标题超时）
    """

    def __init__(self, script=None):
        self.script = list(script or [])
        self.histories: List[List[Message]] = []
        self.started = asyncio.Event()

    async def send(self, profile, history, *, on_update, on_complete=None, on_error=None, cancel=None):
        self.histories.append(copy.deepcopy(history))
        kind, arg = self.script.pop(0) if self.script else ("ok", ["ok"])
        if kind == "fail":
            error = ApiError(code="API_ERROR", message=arg, http_status=500)
            if on_error:
                on_error(error)
            return StreamResult(state=StreamState.FAILED, error=error)
        if kind == "slow":
            text, delay = arg
            await asyncio.sleep(delay)
            on_update(text)
            return StreamResult(state=StreamState.COMPLETED, content=text)

        content = ""
        for piece in arg:
            content += piece
            on_update(content)
        if kind == "hang":
            self.started.set()
            await cancel.wait()
            return StreamResult(state=StreamState.ABORTED, content=content)
        if on_complete:
            on_complete(content)
        return StreamResult(state=StreamState.COMPLETED, content=content)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def file_storage(tmp_path):
    return JsonFileStorage(root=tmp_path / ".storage")


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def replica(storage):
    return LocalReplicaStore(storage, user_id="u1")


@pytest.fixture
def journal(storage):
    return ChangeJournal(storage, user_id="u1")


@pytest.fixture
def profile():
    return BackendProfile(
        id="p1",
        name="OpenAI",
        family="openai",
        endpoint="https://api.example.com/v1/chat/completions",
        credential="sk-secret",
        model_name="gpt-4",
    )
