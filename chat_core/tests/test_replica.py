import pytest

from chat_core.domain.exceptions import ConversationNotFoundError, MessageNotFoundError
from chat_core.sync.replica import DEFAULT_TITLE, LocalReplicaStore

from conftest import make_conversation, make_message, ts


def test_create_inserts_at_front_and_persists(replica, storage):
    first = replica.create_conversation()
    second = replica.create_conversation("第二个")
    assert first.title == DEFAULT_TITLE
    assert [c.id for c in replica.list_conversations()] == [second.id, first.id]

    reloaded = LocalReplicaStore(storage, user_id="u1")
    assert reloaded.load() == 2
    assert reloaded.get(second.id).title == "第二个"


def test_snapshots_are_copies(replica):
    conv = replica.create_conversation()
    replica.append_messages(conv.id, make_message("m1"))
    snap = replica.get(conv.id)
    snap.messages.clear()
    snap.title = "changed"
    assert len(replica.get(conv.id).messages) == 1
    assert replica.get(conv.id).title == DEFAULT_TITLE


def test_put_sorts_messages_and_replaces_in_place(replica):
    replica.put(make_conversation("a", [], ts(1)))
    replica.put(make_conversation("b", [make_message("m2", at=ts(2)), make_message("m1", at=ts(1))], ts(2)))
    assert replica.ids() == ["b", "a"]
    assert [m.id for m in replica.get("b").messages] == ["m1", "m2"]

    replica.put(make_conversation("a", [make_message("x")], ts(3), title="new"))
    assert replica.ids() == ["b", "a"]
    assert replica.get("a").title == "new"


def test_set_message_content_is_memory_only(replica, storage):
    conv = replica.create_conversation()
    replica.append_messages(conv.id, make_message("a1", role="assistant", content="-"))
    before = replica.get(conv.id).updated_at
    replica.set_message_content(conv.id, "a1", "streaming")
    assert replica.get(conv.id).messages[0].content == "streaming"
    assert replica.get(conv.id).updated_at == before

    reloaded = LocalReplicaStore(storage, user_id="u1")
    reloaded.load()
    assert reloaded.get(conv.id).messages[0].content == "-"
    replica.save()
    reloaded.load()
    assert reloaded.get(conv.id).messages[0].content == "streaming"


def test_rename_mark_saved_and_remove(replica):
    conv = replica.create_conversation()
    renamed = replica.rename(conv.id, "标题", at=ts(5))
    assert renamed.title == "标题"
    assert renamed.updated_at == ts(5)
    assert replica.mark_saved(conv.id).is_saved
    replica.remove(conv.id)
    assert conv.id not in replica
    with pytest.raises(ConversationNotFoundError):
        replica.get(conv.id)


def test_message_level_errors(replica):
    conv = replica.create_conversation()
    with pytest.raises(MessageNotFoundError):
        replica.remove_message(conv.id, "nope")
    with pytest.raises(MessageNotFoundError):
        replica.set_message_content(conv.id, "nope", "x")


def test_load_skips_corrupt_entries(storage):
    storage.set("conversations:u1", [{"id": "broken"}, {
        "id": "ok",
        "title": "t",
        "messages": [],
        "created_at": "2024-05-01T08:00:00Z",
        "updated_at": "2024-05-01T08:00:00Z",
    }])
    replica = LocalReplicaStore(storage, user_id="u1")
    assert replica.load() == 1
    assert replica.ids() == ["ok"]


def test_users_are_isolated(storage):
    a = LocalReplicaStore(storage, user_id="alice")
    a.create_conversation()
    b = LocalReplicaStore(storage, user_id="bob")
    assert b.load() == 0
