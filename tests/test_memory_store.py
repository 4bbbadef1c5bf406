"""Memory store behaviour: ownership scoping, ordering, titles and snapshots."""

import time

import pytest

from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import DEFAULT_CONVERSATION_TITLE


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_new_conversation_defaults(store):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)

    assert conv.title == DEFAULT_CONVERSATION_TITLE
    assert conv.messages == []
    assert conv.thread_ref is None
    assert conv.created_at == conv.updated_at


def test_create_conversation_requires_owner(store):
    with pytest.raises(ConstraintViolation):
        store.create_conversation("missing-user")


def test_duplicate_email_rejected_case_insensitively(store):
    store.create_user("Dup@Example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_messages_keep_append_order_and_title_is_stable(store):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)

    store.append_message(conv.id, "user", "First message here", user_id=user.id, title_max_length=5)
    store.append_message(conv.id, "assistant", "Reply", user_id=user.id, title_max_length=5)
    updated = store.append_message(conv.id, "user", "Another", user_id=user.id, title_max_length=5)

    assert [m.content for m in updated.messages] == ["First message here", "Reply", "Another"]
    assert updated.title == "First"
    assert store.list_messages(conv.id, user_id=user.id) == updated.messages


def test_append_advances_updated_at(store):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)
    time.sleep(0.001)

    updated = store.append_message(conv.id, "user", "hi", user_id=user.id)

    assert updated.updated_at > conv.updated_at


def test_append_rejects_unknown_role(store):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)

    with pytest.raises(ConstraintViolation):
        store.append_message(conv.id, "system", "nope", user_id=user.id)


def test_foreign_owner_sees_nothing(store):
    owner = store.create_user("owner@example.com")
    other = store.create_user("other@example.com")
    conv = store.create_conversation(owner.id)
    store.append_message(conv.id, "user", "private", user_id=owner.id)

    assert store.get_conversation(conv.id, user_id=other.id) is None
    assert store.list_conversations(other.id) == []
    assert store.list_messages(conv.id, user_id=other.id) == []
    with pytest.raises(ConstraintViolation):
        store.append_message(conv.id, "user", "intrusion", user_id=other.id)
    with pytest.raises(ConstraintViolation):
        store.assign_thread_reference(conv.id, "thread_x", user_id=other.id)
    assert len(store.get_conversation(conv.id).messages) == 1


def test_list_orders_by_most_recent_update(store):
    user = store.create_user("a@example.com")
    older = store.create_conversation(user.id)
    newer = store.create_conversation(user.id)
    time.sleep(0.001)
    store.append_message(older.id, "user", "bump", user_id=user.id)

    listed = store.list_conversations(user.id)

    assert [c.id for c in listed] == [older.id, newer.id]
    assert [c.id for c in store.list_conversations(user.id, limit=1)] == [older.id]


def test_thread_reference_is_set_once(store):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)

    assert store.assign_thread_reference(conv.id, "thread_a", user_id=user.id) == "thread_a"
    assert store.assign_thread_reference(conv.id, "thread_b", user_id=user.id) == "thread_a"
    assert store.get_conversation(conv.id).thread_ref == "thread_a"


def test_returned_snapshots_are_detached(store):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)
    snapshot = store.append_message(conv.id, "user", "hi", user_id=user.id)

    snapshot.messages.clear()

    assert len(store.get_conversation(conv.id).messages) == 1


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    conv = store.create_conversation(user.id)
    store.append_message(conv.id, "user", "remember me", user_id=user.id)
    store.assign_thread_reference(conv.id, "thread_p", user_id=user.id)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = reloaded.get_conversation(conv.id, user_id=user.id)
    assert restored.title == "remember me"
    assert restored.thread_ref == "thread_p"
    assert [m.content for m in restored.messages] == ["remember me"]
    assert reloaded.get_user_by_email("persist@example.com").id == user.id


def test_failed_persist_rolls_back_append(store, monkeypatch):
    user = store.create_user("a@example.com")
    conv = store.create_conversation(user.id)

    def broken_replace(src, dst):
        raise OSError("read-only file system")

    monkeypatch.setattr("chatrelay.storage.memory.os.replace", broken_replace)
    with pytest.raises(StorageError):
        store.append_message(conv.id, "user", "lost", user_id=user.id)

    restored = store.get_conversation(conv.id)
    assert restored.messages == []
    assert restored.title == DEFAULT_CONVERSATION_TITLE


def test_failed_persist_rolls_back_creates(store, monkeypatch):
    user = store.create_user("a@example.com")
    store.save_password(user.id, "hash-1", "argon2id")

    def broken_replace(src, dst):
        raise OSError("read-only file system")

    with monkeypatch.context() as patched:
        patched.setattr("chatrelay.storage.memory.os.replace", broken_replace)
        with pytest.raises(StorageError):
            store.create_conversation(user.id)
        with pytest.raises(StorageError):
            store.create_user("b@example.com", password_hash="hash-b", password_algo="argon2id")
        with pytest.raises(StorageError):
            store.save_password(user.id, "hash-2", "argon2id")

    assert store.list_conversations(user.id) == []
    assert store.get_user_by_email("b@example.com") is None
    assert store.get_password_record(user.id) == ("hash-1", "argon2id")

    retried = store.create_user("b@example.com")
    assert store.get_user(retried.id) is not None
