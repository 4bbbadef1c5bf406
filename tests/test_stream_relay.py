"""Turn orchestration tests for the stream relay.

Covers the happy path, empty and failing generations, disconnects,
ownership isolation, cross-turn policies, and storage failures.
"""

import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from chatrelay.config import Settings, TurnPolicy
from chatrelay.service.assistant import AssistantHolder
from chatrelay.service.auth import AuthContext
from chatrelay.service.engine import StubEngine
from chatrelay.service.errors import UpstreamError
from chatrelay.service.gate import RelayConnection
from chatrelay.service.locks import KeyedLock
from chatrelay.service.relay import StreamRelay, TurnState
from chatrelay.service.reporter import ErrorReporter
from chatrelay.service.threads import ThreadRegistry
from chatrelay.storage.errors import StorageError
from chatrelay.storage.memory import MemoryStore


class FakeSocket:
    """Records frames; optionally fails once ``fail_after`` frames were sent."""

    def __init__(self, fail_after=None):
        self.frames = []
        self.fail_after = fail_after

    async def send_json(self, data):
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise WebSocketDisconnect(code=1001)
        self.frames.append(data)

    def events(self, name):
        return [f["data"] for f in self.frames if f["event"] == name]


class ScriptedEngine(StubEngine):
    """Stub engine streaming fixed pieces, optionally failing or pausing."""

    def __init__(self, pieces, *, fail_after=None, hold=None):
        super().__init__()
        self.pieces = list(pieces)
        self.fail_after = fail_after
        self.hold = hold
        self.create_calls = 0
        self.streams_closed = 0

    async def create_thread(self):
        self.create_calls += 1
        return await super().create_thread()

    async def stream_run(self, thread_ref, assistant_id):
        try:
            for index, piece in enumerate(self.pieces):
                if index == self.fail_after:
                    raise UpstreamError("run failed")
                yield piece
                if self.hold is not None:
                    await self.hold.wait()
                await asyncio.sleep(0)
            if self.fail_after is not None and self.fail_after >= len(self.pieces):
                raise UpstreamError("run failed")
        finally:
            self.streams_closed += 1


class FailingAppendStore(MemoryStore):
    def __init__(self, fs_root, *, fail_role):
        super().__init__(fs_root, persist=False)
        self.fail_role = fail_role

    def append_message(self, conversation_id, role, content, **kwargs):
        if role == self.fail_role:
            raise StorageError("disk full at /srv/chatrelay/state")
        return super().append_message(conversation_id, role, content, **kwargs)


async def make_relay(tmp_path, engine, *, policy=TurnPolicy.QUEUE, store=None, init_assistant=True):
    settings = Settings(
        jwt_secret="relay-test-secret-0123456789abcdef0123456789",
        shared_fs_root=str(tmp_path),
        turn_policy=policy,
    )
    store = store or MemoryStore(fs_root=str(tmp_path), persist=False)
    holder = AssistantHolder()
    if init_assistant:
        await holder.initialize(engine, settings)
    relay = StreamRelay(
        store,
        ThreadRegistry(store, engine, KeyedLock("thread")),
        engine,
        holder,
        ErrorReporter(),
        KeyedLock("turn"),
        settings,
    )
    return relay, store


def connect(user_id, socket=None):
    connection = RelayConnection(socket or FakeSocket())
    connection.bind(AuthContext(user_id=user_id))
    return connection


def new_conversation(store, email="owner@example.com"):
    user = store.create_user(email)
    return user, store.create_conversation(user.id)


def message(conversation_id, content):
    return {"conversationId": conversation_id, "content": content}


async def test_first_message_sets_title_and_thread(tmp_path):
    engine = ScriptedEngine(["Hi ", "there"])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    assert store.get_conversation(conv.id).thread_ref is None

    result = await relay.handle_message(connect(user.id), message(conv.id, "Hello"))

    assert result.state == TurnState.COMPLETED
    stored = store.get_conversation(conv.id, user_id=user.id)
    assert stored.title == "Hello"
    assert [(m.role, m.content) for m in stored.messages] == [
        ("user", "Hello"),
        ("assistant", "Hi there"),
    ]
    assert stored.thread_ref is not None
    assert engine.threads[stored.thread_ref] == ["Hello"]
    assert result.history == [
        TurnState.IDLE,
        TurnState.AUTHORIZING,
        TurnState.THREAD_READY,
        TurnState.SENDING,
        TurnState.STREAMING,
        TurnState.COMPLETED,
    ]


async def test_second_message_reuses_thread_and_keeps_title(tmp_path):
    engine = ScriptedEngine(["ok"])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    connection = connect(user.id)

    await relay.handle_message(connection, message(conv.id, "Hello"))
    first = store.get_conversation(conv.id)
    await relay.handle_message(connection, message(conv.id, "How are you?"))
    second = store.get_conversation(conv.id)

    assert second.thread_ref == first.thread_ref
    assert second.title == "Hello"
    assert len(second.messages) == len(first.messages) + 2
    assert [m.role for m in second.messages[-2:]] == ["user", "assistant"]
    assert second.messages[-2].content == "How are you?"
    assert engine.create_calls == 1


async def test_title_is_prefix_of_long_first_message(tmp_path):
    engine = ScriptedEngine(["ok"])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    content = "Please summarise the quarterly report for me in detail"

    await relay.handle_message(connect(user.id), message(conv.id, content))

    assert store.get_conversation(conv.id).title == content[:30]


async def test_empty_generation_completes_without_reply(tmp_path):
    engine = ScriptedEngine([])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    result = await relay.handle_message(connect(user.id, socket), message(conv.id, "Hello"))

    assert result.state == TurnState.COMPLETED
    assert result.content == ""
    assert result.error is None
    assert socket.frames == []
    stored = store.get_conversation(conv.id)
    assert [m.role for m in stored.messages] == ["user"]


async def test_failure_after_first_increment_persists_no_reply(tmp_path):
    engine = ScriptedEngine(["Par", "tial"], fail_after=1)
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    result = await relay.handle_message(connect(user.id, socket), message(conv.id, "Hello"))

    assert result.state == TurnState.FAILED
    assert socket.events("response") == [{"conversationId": conv.id, "content": "Par"}]
    errors = socket.events("error")
    assert len(errors) == 1
    assert errors[0]["code"] == "upstream_error"
    assert errors[0]["conversationId"] == conv.id
    stored = store.get_conversation(conv.id)
    assert [(m.role, m.content) for m in stored.messages] == [("user", "Hello")]


async def test_responses_are_cumulative(tmp_path):
    engine = ScriptedEngine(["The ", "quick ", "", "brown ", "fox"])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    await relay.handle_message(connect(user.id, socket), message(conv.id, "Tell me"))

    contents = [data["content"] for data in socket.events("response")]
    assert len(contents) == 4
    for previous, current in zip(contents, contents[1:]):
        assert current.startswith(previous)
        assert len(current) > len(previous)
    assert contents[-1] == "The quick brown fox"
    assert store.get_conversation(conv.id).messages[-1].content == "The quick brown fox"


async def test_foreign_conversation_is_not_found(tmp_path):
    engine = ScriptedEngine(["secret"])
    relay, store = await make_relay(tmp_path, engine)
    _, conv = new_conversation(store, "owner@example.com")
    intruder = store.create_user("intruder@example.com")
    socket = FakeSocket()

    result = await relay.handle_message(connect(intruder.id, socket), message(conv.id, "Hi"))

    assert result.state == TurnState.FAILED
    assert result.error.kind == "not_found"
    assert socket.events("response") == []
    assert socket.events("error")[0]["code"] == "not_found"
    assert store.get_conversation(conv.id).messages == []
    assert engine.create_calls == 0


async def test_unknown_conversation_matches_foreign_error(tmp_path):
    engine = ScriptedEngine(["x"])
    relay, store = await make_relay(tmp_path, engine)
    user = store.create_user("solo@example.com")
    socket = FakeSocket()

    await relay.handle_message(connect(user.id, socket), message("no-such-id", "Hi"))

    assert socket.events("error") == [
        {"message": "conversation not found", "code": "not_found", "conversationId": "no-such-id"}
    ]


async def test_disconnect_mid_stream_persists_no_reply(tmp_path):
    engine = ScriptedEngine(["one ", "two ", "three"])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket(fail_after=1)

    result = await relay.handle_message(connect(user.id, socket), message(conv.id, "Count"))

    assert result.state == TurnState.CANCELLED
    assert len(socket.events("response")) == 1
    assert engine.streams_closed == 1
    stored = store.get_conversation(conv.id)
    assert [(m.role, m.content) for m in stored.messages] == [("user", "Count")]


async def test_cancelled_turn_task_persists_no_reply(tmp_path):
    hold = asyncio.Event()
    engine = ScriptedEngine(["one ", "two"], hold=hold)
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    task = asyncio.create_task(relay.handle_message(connect(user.id, socket), message(conv.id, "Go")))
    while not socket.frames:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert engine.streams_closed == 1
    stored = store.get_conversation(conv.id)
    assert [m.role for m in stored.messages] == ["user"]


async def test_queued_turns_run_in_submission_order(tmp_path):
    hold = asyncio.Event()
    engine = ScriptedEngine(["reply"], hold=hold)
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket()
    connection = connect(user.id, socket)

    first = asyncio.create_task(relay.handle_message(connection, message(conv.id, "first")))
    while not socket.frames:
        await asyncio.sleep(0.01)
    second = asyncio.create_task(relay.handle_message(connection, message(conv.id, "second")))
    await asyncio.sleep(0.05)
    # Second turn waits and has not stored anything yet
    assert [m.content for m in store.get_conversation(conv.id).messages] == ["first"]
    hold.set()
    results = await asyncio.gather(first, second)

    assert [r.state for r in results] == [TurnState.COMPLETED, TurnState.COMPLETED]
    stored = store.get_conversation(conv.id)
    assert [(m.role, m.content) for m in stored.messages] == [
        ("user", "first"),
        ("assistant", "reply"),
        ("user", "second"),
        ("assistant", "reply"),
    ]


async def test_reject_policy_fails_overlapping_turn(tmp_path):
    hold = asyncio.Event()
    engine = ScriptedEngine(["reply"], hold=hold)
    relay, store = await make_relay(tmp_path, engine, policy=TurnPolicy.REJECT)
    user, conv = new_conversation(store)
    socket = FakeSocket()
    connection = connect(user.id, socket)

    first = asyncio.create_task(relay.handle_message(connection, message(conv.id, "first")))
    while not socket.frames:
        await asyncio.sleep(0.01)
    rejected = await relay.handle_message(connection, message(conv.id, "second"))
    hold.set()
    completed = await first

    assert rejected.state == TurnState.FAILED
    assert rejected.error.kind == "conflict"
    assert completed.state == TurnState.COMPLETED
    stored = store.get_conversation(conv.id)
    assert [m.content for m in stored.messages] == ["first", "reply"]


async def test_user_append_failure_stops_before_generation(tmp_path):
    engine = ScriptedEngine(["never"])
    store = FailingAppendStore(str(tmp_path), fail_role="user")
    relay, _ = await make_relay(tmp_path, engine, store=store)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    result = await relay.handle_message(connect(user.id, socket), message(conv.id, "Hello"))

    assert result.state == TurnState.FAILED
    assert socket.events("response") == []
    error = socket.events("error")[0]
    assert error["code"] == "persistence_error"
    assert "/srv" not in error["message"]
    assert all(messages == [] for messages in engine.threads.values())
    assert engine.streams_closed == 0


async def test_assistant_append_failure_reported_after_stream(tmp_path):
    engine = ScriptedEngine(["done"])
    store = FailingAppendStore(str(tmp_path), fail_role="assistant")
    relay, _ = await make_relay(tmp_path, engine, store=store)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    result = await relay.handle_message(connect(user.id, socket), message(conv.id, "Hello"))

    assert result.state == TurnState.FAILED
    assert [f["event"] for f in socket.frames] == ["response", "error"]
    assert socket.events("error")[0]["code"] == "persistence_error"
    assert [m.role for m in store.get_conversation(conv.id).messages] == ["user"]


async def test_unavailable_assistant_fails_turn(tmp_path):
    engine = ScriptedEngine(["x"])
    relay, store = await make_relay(tmp_path, engine, init_assistant=False)
    user, conv = new_conversation(store)
    socket = FakeSocket()

    result = await relay.handle_message(connect(user.id, socket), message(conv.id, "Hello"))

    assert result.state == TurnState.FAILED
    assert socket.events("error")[0] == {
        "message": "assistant unavailable",
        "code": "upstream_error",
        "conversationId": conv.id,
    }
    assert store.get_conversation(conv.id).messages == []
    assert engine.create_calls == 0


async def test_malformed_payload_is_validation_error(tmp_path):
    engine = ScriptedEngine(["x"])
    relay, store = await make_relay(tmp_path, engine)
    user, conv = new_conversation(store)
    socket = FakeSocket()
    connection = connect(user.id, socket)

    await relay.handle_message(connection, {"conversationId": conv.id})
    await relay.handle_message(connection, "not an object")
    await relay.handle_message(connection, message(conv.id, "   "))

    codes = [e["code"] for e in socket.events("error")]
    assert codes == ["validation_error"] * 3
    assert store.get_conversation(conv.id).messages == []


async def test_unbound_connection_is_unauthorized(tmp_path):
    engine = ScriptedEngine(["x"])
    relay, store = await make_relay(tmp_path, engine)
    _, conv = new_conversation(store)
    socket = FakeSocket()

    result = await relay.handle_message(RelayConnection(socket), message(conv.id, "Hi"))

    assert result.error.kind == "unauthorized"
    assert store.get_conversation(conv.id).messages == []
