import asyncio
import tempfile
from pathlib import Path

import pytest

from relay_core.domain.exceptions import StorageUnavailable, ValidationError
from relay_core.domain.models import Message
from relay_core.infrastructure.storage.json_store import JsonFileStore, MemoryKeyValueStore
from relay_core.sessions.history_store import HistoryStore

from relay_core.tests.fakes import ThreadedBackend, YieldingBackend


class FailingBackend:
    def __init__(self, fail_get=False, fail_put=False):
        self.fail_get = fail_get
        self.fail_put = fail_put

    async def get(self, key):
        if self.fail_get:
            raise OSError("disk gone")
        return None

    async def put(self, key, value):
        if self.fail_put:
            raise OSError("read-only")

    async def delete(self, key):
        return None


class FailingBackup:
    async def put(self, key, value):
        raise RuntimeError("backup down")

    async def delete(self, key):
        raise RuntimeError("backup down")


def _user(text):
    return Message(role="user", content=text)


@pytest.mark.asyncio
async def test_append_then_read_preserves_order():
    store = HistoryStore(MemoryKeyValueStore())
    await store.append("u1", _user("a"))
    await store.append("u1", Message(role="assistant", content="b"))
    log = await store.read("u1")
    assert [(m.role, m.content) for m in log] == [("user", "a"), ("assistant", "b")]


@pytest.mark.asyncio
async def test_unknown_identity_reads_empty():
    store = HistoryStore(MemoryKeyValueStore())
    assert await store.read("nobody") == ()


@pytest.mark.asyncio
async def test_append_truncates_to_most_recent():
    store = HistoryStore(MemoryKeyValueStore(), max_stored=50)
    for i in range(50):
        await store.append("u1", _user(f"m{i}"))
    log = await store.append("u1", _user("m50"))
    assert len(log) == 50
    assert log[0].content == "m1"
    assert log[-1].content == "m50"


@pytest.mark.asyncio
async def test_clear_is_idempotent_and_drops_backup():
    backup = MemoryKeyValueStore()
    store = HistoryStore(MemoryKeyValueStore(), backup=backup)
    await store.append("u1", _user("hi"))
    assert backup.keys() == ["chat:u1"]
    await store.clear("u1")
    await store.clear("u1")
    assert await store.read("u1") == ()
    assert backup.keys() == []


@pytest.mark.asyncio
async def test_backup_mirrors_full_log():
    backup = MemoryKeyValueStore()
    store = HistoryStore(MemoryKeyValueStore(), backup=backup)
    await store.append("u1", _user("a"))
    await store.append("u1", _user("b"))
    assert await backup.get("chat:u1") == [
        {"role": "user", "content": "a"},
        {"role": "user", "content": "b"},
    ]


@pytest.mark.asyncio
async def test_concurrent_appends_are_not_lost():
    backend = YieldingBackend()
    store = HistoryStore(backend, max_stored=200)
    await asyncio.gather(*(store.append("u1", _user(f"m{i}")) for i in range(40)))
    log = await store.read("u1")
    assert len(log) == 40
    assert sorted(m.content for m in log) == sorted(f"m{i}" for i in range(40))
    assert len(backend.data["u1"]) == 40


@pytest.mark.asyncio
async def test_identities_are_isolated():
    store = HistoryStore(MemoryKeyValueStore())
    await store.append("u1", _user("one"))
    await store.append("u2", _user("two"))
    assert [m.content for m in await store.read("u1")] == ["one"]
    assert [m.content for m in await store.read("u2")] == ["two"]


@pytest.mark.asyncio
async def test_backend_read_failure_is_not_empty_history():
    store = HistoryStore(FailingBackend(fail_get=True))
    with pytest.raises(StorageUnavailable) as exc:
        await store.read("u1")
    assert exc.value.code == "STORE_READ_ERROR"


@pytest.mark.asyncio
async def test_backend_write_failure_leaves_cache_untouched():
    backend = FailingBackend(fail_put=True)
    store = HistoryStore(backend)
    with pytest.raises(StorageUnavailable) as exc:
        await store.append("u1", _user("lost"))
    assert exc.value.code == "STORE_WRITE_ERROR"
    backend.fail_put = False
    assert await store.read("u1") == ()


@pytest.mark.asyncio
async def test_backup_failure_does_not_fail_append():
    store = HistoryStore(MemoryKeyValueStore(), backup=FailingBackup())
    log = await store.append("u1", _user("kept"))
    assert [m.content for m in log] == ["kept"]
    await store.clear("u1")


@pytest.mark.asyncio
async def test_malformed_stored_value_raises():
    backend = MemoryKeyValueStore()
    await backend.put("u1", {"not": "a list"})
    store = HistoryStore(backend)
    with pytest.raises(StorageUnavailable):
        await store.read("u1")


@pytest.mark.asyncio
async def test_missing_identity_rejected():
    store = HistoryStore(MemoryKeyValueStore())
    with pytest.raises(ValidationError):
        await store.append("", _user("x"))


@pytest.mark.asyncio
async def test_history_survives_new_store_instance():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        await HistoryStore(JsonFileStore(root=root)).append("u1", _user("persisted"))
        reopened = HistoryStore(JsonFileStore(root=root))
        assert [m.content for m in await reopened.read("u1")] == ["persisted"]


def test_message_rejects_unknown_role():
    with pytest.raises(ValidationError):
        Message(role="tool", content="x")


@pytest.mark.asyncio
async def test_cancelled_append_keeps_cache_and_durable_log_in_step():
    backend = ThreadedBackend()
    store = HistoryStore(backend)
    await store.append("u1", _user("a"))

    backend.gate.clear()
    backend.writing.clear()
    task = asyncio.create_task(store.append("u1", _user("b")))
    await asyncio.to_thread(backend.writing.wait, 2)
    task.cancel()
    # 同一身份的下一次追加必须等被取消的写入落定
    follower = asyncio.create_task(store.append("u1", _user("c")))
    await asyncio.sleep(0.01)
    assert not follower.done()

    backend.gate.set()
    with pytest.raises(asyncio.CancelledError):
        await task
    await follower

    assert backend.contents("u1") == ["a", "b", "c"]
    assert [m.content for m in await store.read("u1")] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_cancelled_clear_still_commits():
    backend = ThreadedBackend()
    store = HistoryStore(backend)
    await store.append("u1", _user("a"))

    backend.gate.clear()
    backend.writing.clear()
    task = asyncio.create_task(store.clear("u1"))
    await asyncio.to_thread(backend.writing.wait, 2)
    task.cancel()
    backend.gate.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert backend.data["u1"] == []
    assert await store.read("u1") == ()


def test_explicit_zero_limits_are_rejected():
    with pytest.raises(ValidationError) as exc:
        HistoryStore(MemoryKeyValueStore(), max_stored=0)
    assert exc.value.code == "INVALID_LIMIT"
    with pytest.raises(ValidationError):
        HistoryStore(MemoryKeyValueStore(), cache_size=0)
