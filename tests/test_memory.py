import json
import threading

from unittest.mock import MagicMock

import pytest

from react_harness.errors import PersistenceError
from react_harness.memory import FileCheckpointStore, InMemoryCheckpointStore, KeyLocks, MemoryStore, prune
from react_harness.models import Checkpoint, ConversationState, Message, Role, Status, now_ms

NOW = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


def _messages(count, timestamp=NOW):
    return [Message(role=Role.USER, content=f"m{i}", timestamp=timestamp) for i in range(count)]


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


def test_prune_keeps_newest_entries():
    kept = prune(_messages(15), max_age_ms=DAY_MS, max_entries=10, now=NOW)
    assert [m.content for m in kept] == [f"m{i}" for i in range(5, 15)]


def test_prune_drops_old_messages():
    old = [Message(role=Role.USER, content="old", timestamp=NOW - DAY_MS - 1)]
    recent = [Message(role=Role.USER, content="recent", timestamp=NOW - 1000)]
    kept = prune(old + recent, max_age_ms=DAY_MS, max_entries=10, now=NOW)
    assert [m.content for m in kept] == ["recent"]


def test_prune_age_is_exclusive_at_boundary():
    boundary = [Message(role=Role.USER, content="edge", timestamp=NOW - DAY_MS)]
    assert prune(boundary, max_age_ms=DAY_MS, now=NOW) == []


def test_prune_zero_entries():
    assert prune(_messages(3), max_entries=0, now=NOW) == []


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def test_in_memory_store_replaces_checkpoint():
    store = InMemoryCheckpointStore()
    assert store.get("ns/t1") is None
    store.put("ns/t1", "first", {"step": 1})
    store.put("ns/t1", "second", {"step": 2})
    assert store.get("ns/t1") == "second"
    assert store.metadata("ns/t1") == {"step": 2}


def test_file_store_round_trip(tmp_path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    assert store.get("react_agent/t1") is None

    store.put("react_agent/t1", "snapshot-data", {"step": 3})

    files = list((tmp_path / "checkpoints").glob("*.json"))
    assert [f.name for f in files] == ["react_agent_t1.json"]
    assert json.loads(files[0].read_text()) == {"snapshot": "snapshot-data", "metadata": {"step": 3}}
    assert store.get("react_agent/t1") == "snapshot-data"


def test_file_store_leaves_no_temp_files(tmp_path):
    store = FileCheckpointStore(tmp_path)
    store.put("a", "1", {})
    store.put("a", "2", {})
    assert sorted(p.name for p in tmp_path.iterdir()) == ["a.json"]


def test_key_locks_are_per_key():
    locks = KeyLocks()
    assert locks("a") is locks("a")
    assert locks("a") is not locks("b")


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


def test_load_missing_thread_is_fresh():
    state = MemoryStore().load("nobody")
    assert state == ConversationState(thread_id="nobody")


def test_save_then_load():
    memory = MemoryStore()
    state = ConversationState(
        thread_id="t1", messages=_messages(2), iteration=2, status=Status.END, tool_feedback={"echo": "good"}
    )
    assert memory.save("t1", state)
    assert memory.load("t1") == state


def test_save_records_metadata():
    store = InMemoryCheckpointStore()
    MemoryStore(store, namespace="ns").save("t1", ConversationState(thread_id="t1", messages=_messages(4)))
    metadata = store.metadata("ns/t1")
    assert metadata["source"] == "loop"
    assert metadata["step"] == 4
    assert isinstance(metadata["timestamp"], int)


def test_store_failures_are_soft():
    store = MagicMock()
    store.get.side_effect = OSError("unavailable")
    store.put.side_effect = OSError("unavailable")
    memory = MemoryStore(store)

    assert memory.load("t1") == ConversationState(thread_id="t1")
    assert memory.save("t1", ConversationState(thread_id="t1")) is False


def test_corrupt_checkpoint_is_ignored():
    store = MagicMock()
    store.get.return_value = "{not json"
    assert MemoryStore(store).load("t1") == ConversationState(thread_id="t1")


def test_schema_version_mismatch_is_ignored():
    store = InMemoryCheckpointStore()
    stale = Checkpoint(
        thread_id="t1",
        namespace="react_agent",
        snapshot=ConversationState(thread_id="t1", messages=_messages(1)).model_dump_json(),
        schema_version=0,
    )
    store.put("react_agent/t1", stale.model_dump_json(), {})
    assert MemoryStore(store).load("t1").messages == []


def test_hydrate_prunes_history_and_appends_inbound():
    memory = MemoryStore(max_entries=3)
    stored = ConversationState(
        thread_id="t1",
        messages=_messages(5, timestamp=0) + _messages(5, timestamp=now_ms()),
        iteration=4,
        status=Status.END,
        tool_feedback={"echo": "ok"},
        last_observation="x",
    )
    memory.save("t1", stored)
    inbound = [Message(role=Role.USER, content="new question")]

    state = memory.hydrate("t1", inbound)

    assert [m.content for m in state.messages] == ["m2", "m3", "m4", "new question"]
    assert state.iteration == 0
    assert state.status is Status.CONTINUE
    assert state.last_observation is None
    assert state.tool_feedback == {"echo": "ok"}


def test_fifteen_messages_restore_ten():
    memory = MemoryStore()
    messages = [Message(role=Role.USER, content=f"m{i}") for i in range(15)]
    memory.save("t1", ConversationState(thread_id="t1", messages=messages))

    state = memory.hydrate("t1", [])

    assert len(state.messages) == 10
    assert state.messages == messages[5:]


def test_namespaces_are_isolated():
    store = InMemoryCheckpointStore()
    MemoryStore(store, namespace="a").save("t1", ConversationState(thread_id="t1", messages=_messages(1)))
    assert MemoryStore(store, namespace="b").load("t1").messages == []


# ---------------------------------------------------------------------------
# Persistence failures
# ---------------------------------------------------------------------------


def test_file_store_corrupt_file_raises_persistence_error(tmp_path):
    (tmp_path / "ns_t1.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceError, match="Cannot read checkpoint"):
        FileCheckpointStore(tmp_path).get("ns/t1")


def test_file_store_missing_snapshot_raises_persistence_error(tmp_path):
    (tmp_path / "ns_t1.json").write_text('{"metadata": {}}', encoding="utf-8")
    with pytest.raises(PersistenceError):
        FileCheckpointStore(tmp_path).get("ns/t1")


def test_file_store_unwritable_directory_raises_persistence_error(tmp_path):
    blocker = tmp_path / "checkpoints"
    blocker.write_text("not a directory", encoding="utf-8")
    with pytest.raises(PersistenceError, match="Cannot write checkpoint"):
        FileCheckpointStore(blocker).put("ns/t1", "snapshot", {})


def test_memory_over_corrupt_file_loads_fresh(tmp_path):
    (tmp_path / "react_agent_t1.json").write_text("{not json", encoding="utf-8")
    assert MemoryStore(FileCheckpointStore(tmp_path)).load("t1") == ConversationState(thread_id="t1")


def test_memory_over_unwritable_directory_reports_failure(tmp_path):
    blocker = tmp_path / "checkpoints"
    blocker.write_text("not a directory", encoding="utf-8")
    memory = MemoryStore(FileCheckpointStore(blocker))
    assert memory.save("t1", ConversationState(thread_id="t1")) is False


def test_undecodable_snapshot_is_logged_without_traceback(caplog):
    store = InMemoryCheckpointStore()
    store.put("react_agent/t1", '{"thread_id": "t1"}', {})
    with caplog.at_level("WARNING", logger="react_harness.memory"):
        assert MemoryStore(store).load("t1") == ConversationState(thread_id="t1")
    [record] = [r for r in caplog.records if r.name == "react_harness.memory"]
    assert record.levelname == "WARNING"
    assert "Corrupt checkpoint" in record.getMessage()
    assert record.exc_info is None


def test_metadata_waits_for_writer():
    store = InMemoryCheckpointStore()
    store.put("ns/t1", "s", {"step": 1})
    results = []
    with store._locks("ns/t1"):
        reader = threading.Thread(target=lambda: results.append(store.metadata("ns/t1")))
        reader.start()
        reader.join(0.1)
        assert reader.is_alive()
        assert results == []
    reader.join(2.0)
    assert results == [{"step": 1}]
