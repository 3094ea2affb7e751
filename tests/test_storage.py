import pytest
from sqlmodel import Session, SQLModel, create_engine, select
from sqlalchemy.pool import StaticPool
from rcep.config import settings
from rcep.errors import STORAGE_READ_FAILED, CaptureError
from rcep.messages import Message
from rcep.models.capture import StoredMessage, SnapshotSlot, ProgressRecord, Role
from rcep.storage import StateStore, is_progress_stale, sanitize_filename, write_snapshot_file, read_json_file

# Use in-memory DB for testing
@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine

@pytest.fixture(name="store")
def store_fixture(engine):
    return StateStore(engine)


def _messages(n, session_id="s1", size=10):
    return [
        Message(id=f"msg-{i + 1}", role="user" if i % 2 == 0 else "assistant", content="x" * size, session_id=session_id)
        for i in range(n)
    ]


def test_save_and_load_messages(store: StateStore, engine):
    assert store.save_messages("tab", "s1", _messages(3))
    loaded = store.load_messages("s1")
    assert [m.id for m in loaded] == ["msg-1", "msg-2", "msg-3"]
    assert [m.role for m in loaded] == ["user", "assistant", "user"]

    # Saving again replaces, never appends
    store.save_messages("tab", "s1", _messages(2))
    assert len(store.load_messages("s1")) == 2
    with Session(engine) as session:
        rows = session.exec(select(StoredMessage)).all()
        assert {r.role for r in rows} == {Role.USER, Role.ASSISTANT}


def test_storage_budget_keeps_tail(store: StateStore, monkeypatch):
    monkeypatch.setattr(settings, "MAX_STORAGE_MESSAGE_CHARS", 50)
    monkeypatch.setattr(settings, "STORAGE_TAIL_MESSAGES", 2)
    assert store.save_messages("tab", "s1", _messages(10))
    assert [m.id for m in store.load_messages("s1")] == ["msg-9", "msg-10"]


def test_session_ring_evicts_old_sessions(store: StateStore, monkeypatch):
    monkeypatch.setattr(settings, "MAX_SESSIONS_TO_KEEP", 2)
    store.remember_session("tab", "s1")
    store.save_messages("tab", "s1", _messages(2, "s1"))
    store.remember_session("tab", "s2")
    kept = store.remember_session("tab", "s3")

    assert kept == ["s3", "s2"]
    assert store.recent_sessions("tab") == ["s3", "s2"]
    assert store.load_messages("s1") == []


def test_session_ring_dedupes(store: StateStore):
    store.remember_session("tab", "s1")
    store.remember_session("tab", "s2")
    assert store.remember_session("tab", "s1") == ["s1", "s2"]


def test_reset_session_drops_tab_messages(store: StateStore):
    store.set_conversation("tab", "conv-a", "s1")
    store.save_messages("tab", "s1", _messages(2))
    store.reset_session("tab", "conv-b", "s2")

    state = store.get_conversation("tab")
    assert state.conversation_id == "conv-b"
    assert state.session_id == "s2"
    assert store.load_messages("s1") == []
    assert store.recent_sessions("tab")[0] == "s2"


def test_last_snapshot_slot(store: StateStore, engine):
    snap = {"protocol": "RCEP_v1", "session_id": "s1", "checksum": "abc", "topics": []}
    assert store.save_last_snapshot("tab", snap)
    assert store.load_last_snapshot("tab") == snap

    store.save_last_snapshot("tab", {**snap, "checksum": "def"})
    with Session(engine) as session:
        slots = session.exec(select(SnapshotSlot)).all()
        assert len(slots) == 1
        assert slots[0].checksum == "def"


def test_oversized_snapshot_not_persisted(store: StateStore, monkeypatch):
    monkeypatch.setattr(settings, "LAST_SNAPSHOT_MAX_CHARS", 20)
    assert store.save_last_snapshot("tab", {"payload": "x" * 100}) is False
    assert store.load_last_snapshot("tab") is None


def test_unreadable_state_raises_storage_read_failed(store: StateStore, engine):
    with Session(engine) as session:
        session.add(SnapshotSlot(tab_key="tab", snapshot_json="{not json"))
        session.add(ProgressRecord(tab_key="tab", record_json="[broken"))
        session.commit()

    with pytest.raises(CaptureError) as snapshot_err:
        store.load_last_snapshot("tab")
    assert snapshot_err.value.code == STORAGE_READ_FAILED

    with pytest.raises(CaptureError) as progress_err:
        store.read_progress("tab")
    assert progress_err.value.to_response()["error"]["code"] == STORAGE_READ_FAILED


def test_progress_roundtrip(store: StateStore, engine):
    assert store.read_progress("tab") is None
    store.write_progress("tab", {"captureId": "cap-1", "phase": "scan", "updatedAt": 1234})
    assert store.read_progress("tab")["phase"] == "scan"
    with Session(engine) as session:
        assert session.exec(select(ProgressRecord)).first().updated_at_ms == 1234
    store.clear_progress("tab")
    assert store.read_progress("tab") is None


def test_progress_staleness():
    assert is_progress_stale(None)
    assert is_progress_stale({"phase": "scan"})
    assert not is_progress_stale({"updatedAt": 1_000_000}, now=1_000_000 + 1000)
    assert is_progress_stale({"updatedAt": 0}, now=settings.PROGRESS_STALE_MS + 1)


def test_write_snapshot_file(tmp_path):
    snap = {"protocol": "RCEP_v1", "session_id": "conv-a/b:c", "checksum": "x"}
    path, sha, size = write_snapshot_file(snap, tmp_path)
    assert path.name == "RCEP_v1_conv-a_b_c.json"
    assert len(sha) == 64 and size > 0
    assert read_json_file(path) == snap


def test_sanitize_filename():
    assert sanitize_filename("my file (1).json") == "my_file__1_.json"
