import json
import pytest
from typer.testing import CliRunner
from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool
from rcep.cli import app
from rcep.compaction import encode_transcript
from rcep.messages import Message
from rcep.seal import DeviceSigner

runner = CliRunner()

SESSION = "conv-abc-2024-01-01T00:00:00.000Z"
MESSAGES = [
    {"id": "msg-1", "role": "user", "content": "How should we migrate the billing database?"},
    {"id": "msg-2", "role": "assistant", "content": "Decision: we must migrate billing to postgres in small batches."},
]
CLAUDE_HTML = """
<div data-testid="user-message" class="font-user-message">How should we migrate the billing database?</div>
<div class="font-claude-message">Decision: we must migrate billing to postgres in small batches.</div>
"""
BLOCKS_REPLY = "\n".join([
    "<RL4-ARCH>Browser extension with a capture layer and a compaction layer.</RL4-ARCH>",
    "<RL4-LAYERS>capture, reconcile, compact, seal</RL4-LAYERS>",
    "<RL4-TOPICS>billing, postgres</RL4-TOPICS>",
    "<RL4-DECISIONS>Decision: migrate billing to postgres in small batches of rows.</RL4-DECISIONS>",
])


@pytest.fixture(name="messages_file")
def messages_file_fixture(tmp_path):
    path = tmp_path / "messages.json"
    path.write_text(json.dumps({"session_id": SESSION, "messages": MESSAGES}), encoding="utf-8")
    return path


def _snapshot(messages_file, out_dir, *extra):
    result = runner.invoke(app, ["snapshot", str(messages_file), "--out-dir", str(out_dir), *extra])
    files = list(out_dir.glob("*.json")) if out_dir.exists() else []
    return result, files


from unittest.mock import patch

def test_db_init():
    with patch("rcep.db.init_db") as mock_init:
        result = runner.invoke(app, ["db", "init"])
        assert result.exit_code == 0
        assert "✅ Database initialized." in result.stdout
        mock_init.assert_called_once()

def test_db_init_failure():
    with patch("rcep.db.init_db", side_effect=Exception("disk full")):
        result = runner.invoke(app, ["db", "init"])
        assert result.exit_code == 1
        assert "❌ Failed: disk full" in result.stdout


def test_capture_merges_events_and_page(tmp_path):
    events = tmp_path / "events.json"
    events.write_text(json.dumps([{
        "url": "https://claude.ai/api/organizations/o/chat_conversations/c",
        "body": json.dumps({"chat_messages": [
            {"sender": "human", "text": MESSAGES[0]["content"]},
            {"sender": "assistant", "text": MESSAGES[1]["content"]},
        ]}),
    }]), encoding="utf-8")
    html = tmp_path / "page.html"
    html.write_text(CLAUDE_HTML, encoding="utf-8")
    out = tmp_path / "out" / "messages.json"

    result = runner.invoke(app, [
        "capture", "--url", "https://claude.ai/chat/abc", "--events", str(events), "--html", str(html), "--out", str(out),
    ])
    assert result.exit_code == 0
    assert "✅ 2 messages (network 2, embedded 0, page 2)" in result.stdout
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["provider"] == "claude"
    assert data["session_id"].startswith("conv-abc-")
    assert [m["role"] for m in data["messages"]] == ["user", "assistant"]


def test_capture_requires_an_input():
    result = runner.invoke(app, ["capture", "--url", "https://claude.ai/chat/abc"])
    assert result.exit_code == 1
    assert "Nothing to capture" in result.stdout


def test_snapshot_then_verify(messages_file, tmp_path):
    out_dir = tmp_path / "snapshots"
    result, files = _snapshot(messages_file, out_dir)
    assert result.exit_code == 0
    assert "✅ RCEP_v1" in result.stdout
    assert len(files) == 1
    artifact = json.loads(files[0].read_text(encoding="utf-8"))
    assert artifact["session_id"] == SESSION
    assert artifact["checksum"] in result.stdout

    transcript = tmp_path / "transcript.txt"
    transcript.write_text(encode_transcript([Message.from_dict(m, i, SESSION) for i, m in enumerate(MESSAGES)]))
    verified = runner.invoke(app, ["verify", str(files[0]), "--transcript", str(transcript)])
    assert verified.exit_code == 0
    assert "Checksum:    ✅" in verified.stdout
    assert "Signature:   —" in verified.stdout
    assert "Fingerprint: ✅" in verified.stdout


def test_verify_detects_tampering(messages_file, tmp_path):
    _, files = _snapshot(messages_file, tmp_path / "snapshots")
    artifact = json.loads(files[0].read_text(encoding="utf-8"))
    artifact["context_summary"] = "forged"
    files[0].write_text(json.dumps(artifact), encoding="utf-8")

    result = runner.invoke(app, ["verify", str(files[0])])
    assert result.exit_code == 1
    assert "Checksum:    ❌" in result.stdout


def test_snapshot_ultra_mode(messages_file, tmp_path):
    result, files = _snapshot(messages_file, tmp_path / "snapshots", "--mode", "ultra")
    assert result.exit_code == 0
    artifact = json.loads(files[0].read_text(encoding="utf-8"))
    assert artifact["protocol"] == "RCEP_v2_Ultra"
    assert "transcript_compact" not in artifact


def test_snapshot_rejects_unknown_mode(messages_file, tmp_path):
    result, _ = _snapshot(messages_file, tmp_path / "snapshots", "--mode", "verbose")
    assert result.exit_code == 1
    assert "Unknown mode" in result.stdout


def test_snapshot_past_deadline_is_partial(messages_file, tmp_path):
    result, files = _snapshot(messages_file, tmp_path / "snapshots", "--deadline-ms=-1000")
    assert result.exit_code == 0
    assert "⚠️  Partial snapshot (deadline_exceeded)" in result.stdout
    artifact = json.loads(files[0].read_text(encoding="utf-8"))
    assert artifact["partial"] is True
    assert artifact["protocol"] == "RCEP_v1"

    verified = runner.invoke(app, ["verify", str(files[0])])
    assert verified.exit_code == 0
    assert "Checksum:    ✅" in verified.stdout


def test_sealed_snapshot_and_blocks(messages_file, tmp_path):
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    signer = DeviceSigner(engine, passphrase="cli-test-passphrase")

    with patch("rcep.db.init_db"), patch("rcep.seal.DeviceSigner", return_value=signer):
        result, files = _snapshot(messages_file, tmp_path / "snapshots", "--seal")
        assert result.exit_code == 0
        artifact = json.loads(files[0].read_text(encoding="utf-8"))
        assert artifact["signature"]["key_id"] == signer.key_id

        reply = tmp_path / "reply.txt"
        reply.write_text(BLOCKS_REPLY, encoding="utf-8")
        enriched = tmp_path / "enriched.json"
        blocks = runner.invoke(app, ["blocks", str(files[0]), str(reply), "--provider", "claude", "--out", str(enriched)])
        assert blocks.exit_code == 0
        assert "✅ 4 blocks sealed" in blocks.stdout

    verified = runner.invoke(app, ["verify", str(enriched)])
    assert verified.exit_code == 0
    assert "Signature:   ✅" in verified.stdout
    assert json.loads(enriched.read_text(encoding="utf-8"))["rl4_blocks"]["provider"] == "claude"


def test_blocks_not_found(messages_file, tmp_path):
    _, files = _snapshot(messages_file, tmp_path / "snapshots")
    reply = tmp_path / "reply.txt"
    reply.write_text("nothing here", encoding="utf-8")
    result = runner.invoke(app, ["blocks", str(files[0]), str(reply)])
    assert result.exit_code == 1
    assert "Could not find complete" in result.stdout


def test_seal_requires_device_key_passphrase(messages_file, tmp_path, monkeypatch):
    from rcep.config import settings
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(settings, "DEVICE_KEY_PASSPHRASE", None)

    with patch("rcep.db.init_db"), patch("rcep.seal.DeviceSigner", return_value=DeviceSigner(engine)):
        result, files = _snapshot(messages_file, tmp_path / "snapshots", "--seal")
    assert result.exit_code == 1
    assert "❌ Seal failed: DEVICE_KEY_PASSPHRASE must be set" in result.stdout
    assert files == []
