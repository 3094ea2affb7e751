import json
import pytest
from rcep.config import settings
from rcep.compaction import (
    SnapshotGenerator, canonical_json, compression_ratio, compute_checksum, dedupe_messages, encode_transcript,
    sha256_hex, transcript_allowed,
)
from rcep.compaction.memory import looks_like_formatting_instruction, looks_like_raw_json_paste, portable_memory
from rcep.compaction.spine import cognitive_spine
from rcep.messages import Message

SESSION = "conv-abc-2024-01-01T00:00:00.000Z"

CONVERSATION = [
    ("user", "My name is Dana and the project is called Harbor. I want to migrate the billing service to postgres."),
    ("assistant", "I recommend migrating the billing tables first because the reporting jobs depend on them."),
    ("user", "We keep the existing API without downtime. What about the reporting replicas?"),
    ("assistant", "Decision: we must migrate billing to postgres before the reporting replicas. Next, freeze writes."),
    ("user", "The migration script fails with a timeout on large tables, is that a problem?"),
    ("assistant", "Important: batch the postgres migration in chunks of ten thousand rows."),
]


def _msgs(pairs=CONVERSATION, session=SESSION):
    return [
        Message(id=f"msg-{i + 1}", role=r, content=c, session_id=session, source="api")
        for i, (r, c) in enumerate(pairs)
    ]


class TickClock:
    """Returns the queued readings in order, then repeats the last one."""

    def __init__(self, *readings):
        self.readings = list(readings)

    def __call__(self):
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


# ---------------------------------------------------------------------------
# Canonical form and checksums
# ---------------------------------------------------------------------------
def test_canonical_json_sorts_keys_recursively():
    value = {"b": 1, "a": {"d": 2, "c": [{"z": 1, "y": 2}]}, "é": "ü"}
    assert canonical_json(value) == '{"a":{"c":[{"y":2,"z":1}],"d":2},"b":1,"é":"ü"}'


def test_checksum_ignores_checksum_and_signature():
    base = {"protocol": "RCEP_v1", "topics": [1, 2]}
    expected = compute_checksum(base)
    assert compute_checksum({**base, "checksum": "x", "signature": {"value": "y"}}) == expected
    assert compute_checksum({**base, "topics": [2, 1]}) != expected
    assert len(expected) == 64


def test_compression_ratio():
    assert compression_ratio(1000, 100) == "10.0x"
    assert compression_ratio(10, 0) == "0x"
    assert compression_ratio(0, 10) == "0x"


def test_encode_transcript_skips_empty():
    msgs = _msgs([("user", "hi"), ("assistant", "  "), ("assistant", "yo")])
    assert encode_transcript(msgs) == "USER:\nhi\n\n<|RL4_MSG|>\n\nASSISTANT:\nyo"


def test_transcript_thresholds(monkeypatch):
    msgs = _msgs()
    assert transcript_allowed(msgs)
    monkeypatch.setattr(settings, "TRANSCRIPT_MAX_MESSAGES", 3)
    assert not transcript_allowed(msgs)
    monkeypatch.setattr(settings, "TRANSCRIPT_MAX_MESSAGES", 1500)
    monkeypatch.setattr(settings, "TRANSCRIPT_MAX_CHARS", 100)
    assert not transcript_allowed(msgs)


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------
def test_dedupe_drops_notices_and_repeats():
    msgs = _msgs([
        ("user", "Hello there"),
        ("assistant", "Pour exécuter du code, activez l'exécution de code dans Paramètres > Capacités."),
        ("user", "HELLO THERE"),
        ("assistant", "General Kenobi"),
    ])
    assert [m.id for m in dedupe_messages(msgs, [])] == ["msg-1", "msg-4"]


def test_dedupe_prefers_referenced_copy():
    msgs = _msgs([("user", "Hello there"), ("assistant", "Reply"), ("user", "hello there")])
    unique = dedupe_messages(msgs, [{"label": "hello", "message_refs": ["msg-3"]}])
    assert [m.id for m in unique] == ["msg-3", "msg-2"]


# ---------------------------------------------------------------------------
# Digest
# ---------------------------------------------------------------------------
def test_digest_shape_and_checksum():
    snap = SnapshotGenerator(_msgs()).generate()
    assert snap["protocol"] == "RCEP_v1"
    assert snap["version"] == "0.3.0-digest"
    assert snap["session_id"] == SESSION
    assert snap["checksum"] == compute_checksum(snap)
    assert snap["conversation_fingerprint"]["sha256"] == sha256_hex(snap["transcript_compact"])
    assert snap["transcript_compact"].startswith("USER:\nMy name is Dana")
    assert snap["metadata"]["messages"] == len(CONVERSATION)
    assert snap["metadata"]["compression_bundle"].endswith("x")
    assert "postgres" in [t["label"] for t in snap["topics"]]
    assert snap["decisions"][0]["confidence_llm"] == 80
    assert "Important: batch the postgres migration in chunks of ten thousand rows." in snap["insights"]

    # Survives a JSON round trip unchanged
    assert compute_checksum(json.loads(json.dumps(snap))) == snap["checksum"]


def test_digest_checksum_detects_mutation():
    snap = SnapshotGenerator(_msgs()).generate()
    snap["insights"].append("forged")
    assert compute_checksum(snap) != snap["checksum"]


def test_digest_without_transcript():
    snap = SnapshotGenerator(_msgs(), include_transcript=False).generate()
    assert "transcript_compact" not in snap
    assert snap["conversation_fingerprint"]["sha256"]


def test_digest_omits_transcript_over_threshold(monkeypatch):
    monkeypatch.setattr(settings, "TRANSCRIPT_MAX_MESSAGES", 2)
    snap = SnapshotGenerator(_msgs()).generate()
    assert "transcript_compact" not in snap


def test_unknown_mode_falls_back_to_digest():
    assert SnapshotGenerator(_msgs(), output_mode="bogus").generate()["protocol"] == "RCEP_v1"


def test_session_id_prefers_known_conversation():
    msgs = _msgs(session="conv-unknown-2024-01-01T00:00:00.000Z")
    snap = SnapshotGenerator(msgs).generate()
    assert snap["session_id"].startswith("conv-hash-")


# ---------------------------------------------------------------------------
# Ultra / Ultra+
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("mode,protocol", [("ultra", "RCEP_v2_Ultra"), ("ultra_plus", "RCEP_v2_UltraPlus")])
def test_ultra_modes_have_no_transcript(mode, protocol):
    snap = SnapshotGenerator(_msgs(), output_mode=mode).generate()
    assert snap["protocol"] == protocol
    assert "transcript_compact" not in snap
    assert "timeline_summary" not in snap
    assert set(snap["metadata"]) == {"total_messages", "generated_at", "compression_ratio"}
    assert set(snap["conversation_fingerprint"]) == {"algorithm", "sha256"}
    assert snap["checksum"] == compute_checksum(snap)
    assert all(t["weight"] > 700 for t in snap["topics"])


def test_ultra_plus_adds_semantic_hints():
    snap = SnapshotGenerator(_msgs(), output_mode="ultra_plus").generate()
    assert snap["semantic_validation"]["status"] == "unverified"
    assert "semantic_spine" in snap
    assert "validation_checklist" in snap


def test_ultra_fingerprint_matches_digest_transcript():
    digest = SnapshotGenerator(_msgs()).generate()
    ultra = SnapshotGenerator(_msgs(), output_mode="ultra").generate()
    assert ultra["conversation_fingerprint"]["sha256"] == digest["conversation_fingerprint"]["sha256"]


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------
def test_deadline_before_start_returns_empty_partial():
    snap = SnapshotGenerator(_msgs(), deadline=10.0, clock=TickClock(11.0)).generate()
    assert snap["partial"] is True
    assert snap["partial_reason"] == "deadline_exceeded"
    assert snap["version"] == "0.1.0"
    assert snap["protocol"] == "RCEP_v1"
    assert snap["topics"] == [] and snap["decisions"] == []
    assert len(snap["messages"]) == len(CONVERSATION)
    assert snap["checksum"] == compute_checksum(snap)


def test_deadline_mid_extraction_keeps_completed_stages():
    snap = SnapshotGenerator(_msgs(), deadline=10.0, clock=TickClock(0.0, 20.0)).generate()
    assert snap["partial"] is True
    assert snap["topics"]
    assert snap["decisions"] == []
    assert snap["insights"] == []
    assert snap["checksum"] == compute_checksum(snap)


@pytest.mark.parametrize("mode,protocol", [("ultra", "RCEP_v2_Ultra"), ("ultra_plus", "RCEP_v2_UltraPlus")])
def test_ultra_partial_keeps_tier_invariants(mode, protocol):
    pairs = [CONVERSATION[i % len(CONVERSATION)] for i in range(40)]
    snap = SnapshotGenerator(_msgs(pairs), output_mode=mode, deadline=10.0, clock=TickClock(0.0, 20.0)).generate()
    assert snap["partial"] is True
    assert snap["protocol"] == protocol
    assert snap["topics"]
    assert "messages" not in snap
    assert "transcript_compact" not in snap
    assert len(snap["conversation_fingerprint"]["sha256"]) == 64
    assert snap["checksum"] == compute_checksum(snap)


def test_partial_drops_messages_over_transcript_threshold(monkeypatch):
    monkeypatch.setattr(settings, "TRANSCRIPT_MAX_MESSAGES", 3)
    snap = SnapshotGenerator(_msgs(), deadline=10.0, clock=TickClock(11.0)).generate()
    assert "messages" not in snap
    assert snap["conversation_fingerprint"]["sha256"] == sha256_hex(encode_transcript(_msgs()))


# ---------------------------------------------------------------------------
# Spine and memory
# ---------------------------------------------------------------------------
def test_cognitive_spine_uses_real_excerpts():
    msgs = _msgs()
    spine = cognitive_spine([{"label": "postgres"}], [], [], [], msgs)
    assert spine["core_context"] == "Topics: postgres."
    assert spine["main_tension"].startswith("The migration script fails")
    assert spine["open_questions"][0].startswith("The migration script fails")
    assert spine["key_decision"]["statement"] == "UNKNOWN"
    assert any("because" in c for c in spine["decision_criteria"])


def test_portable_memory():
    memory = portable_memory(_msgs(), [{"label": "postgres"}], [{"phase": "Phase 1"}])
    assert memory["identity"][0].startswith("My name is Dana")
    assert memory["current_objective"].startswith("My name is Dana")
    assert "Themes: postgres" in memory["handoff_title"]
    assert memory["non_negotiables"][0].startswith("We keep the existing API")


def test_memory_noise_filters():
    assert looks_like_formatting_instruction("paste this as markdown")
    assert not looks_like_formatting_instruction("we keep postgres")
    assert looks_like_raw_json_paste('{"protocol": "RCEP_v1"}')
    assert not looks_like_raw_json_paste("plain words")
