import pytest
from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool
from rcep.blocks import best_blocks, blocks_payload, extract_blocks, seal_blocks_into_snapshot
from rcep.compaction import compute_checksum
from rcep.seal import DeviceSigner, verify_artifact

ARCH = "<RL4-ARCH>Browser extension with a capture layer and a compaction layer.</RL4-ARCH>"
LAYERS = "<RL4-LAYERS>capture, reconcile, compact, seal</RL4-LAYERS>"
TOPICS = "<RL4-TOPICS>hydration, dedup</RL4-TOPICS>"
DECISIONS = "<RL4-DECISIONS>Decision: persist the last snapshot locally and re-sign after enrichment.</RL4-DECISIONS>"
TIMELINE = "<RL4-TIMELINE>Phase 1 capture, phase 2 compaction, phase 3 sealing of the artifact.</RL4-TIMELINE>"

SUMMARY = (
    "## 📋 HUMAN SUMMARY\n"
    "We chose local persistence.\n"
    "The seal is renewed on enrichment.\n"
    "---\n"
    "footer that is not part of the summary\n"
)

RESPONSE = "\n".join(["Here is the package.", ARCH, LAYERS, TOPICS, DECISIONS, SUMMARY]) + "<RL4-END/> trailing"


def test_extract_blocks():
    blocks = extract_blocks(RESPONSE)
    assert blocks is not None
    assert blocks.found_blocks == 4
    assert blocks.arch == ARCH
    assert blocks.timeline == ""
    assert blocks.human_summary == "We chose local persistence.\nThe seal is renewed on enrichment."


def test_too_few_blocks():
    assert extract_blocks("\n".join([ARCH, LAYERS, TOPICS])) is None
    assert extract_blocks("") is None


def test_collapsed_blocks_rejected():
    collapsed = RESPONSE.replace(DECISIONS, "<RL4-DECISIONS>…</RL4-DECISIONS>")
    assert extract_blocks(collapsed) is None


def test_blocks_must_be_substantial():
    thin = "\n".join([
        "<RL4-ARCH>tiny</RL4-ARCH>",
        "<RL4-LAYERS>a</RL4-LAYERS>",
        "<RL4-TOPICS>b</RL4-TOPICS>",
        "<RL4-DECISIONS>short</RL4-DECISIONS>",
    ])
    assert extract_blocks(thin) is None


def test_best_blocks_prefers_most_complete():
    five = "\n".join([ARCH, LAYERS, TOPICS, DECISIONS, TIMELINE])
    best = best_blocks(["no blocks here", RESPONSE, five])
    assert best.found_blocks == 5
    assert best_blocks(["nothing", ""]) is None


@pytest.fixture(name="signer")
def signer_fixture():
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    return DeviceSigner(engine, passphrase="blocks-test-passphrase")


def _snapshot():
    snap = {"protocol": "RCEP_v1", "session_id": "conv-abc-1", "topics": []}
    snap["checksum"] = compute_checksum(snap)
    return snap


def test_seal_blocks_into_unsigned_snapshot():
    snap = _snapshot()
    payload = blocks_payload(extract_blocks(RESPONSE), "claude", "abc", "manual")
    merged = seal_blocks_into_snapshot(snap, payload)
    assert merged["rl4_blocks"]["provider"] == "claude"
    assert merged["rl4_blocks"]["blocks"]["found_blocks"] == 4
    assert merged["checksum"] == compute_checksum(merged)
    assert merged["checksum"] != snap["checksum"]
    assert "signature" not in merged
    assert "rl4_blocks" not in snap


def test_seal_blocks_renews_signature(signer: DeviceSigner):
    snap = signer.seal_artifact(_snapshot())
    payload = blocks_payload(extract_blocks(RESPONSE), "claude", "abc", "auto")

    with pytest.raises(ValueError):
        seal_blocks_into_snapshot(snap, payload)

    merged = seal_blocks_into_snapshot(snap, payload, signer=signer)
    assert merged["signature"]["signed_payload"] == f"checksum:{merged['checksum']}"
    assert verify_artifact(merged).ok
