"""
Blocks enrichment: `<RL4-*>` blocks an assistant was asked to emit, merged
into the last snapshot after the fact.

Merging changes the artifact, so the checksum is recomputed and, when the
snapshot was sealed, the signature is renewed with it.
"""
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
from rcep.compaction.canonical import compute_checksum
from rcep.messages import now_ms
from rcep.logging import logger

END_MARKER = "<RL4-END/>"
BLOCK_TAGS = {
    "arch": "RL4-ARCH",
    "layers": "RL4-LAYERS",
    "topics": "RL4-TOPICS",
    "timeline": "RL4-TIMELINE",
    "decisions": "RL4-DECISIONS",
    "insights": "RL4-INSIGHTS",
}
MIN_BLOCKS = 4
SUMMARY_MAX_LINES = 12

# Minimum inner length for a block to count as substantial
SUBSTANTIAL = {"arch": 20, "timeline": 40, "decisions": 40, "insights": 40}

SUMMARY_EMOJI = re.compile(r"##\s*📋\s*HUMAN\s+SUMMARY[\s\S]*?\n([\s\S]{10,4000})$", re.IGNORECASE)
SUMMARY_PLAIN = re.compile(r"HUMAN\s+SUMMARY[\s\S]*?\n([\s\S]{10,4000})$", re.IGNORECASE)
SUMMARY_CUTS = [re.compile(r"\n-{3,}\n"), re.compile(r"\n_{3,}\n"), re.compile(r"\n###\s+")]


@dataclass
class Blocks:
    arch: str = ""
    layers: str = ""
    topics: str = ""
    timeline: str = ""
    decisions: str = ""
    insights: str = ""
    human_summary: str = ""
    found_blocks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _block(text: str, tag: str) -> str:
    m = re.search(rf"<{tag}>([\s\S]*?)</{tag}>", text, re.IGNORECASE)
    return m.group(0).strip() if m else ""


def _inner(block: str, tag: str) -> str:
    inner = re.sub(rf"^<{tag}>", "", block, flags=re.IGNORECASE)
    inner = re.sub(rf"</{tag}>$", "", inner, flags=re.IGNORECASE)
    return inner.strip()


def _collapsed(inner: str) -> bool:
    """Some UIs collapse long blocks into an ellipsis."""
    return inner in ("...", "…") or ("..." in inner and len(inner) < 60)


def _human_summary(text: str) -> str:
    m = SUMMARY_EMOJI.search(text) or SUMMARY_PLAIN.search(text)
    if not m:
        return ""
    cut = m.group(1)
    for sep in SUMMARY_CUTS:
        cut = sep.split(cut, maxsplit=1)[0]
    lines = [line.strip() for line in cut.strip().splitlines() if line.strip()]
    return "\n".join(lines[:SUMMARY_MAX_LINES])


def extract_blocks(text: str) -> Optional[Blocks]:
    """Return the blocks found in `text`, or None when they are missing or look truncated."""
    t = str(text or "")
    if not t:
        return None
    if END_MARKER in t:
        t = t.split(END_MARKER)[0]

    found = {name: _block(t, tag) for name, tag in BLOCK_TAGS.items()}
    count = sum(1 for b in found.values() if b)
    if count < MIN_BLOCKS:
        return None

    inner = {name: _inner(b, BLOCK_TAGS[name]) for name, b in found.items() if b}
    if any(_collapsed(body) for body in inner.values()):
        logger.debug("Blocks look collapsed; waiting for a full copy")
        return None
    if not any(len(inner.get(name, "")) > n for name, n in SUBSTANTIAL.items()):
        return None

    return Blocks(**found, human_summary=_human_summary(t), found_blocks=count)


def best_blocks(candidates) -> Optional[Blocks]:
    """The candidate text yielding the most blocks wins; earlier candidates win ties."""
    best: Optional[Blocks] = None
    for text in candidates:
        b = extract_blocks(text)
        if b and (best is None or b.found_blocks > best.found_blocks):
            best = b
    return best


def blocks_payload(blocks: Blocks, provider: str, conv_id: str, reason: str) -> Dict[str, Any]:
    return {
        "capturedAt": now_ms(),
        "provider": provider,
        "convId": conv_id,
        "reason": reason,
        "blocks": blocks.to_dict(),
    }


def seal_blocks_into_snapshot(snapshot: Dict[str, Any], payload: Dict[str, Any], signer=None) -> Dict[str, Any]:
    """
    Return a copy of `snapshot` carrying `rl4_blocks`, with a fresh checksum.
    A previously signed snapshot is re-signed with `signer`; an unsigned one stays unsigned.
    """
    nxt = {**snapshot, "rl4_blocks": payload}
    nxt.pop("signature", None)
    nxt["checksum"] = compute_checksum(nxt)
    if isinstance(snapshot.get("signature"), dict):
        if signer is None:
            raise ValueError("Snapshot was sealed; a signer is required to re-seal it")
        nxt["signature"] = signer.sign_checksum(nxt["checksum"])
    logger.info(f"Blocks sealed into snapshot {nxt.get('session_id')} ({payload.get('blocks', {}).get('found_blocks')} blocks)")
    return nxt
