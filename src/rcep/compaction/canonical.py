"""
Canonical JSON, checksums and the canonical transcript encoding.

Canonical form: keys sorted recursively, compact separators, non-ASCII kept
as is. The artifact checksum is the SHA-256 hex of the canonical artifact with
its `checksum` and `signature` fields removed.
"""
import hashlib
import json
import math
from typing import Any, Dict, Sequence
from rcep.messages import Message

MESSAGE_SEPARATOR = "\n\n<|RL4_MSG|>\n\n"
TRANSCRIPT_FORMAT = "ROLE:\\nCONTENT (messages separated by \\n\\n<|RL4_MSG|>\\n\\n)"
EXCLUDED_FROM_CHECKSUM = ("checksum", "signature")


def canonicalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: canonicalize(value[k]) for k in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(canonicalize(value), separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(str(text or "").encode("utf-8")).hexdigest()


def compute_checksum(artifact: Dict[str, Any]) -> str:
    body = {k: v for k, v in artifact.items() if k not in EXCLUDED_FROM_CHECKSUM}
    return sha256_hex(canonical_json(body))


def compression_ratio(original_size: int, compressed_size: int) -> str:
    if not compressed_size or compressed_size <= 0:
        return "0x"
    ratio = original_size / compressed_size
    if not math.isfinite(ratio) or ratio <= 0:
        return "0x"
    return f"{ratio:.1f}x"


def encode_transcript(messages: Sequence[Message]) -> str:
    """`USER:\\n...` / `ASSISTANT:\\n...` blocks; empty messages are skipped."""
    out = []
    for m in messages:
        content = (m.content or "").strip()
        if not content:
            continue
        role = "USER" if m.role == "user" else "ASSISTANT"
        out.append(f"{role}:\n{content}")
    return MESSAGE_SEPARATOR.join(out)


def transcript_fingerprint(messages: Sequence[Message]) -> str:
    return sha256_hex(encode_transcript(messages))
