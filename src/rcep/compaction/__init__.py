from rcep.compaction.canonical import (
    canonicalize, canonical_json, compute_checksum, sha256_hex, compression_ratio,
    encode_transcript, transcript_fingerprint,
)
from rcep.compaction.generator import SnapshotGenerator, transcript_allowed, dedupe_messages

__all__ = [
    "canonicalize",
    "canonical_json",
    "compute_checksum",
    "sha256_hex",
    "compression_ratio",
    "encode_transcript",
    "transcript_fingerprint",
    "SnapshotGenerator",
    "transcript_allowed",
    "dedupe_messages",
]
