"""
Snapshot generation: canonical messages -> digest, ultra or ultra_plus artifact.

A single deadline governs extraction. It is checked before topics, before
decisions and before insights; when it has passed, a partial snapshot with
whatever stages completed is returned instead of a truncated full artifact.
"""
import re
import dataclasses
import time
from typing import Any, Callable, Dict, List, Optional, Sequence
from rcep.config import settings
from rcep.compaction.canonical import (
    TRANSCRIPT_FORMAT, canonical_json, compression_ratio, compute_checksum, encode_transcript, sha256_hex,
)
from rcep.compaction.memory import portable_memory
from rcep.compaction.spine import cognitive_spine, semantic_hints
from rcep.extraction import extract_decisions, extract_insights, extract_topics, timeline_macro, timeline_summary
from rcep.extraction.text import excerpt
from rcep.messages import Message, iso_now, now_ms
from rcep.models.capture import OutputMode
from rcep.logging import logger

PROTOCOLS = {
    OutputMode.DIGEST: "RCEP_v1",
    OutputMode.ULTRA: "RCEP_v2_Ultra",
    OutputMode.ULTRA_PLUS: "RCEP_v2_UltraPlus",
}
DIGEST_VERSION = "0.3.0-digest"
PARTIAL_VERSION = "0.1.0"
DEADLINE_EXCEEDED = "deadline_exceeded"

MAX_TOPICS = 7
MAX_DECISIONS = 5
MAX_INSIGHTS = 10
ULTRA_TOPIC_MIN_WEIGHT = 700
ULTRA_DECISION_MIN_CONFIDENCE = 80
CRITICAL_INTENTS = {"decide", "recommend"}
DEDUP_KEY_CHARS = 200

# Provider notices that are not part of the conversation
SYSTEM_NOTICES = [re.compile(p, re.IGNORECASE) for p in (
    r"Pour exécuter du code, activez l'exécution",
    r"Pour exécuter du code, activez",
    r"activez l'exécution de code",
    r"Paramètres > Capacités",
)]

CONV_PREFIX = re.compile(r"^conv-(.+?)-")


def transcript_allowed(messages: Sequence[Message]) -> bool:
    """False once the message count or character volume crosses the transcript thresholds."""
    if len(messages) > settings.TRANSCRIPT_MAX_MESSAGES:
        return False
    return sum(len(m.content or "") for m in messages) <= settings.TRANSCRIPT_MAX_CHARS


def _branding(mode: str) -> Dict[str, str]:
    return {
        "generator": "RL4 Snapshot",
        "protocol_family": "RCEP™",
        "notice": "RCEP™ is a trademark claim. Do not remove this header.",
        "mode": mode,
    }


def _producer(mode: str) -> Dict[str, str]:
    return {
        "product": "RL4 Snapshot",
        "protocol_family": "RCEP™",
        "generator": "rl4-snapshot-extension",
        "mode": mode,
    }


def dedupe_messages(messages: Sequence[Message], topics: Sequence[Dict[str, Any]]) -> List[Message]:
    """
    Drop provider system notices and repeated content (first 200 chars,
    case-insensitive). When a later duplicate is referenced by a topic it
    takes the earlier copy's place.
    """
    referenced = {ref for t in topics for ref in (t.get("message_refs") or [])}
    unique: List[Message] = []
    position: Dict[str, int] = {}
    for msg in messages:
        content = (msg.content or "").strip()
        if not content or any(p.search(content) for p in SYSTEM_NOTICES):
            continue
        key = content.lower()[:DEDUP_KEY_CHARS]
        if key in position:
            if msg.id in referenced:
                unique[position[key]] = msg
            continue
        position[key] = len(unique)
        unique.append(msg)
    return unique


class SnapshotGenerator:
    def __init__(
        self,
        messages: Sequence[Message],
        output_mode: str = OutputMode.DIGEST.value,
        include_transcript: bool = True,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.messages = list(messages or [])
        try:
            self.output_mode = OutputMode(output_mode)
        except ValueError:
            self.output_mode = OutputMode.DIGEST
        self.include_transcript = include_transcript
        self.clock = clock
        self.deadline = deadline if deadline is not None else clock() + settings.SNAPSHOT_DEADLINE_MS / 1000

    @property
    def is_ultra(self) -> bool:
        return self.output_mode in (OutputMode.ULTRA, OutputMode.ULTRA_PLUS)

    def _deadline_passed(self) -> bool:
        return self.clock() > self.deadline

    def pick_session_id(self, now_iso: str) -> str:
        """Prefer a known conversation's session id over an unknown one."""
        for m in self.messages:
            if m.session_id and not m.session_id.startswith("conv-unknown-"):
                return m.session_id
        for m in self.messages:
            if m.session_id:
                match = CONV_PREFIX.match(m.session_id)
                if match and match.group(1) != "unknown":
                    return f"conv-{match.group(1)}-{now_iso}"
                break
        return f"conv-hash-{now_ms():x}-{now_iso}"

    # -----------------------------------------------------------------------
    # Extraction stages
    # -----------------------------------------------------------------------
    def _stage(self, name: str, fn, *args) -> List[Any]:
        try:
            return fn(*args)
        except Exception as e:
            logger.error(f"{name} extraction failed: {e}")
            return []

    def partial_snapshot(self, reason: str, **completed) -> Dict[str, Any]:
        """
        Completed stages only, with the same protocol, fingerprint and checksum
        as a full artifact of this tier. Raw messages ride along only where a
        digest transcript would be allowed.
        """
        now_iso = iso_now()
        session_id = self.pick_session_id(now_iso)
        messages = dedupe_messages(self.messages, completed.get("topics") or [])
        snapshot = {
            "protocol": PROTOCOLS[self.output_mode],
            "version": PARTIAL_VERSION,
            "session_id": session_id,
            "timestamp": now_iso,
            "partial": True,
            "partial_reason": reason,
            "topics": [],
            "decisions": [],
            "insights": [],
            "context_summary": "",
            "conversation_fingerprint": {
                "algorithm": "sha256",
                "transcript_format": TRANSCRIPT_FORMAT,
                "sha256": sha256_hex(encode_transcript(messages)),
            },
            "metadata": {
                "messages": len(self.messages),
                "bundle_ratio": "N/A (partial)",
                "compression": "N/A (partial)",
                "generated": now_iso,
            },
        }
        snapshot.update(completed)
        if self.include_transcript and not self.is_ultra and transcript_allowed(self.messages):
            snapshot["messages"] = [{**m.to_dict(), "session_id": session_id} for m in self.messages]
        snapshot["checksum"] = compute_checksum(snapshot)
        logger.warning(f"Returning partial snapshot ({reason}); completed stages: {sorted(completed) or 'none'}")
        return snapshot

    def summary(self, topics: Sequence[Dict[str, Any]], decisions: Sequence[Dict[str, Any]]) -> str:
        top = ", ".join(t["label"] for t in topics[:3])
        key = ", ".join(d["intent"] for d in decisions[:2])
        text = f"{len(self.messages)} messages. Topics: {top or 'none'}. Decisions: {key or 'none'}."
        return text[:197] + "..." if len(text) > 200 else text

    def generate(self) -> Dict[str, Any]:
        if self._deadline_passed():
            return self.partial_snapshot(DEADLINE_EXCEEDED)
        topics = [t.to_dict() for t in self._stage("topic", extract_topics, self.messages)][:MAX_TOPICS]

        if self._deadline_passed():
            return self.partial_snapshot(DEADLINE_EXCEEDED, topics=topics)
        decisions = [d.to_dict() for d in self._stage("decision", extract_decisions, self.messages)][:MAX_DECISIONS]

        if self._deadline_passed():
            return self.partial_snapshot(DEADLINE_EXCEEDED, topics=topics, decisions=decisions)
        insights = self._stage("insight", extract_insights, self.messages)[:MAX_INSIGHTS]

        return self._assemble(topics, decisions, insights)

    # -----------------------------------------------------------------------
    # Assembly
    # -----------------------------------------------------------------------
    def _assemble(self, topics, decisions, insights) -> Dict[str, Any]:
        now_iso = iso_now()
        session_id = self.pick_session_id(now_iso)
        messages = [
            dataclasses.replace(m, session_id=session_id)
            for m in dedupe_messages(self.messages, topics)
        ]
        original_size = sum(len(m.content or "") for m in self.messages)

        transcript = encode_transcript(messages)
        transcript_sha = sha256_hex(transcript)
        macro = timeline_macro(messages)
        spine = cognitive_spine(topics, decisions, insights, macro, messages)
        memory = portable_memory(messages, topics, macro)
        context_summary = self.summary(topics, decisions)
        context_state = {
            "core_subject": "RL4 Snapshot (Browser Chat)",
            "current_goal": "Capture → Compress → Seal",
            "status": "Digest generated",
        }
        mode = OutputMode.DIGEST.value

        head = {
            "_branding": _branding(mode),
            "protocol": PROTOCOLS[OutputMode.DIGEST],
            "version": DIGEST_VERSION,
            "producer": _producer(mode),
            "session_id": session_id,
            "timestamp": now_iso,
            "context_state": context_state,
            "topics": topics,
            "decisions": decisions,
            "insights": insights,
            "context_summary": context_summary,
        }
        fingerprint = {"algorithm": "sha256", "transcript_format": TRANSCRIPT_FORMAT, "sha256": transcript_sha}

        # Compression target: the analysis alone, without transcript or timeline summary
        analysis_only = {
            **head,
            "timeline_macro": macro,
            "cognitive_spine": spine,
            "portable_memory": memory,
            "conversation_fingerprint": fingerprint,
            "metadata": {
                "messages": len(messages),
                "messages_original": len(self.messages),
                "original_size_chars": original_size,
                "digest_size_chars": 0,
                "compression_digest": "0x",
                "generated_at": now_iso,
            },
            "checksum": "",
        }

        digest = {
            **head,
            "timeline_summary": timeline_summary(messages),
            "timeline_macro": macro,
            "cognitive_spine": spine,
            "portable_memory": memory,
            "conversation_fingerprint": fingerprint,
            "metadata": {
                "messages": len(messages),
                "messages_original": len(self.messages),
                "original_size_chars": original_size,
                "digest_size_chars": 0,
                "bundle_size_chars": 0,
                "compression_digest": "0x",
                "compression_bundle": "0x",
                "generated_at": now_iso,
            },
            "checksum": "",
        }
        if self.include_transcript and not self.is_ultra:
            if transcript_allowed(self.messages):
                digest["transcript_compact"] = transcript
                digest["transcript_format"] = TRANSCRIPT_FORMAT
            else:
                logger.info(f"Transcript omitted: {len(self.messages)} messages / {original_size} chars over threshold")

        analysis_size = len(canonical_json(analysis_only))
        bundle_size = len(canonical_json(digest))
        digest["metadata"]["digest_size_chars"] = bundle_size
        digest["metadata"]["compression_digest"] = compression_ratio(original_size, analysis_size)
        digest["metadata"]["bundle_size_chars"] = bundle_size
        digest["metadata"]["compression_bundle"] = compression_ratio(original_size, bundle_size)

        if self.is_ultra:
            ultra = self.build_ultra(digest, original_size, transcript_sha, messages)
            ultra["checksum"] = compute_checksum(ultra)
            return ultra

        digest["checksum"] = compute_checksum(digest)
        return digest

    def build_ultra(
        self,
        digest: Dict[str, Any],
        original_size: int,
        transcript_sha: str,
        messages: Sequence[Message],
    ) -> Dict[str, Any]:
        """Drop the transcript and per-message arrays; keep strong topics and critical decisions."""
        plus = self.output_mode == OutputMode.ULTRA_PLUS
        mode = self.output_mode.value
        now_iso = digest.get("timestamp") or iso_now()

        topics = [
            {"label": t["label"], "weight": t["weight"], "summary": t["summary"]}
            for t in digest["topics"]
            if (t.get("weight") or 0) > ULTRA_TOPIC_MIN_WEIGHT
        ]
        decisions = [
            {
                "id": d["id"],
                "intent": d["intent"],
                "choice": excerpt(d.get("chosen_option") or "", 240),
                "choice_sha256": sha256_hex(d["chosen_option"]) if d.get("chosen_option") else "",
                "rationale": excerpt(d.get("intent_text") or "", 140),
            }
            for d in digest["decisions"]
            if (d.get("confidence_llm") or 0) > ULTRA_DECISION_MIN_CONFIDENCE or d.get("intent") in CRITICAL_INTENTS
        ]
        macro = timeline_macro(messages)
        context_state = {**digest["context_state"], "status": "Ultra+ generated" if plus else "Ultra generated"}

        ultra: Dict[str, Any] = {
            "_branding": _branding(mode),
            "protocol": PROTOCOLS[self.output_mode],
            "producer": _producer(mode),
            "session_id": digest["session_id"],
            "timestamp": now_iso,
            "context_state": context_state,
            "topics": topics,
            "decisions": decisions,
            "timeline_macro": macro,
            "portable_memory": portable_memory(messages, digest["topics"], macro),
        }
        if plus:
            ultra.update(semantic_hints(
                digest["context_state"], topics, decisions, digest["decisions"], macro, messages,
            ))
        ultra["conversation_fingerprint"] = {"algorithm": "sha256", "sha256": transcript_sha}
        ultra["metadata"] = {"total_messages": len(messages), "generated_at": now_iso, "compression_ratio": "0x"}
        ultra["checksum"] = ""
        ultra["metadata"]["compression_ratio"] = compression_ratio(original_size, len(canonical_json(ultra)))
        return ultra
