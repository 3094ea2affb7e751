"""
Reconciler: dedup and streaming merge into one canonical message list.

A message is identified by its signature (role, normalized length, normalized
head and tail). Prefix-only signatures are avoided because long assistant
outputs frequently share identical openings.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set
from rcep.config import settings
from rcep.messages import CandidateMessage, Message, iso_now, now_ms
from rcep.logging import logger

SIGNATURE_SPAN = 220

# Preference order when sources tie on size
SOURCE_PRIORITY = ["network", "embedded", "page"]

_WS = re.compile(r"\s+")


def signature(role: Optional[str], content: str) -> str:
    c = _WS.sub(" ", content or "").strip().lower()
    n = len(c)
    head = c[:SIGNATURE_SPAN]
    tail = c[max(0, n - SIGNATURE_SPAN):] if n > SIGNATURE_SPAN else ""
    return f"{role or 'unknown'}|{n}|{head}|{tail}"


def is_streaming_growth(prev: str, nxt: str) -> bool:
    """True when one text is a prefix of the other (in-place growth of one message)."""
    prev = (prev or "").strip()
    nxt = (nxt or "").strip()
    if not prev or not nxt:
        return False
    return nxt.startswith(prev) or prev.startswith(nxt)


def infer_roles(candidates: List[CandidateMessage]) -> List[CandidateMessage]:
    """
    Fill undetectable roles by alternating from the nearest known role.

    Known-ambiguous heuristic: with no known role before it, an item gets
    'user' at even positions, so the first message defaults to the user.
    """
    last_known: Optional[str] = None
    for i, cand in enumerate(candidates):
        if cand.role:
            last_known = cand.role
            continue
        if last_known:
            cand.role = "assistant" if last_known == "user" else "user"
        else:
            cand.role = "user" if i % 2 == 0 else "assistant"
        last_known = cand.role
    return candidates


class Reconciler:
    """
    Canonical message list for one session and one source.

    Budgets are optional: once the message count or the character volume
    would cross them, `budget_reached` is set and every further candidate
    from this source is rejected.
    """

    def __init__(
        self,
        session_id: str,
        source: str,
        max_messages: Optional[int] = None,
        max_total_chars: Optional[int] = None,
    ):
        self.session_id = session_id
        self.source = source
        self.max_messages = max_messages
        self.max_total_chars = max_total_chars
        self.messages: List[Message] = []
        self.budget_reached = False
        self._signatures: Set[str] = set()
        self._total_chars = 0

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def total_chars(self) -> int:
        return self._total_chars

    def reset(self, session_id: str):
        self.session_id = session_id
        self.messages = []
        self.budget_reached = False
        self._signatures = set()
        self._total_chars = 0

    def restore(self, messages: List[Message]):
        """Start from a persisted copy of this session's messages."""
        self.messages = list(messages)
        self._signatures = {signature(m.role, m.content) for m in self.messages}
        self._total_chars = sum(len(m.content or "") for m in self.messages)

    def _try_streaming_update(self, cand: CandidateMessage) -> bool:
        if not self.messages:
            return False
        last = self.messages[-1]
        if last.role != cand.role or not is_streaming_growth(last.content, cand.content):
            return False
        longer = cand.content.strip()
        if len(longer) < len(last.content.strip()):
            return True  # shorter re-render of the same message
        self._signatures.discard(signature(last.role, last.content))
        self._total_chars += len(longer) - len(last.content)
        last.content = longer
        last.captured_at = now_ms()
        self._signatures.add(signature(last.role, last.content))
        return True

    def add(self, cand: CandidateMessage, source_url: Optional[str] = None) -> str:
        """Returns one of 'appended', 'updated', 'duplicate', 'rejected'."""
        if self.budget_reached or not cand.role or not cand.content:
            return "rejected"
        if self._try_streaming_update(cand):
            return "updated"

        sig = signature(cand.role, cand.content)
        if sig in self._signatures:
            return "duplicate"

        next_chars = self._total_chars + len(cand.content)
        over_chars = self.max_total_chars is not None and next_chars > self.max_total_chars
        over_count = self.max_messages is not None and len(self.messages) >= self.max_messages
        if over_chars or over_count:
            self.budget_reached = True
            logger.warning(
                f"{self.source} budget reached at {len(self.messages)} messages / {self._total_chars} chars; "
                f"rejecting further candidates"
            )
            return "rejected"

        self._signatures.add(sig)
        self._total_chars = next_chars
        self.messages.append(Message(
            id=f"msg-{len(self.messages) + 1}",
            role=cand.role,
            content=cand.content,
            session_id=self.session_id,
            timestamp=cand.timestamp or iso_now(),
            source=self.source,
            captured_at=now_ms(),
            source_url=source_url,
        ))
        return "appended"

    def extend(self, candidates: Iterable[CandidateMessage], source_url: Optional[str] = None) -> Dict[str, int]:
        counts = {"appended": 0, "updated": 0, "duplicate": 0, "rejected": 0}
        for cand in candidates:
            counts[self.add(cand, source_url=source_url)] += 1
            if self.budget_reached:
                break
        return counts

    def sync_replace(self, candidates: List[CandidateMessage]) -> int:
        """
        Index-aligned sync for a fully rendered page: the message at position i
        keeps its id and is updated in place when the role still matches.
        """
        stamp = iso_now()
        nxt: List[Message] = []
        for i, cand in enumerate(candidates):
            prev = self.messages[i] if i < len(self.messages) else None
            if prev is not None and prev.role == cand.role:
                if prev.content != cand.content:
                    prev.content = cand.content
                    prev.captured_at = now_ms()
                nxt.append(prev)
            else:
                nxt.append(Message(
                    id=f"msg-{i + 1}",
                    role=cand.role or "user",
                    content=cand.content,
                    session_id=self.session_id,
                    timestamp=stamp,
                    source=self.source,
                    captured_at=now_ms(),
                ))
        self.messages = nxt
        self._signatures = {signature(m.role, m.content) for m in nxt}
        self._total_chars = sum(len(m.content) for m in nxt)
        return len(nxt)


@dataclass
class SourceResult:
    name: str  # "network", "embedded" or "page"
    messages: List[Message] = field(default_factory=list)


def _fill_gaps(merged: List[Message], secondary: Sequence[Message]) -> int:
    """Insert secondary messages missing from `merged` right after their nearest present predecessor."""
    sigs = [signature(m.role, m.content) for m in merged]
    present = set(sigs)
    anchor: Optional[str] = None
    inserted = 0
    for msg in secondary:
        sig = signature(msg.role, msg.content)
        if sig in present:
            anchor = sig
            continue
        pos = sigs.index(anchor) + 1 if anchor is not None else 0
        if pos < len(merged):
            neighbour = merged[pos]
            if neighbour.role == msg.role and is_streaming_growth(neighbour.content, msg.content):
                anchor = sigs[pos]
                continue
        merged.insert(pos, msg)
        sigs.insert(pos, sig)
        present.add(sig)
        anchor = sig
        inserted += 1
    return inserted


def merge_sources(sources: Sequence[SourceResult], closeness: Optional[float] = None) -> List[Message]:
    """
    Pick the richest source (ties go to network, then embedded, then page)
    and fill its gaps from every other source whose count is close to it.
    The result is renumbered msg-1..msg-N.
    """
    closeness = settings.MERGE_CLOSENESS_RATIO if closeness is None else closeness
    available = [s for s in sources if s.messages]
    if not available:
        return []

    def rank(s: SourceResult):
        prio = SOURCE_PRIORITY.index(s.name) if s.name in SOURCE_PRIORITY else len(SOURCE_PRIORITY)
        return (-len(s.messages), prio)

    ordered = sorted(available, key=rank)
    primary = ordered[0]
    merged: List[Message] = []
    seen: Set[str] = set()
    for msg in primary.messages:
        sig = signature(msg.role, msg.content)
        if sig not in seen:
            seen.add(sig)
            merged.append(msg)
    for other in ordered[1:]:
        if len(other.messages) < closeness * len(primary.messages):
            logger.debug(f"Dropping {other.name} ({len(other.messages)}) in favour of {primary.name} ({len(primary.messages)})")
            continue
        added = _fill_gaps(merged, other.messages)
        logger.debug(f"Merged {added} messages from {other.name} into {primary.name}")

    out = []
    for i, msg in enumerate(merged):
        out.append(Message(
            id=f"msg-{i + 1}",
            role=msg.role,
            content=msg.content,
            session_id=msg.session_id,
            timestamp=msg.timestamp,
            source=msg.source,
            captured_at=msg.captured_at,
            source_url=msg.source_url,
        ))
    return out
