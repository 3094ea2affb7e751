"""
Non-inventive timelines: message index ranges summarized only by role counts,
frequency-ranked keywords and literal excerpts.
"""
import math
from collections import Counter
from typing import Dict, List, Sequence
from rcep.extraction.text import CODE_FENCE, INLINE_CODE, NON_WORD, SPACE, URL, excerpt
from rcep.messages import Message

MIN_PHASES = 3
MAX_PHASES = 7
DEFAULT_PHASES = 6
KEYWORD_MIN_LEN = 5

PHASE_STOPWORDS = frozenset("""
this that with from have will your you and for are was were into about then what when where which who
why how can could should would also just like make some more most very only not does did done been
its our we i me my
avec pour dans comme plus moins aussi mais donc alors tres très tout toute tous toutes cette cela ceci
etre être avoir faire fait faut vais va
message messages assistant user json rcep snapshot checksum sha256
const content object ncontent option phase summary range
""".split())


def phase_keywords(messages: Sequence[Message], limit: int = 2) -> List[str]:
    counts: Counter = Counter()
    for m in messages:
        t = CODE_FENCE.sub(" ", m.content or "")
        t = INLINE_CODE.sub(" ", t)
        t = URL.sub(" ", t)
        t = SPACE.sub(" ", t).strip().lower()
        for w in NON_WORD.sub(" ", t).split():
            if len(w) >= KEYWORD_MIN_LEN and w not in PHASE_STOPWORDS:
                counts[w] += 1
    # most_common keeps first-seen order among ties
    return [w for w, _ in counts.most_common(max(0, limit))]


def _role_counts(messages: Sequence[Message]) -> Dict[str, int]:
    roles = {"user": 0, "assistant": 0, "unknown": 0}
    for m in messages:
        r = m.role or "unknown"
        roles[r] = roles.get(r, 0) + 1
    return roles


def timeline_macro(messages: Sequence[Message], max_phases: int = DEFAULT_PHASES) -> List[Dict[str, str]]:
    n = len(messages)
    if not n:
        return []
    max_phases = max(MIN_PHASES, min(MAX_PHASES, int(max_phases or DEFAULT_PHASES)))
    size = math.ceil(n / max_phases)
    phases = []
    for i in range(0, n, size):
        start, end = i + 1, min(n, i + size)
        chunk = messages[i:end]
        roles = _role_counts(chunk)
        keywords = phase_keywords(chunk, 2)
        if keywords:
            summary = f"Keywords: {', '.join(keywords)} • user:{roles['user']}, assistant:{roles['assistant']}"
        else:
            summary = f"Messages {start}–{end} (user:{roles['user']}, assistant:{roles['assistant']})"
        phases.append({"phase": f"Phase {len(phases) + 1}", "range": f"{start}-{end}", "summary": summary})
    return phases[:MAX_PHASES]


def timeline_summary(messages: Sequence[Message]) -> List[Dict[str, str]]:
    """Ranges of 4, 6 or 8 messages with first/last excerpts."""
    n = len(messages)
    if not n:
        return []
    size = 4 if n <= 12 else 6 if n <= 30 else 8
    chunks = []
    for i in range(0, n, size):
        end = min(n, i + size)
        first, last = messages[i], messages[end - 1]
        chunks.append({
            "range": f"{i + 1}-{end}",
            "summary": (
                f"From: {first.role or 'unknown'}({excerpt(first.content)}) "
                f"→ To: {last.role or 'unknown'}({excerpt(last.content)})"
            ),
        })
    return chunks
