"""
Portable memory: the handoff block a receiving model reads first.

Only short excerpts of real messages, newest first. Formatting micro-requests
("paste this as markdown") and pasted JSON blobs are never taken as memory.
"""
import re
from typing import Any, Dict, List, Sequence, Set
from rcep.extraction.text import excerpt, looks_like_code_or_logs, normalized_key, strip_quoted_prefix
from rcep.messages import Message

UNKNOWN = "UNKNOWN"
DEFAULT_TITLE = "Cross‑LLM memory handoff"

IDENTITY = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(le\s+projet\s+s'appelle|project\s+is\s+called|project\s+called)\b",
    r"\b(je\s+m'appelle|my\s+name\s+is)\b",
    r"\b(nom\s+du\s+projet|project\s+name)\b",
)]
GOAL = [re.compile(
    r"\b(je\s+veux|i\s+want|we\s+need|objectif|goal|but\s*:|current\s+goal|il\s+faut|on\s+doit)\b", re.IGNORECASE
)]
NON_NEGOTIABLE = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(on\s+garde|we\s+keep|keep\s+the|sans|without|pas\s+de|no\s+need|must\s+not|do\s+not|ne\s+pas)\b",
    r"\b(stable|simples?|gratuit|free|local\s+first)\b",
)]
DECISION_MADE = [re.compile(
    r"\b(decision\s*:|décision\s*:|on\s+garde|we\s+keep|we\s+will|on\s+va|we're\s+going\s+to)\b", re.IGNORECASE
)]
NEXT_STEP = [re.compile(r"\b(next|then|step|ensuite|puis|prochaine\s+étape|on\s+va)\b", re.IGNORECASE)]
QUESTION = [re.compile(r"\?")]

FORMATTING = [
    re.compile(r"\b(copy|paste|copier|coller|markdown|mermaid|json|container|fichier|file)\b", re.IGNORECASE),
    re.compile(r"\b(mets|mets-moi|met|format|retranscri|retranscrire|sorts? moi)\b", re.IGNORECASE),
]
JSON_BLOB = re.compile(r"[{\[][\s\S]*[}\]]")


def looks_like_formatting_instruction(text: str) -> bool:
    t = str(text or "")
    return bool(t) and any(p.search(t) for p in FORMATTING)


def looks_like_raw_json_paste(text: str) -> bool:
    t = str(text or "")
    if not t:
        return False
    if '"protocol"' in t and "{" in t and "}" in t:
        return True
    if '"session_id"' in t and '"timestamp"' in t:
        return True
    return len(t) > 800 and bool(JSON_BLOB.search(t))


def _collect(
    messages: Sequence[Message],
    roles: Set[str],
    patterns: List[re.Pattern],
    max_len: int,
    limit: int,
    filter_noise: bool = True,
) -> List[str]:
    out: List[str] = []
    seen: Set[str] = set()
    for m in reversed(messages):
        if m.role not in roles:
            continue
        t = strip_quoted_prefix(m.content or "")
        if not t or looks_like_code_or_logs(t, ignore_case=True):
            continue
        if not any(p.search(t) for p in patterns):
            continue
        if filter_noise and (looks_like_formatting_instruction(t) or looks_like_raw_json_paste(t)):
            continue
        ex = excerpt(t, max_len)
        key = normalized_key(ex)
        if not ex or not key or key in seen:
            continue
        seen.add(key)
        out.append(ex)
        if len(out) >= limit:
            break
    return out


def portable_memory(
    messages: Sequence[Message],
    topics: Sequence[Dict[str, Any]],
    timeline: Sequence[Dict[str, str]],
) -> Dict[str, Any]:
    user = {"user"}
    identity = _collect(messages, user, IDENTITY, 220, 2, filter_noise=False)
    objective = _collect(messages, user, GOAL, 220, 1)
    current_objective = objective[0] if objective else UNKNOWN

    hints = [str(t.get("label") or "").strip() for t in topics]
    hints = [w for w in hints if w and not re.match(r"^\w+@[\w.-]+$", w) and "/users/" not in w.lower()][:2]

    title_parts = []
    if identity:
        title_parts.append(identity[0])
    elif current_objective != UNKNOWN:
        title_parts.append(current_objective)
    if hints:
        title_parts.append(f"Themes: {', '.join(hints)}")
    if timeline:
        title_parts.append(f"{len(timeline)} phases")
    title = " — ".join(title_parts) if title_parts else DEFAULT_TITLE

    return {
        "handoff_title": excerpt(title, 140) or DEFAULT_TITLE,
        "identity": identity or [UNKNOWN],
        "current_objective": current_objective,
        "non_negotiables": _collect(messages, user, NON_NEGOTIABLE, 200, 5),
        "decisions_made": _collect(messages, {"user", "assistant"}, DECISION_MADE, 220, 5),
        "next_steps": _collect(messages, {"assistant"}, NEXT_STEP, 200, 4),
        "open_questions": _collect(messages, user, QUESTION, 200, 6),
    }
