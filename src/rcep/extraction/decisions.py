"""
Decision extraction against a bilingual (EN/FR) cue library.

Only normalized text is considered (code stripped, at most 600 chars, no
implementation scaffolding). Assistant messages qualify on any cue; user
messages only on an explicit "Decision:" or a short commitment phrase.
Extracted choices must pass `is_valid_choice`. The top 5 by confidence are kept.
"""
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence
from rcep.extraction.text import LETTER, SPACE, normalize_for_extraction
from rcep.messages import Message, iso_now

MAX_DECISIONS = 5
MAX_DECISION_TEXT = 600
CHOICE_MAX_LEN = 2000
UNKNOWN = "UNKNOWN"

DECISION_CUES = [re.compile(p, re.IGNORECASE) for p in (
    r"option\s+[A-Z]\s+(vs|versus|or)\s+option\s+[A-Z]",
    r"\bI\s+recommend\b",
    r"\bWe\s+should\b",
    r"Decision:\s+(.+)",
    r"\bChoose\s+between\b",
    r"\bje\s+recommande\b",
    r"\bon\s+devrait\b",
    r"\bdécision\s*:\s*(.+)",
    r"\bchoisi[rs]?\s+entre\b",
    r"\bil\s+faut\b",
    # commitment / plan signals
    r"\bje\s+vais\b",
    r"\bon\s+va\b",
    r"\bobjectif\s*:",
    r"\bgoal\s*:",
)]

SCAFFOLDING = re.compile(r"\b(file\s+\d+|purpose|required|methods?|snapshot schema)\b", re.IGNORECASE)
EXPLICIT_EN = re.compile(r"Decision:\s+(.+)", re.IGNORECASE)
EXPLICIT_FR = re.compile(r"décision\s*:\s*(.+)", re.IGNORECASE)
EXPLICIT_GOAL = re.compile(r"\b(objectif|goal)\s*:\s*(.+)", re.IGNORECASE)
OPTION_PAIR = re.compile(r"option\s+([A-Z])\s+(vs|versus|or)\s+option\s+([A-Z])", re.IGNORECASE)
CHOICE_VERB = re.compile(
    r"\b(recommend|choose|recommande|choisis|choisir|on\s+part\s+sur|on\s+garde)\b\s+(.+)", re.IGNORECASE
)
COMMITMENT = re.compile(r"\b(je\s+vais|on\s+va)\s+(.+)", re.IGNORECASE)
STRONG_WORDS = re.compile(r"must|definitely|clearly", re.IGNORECASE)

COMMIT_CODE_RUN = re.compile(r"[{}\[\];]{6,}")
COMMIT_CODE_WORD = re.compile(r"\b(import|export|const|let|var|function|class|def|async|await|return)\b", re.IGNORECASE)
COMMIT_PHRASE = re.compile(
    r"^\s*(ok|okay|go|deal|done|let's\s+go|let's\s+do|on\s+y\s+va|on\s+fait|on\s+part|on\s+garde"
    r"|on\s+pr[eé]f[eè]re|je\s+veux|je\s+pr[eé]f[eè]re)\b",
    re.IGNORECASE,
)

# (cue, intent, intent_text), first match wins
INTENT_RULES = [
    (re.compile(r"recommend", re.IGNORECASE), "recommend", "Recommendation"),
    (re.compile(r"we\s+should", re.IGNORECASE), "propose", "Proposed action"),
    (re.compile(r"decision:", re.IGNORECASE), "decide", "Explicit decision"),
    (re.compile(r"je\s+recommande", re.IGNORECASE), "recommend", "Recommendation (French)"),
    (re.compile(r"on\s+devrait|il\s+faut", re.IGNORECASE), "propose", "Proposed action (French)"),
    (re.compile(r"décision\s*:", re.IGNORECASE), "decide", "Explicit decision (French)"),
]


@dataclass
class Decision:
    id: str
    timestamp: str
    intent: str
    intent_text: str
    options_considered: List[Dict[str, Any]] = field(default_factory=list)
    chosen_option: str = UNKNOWN
    constraints: List[str] = field(default_factory=list)
    confidence_llm: int = 60

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sanitize_choice(text: str, max_len: int = CHOICE_MAX_LEN) -> str:
    t = SPACE.sub(" ", str(text or ""))
    t = t.replace("“", '"').replace("”", '"').replace("’", "'").strip()
    t = re.sub(r"[↓→←⇒⇐]", " ", t)
    t = re.sub(r"[`{}()\[\]]", "", t)
    t = SPACE.sub(" ", t).strip()
    n = max(200, int(max_len or CHOICE_MAX_LEN))
    return t[: max(0, n - 16)] + " ...[TRUNCATED]" if len(t) > n else t


def is_valid_choice(text: Optional[str]) -> bool:
    t = str(text or "").strip()
    if not t or t == UNKNOWN:
        return False
    if len(LETTER.findall(t)) < 8:
        return False
    if len(t.split()) < 2 and len(t) < 16:
        return False
    if len(re.findall(r"[{}()\[\];]", t)) >= 3:
        return False
    return True


def looks_like_user_commit(text: str) -> bool:
    t = str(text or "").strip()
    if not t:
        return False
    if COMMIT_CODE_RUN.search(t) or COMMIT_CODE_WORD.search(t):
        return False
    return bool(COMMIT_PHRASE.search(t))


def _intent_of(text: str):
    for cue, intent, intent_text in INTENT_RULES:
        if cue.search(text):
            return intent, intent_text
    return "decide", "Decision detected"


def _options_of(text: str, explicit: Optional[re.Match]) -> Optional[List[Dict[str, Any]]]:
    """None means the explicit choice was invalid and the message is skipped."""
    options: List[Dict[str, Any]] = []
    if explicit:
        opt = sanitize_choice(explicit.group(1))
        if not is_valid_choice(opt):
            return None
        options.append({"option": opt, "weight": 800, "rationale": "Explicitly stated as a decision."})

    goal = EXPLICIT_GOAL.search(text)
    if not options and goal:
        opt = sanitize_choice(goal.group(2))
        if is_valid_choice(opt):
            options.append({"option": opt, "weight": 700, "rationale": "Explicitly stated goal."})

    pair = OPTION_PAIR.search(text)
    if pair:
        for letter in (pair.group(1), pair.group(3)):
            options.append({
                "option": f"Option {letter.upper()}",
                "weight": 500,
                "rationale": "Mentioned as an alternative.",
            })
    return options


def _chosen_of(text: str, explicit: Optional[re.Match]) -> str:
    chosen = UNKNOWN
    if explicit:
        chosen = sanitize_choice(explicit.group(1))
    else:
        rec = CHOICE_VERB.search(text)
        if rec:
            chosen = sanitize_choice(rec.group(2))
    if not is_valid_choice(chosen):
        chosen = UNKNOWN

    if chosen == UNKNOWN:
        commit = COMMITMENT.search(text)
        if commit:
            opt = sanitize_choice(commit.group(2))
            if is_valid_choice(opt):
                chosen = opt
    return chosen


def extract_decisions(messages: Sequence[Message], limit: int = MAX_DECISIONS) -> List[Decision]:
    out: List[Decision] = []
    for m in messages:
        text = normalize_for_extraction(m.content or "")
        if not text or len(text) > MAX_DECISION_TEXT or SCAFFOLDING.search(text):
            continue
        role = str(m.role or "").lower()
        timestamp = m.timestamp or iso_now()
        hit = any(cue.search(text) for cue in DECISION_CUES)

        if not hit:
            if role == "user" and looks_like_user_commit(text):
                chosen = sanitize_choice(text)
                if not is_valid_choice(chosen):
                    continue
                out.append(Decision(
                    id=f"dec-{len(out) + 1}",
                    timestamp=timestamp,
                    intent="decide",
                    intent_text="User commitment detected",
                    options_considered=[{"option": chosen, "weight": 700, "rationale": "User commit signal."}],
                    chosen_option=chosen,
                    confidence_llm=70,
                ))
            continue

        if role == "user":
            explicit_user = EXPLICIT_EN.search(text) or EXPLICIT_FR.search(text)
            if not explicit_user and not looks_like_user_commit(text):
                continue

        intent, intent_text = _intent_of(text)
        explicit = EXPLICIT_EN.search(text) or EXPLICIT_FR.search(text)
        options = _options_of(text, explicit)
        if options is None:
            continue
        out.append(Decision(
            id=f"dec-{len(out) + 1}",
            timestamp=timestamp,
            intent=intent,
            intent_text=intent_text,
            options_considered=options or [{
                "option": UNKNOWN,
                "weight": 300,
                "rationale": "Decision-like statement detected but options were not explicit.",
            }],
            chosen_option=_chosen_of(text, explicit),
            confidence_llm=80 if STRONG_WORDS.search(text) else 60,
        ))

    out.sort(key=lambda d: d.confidence_llm, reverse=True)
    return out[:limit]
