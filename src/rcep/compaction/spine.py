"""
Cognitive spine (digest) and semantic hints (Ultra+).

Every field is an excerpt of real message text or a restatement of structured
fields already in the artifact; nothing here is generated. 'UNKNOWN' marks a
field no message supported.
"""
import re
from typing import Any, Dict, List, Sequence
from rcep.extraction.text import excerpt, looks_like_code_or_logs, normalized_key, strip_quoted_prefix
from rcep.messages import Message

UNKNOWN = "UNKNOWN"

TENSION = re.compile(r"\b(blocked|bloqu[eé]|bug|issue|problem|doesn't work|marche pas|error|fails?)\b", re.IGNORECASE)
ULTRA_TENSION = re.compile(r"\b(error|fails?|broken|cannot|can't|doesn't|issue|problem|blocked)\b", re.IGNORECASE)
CRITERIA = re.compile(
    r"\b(because|since|therefore|so that|trade-?off|risk|car|parce que|donc|du coup|risque|pour éviter"
    r"|pour que|afin de|garantir|assurer|éviter|pour|caractéristique|avantage|inconvénient|bénéfice|coût)\b",
    re.IGNORECASE,
)
EXPLICIT_ASSUMPTION = [
    re.compile(r"\b(assume|assumption|hypothesis|suppose|let's\s+assume|we\s+assume)\b", re.IGNORECASE),
    re.compile(r"\b(hypoth[eè]se|supposons|on\s+suppose|admettons)\b", re.IGNORECASE),
]
IMPLICIT_ASSUMPTION = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(on\s+garde|we\s+keep|keep\s+the|gardons)\b",
    r"\b(sans|without|pas\s+de|no\s+need\s+for)\b",
    r"\b(est\s+stable|is\s+stable|sont\s+stables|are\s+stable)\b",
    r"\b(simple|simples|gratuit|gratuits|free)\b",
    r"\b(comme\s+avant|as\s+before|same\s+as)\b",
)]
ALTERNATIVE = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(au lieu de|instead of|plutôt que|rather than|vs|versus|ou bien|or else)\b",
    r"\b(sans|without|pas de|no\s+need|rejeter|reject|abandon|abandonner)\b",
    r"\b(ne\s+pas|don't|not\s+using|éviter|avoid)\b",
)]
CHECKLIST_SPLIT = re.compile(r"[\n\r]+|(?<=\.)\s+|(?<=!)\s+|(?<=\?)\s+")
CHECKLIST_START = re.compile(r"^(if|si)\s+", re.IGNORECASE)
KEYWORDS_FIELD = re.compile(r"Keywords:\s*([^•]+)", re.IGNORECASE)

MAX_ASSUMPTION_SOURCE = 1200
MAX_ALTERNATIVE_SOURCE = 600


def _text(m: Message) -> str:
    return strip_quoted_prefix(m.content or "")


def _latest_user_match(messages: Sequence[Message], pattern: re.Pattern, max_len: int, **code_opts) -> str:
    for m in reversed(messages):
        if m.role != "user":
            continue
        t = _text(m)
        if not t or looks_like_code_or_logs(t, **code_opts):
            continue
        if "?" in t or pattern.search(t):
            return excerpt(t, max_len)
    return UNKNOWN


def _open_questions(messages: Sequence[Message], max_len: int, limit: int, **code_opts) -> List[str]:
    out: List[str] = []
    seen = set()
    for m in reversed(messages):
        if m.role != "user":
            continue
        t = _text(m)
        if not t or "?" not in t or looks_like_code_or_logs(t, **code_opts):
            continue
        ex = excerpt(t, max_len)
        key = normalized_key(ex)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(ex)
        if len(out) >= limit:
            break
    return out


def _explicit_assumptions(
    messages: Sequence[Message],
    max_len: int,
    limit: int,
    match_excerpt: bool = False,
    **code_opts,
) -> List[str]:
    """Messages stating an assumption outright; `match_excerpt` looks for the marker in the excerpt only."""
    out: List[str] = []
    seen = set()
    for m in messages:
        t = _text(m)
        if not t or len(t) > MAX_ASSUMPTION_SOURCE or looks_like_code_or_logs(t, **code_opts):
            continue
        ex = excerpt(t, max_len)
        haystack = ex if match_excerpt else t
        if not ex or not any(p.search(haystack) for p in EXPLICIT_ASSUMPTION):
            continue
        key = normalized_key(ex)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(ex)
        if len(out) >= limit:
            break
    return out


# ---------------------------------------------------------------------------
# Digest cognitive spine
# ---------------------------------------------------------------------------
def cognitive_spine(
    topics: Sequence[Dict[str, Any]],
    decisions: Sequence[Dict[str, Any]],
    insights: Sequence[str],
    timeline: Sequence[Dict[str, str]],
    messages: Sequence[Message],
) -> Dict[str, Any]:
    code_opts = {"check_paths": False}

    labels = [str(t.get("label") or "").strip() for t in topics]
    labels = [x for x in labels if x][:6]
    bits = []
    if labels:
        bits.append(f"Topics: {', '.join(labels)}.")
    if timeline:
        bits.append(f"Timeline: {len(timeline)} phases.")
    if insights:
        signals = [excerpt(str(x or ""), 120) for x in insights[:2]]
        bits.append(f"Signals: {' | '.join(s for s in signals if s)}.")
    core_context = excerpt(" ".join(bits), 260) if bits else UNKNOWN

    main_tension = _latest_user_match(messages, TENSION, 180, **code_opts)
    open_questions = _open_questions(messages, 180, 5, **code_opts)

    decision_criteria: List[str] = []
    crit_seen = set()
    for m in reversed(messages):
        if m.role != "assistant":
            continue
        t = _text(m)
        if not t or looks_like_code_or_logs(t, **code_opts) or not CRITERIA.search(t):
            continue
        ex = excerpt(t, 200)
        if ex.lower() in crit_seen:
            continue
        crit_seen.add(ex.lower())
        decision_criteria.append(ex)
        if len(decision_criteria) >= 6:
            break

    assumptions = _explicit_assumptions(messages, 180, 5, **code_opts)
    seen = {normalized_key(a) for a in assumptions}
    for m in reversed(messages):
        if len(assumptions) >= 5:
            break
        t = _text(m)
        if not t or len(t) > MAX_ASSUMPTION_SOURCE or looks_like_code_or_logs(t, **code_opts):
            continue
        if not any(p.search(t) for p in IMPLICIT_ASSUMPTION):
            continue
        ex = excerpt(t, 180)
        key = normalized_key(ex)
        if not key or key in seen:
            continue
        seen.add(key)
        assumptions.append(ex)

    primary = next(
        (d for d in decisions if str(d.get("chosen_option") or "").strip() not in ("", UNKNOWN)),
        decisions[0] if decisions else None,
    )

    rejected: List[str] = []
    alt_seen = set()
    if primary:
        chosen = str(primary.get("chosen_option") or "").strip()
        for o in primary.get("options_considered") or []:
            opt = str(o.get("option") or "").strip()
            if not opt or opt == UNKNOWN or (chosen and opt == chosen):
                continue
            ex = excerpt(opt, 140)
            if not ex or ex.lower() in alt_seen:
                continue
            alt_seen.add(ex.lower())
            rejected.append(ex)
            if len(rejected) >= 3:
                break
    for m in reversed(messages):
        if len(rejected) >= 3:
            break
        t = _text(m)
        if not t or looks_like_code_or_logs(t, **code_opts) or len(t) > MAX_ALTERNATIVE_SOURCE:
            continue
        if not any(p.search(t) for p in ALTERNATIVE):
            continue
        ex = excerpt(t, 140)
        if not ex or ex.lower() in alt_seen:
            continue
        alt_seen.add(ex.lower())
        rejected.append(ex)

    falsify_if = next(
        (x for x in (
            decision_criteria[0] if decision_criteria else None,
            rejected[0] if rejected else None,
            open_questions[0] if open_questions else None,
            main_tension if main_tension != UNKNOWN else None,
        ) if x),
        UNKNOWN,
    )

    return {
        "core_context": core_context,
        "main_tension": main_tension,
        "key_decision": {
            "statement": excerpt(str(primary.get("chosen_option") or ""), 260) if primary else UNKNOWN,
            "why": excerpt(str(primary.get("intent_text") or ""), 180) if primary else UNKNOWN,
            "falsify_if": falsify_if,
        },
        "decision_criteria": decision_criteria,
        "rejected_alternatives": rejected,
        "assumptions": assumptions or [UNKNOWN],
        "open_questions": open_questions,
    }


# ---------------------------------------------------------------------------
# Ultra+ semantic hints
# ---------------------------------------------------------------------------
def _suspicious(term: str) -> bool:
    t = str(term or "").strip()
    if not t:
        return False
    return bool(re.search(r"\d", t) or re.search(r"[_-]", t) or t.lower() == "ncontent")


def semantic_hints(
    context_state: Dict[str, Any],
    pruned_topics: Sequence[Dict[str, Any]],
    pruned_decisions: Sequence[Dict[str, Any]],
    raw_decisions: Sequence[Dict[str, Any]],
    timeline: Sequence[Dict[str, str]],
    messages: Sequence[Message],
) -> Dict[str, Any]:
    core = str(context_state.get("core_subject") or "").strip()
    goal = str(context_state.get("current_goal") or "").strip()
    labels = [t.get("label") for t in pruned_topics if t.get("label")][:6]
    intents = [d.get("intent") for d in pruned_decisions if d.get("intent")][:4]

    parts = []
    if core:
        parts.append(f"Subject: {core}.")
    if goal:
        parts.append(f"Goal: {goal}.")
    if labels:
        parts.append(f"Topics: {', '.join(labels)}.")
    if intents:
        parts.append(f"Decisions: {', '.join(intents)}.")
    if timeline:
        parts.append(f"Timeline: {len(timeline)} phases.")
    summary = " ".join(parts)
    if len(summary) > 280:
        summary = summary[:277] + "..."

    checklist: List[str] = []
    source = " ".join(str(d.get("choice") or "") for d in pruned_decisions)
    for candidate in (c.strip() for c in CHECKLIST_SPLIT.split(source)):
        if not candidate or not CHECKLIST_START.match(candidate):
            continue
        item = re.sub(r"\s+", " ", candidate).strip()
        if len(item) < 8:
            continue
        checklist.append(item[:157] + "..." if len(item) > 160 else item)
        if len(checklist) >= 6:
            break

    suspicious: List[str] = []
    terms = list(labels)
    for phase in timeline:
        m = KEYWORDS_FIELD.search(str(phase.get("summary") or ""))
        if m:
            terms.extend(raw.strip() for raw in m.group(1).split(","))
    for term in terms:
        if _suspicious(term) and term not in suspicious:
            suspicious.append(term)
    unknowns = [
        {"term": term, "reason": "Observed token; meaning not defined in Ultra payload."}
        for term in suspicious[:6]
    ]

    semantic_validation = {
        "status": "unverified",
        "scope": "structure_only",
        "reason": "Ultra+ does not include the full transcript; semantic correctness is not validated.",
        "recommended_checks": [
            "List the hidden assumptions required for the decisions to be correct.",
            "Find at least 3 counterexamples / contradictions to the implied reasoning.",
            "State what evidence would change the conclusion (falsifiability).",
        ],
    }

    assumptions = _explicit_assumptions(messages, 80, 6, match_excerpt=True)

    primary = next(
        (d for d in pruned_decisions if str(d.get("choice") or "") not in ("", UNKNOWN) and len(str(d.get("choice"))) >= 24),
        pruned_decisions[0] if pruned_decisions else None,
    )
    rejected: List[str] = []
    if raw_decisions:
        rd = next(
            (d for d in raw_decisions if primary and str(d.get("id") or "") == str(primary.get("id") or "")),
            raw_decisions[0],
        )
        chosen = str(rd.get("chosen_option") or "").strip()
        for o in rd.get("options_considered") or []:
            opt = str(o.get("option") or "").strip()
            if not opt or (chosen and opt == chosen):
                continue
            ex = excerpt(opt, 120)
            if not ex or ex in rejected:
                continue
            rejected.append(ex)
            if len(rejected) >= 3:
                break

    spine = {
        "core_context": summary or UNKNOWN,
        "main_tension": _latest_user_match(messages, ULTRA_TENSION, 160),
        "key_decision": {
            "statement": str(primary.get("choice") or "") if primary else UNKNOWN,
            "why": str(primary.get("rationale") or "") if primary else "No high-confidence decisions extracted.",
            "choice_sha256": str(primary.get("choice_sha256") or "") if primary else "",
            "falsify_if": checklist[0] if checklist else UNKNOWN,
        },
        "assumptions": assumptions[:5] if assumptions else [UNKNOWN],
        "rejected_alternatives": rejected,
        "open_questions": _open_questions(messages, 160, 5),
    }

    return {
        "context_summary_ultra": summary,
        "validation_checklist": checklist,
        "unknowns": unknowns,
        "semantic_validation": semantic_validation,
        "assumptions_candidates": assumptions,
        "semantic_spine": spine,
    }
