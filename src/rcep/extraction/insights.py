import re
from typing import List, Sequence
from rcep.extraction.text import normalize_for_extraction, split_sentences
from rcep.messages import Message

MAX_INSIGHTS = 10
MAX_SENTENCE = 280
MAX_INSIGHT_LEN = 240
MAX_HEURISTIC_LEN = 200

MARKERS = [re.compile(p, re.IGNORECASE) for p in (
    r"Critical:",
    r"Important\s*:",
    r"Key\s+insight:",
    r"Remember:",
    r"Note\s*:",
    r"Critique\s*:",
    r"Point\s+clé\s*:",
    r"À\s+retenir\s*:",
)]

# Short goal / need statements carry implicit state in short conversations
STATE_STATEMENT = re.compile(r"^\s*(je\s+veux|objectif\s*:|goal\s*:|il\s+faut|we\s+need\s+to)\b", re.IGNORECASE)


def extract_insights(messages: Sequence[Message], limit: int = MAX_INSIGHTS) -> List[str]:
    """Sentences carrying an explicit marker ("Important:", "À retenir :", ...) or a short goal statement."""
    insights: List[str] = []
    for m in messages:
        text = normalize_for_extraction(m.content or "")
        if not text:
            continue
        for sentence in split_sentences(text):
            s = sentence.strip()
            if not s or len(s) > MAX_SENTENCE:
                continue
            if any(marker.search(s) for marker in MARKERS):
                insights.append(s[: MAX_INSIGHT_LEN - 3] + "..." if len(s) > MAX_INSIGHT_LEN else s)
            elif STATE_STATEMENT.search(s) and len(s) <= MAX_HEURISTIC_LEN:
                insights.append(s)
            if len(insights) >= limit:
                return insights
    return insights
