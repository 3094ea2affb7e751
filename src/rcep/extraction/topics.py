"""
Topic extraction: TF-IDF-style keyword ranking over normalized message text.

Terms shorter than 5 characters and stopwords are ignored. With 5 or more
messages, terms present in at least 60% of them are dropped as too
ubiquitous. Scores are `freq * log((N + 1) / df)`.
"""
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Sequence
import numpy as np
from rcep.extraction.text import STOPWORDS, normalize_for_extraction, tokenize
from rcep.messages import Message

MAX_TOPICS = 7
MAX_REFS = 3
MIN_TERM_LEN = 5
UBIQUITY_MIN_DOCS = 5
UBIQUITY_RATIO = 0.6


@dataclass
class Topic:
    label: str
    weight: int
    message_refs: List[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


def _documents(messages: Sequence[Message]) -> List[List[str]]:
    return [
        [w for w in tokenize(normalize_for_extraction(m.content)) if len(w) >= MIN_TERM_LEN and w not in STOPWORDS]
        for m in messages
    ]


def score_terms(docs: List[List[str]]):
    """Returns (terms, freq, scores) for the surviving terms, in first-seen order."""
    tf: Dict[str, int] = {}
    df: Dict[str, int] = {}
    for tokens in docs:
        for w in tokens:
            tf[w] = tf.get(w, 0) + 1
        for w in set(tokens):
            df[w] = df.get(w, 0) + 1

    terms = list(tf.keys())
    if not terms:
        return [], np.zeros(0, dtype=int), np.zeros(0)

    n_docs = max(1, len(docs))
    freq = np.array([tf[w] for w in terms], dtype=int)
    doc_freq = np.array([df[w] for w in terms], dtype=float)

    keep = np.ones(len(terms), dtype=bool)
    if n_docs >= UBIQUITY_MIN_DOCS:
        keep = doc_freq / n_docs < UBIQUITY_RATIO
    scores = freq * np.log((n_docs + 1) / doc_freq)

    kept_terms = [w for w, k in zip(terms, keep) if k]
    return kept_terms, freq[keep], scores[keep]


def extract_topics(messages: Sequence[Message], limit: int = MAX_TOPICS) -> List[Topic]:
    terms, freq, scores = score_terms(_documents(messages))
    if not terms:
        return []
    order = np.argsort(-scores, kind="stable")[:limit]

    normalized = [normalize_for_extraction(m.content).lower() for m in messages]
    topics = []
    for idx in order:
        term = terms[idx]
        count = int(freq[idx])
        refs: List[str] = []
        for msg, text in zip(reversed(messages), reversed(normalized)):
            if term in text:
                refs.append(msg.id)
                if len(refs) >= MAX_REFS:
                    break
        refs.reverse()
        topics.append(Topic(
            label=term,
            weight=min(1000, count * 100),
            message_refs=refs,
            summary=f'"{term}" ({count}x)',
        ))
    return topics
