"""
Embedded-state adapter: message arrays serialized into the page itself.

Looks at the framework state script (`script#__NEXT_DATA__`) and at large
generic JSON script blocks that mention conversation-shaped keys. Every
candidate goes through the network adapter's schema-first parser; the one
yielding the most messages wins.
"""
import json
import re
from typing import Any, List, Tuple
from bs4 import BeautifulSoup
from rcep.adapters.network import parse_json_payload
from rcep.messages import CandidateMessage
from rcep.logging import logger

NEXT_DATA_MIN_CHARS = 1000
GENERIC_MIN_CHARS = 5000
MAX_CANDIDATES = 6
CONVERSATION_HINT = re.compile(r"conversation|mapping|message|messages|author|content", re.IGNORECASE)


def find_state_candidates(html: str) -> List[Tuple[str, Any]]:
    soup = BeautifulSoup(html or "", "html.parser")
    candidates: List[Tuple[str, Any]] = []

    next_data = soup.select_one("script#__NEXT_DATA__")
    if next_data is not None:
        txt = (next_data.string or next_data.get_text() or "").strip()
        if len(txt) > NEXT_DATA_MIN_CHARS:
            try:
                candidates.append(("script#__NEXT_DATA__", json.loads(txt)))
            except ValueError:
                logger.debug("__NEXT_DATA__ script is not valid JSON")

    for script in soup.select('script[type="application/json"]'):
        if script.get("id") == "__NEXT_DATA__":
            continue
        txt = (script.string or script.get_text() or "").strip()
        if len(txt) < GENERIC_MIN_CHARS or not CONVERSATION_HINT.search(txt):
            continue
        try:
            candidates.append(("script[type=application/json]", json.loads(txt)))
        except ValueError:
            continue
        if len(candidates) >= MAX_CANDIDATES:
            break
    return candidates


def extract_embedded_state(html: str) -> List[CandidateMessage]:
    best: List[CandidateMessage] = []
    best_source = ""
    for source, value in find_state_candidates(html):
        _, found = parse_json_payload(value)
        if len(found) > len(best):
            best, best_source = found, source
    if best:
        logger.info(f"Embedded state yielded {len(best)} messages from {best_source}")
    return best
