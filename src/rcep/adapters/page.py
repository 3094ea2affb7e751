"""
Page-content adapter: rendered markup to candidate messages.

Roles come from provider-specific structural selectors and attributes, then an
aria-label heuristic. When nothing identifies the role the message keeps
role=None and `infer_roles` alternates from the nearest known one.
"""
import copy
import re
from typing import List, Optional
from bs4 import BeautifulSoup, Tag
from rcep.models.capture import Provider
from rcep.messages import CandidateMessage
from rcep.reconcile import infer_roles
from rcep.logging import logger

# Claude
CLAUDE_MESSAGE_CONTAINERS = '[data-testid*="message"]'
CLAUDE_USER_MESSAGE = ".font-user-message"
CLAUDE_ASSISTANT_MESSAGE = ".font-claude-message"
CLAUDE_ROLE_ATTR = "[data-is-user-message]"
CLAUDE_STREAMING_NODES = "[data-is-streaming], [data-is-complete]"
# ChatGPT
CHATGPT_MESSAGE_NODES = '[data-message-author-role], article[data-testid^="conversation-turn-"]'
CHATGPT_ROLE_ATTR = "[data-message-author-role]"
# Gemini
GEMINI_LOOP = ".user-query-bubble-with-background, user-query, .model-response, model-response"
GEMINI_USER_CONTAINER = ".user-query-bubble-with-background, user-query"
GEMINI_USER_TEXT = ".query-text"
GEMINI_ASSISTANT_CONTAINER = ".model-response, model-response"
GEMINI_ASSISTANT_MARKDOWN = ".markdown"
GEMINI_THOUGHT_DISCLOSURE = ".thought-disclosure"

INTERACTIVE = 'button, [role="button"], a, [aria-label]'

UI_LABELS = {
    "show thinking", "show reasoning", "hide thinking", "hide reasoning",
    "copy", "copied", "share", "edit", "regenerate", "retry", "stop",
    "new chat", "new conversation", "thumbs up", "thumbs down",
}
CONTROL_PREFIX = re.compile(r"^(show|hide|copy|share|edit|retry|stop)\b", re.IGNORECASE)
HAS_LETTER = re.compile(r"[A-Za-zÀ-ÿ]")


def _text(el: Tag) -> str:
    return (el.get_text() or "").replace(" ", " ").strip()


def is_ui_noise(el: Optional[Tag], content: str) -> bool:
    """Short control labels and icon-only text are UI chrome, not conversation."""
    c = re.sub(r"\s+", " ", content or "").strip()
    if not c:
        return True
    lower = c.lower()
    if lower in UI_LABELS:
        return True
    if len(c) <= 24:
        if el is not None and el.css.closest(INTERACTIVE) is not None:
            return True
        if CONTROL_PREFIX.match(c):
            return True
    if "thinking" in lower and len(c) < 60:
        return True
    if not HAS_LETTER.search(c):
        return True
    return False


def message_nodes(soup: BeautifulSoup, provider: str) -> List[Tag]:
    if provider == Provider.CHATGPT.value:
        return soup.select(CHATGPT_MESSAGE_NODES)
    if provider == Provider.GEMINI.value:
        return soup.select(GEMINI_LOOP)

    combined_sel = f"{CLAUDE_USER_MESSAGE}, {CLAUDE_ASSISTANT_MESSAGE}, {CLAUDE_ROLE_ATTR}"
    combined = soup.select(combined_sel)
    if combined:
        return combined

    containers = soup.select(CLAUDE_MESSAGE_CONTAINERS)
    if containers:
        inner: List[Tag] = []
        seen = set()
        for container in containers:
            for el in container.select(combined_sel):
                if id(el) not in seen:
                    seen.add(id(el))
                    inner.append(el)
        return inner or containers

    return soup.select(CLAUDE_STREAMING_NODES)


def detect_role(el: Tag, provider: str) -> Optional[str]:
    if provider == Provider.CHATGPT.value:
        r = el.get("data-message-author-role")
        if r in ("user", "assistant"):
            return r
        inner = el.select_one(CHATGPT_ROLE_ATTR)
        r2 = inner.get("data-message-author-role") if inner is not None else None
        if r2 in ("user", "assistant"):
            return r2
    if provider == Provider.GEMINI.value:
        if el.css.closest(GEMINI_USER_CONTAINER) is not None:
            return "user"
        if el.css.closest(GEMINI_ASSISTANT_CONTAINER) is not None:
            return "assistant"

    attr = el.get("data-is-user-message")
    if attr == "true":
        return "user"
    if attr == "false":
        return "assistant"

    # matches() only, containers may hold both roles
    if el.css.match(CLAUDE_USER_MESSAGE):
        return "user"
    if el.css.match(CLAUDE_ASSISTANT_MESSAGE):
        return "assistant"

    aria = str(el.get("aria-label") or "")
    if re.search(r"user", aria, re.IGNORECASE):
        return "user"
    if re.search(r"assistant|claude", aria, re.IGNORECASE):
        return "assistant"
    return None


def _parse_gemini(el: Tag) -> Optional[CandidateMessage]:
    user_container = el.css.closest(GEMINI_USER_CONTAINER)
    if user_container is not None:
        text_node = user_container.select_one(GEMINI_USER_TEXT)
        content = _text(text_node) if text_node is not None else ""
        content = content or _text(user_container) or _text(el)
        if not content or is_ui_noise(el, content):
            return None
        return CandidateMessage(role="user", content=content)

    assistant_container = el.css.closest(GEMINI_ASSISTANT_CONTAINER)
    if assistant_container is not None:
        body = assistant_container.select_one(GEMINI_ASSISTANT_MARKDOWN) or assistant_container
        clone = copy.copy(body)
        for node in clone.select(f'{GEMINI_THOUGHT_DISCLOSURE}, button, [role="button"]'):
            node.decompose()
        content = _text(clone)
        if not content or is_ui_noise(el, content):
            return None
        return CandidateMessage(role="assistant", content=content)

    content = _text(el)
    if not content or is_ui_noise(el, content):
        return None
    return CandidateMessage(role=None, content=content)


def parse_element(el: Tag, provider: str) -> Optional[CandidateMessage]:
    if provider == Provider.GEMINI.value:
        return _parse_gemini(el)
    content = _text(el)
    if not content:
        return None
    return CandidateMessage(role=detect_role(el, provider), content=content)


def parse_page(html: str, provider: str) -> List[CandidateMessage]:
    soup = BeautifulSoup(html or "", "html.parser")
    parsed = []
    unknown = 0
    for el in message_nodes(soup, provider):
        cand = parse_element(el, provider)
        if cand is None:
            continue
        if not cand.role:
            unknown += 1
        parsed.append(cand)
    if unknown:
        logger.debug(f"Inferring {unknown} of {len(parsed)} roles by alternation")
    return infer_roles(parsed)


def count_message_nodes(html: str, provider: str) -> int:
    """Visible message-node count, one of the hydration growth signals."""
    soup = BeautifulSoup(html or "", "html.parser")
    if provider == Provider.CHATGPT.value:
        return len(soup.select(CHATGPT_MESSAGE_NODES))
    if provider == Provider.GEMINI.value:
        return len(soup.select(GEMINI_LOOP))
    return len(soup.select(CLAUDE_MESSAGE_CONTAINERS))
