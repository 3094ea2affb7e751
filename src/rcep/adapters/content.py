"""
Shape normalization shared by every adapter.

Providers nest message text in several ways (typed block arrays, `{parts: [...]}`
wrappers, nested `content` objects). Everything is flattened to plain text here.
"""
from typing import Any, Optional
from rcep.config import settings

TRUNCATION_MARKER = "\n[RL4_TRUNCATED_MESSAGE]"

USER_ROLES = {"user", "human"}
ASSISTANT_ROLES = {"assistant", "claude", "ai"}


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, dict):
        if isinstance(part.get("text"), str):
            return part["text"]
        if isinstance(part.get("content"), str):
            return part["content"]
    return ""


def _join_parts(parts: list) -> str:
    return "\n".join(t for t in (_part_text(p) for p in parts) if t).strip()


def normalize_content(content: Any) -> str:
    """Flatten a provider content shape to text. Unknown shapes yield ''."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _join_parts(content)
    if isinstance(content, dict):
        if isinstance(content.get("parts"), list):
            return _join_parts(content["parts"])
        nested = content.get("content")
        if isinstance(nested, dict) and isinstance(nested.get("parts"), list):
            return _join_parts(nested["parts"])
        if isinstance(content.get("text"), str):
            return content["text"]
    return ""


def normalize_role(role: Any, sender: Any = None) -> Optional[str]:
    r = str(role or "").lower()
    s = str(sender or "").lower()
    for value in (r, s):
        if value in USER_ROLES:
            return "user"
        if value in ASSISTANT_ROLES:
            return "assistant"
    return None


def cap_message(content: str, limit: Optional[int] = None) -> str:
    limit = settings.MAX_MESSAGE_CHARS if limit is None else limit
    if len(content) > limit:
        return content[:limit] + TRUNCATION_MARKER
    return content


def cap_body(body: str, limit: Optional[int] = None) -> str:
    limit = settings.MAX_BODY_CHARS if limit is None else limit
    if len(body) <= limit:
        return body
    return body[:limit] + "\n[RL4_TRUNCATED]"
