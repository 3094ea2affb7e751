"""
Depth-bounded generic walker for payloads with no known schema.

Last resort only: known provider schemas are tried first in
rcep.adapters.network. Anything array-shaped that looks like a list of
messages is collected, then the result is deduped by signature.
"""
from typing import Any, List, Optional, Set
from rcep.adapters.content import normalize_content, normalize_role
from rcep.messages import CandidateMessage, iso_from_epoch_seconds
from rcep.reconcile import signature

MAX_DEPTH = 8
COMMON_KEYS = ["messages", "chat_messages", "conversation", "items", "chat", "data"]
TIMESTAMP_KEYS = ["timestamp", "created_at", "createdAt", "updated_at", "updatedAt"]


def _timestamp_of(item: dict, nested: Optional[dict]) -> Optional[str]:
    for key in TIMESTAMP_KEYS:
        value = item.get(key)
        if value:
            return str(value)
    if nested and isinstance(nested.get("create_time"), (int, float)):
        return iso_from_epoch_seconds(nested["create_time"])
    if isinstance(item.get("create_time"), (int, float)):
        return iso_from_epoch_seconds(item["create_time"])
    return None


def _first_present(item: dict, keys: List[str]) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def extract_from_array(arr: list, seen: Set[str]) -> List[CandidateMessage]:
    out = []
    for item in arr:
        if not isinstance(item, dict):
            continue
        nested = item.get("message") if isinstance(item.get("message"), dict) else None
        nested_role = None
        if nested and isinstance(nested.get("author"), dict):
            nested_role = nested["author"].get("role")

        role_value = item.get("role") if item.get("role") is not None else nested_role
        sender_value = item.get("sender") if item.get("sender") is not None else nested_role
        role = normalize_role(role_value, sender_value)

        raw = _first_present(item, ["content", "text", "completion"])
        if raw is None:
            if nested is not None:
                raw = nested.get("content") if nested.get("content") is not None else nested
            else:
                raw = item.get("message")
        content = normalize_content(raw)
        if not role or not content:
            continue

        sig = signature(role, content)
        if sig in seen:
            continue
        seen.add(sig)
        out.append(CandidateMessage(role=role, content=content, timestamp=_timestamp_of(item, nested)))
    return out


def _message_object(node: dict) -> Optional[CandidateMessage]:
    """A lone `{author: {role}, content}` message object (stream frames)."""
    if not (node.get("author") and node.get("content")):
        return None
    author_role = node["author"].get("role") if isinstance(node["author"], dict) else None
    role = normalize_role(author_role, author_role)
    content = normalize_content(node.get("content"))
    if not role or not content:
        return None
    ts = node.get("create_time")
    return CandidateMessage(
        role=role,
        content=content,
        timestamp=iso_from_epoch_seconds(ts) if isinstance(ts, (int, float)) else None,
    )


def walk_any_json(root: Any) -> List[CandidateMessage]:
    out: List[CandidateMessage] = []
    seen: Set[str] = set()

    def push(cand: Optional[CandidateMessage]):
        if cand is None:
            return
        sig = signature(cand.role, cand.content)
        if sig not in seen:
            seen.add(sig)
            out.append(cand)

    def try_message_object(node: dict):
        push(_message_object(node))
        if isinstance(node.get("message"), dict):
            try_message_object(node["message"])

    if isinstance(root, dict):
        for key in COMMON_KEYS:
            if isinstance(root.get(key), list):
                out.extend(extract_from_array(root[key], seen))

    def visit(node: Any, depth: int):
        if not node or depth > MAX_DEPTH:
            return
        if isinstance(node, list):
            out.extend(extract_from_array(node, seen))
            for item in node:
                visit(item, depth + 1)
        elif isinstance(node, dict):
            try_message_object(node)
            for value in node.values():
                visit(value, depth + 1)

    visit(root, 0)

    # extract_from_array and push share `seen`, so `out` is already unique
    return out
