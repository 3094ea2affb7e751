"""
Network adapter: turns observed response bodies into candidate messages.

Parsing is schema-first. Each known provider shape is tried in order
(parent-pointer conversation graph, Claude conversation object); only when
none matches does the generic walker run. Non-JSON bodies go through the
Google batchexecute frame parser, then newline-delimited JSON.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse
from rcep.adapters.content import cap_body, cap_message, normalize_content, normalize_role
from rcep.adapters.walker import extract_from_array, walk_any_json
from rcep.messages import CandidateMessage, iso_from_epoch_seconds
from rcep.logging import logger

MAX_GRAPH_HOPS = 100_000
XSSI_PREFIX = re.compile(r"^\)\]\}'\s*", re.MULTILINE)
CAPTURE_PATH_MARKERS = ("/api/", "/backend-api/", "/batchexecute", "/_/BardChatUi/")

CHUNK_KIND = "chatgpt_conversation_chunk"


@dataclass
class NetworkEvent:
    """One structured message from the network-observation context."""
    url: str = ""
    via: str = "fetch"
    kind: Optional[str] = None
    body: Optional[str] = None
    status: Optional[int] = None
    content_type: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    total_messages: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NetworkEvent":
        body = payload.get("body")
        return cls(
            url=str(payload.get("url") or ""),
            via=str(payload.get("via") or "fetch"),
            kind=payload.get("kind"),
            body=cap_body(body) if isinstance(body, str) else None,
            status=payload.get("status"),
            content_type=str(payload.get("contentType") or ""),
            messages=payload.get("messages") if isinstance(payload.get("messages"), list) else [],
            chunk_index=payload.get("chunkIndex") if isinstance(payload.get("chunkIndex"), int) else None,
            total_chunks=payload.get("totalChunks") if isinstance(payload.get("totalChunks"), int) else None,
            total_messages=payload.get("totalMessages") if isinstance(payload.get("totalMessages"), int) else None,
        )

    @property
    def is_conversation_chunk(self) -> bool:
        return self.kind == CHUNK_KIND


def should_capture_url(url: str, page_origin: Optional[str] = None) -> bool:
    """Same-origin (or OpenAI gateway) API traffic only."""
    if not url:
        return False
    parsed = urlparse(url)
    if parsed.scheme and page_origin:
        origin = f"{parsed.scheme}://{parsed.netloc}"
        host = (parsed.hostname or "").lower()
        gateway = host.endswith(".api.openai.com") or "chat-gateway" in host or "gateway.unified" in host
        if origin != page_origin and not gateway:
            return False
    path = parsed.path or url
    return any(marker in path for marker in CAPTURE_PATH_MARKERS)


# ---------------------------------------------------------------------------
# Known schemas
# ---------------------------------------------------------------------------
def walk_conversation_graph(payload: Any) -> Optional[List[CandidateMessage]]:
    """
    Reconstruct the visible transcript of a `{mapping, current_node}` graph.

    Follows parent pointers from the current node back to the root and
    reverses, so abandoned branches are never included. Without a usable
    current node every mapped node is taken in key order.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("mapping"), dict):
        return None
    mapping = payload["mapping"]
    current = payload.get("current_node") or payload.get("currentNode") or ""

    chain: List[str] = []
    if isinstance(current, str) and current in mapping:
        guard = set()
        cur = current
        while cur and cur in mapping and cur not in guard and len(chain) < MAX_GRAPH_HOPS:
            guard.add(cur)
            chain.append(cur)
            node = mapping[cur]
            cur = node.get("parent") if isinstance(node, dict) else None
        chain.reverse()

    out = []
    for node_id in chain or list(mapping.keys()):
        node = mapping.get(node_id)
        msg = node.get("message") if isinstance(node, dict) else None
        if not isinstance(msg, dict):
            continue
        author = msg.get("author") if isinstance(msg.get("author"), dict) else {}
        role = normalize_role(author.get("role"), author.get("role"))
        if role not in ("user", "assistant"):
            continue
        content = msg.get("content") if isinstance(msg.get("content"), dict) else None
        if content and content.get("content_type") == "user_editable_context":
            continue
        metadata = msg.get("metadata") if isinstance(msg.get("metadata"), dict) else {}
        if metadata.get("is_visually_hidden_from_conversation"):
            continue
        text = normalize_content(content if content is not None else msg)
        if not text:
            continue
        ts = msg.get("create_time")
        out.append(CandidateMessage(
            role=role,
            content=cap_message(text),
            timestamp=iso_from_epoch_seconds(ts) if isinstance(ts, (int, float)) else None,
        ))
    logger.debug(f"Conversation graph: {len(out)} messages (path walk: {bool(chain)})")
    return out


def parse_claude_conversation(payload: Any) -> Optional[List[CandidateMessage]]:
    """`{uuid, chat_messages: [{sender, text | content, created_at}]}`"""
    if not isinstance(payload, dict) or not isinstance(payload.get("chat_messages"), list):
        return None
    seen: set = set()
    out = extract_from_array(payload["chat_messages"], seen)
    return [CandidateMessage(c.role, cap_message(c.content), c.timestamp) for c in out]


KNOWN_SCHEMAS: List[Tuple[str, Callable[[Any], Optional[List[CandidateMessage]]]]] = [
    ("conversation_graph", walk_conversation_graph),
    ("claude_conversation", parse_claude_conversation),
]


def parse_json_payload(payload: Any) -> Tuple[str, List[CandidateMessage]]:
    """Returns (schema name, candidates). Schema 'generic' means the walker ran."""
    for name, parser in KNOWN_SCHEMAS:
        found = parser(payload)
        if found:
            return name, found
    found = walk_any_json(payload)
    return "generic", [CandidateMessage(c.role, cap_message(c.content), c.timestamp) for c in found]


# ---------------------------------------------------------------------------
# Non-JSON frames
# ---------------------------------------------------------------------------
def _looks_like_json(s: str) -> bool:
    return (s.startswith("[") and s.endswith("]")) or (s.startswith("{") and s.endswith("}"))


def parse_batchexecute(text: str) -> Optional[List[Any]]:
    """
    Best-effort parse of XSSI-prefixed, line-framed batchexecute responses.
    Nested JSON strings inside frames are expanded.
    """
    t = XSSI_PREFIX.sub("", text or "", count=1).strip()
    if not t:
        return None

    parsed = []
    for line in (ln.strip() for ln in t.split("\n")):
        if not line or not (line.startswith("[") or line.startswith("{")):
            continue
        try:
            parsed.append(json.loads(line))
        except ValueError:
            continue

    expanded: List[Any] = []
    stack = list(parsed)
    while stack:
        cur = stack.pop()
        expanded.append(cur)
        if isinstance(cur, str):
            s = cur.strip()
            if _looks_like_json(s):
                try:
                    stack.append(json.loads(s))
                except ValueError:
                    pass
        elif isinstance(cur, list):
            stack.extend(v for v in cur if isinstance(v, str))
        elif isinstance(cur, dict):
            stack.extend(v for v in cur.values() if isinstance(v, str))
    return expanded or None


def parse_ndjson(text: str) -> Optional[List[Any]]:
    lines = [ln.strip() for ln in (text or "").split("\n") if ln.strip()]
    if len(lines) <= 1:
        return None
    parsed = []
    for line in lines:
        try:
            parsed.append(json.loads(line))
        except ValueError:
            continue
    return parsed or None


def parse_body(body: str, url: str = "") -> Tuple[str, List[CandidateMessage]]:
    """
    Parse one response body. Never raises: an unparseable body yields
    ('unparsed', []).
    """
    if not body:
        return "empty", []
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
        if "/batchexecute" in url or "/_/BardChatUi/" in url:
            payload = parse_batchexecute(body)
            if payload:
                logger.debug(f"Parsed batchexecute frames from {url}: {len(payload)} values")
        if payload is None:
            payload = parse_ndjson(body)
        if payload is None:
            logger.debug(f"Unparseable body from {url or 'unknown url'}")
            return "unparsed", []
    return parse_json_payload(payload)


def conversation_chunk_candidates(event: NetworkEvent) -> List[CandidateMessage]:
    """Messages of a pre-extracted conversation chunk; timestamps are Unix seconds."""
    out = []
    for raw in event.messages:
        if not isinstance(raw, dict):
            continue
        role = normalize_role(raw.get("role"), raw.get("role"))
        content = normalize_content(raw.get("content"))
        if not role or not content:
            continue
        ts = raw.get("timestamp")
        out.append(CandidateMessage(
            role=role,
            content=cap_message(content),
            timestamp=iso_from_epoch_seconds(ts) if isinstance(ts, (int, float)) else None,
        ))
    return out


def extract_from_event(event: NetworkEvent) -> List[CandidateMessage]:
    if event.is_conversation_chunk:
        return conversation_chunk_candidates(event)
    if not event.body:
        return []
    _, candidates = parse_body(event.body, event.url)
    return candidates
