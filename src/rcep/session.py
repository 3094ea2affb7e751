"""
Session identity: provider detection, conversation ids and per-tab sessions.

A session id is `conv-{conversation_id}-{creation time}`. The session resets,
and every per-session cache with it, whenever the conversation id detected
from the tab URL changes.
"""
import re
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import urlparse
from rcep.messages import iso_from_datetime, now_ms
from rcep.models.capture import Provider
from rcep.storage.state import StateStore
from rcep.logging import logger

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", re.IGNORECASE)
SESSION_CONV_RE = re.compile(r"^conv-(.+?)-")

PROVIDER_HOSTS = {
    Provider.CLAUDE: ("claude.ai",),
    Provider.CHATGPT: ("chatgpt.com", "chat.openai.com"),
    Provider.GEMINI: ("gemini.google.com", "bard.google.com"),
}

# Path segment that precedes the conversation id
PROVIDER_PATH_KEY = {
    Provider.CLAUDE: "chat",
    Provider.CHATGPT: "c",
    Provider.GEMINI: "app",
}


def detect_provider(url: str) -> Provider:
    host = (urlparse(url or "").hostname or "").lower()
    for provider, hosts in PROVIDER_HOSTS.items():
        if any(host == h or host.endswith("." + h) for h in hosts):
            return provider
    return Provider.UNKNOWN


def path_hash(path: str) -> str:
    """Stable 32-bit hash of a path (31-multiplier string hash), as `hash-<hex>`."""
    acc = 0
    for ch in path:
        acc = (31 * acc + ord(ch)) & 0xFFFFFFFF
    return f"hash-{acc:x}"


def conversation_id_from_url(url: str, provider: Optional[Provider] = None) -> str:
    provider = detect_provider(url) if provider is None else Provider(provider)
    match = UUID_RE.search(url or "")
    if match:
        return match.group(0)

    path = urlparse(url or "").path or ""
    parts = [p for p in path.split("/") if p]

    def after(segment: str) -> Optional[str]:
        if segment in parts:
            i = parts.index(segment)
            if i + 1 < len(parts):
                return parts[i + 1]
        return None

    share_id = after("share")
    if share_id:
        return share_id
    key = PROVIDER_PATH_KEY.get(provider)
    if key:
        found = after(key)
        if found:
            return found

    if path and path != "/":
        hashed = path_hash(path)
        logger.debug(f"Using hash fallback for conversation id: {path} -> {hashed}")
        return hashed
    return f"timestamp-{now_ms()}"


def make_session_id(conv_id: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"conv-{conv_id}-{iso_from_datetime(now)}"


class SessionTracker:
    """
    Keeps the current session id of one tab in the StateStore.

    `on_reset(session_id)` is called after every reset so the owner can drop
    its in-memory caches (network events, API message cache, page cache).
    """

    def __init__(
        self,
        store: StateStore,
        tab_key: str,
        on_reset: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.tab_key = tab_key
        self.on_reset = on_reset
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _reset(self, conv_id: str, reason: str) -> str:
        fresh = make_session_id(conv_id, self.clock())
        logger.info(f"Resetting session ({reason}) -> {fresh}")
        self.store.reset_session(self.tab_key, conv_id, fresh)
        if self.on_reset is not None:
            self.on_reset(fresh)
        return fresh

    def ensure(self, url: str) -> str:
        conv_id = conversation_id_from_url(url)
        state = self.store.get_conversation(self.tab_key)
        current = state.session_id if state else None
        current_conv = state.conversation_id if state else None

        if current and not current_conv:
            m = SESSION_CONV_RE.match(current)
            if m and m.group(1) != conv_id:
                return self._reset(conv_id, "stored session belongs to another conversation")

        if current_conv and current_conv != conv_id:
            return self._reset(conv_id, f"conversation changed from {current_conv} to {conv_id}")

        fresh = make_session_id(conv_id, self.clock())
        if current and current.startswith("conv-unknown-") and not fresh.startswith("conv-unknown-"):
            self.store.set_conversation(self.tab_key, conv_id, fresh)
            self.store.remember_session(self.tab_key, fresh)
            return fresh

        if current:
            if not current_conv:
                self.store.set_conversation(self.tab_key, conv_id, current)
            return current

        self.store.set_conversation(self.tab_key, conv_id, fresh)
        self.store.remember_session(self.tab_key, fresh)
        return fresh
