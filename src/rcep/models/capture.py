"""
Persisted capture state, one logical key-value space per tab:
- ConversationState  (current conversation + session ids)
- StoredMessage      (bounded copy of the canonical message list)
- SessionIndexEntry  (short ring of recent session ids, for cleanup)
- SnapshotSlot       (the single "last snapshot")
- ProgressRecord     (polled job progress)
"""
import json
from enum import Enum
from typing import Any, Dict, Optional
from sqlmodel import Field, SQLModel, UniqueConstraint
from rcep.models.base import TimestampMixin


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Provider(str, Enum):
    CLAUDE = "claude"
    CHATGPT = "chatgpt"
    GEMINI = "gemini"
    UNKNOWN = "unknown"


class MessageSource(str, Enum):
    NETWORK = "api"
    CONVERSATION_API = "chatgpt_conversation_api"
    EMBEDDED = "embedded_state"
    PAGE = "dom"


class CapturePhase(str, Enum):
    STARTING = "starting"
    FETCH = "fetch"
    API_CAPTURE = "api_capture"
    HYDRATE = "hydrate"
    SCAN = "scan"
    DEEP_SCAN = "deep_scan"
    SNAPSHOT = "snapshot"
    DONE = "done"
    ERROR = "error"


class CaptureStatus(str, Enum):
    STARTING = "starting"
    CAPTURING = "capturing"
    GENERATING = "generating"
    NO_MESSAGES = "no_messages"
    PARTIAL_BUDGET_REACHED = "partial_budget_reached"
    DONE = "done"
    ERROR = "error"


class CaptureStrategy(str, Enum):
    SURGICAL = "chatgpt_surgical"
    DOM = "dom"


class OutputMode(str, Enum):
    DIGEST = "digest"
    ULTRA = "ultra"
    ULTRA_PLUS = "ultra_plus"


# ---------------------------------------------------------------------------
# ConversationState
# ---------------------------------------------------------------------------
class ConversationState(TimestampMixin, table=True):
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    tab_key: str = Field(index=True, unique=True)

    conversation_id: Optional[str] = None
    session_id: Optional[str] = None


# ---------------------------------------------------------------------------
# StoredMessage
# ---------------------------------------------------------------------------
class StoredMessage(TimestampMixin, table=True):
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_storedmessage_session_seq"),
        {"extend_existing": True},
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    tab_key: str = Field(index=True)
    session_id: str = Field(index=True)
    seq: int

    message_id: str  # e.g. "msg-12"
    role: Role
    content: str
    timestamp: Optional[str] = None
    source: Optional[str] = None
    source_url: Optional[str] = None
    captured_at: int = Field(default=0, description="Capture time in epoch milliseconds")


# ---------------------------------------------------------------------------
# SessionIndexEntry
# ---------------------------------------------------------------------------
class SessionIndexEntry(TimestampMixin, table=True):
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    tab_key: str = Field(index=True)
    session_id: str = Field(index=True)
    position: int = Field(default=0, description="0 is the most recent session")


# ---------------------------------------------------------------------------
# SnapshotSlot
# ---------------------------------------------------------------------------
class SnapshotSlot(TimestampMixin, table=True):
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    tab_key: str = Field(index=True, unique=True)

    session_id: Optional[str] = None
    protocol: Optional[str] = None
    checksum: Optional[str] = None
    snapshot_json: str

    def get_snapshot(self) -> Dict[str, Any]:
        return json.loads(self.snapshot_json)


# ---------------------------------------------------------------------------
# ProgressRecord
# ---------------------------------------------------------------------------
class ProgressRecord(SQLModel, table=True):
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    tab_key: str = Field(index=True, unique=True)

    record_json: str = Field(default="{}")  # merged progress fields, camelCase as polled
    updated_at_ms: int = Field(default=0)

    def get_record(self) -> Dict[str, Any]:
        return json.loads(self.record_json or "{}")

    def set_record(self, value: Dict[str, Any]):
        self.record_json = json.dumps(value, default=str)
