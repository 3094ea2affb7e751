from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class CandidateMessage:
    """A raw message produced by one adapter before dedup."""
    role: Optional[str]  # None when the adapter could not tell
    content: str
    timestamp: Optional[str] = None


@dataclass
class Message:
    """One entry of the canonical message list."""
    id: str
    role: str
    content: str
    session_id: str
    timestamp: Optional[str] = None
    source: Optional[str] = None
    captured_at: int = 0
    source_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["source_url"] is None:
            data.pop("source_url")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0, session_id: str = "") -> "Message":
        return cls(
            id=str(data.get("id") or f"msg-{index + 1}"),
            role=str(data.get("role") or "user"),
            content=str(data.get("content") or ""),
            session_id=str(data.get("session_id") or session_id),
            timestamp=data.get("timestamp"),
            source=data.get("source"),
            captured_at=int(data.get("captured_at") or 0),
            source_url=data.get("source_url"),
        )


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def iso_now() -> str:
    return iso_from_datetime(datetime.now(timezone.utc))


def iso_from_datetime(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_from_epoch_seconds(value: float) -> str:
    return iso_from_datetime(datetime.fromtimestamp(value, tz=timezone.utc))
