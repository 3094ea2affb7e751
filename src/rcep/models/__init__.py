from rcep.models.capture import (
    Role, Provider, MessageSource, CapturePhase, CaptureStatus, CaptureStrategy, OutputMode,
    ConversationState, StoredMessage, SessionIndexEntry, SnapshotSlot, ProgressRecord,
)
from rcep.models.device import DeviceKey

__all__ = [
    "Role", "Provider", "MessageSource", "CapturePhase", "CaptureStatus", "CaptureStrategy", "OutputMode",
    "ConversationState", "StoredMessage", "SessionIndexEntry", "SnapshotSlot", "ProgressRecord",
    "DeviceKey",
]
