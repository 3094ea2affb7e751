"""
Structured failures surfaced to callers of the job control protocol.

Every user-visible failure carries a machine-readable code, a human message
and, where one exists, a recovery hint.
"""
from typing import Any, Dict, Optional

JOB_ALREADY_RUNNING = "JOB_ALREADY_RUNNING"
CONTEXT_INVALIDATED = "CONTEXT_INVALIDATED"
UNKNOWN_REQUEST = "UNKNOWN_REQUEST"
STORAGE_READ_FAILED = "STORAGE_READ_FAILED"
SNAPSHOT_GENERATION_FAILED = "SNAPSHOT_GENERATION_FAILED"
NO_MESSAGES = "NO_MESSAGES"
NO_SNAPSHOT = "NO_SNAPSHOT"
BLOCKS_NOT_FOUND = "BLOCKS_NOT_FOUND"
CONTENT_SCRIPT_ERROR = "CONTENT_SCRIPT_ERROR"

RELOAD_HINT = "Reload the page and try again."


class CaptureError(Exception):
    def __init__(self, code: str, message: str, recovery: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.recovery = recovery

    def to_response(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if self.recovery:
            error["recovery"] = self.recovery
        return {"ok": False, "error": error}


class JobAlreadyRunning(CaptureError):
    def __init__(self):
        super().__init__(JOB_ALREADY_RUNNING, "A snapshot job is already running on this tab.")


class ContextInvalidated(CaptureError):
    def __init__(self, reason: str = "context_invalidated"):
        super().__init__(
            CONTEXT_INVALIDATED,
            f"The host context is no longer valid ({reason}).",
            RELOAD_HINT,
        )


class SealError(Exception):
    """Raised when an artifact cannot be signed or verified."""
