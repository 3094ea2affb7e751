import hashlib
import json
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from rcep.logging import logger


def sanitize_filename(name: str) -> str:
    """Sanitize filename to be safe for filesystem."""
    s = re.sub(r'[^a-zA-Z0-9._-]', '_', name)
    return s.strip('_')


def compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def snapshot_filename(snapshot: Dict[str, Any]) -> str:
    protocol = str(snapshot.get("protocol") or "RCEP")
    session_id = str(snapshot.get("session_id") or "session")
    return sanitize_filename(f"{protocol}_{session_id}") + ".json"


def write_snapshot_file(
    snapshot: Dict[str, Any],
    directory: Path,
    filename: Optional[str] = None,
) -> Tuple[Path, str, int]:
    """
    Write an artifact as pretty JSON.

    Returns:
        Tuple of (path, sha256 of the written bytes, size in bytes).
    """
    directory.mkdir(parents=True, exist_ok=True)
    content = json.dumps(snapshot, ensure_ascii=False, indent=2).encode("utf-8")
    path = directory / (filename or snapshot_filename(snapshot))
    with open(path, "wb") as f:
        f.write(content)
    logger.info(f"Wrote {path} ({len(content)} bytes)")
    return path, compute_sha256(content), len(content)


def read_json_file(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
