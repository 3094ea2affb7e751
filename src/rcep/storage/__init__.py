from rcep.storage.state import StateStore, is_progress_stale
from rcep.storage.files import compute_sha256, sanitize_filename, write_snapshot_file, read_json_file

__all__ = [
    "StateStore",
    "is_progress_stale",
    "compute_sha256",
    "sanitize_filename",
    "write_snapshot_file",
    "read_json_file",
]
