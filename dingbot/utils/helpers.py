"""Utility functions for dingbot."""

import copy
from pathlib import Path
from typing import Any

SENSITIVE_FIELDS = frozenset({
    "senderStaffId", "senderId", "senderNick", "userId",
    "token", "accessToken", "sessionWebhook",
})


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the dingbot data directory (~/.dingbot)."""
    return ensure_dir(Path.home() / ".dingbot")


def get_sessions_path() -> Path:
    return ensure_dir(get_data_path() / "sessions")


def _mask(value: str) -> str:
    if len(value) > 6:
        return value[:3] + "*" * (len(value) - 6) + value[-3:]
    return "*" * len(value)


def mask_sensitive_data(data: Any) -> Any:
    """Return a deep copy of *data* with identifiers and secrets masked for logging.

    Keeps the first and last three characters of longer values.
    """
    if not isinstance(data, (dict, list)):
        return data

    masked = copy.deepcopy(data)

    def walk(obj: Any) -> None:
        items = obj.items() if isinstance(obj, dict) else enumerate(obj)
        for key, value in list(items):
            if isinstance(obj, dict) and key in SENSITIVE_FIELDS and isinstance(value, str):
                obj[key] = _mask(value)
            elif isinstance(value, (dict, list)):
                walk(value)

    walk(masked)
    return masked
