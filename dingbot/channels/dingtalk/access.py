"""Direct-message and group allow-list checks."""

import re
from dataclasses import dataclass, field

_PREFIX_RE = re.compile(r"^(dingtalk|dd|ding):", re.IGNORECASE)


@dataclass
class AllowFrom:
    """Normalized ``allow_from`` entries."""
    entries: list[str] = field(default_factory=list)
    entries_lower: list[str] = field(default_factory=list)
    has_wildcard: bool = False
    has_entries: bool = False


def strip_channel_prefix(value: str) -> str:
    """Remove a leading ``dingtalk:``/``dd:``/``ding:`` prefix."""
    return _PREFIX_RE.sub("", value, count=1)


def normalize_allow_from(values: list[str] | None) -> AllowFrom:
    entries = [str(v).strip() for v in (values or [])]
    entries = [v for v in entries if v]
    normalized = [strip_channel_prefix(v) for v in entries if v != "*"]
    return AllowFrom(
        entries=normalized,
        entries_lower=[v.lower() for v in normalized],
        has_wildcard="*" in entries,
        has_entries=bool(entries),
    )


def is_sender_allowed(allow: AllowFrom, sender_id: str | None) -> bool:
    """An empty list or a ``*`` entry admits everyone."""
    if not allow.has_entries or allow.has_wildcard:
        return True
    return bool(sender_id) and sender_id.lower() in allow.entries_lower


def is_group_allowed(allow: AllowFrom, group_id: str | None) -> bool:
    if allow.has_wildcard:
        return True
    return bool(group_id) and group_id.lower() in allow.entries_lower
