"""Inbound payload parsing and outbound text helpers."""

import re
from typing import Any

from dingbot.channels.dingtalk.access import strip_channel_prefix
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.channels.dingtalk.types import MessageContent, SendOptions, TargetResult

_MARKDOWN_RE = re.compile(r"^[#*>-]|[*_`#\[\]]")
_TITLE_STRIP_RE = re.compile(r"^[#*\s\->]+")
TITLE_MAX_LEN = 20

GROUP_SEND_URL = "https://api.dingtalk.com/v1.0/robot/groupMessages/send"
USER_SEND_URL = "https://api.dingtalk.com/v1.0/robot/oToMessages/batchSend"


def _safe_dict(value: Any) -> dict:
    """Return *value* if it's a dict, else empty dict."""
    return value if isinstance(value, dict) else {}


def detect_markdown_and_extract_title(
    text: str, options: SendOptions | None, default_title: str,
) -> tuple[bool, str]:
    """Decide whether *text* goes out as markdown and derive its title.

    An explicit ``use_markdown`` wins; otherwise markdown is used when the
    text carries markdown syntax or a newline.
    """
    options = options or SendOptions()
    has_markdown = bool(_MARKDOWN_RE.search(text)) or "\n" in text
    if options.use_markdown is None:
        use_markdown = has_markdown
    else:
        use_markdown = options.use_markdown

    if options.title:
        title = options.title
    elif use_markdown:
        first_line = text.split("\n", 1)[0]
        title = _TITLE_STRIP_RE.sub("", first_line)[:TITLE_MAX_LEN] or default_title
    else:
        title = default_title
    return use_markdown, title


def _quote(text: str) -> str:
    return f'[引用消息: "{text}"]\n\n'


def _rich_text_quote(parts: list) -> str:
    out: list[str] = []
    for part in parts:
        part = _safe_dict(part)
        kind = part.get("msgType") or part.get("type")
        if kind == "text" and part.get("content"):
            out.append(part["content"])
        elif kind == "emoji":
            out.append(part.get("content") or "[表情]")
        elif kind == "picture":
            out.append("[图片]")
        elif kind == "at":
            out.append(f"@{part.get('content') or part.get('atName') or '某人'}")
        elif part.get("text"):
            out.append(part["text"])
    return "".join(out).strip()


def format_quoted_content(data: dict) -> str:
    """Render reply/quote context as a readable prefix, or ``""`` when absent."""
    text_field = _safe_dict(data.get("text"))
    content = _safe_dict(data.get("content"))

    if text_field.get("isReplyMsg") and text_field.get("repliedMsg"):
        replied = _safe_dict(_safe_dict(text_field["repliedMsg"]).get("content"))
        quoted = (replied.get("text") or "").strip()
        if quoted:
            return _quote(quoted)
        if isinstance(replied.get("richText"), list):
            quoted = _rich_text_quote(replied["richText"])
            if quoted:
                return _quote(quoted)

    # Rich media replies sometimes carry only the original message id
    if text_field.get("isReplyMsg") and not text_field.get("repliedMsg") and data.get("originalMsgId"):
        return f"[这是一条引用消息，原消息ID: {data['originalMsgId']}]\n\n"

    legacy = _safe_dict(data.get("quoteMessage"))
    if legacy:
        quoted = (_safe_dict(legacy.get("text")).get("content") or "").strip()
        if quoted:
            return _quote(quoted)

    if content.get("quoteContent"):
        return _quote(content["quoteContent"])

    return ""


def extract_message_content(data: dict) -> MessageContent:
    """Normalize an inbound robot event by ``msgtype``."""
    msgtype = data.get("msgtype") or "text"
    content = _safe_dict(data.get("content"))
    plain = (_safe_dict(data.get("text")).get("content") or "").strip()
    prefix = format_quoted_content(data)

    if msgtype == "text":
        return MessageContent(text=prefix + plain, message_type="text")

    if msgtype == "richText":
        text = ""
        picture_code = None
        for part in content.get("richText") or []:
            part = _safe_dict(part)
            kind = part.get("type")
            if part.get("text") and kind in (None, "text"):
                text += part["text"]
            if kind == "at" and part.get("atName"):
                text += f"@{part['atName']} "
            if kind == "picture" and part.get("downloadCode") and not picture_code:
                picture_code = part["downloadCode"]
        body = text.strip() or ("<media:image>" if picture_code else "[富文本消息]")
        return MessageContent(
            text=prefix + body,
            message_type="richText",
            media_code=picture_code,
            media_type="image" if picture_code else None,
        )

    if msgtype == "picture":
        return MessageContent("<media:image>", "picture", content.get("downloadCode"), "image")

    if msgtype == "audio":
        return MessageContent(
            content.get("recognition") or "<media:voice>", "audio",
            content.get("downloadCode"), "audio",
        )

    if msgtype == "video":
        return MessageContent("<media:video>", "video", content.get("downloadCode"), "video")

    if msgtype == "file":
        return MessageContent(
            f"<media:file> ({content.get('fileName') or '文件'})", "file",
            content.get("downloadCode"), "file",
        )

    return MessageContent(text=plain or f"[{msgtype}消息]", message_type=msgtype)


def strip_target_prefix(target: str) -> tuple[str, bool]:
    """Split off ``group:``/``user:``. Returns (target id, explicitly a user)."""
    if target.startswith("group:"):
        return target[len("group:"):], False
    if target.startswith("user:"):
        return target[len("user:"):], True
    return target, False


def normalize_target(target: str | None) -> str | None:
    return strip_channel_prefix(target) if target else None


def resolve_target(to: str | None) -> TargetResult:
    trimmed = (to or "").strip()
    if not trimmed:
        return TargetResult(ok=False, error="DingTalk message requires --to <conversationId>")
    return TargetResult(ok=True, to=trimmed)


def proactive_route(target: str, peers: PeerIdRegistry) -> tuple[str, dict[str, Any]]:
    """Pick the proactive endpoint and addressee fields for *target*.

    ``cid``-prefixed ids are groups unless ``user:`` forces a direct send.
    Lowercased ids are restored to their original casing.
    """
    target_id, explicit_user = strip_target_prefix(target)
    resolved = peers.resolve(target_id)
    if not explicit_user and resolved.startswith("cid"):
        return GROUP_SEND_URL, {"openConversationId": resolved}
    return USER_SEND_URL, {"userIds": [resolved]}
