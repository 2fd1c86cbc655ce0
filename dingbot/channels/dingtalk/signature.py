"""Custom-robot webhook signing."""

import base64
import hashlib
import hmac
import time
from urllib.parse import quote_plus


def generate_signature(timestamp: str | int, secret: str) -> str:
    """Sign ``"{timestamp}\\n{secret}"`` with HMAC-SHA256 keyed by the raw secret, base64-encoded."""
    if not secret:
        raise ValueError("secret is required for DingTalk signature generation")
    payload = f"{timestamp}\n{secret}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_webhook_url(url: str, secret: str, timestamp: int | None = None) -> str:
    """Append ``timestamp`` and url-encoded ``sign`` query parameters to a robot webhook URL."""
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    sign = quote_plus(generate_signature(ts, secret))
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}timestamp={ts}&sign={sign}"
